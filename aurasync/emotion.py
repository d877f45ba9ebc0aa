"""
Expression oracle (DeepFace) and the emotion selection policy.
"""
# aurasync/emotion.py
from __future__ import annotations
from typing import Dict, List, Optional, Protocol, Tuple
import logging
import numpy as np

from aurasync.config import Settings
from aurasync.models import EmotionLabel, FaceBox, FaceDetection

logger = logging.getLogger(__name__)

# Oracle vocabulary -> application vocabulary. disgusted/fearful are folded
# onto angry/surprised; the visual and music vocabulary is coarser.
EXPRESSION_MAP: Dict[str, EmotionLabel] = {
    "happy": EmotionLabel.HAPPY,
    "sad": EmotionLabel.SAD,
    "angry": EmotionLabel.ANGRY,
    "surprised": EmotionLabel.SURPRISED,
    "neutral": EmotionLabel.NEUTRAL,
    "disgusted": EmotionLabel.ANGRY,
    "fearful": EmotionLabel.SURPRISED,
    # DeepFace spellings
    "disgust": EmotionLabel.ANGRY,
    "fear": EmotionLabel.SURPRISED,
    "surprise": EmotionLabel.SURPRISED,
}


class ExpressionOracle(Protocol):
    def detect_faces(self, frame: np.ndarray) -> List[FaceDetection]:
        ...


def map_expression(raw: str) -> EmotionLabel:
    """Map an oracle label; anything unknown becomes neutral."""
    return EXPRESSION_MAP.get((raw or "").strip().lower(), EmotionLabel.NEUTRAL)


def top_expression(face: FaceDetection) -> Tuple[Optional[str], float]:
    """
    Return (raw_label, score) with the strictly greatest score.

    Exact ties go to the label that comes first in the oracle's order.
    """
    best: Optional[str] = None
    best_score = 0.0
    for label, score in face.expressions.items():
        if best is None or score > best_score:
            best, best_score = label, float(score)
    return best, best_score


def pick_emotion(faces: List[FaceDetection]) -> Optional[Tuple[EmotionLabel, str, float]]:
    """
    Apply the selection policy to one oracle result.

    Returns (mapped_label, raw_label, score) for the first face, or None when
    no face (or no expression scores) came back. Callers apply any
    confidence gate themselves.
    """
    if not faces:
        return None
    raw, score = top_expression(faces[0])
    if raw is None:
        return None
    return map_expression(raw), raw, score


def passes_gate(score: float, threshold: float) -> bool:
    return score > threshold


# -----------------------------------------------------------------------------
# DeepFace oracle
# -----------------------------------------------------------------------------
def _normalize_results(raw) -> List[Dict]:
    # DeepFace returns list[dict] or dict depending on version; normalize to list
    if isinstance(raw, dict):
        return [raw]
    if isinstance(raw, list):
        return [r for r in raw if isinstance(r, dict)]
    return []


def _is_real_face(r: Dict, frame_shape: Tuple[int, ...]) -> bool:
    # With enforce_detection=False DeepFace reports the whole frame at
    # confidence 0 when nothing was found.
    conf = r.get("face_confidence")
    if conf is not None:
        try:
            return float(conf) > 0
        except (TypeError, ValueError):
            pass
    reg = r.get("region") or {}
    h, w = frame_shape[:2]
    return not (int(reg.get("w", 0)) >= w and int(reg.get("h", 0)) >= h)


def _scores(r: Dict) -> Dict[str, float]:
    em = r.get("emotion")
    if not isinstance(em, dict) or not em:
        dom = r.get("dominant_emotion")
        return {dom: 1.0} if isinstance(dom, str) and dom else {}
    out = {str(k): float(v) for k, v in em.items()}
    # DeepFace reports percentages
    if max(out.values()) > 1.0:
        out = {k: v / 100.0 for k, v in out.items()}
    return out


class DeepFaceOracle:
    """Wraps ``DeepFace.analyze(actions=['emotion'])`` as an expression oracle."""

    def __init__(self, settings: Settings):
        self.detector_backend = settings.DETECTOR_BACKEND

    def detect_faces(self, frame: np.ndarray) -> List[FaceDetection]:
        # Lazy import for easier testing and to avoid loading heavy stacks too early
        from deepface import DeepFace

        res = DeepFace.analyze(
            frame,
            actions=["emotion"],
            enforce_detection=False,
            detector_backend=self.detector_backend,
        )
        faces: List[FaceDetection] = []
        for r in _normalize_results(res):
            if not _is_real_face(r, frame.shape):
                continue
            reg = r.get("region") or {}
            faces.append(FaceDetection(
                box=FaceBox(x=int(reg.get("x", 0)), y=int(reg.get("y", 0)),
                            w=int(reg.get("w", 0)), h=int(reg.get("h", 0))),
                expressions=_scores(r),
            ))
        logger.debug(f"[emotion] faces_detected={len(faces)}")
        return faces
