
"""Overlay drawing and the rendering surface.

- draw_overlays: draw the first face's box and "<expression> (NN%)" label, or a flag
- RenderSurface: the single annotated frame the host can display
"""
from __future__ import annotations
import threading
import cv2
import numpy as np
from typing import Callable, List, Optional, Tuple

from aurasync.models import FaceDetection

OVERLAY_COLOR = (0, 255, 0)

def draw_overlays(frame: np.ndarray,
                  faces: List[FaceDetection] | None = None,
                  label: Optional[str] = None,
                  flag: Optional[str] = None,
                  color: Tuple[int, int, int] = OVERLAY_COLOR) -> np.ndarray:
    """Draw the detection box and expression label on a copy of the frame.

    Args:
        frame: BGR image
        faces: oracle detections; only the first one is drawn
        label: text drawn above the box, e.g. "happy (87%)"
        flag: optional flag string (e.g., "NO_FACE")
        color: BGR color for rectangles

    Returns:
        Annotated copy of the frame
    """
    out = frame.copy()
    h, w = out.shape[:2]

    if flag:
        cv2.putText(out, flag, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 1.0, (0, 0, 255), 2, cv2.LINE_AA)
        return out
    if not faces:
        return out

    box = faces[0].box
    x, y, fw, fh = box.x, box.y, box.w, box.h
    # clamp to image bounds
    x = max(0, min(x, w-1)); y = max(0, min(y, h-1))
    fw = max(0, min(fw, w-x)); fh = max(0, min(fh, h-y))

    cv2.rectangle(out, (x, y), (x+fw, y+fh), color, 2)
    if label:
        scale = max(0.4, fw * 0.004)
        cv2.putText(out, label, (x, max(12, y-10)), cv2.FONT_HERSHEY_SIMPLEX, scale, color, 2, cv2.LINE_AA)

    return out


def expression_label(raw: str, score: float) -> str:
    return f"{raw} ({score * 100:.0f}%)"


class RenderSurface:
    """
    What the host displays: a live frame source or a still image, plus the
    current overlay. Only the capture controller writes to it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._source: Optional[Callable[[], Optional[np.ndarray]]] = None
        self._still: Optional[np.ndarray] = None
        self._faces: List[FaceDetection] = []
        self._label: Optional[str] = None
        self._flag: Optional[str] = None

    # ---- producers ----
    def attach(self, source: Callable[[], Optional[np.ndarray]]) -> None:
        with self._lock:
            self._source = source
            self._still = None
            self._set_overlay([], None, None)

    def detach(self) -> None:
        with self._lock:
            self._source = None
            self._set_overlay([], None, None)

    def draw(self, faces: List[FaceDetection], label: Optional[str] = None) -> None:
        """Replace the overlay on top of the live source."""
        with self._lock:
            self._still = None
            self._set_overlay(faces, label, None)

    def show_still(self, image: np.ndarray,
                   faces: List[FaceDetection] | None = None,
                   label: Optional[str] = None,
                   flag: Optional[str] = None) -> None:
        with self._lock:
            self._still = image
            self._set_overlay(faces or [], label, flag)

    def _set_overlay(self, faces, label, flag) -> None:
        self._faces = list(faces)
        self._label = label
        self._flag = flag

    # ---- consumers ----
    @property
    def attached(self) -> bool:
        return self._source is not None

    def compose(self) -> Optional[np.ndarray]:
        with self._lock:
            source, still = self._source, self._still
            faces, label, flag = self._faces, self._label, self._flag
        frame = still if still is not None else (source() if source else None)
        if frame is None or frame.size == 0:
            return None
        return draw_overlays(frame, faces, label, flag)

    def encode_jpeg(self, quality: int = 85) -> Optional[bytes]:
        frame = self.compose()
        if frame is None:
            return None
        ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
        return buf.tobytes() if ok else None
