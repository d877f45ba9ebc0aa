import sys, types
import numpy as np
import pytest

from conftest import make_face
from aurasync.config import Settings
from aurasync.emotion import DeepFaceOracle, map_expression, passes_gate, pick_emotion, top_expression
from aurasync.models import EmotionLabel


@pytest.mark.parametrize("raw,expected", [
    ("happy", EmotionLabel.HAPPY),
    ("sad", EmotionLabel.SAD),
    ("angry", EmotionLabel.ANGRY),
    ("surprised", EmotionLabel.SURPRISED),
    ("neutral", EmotionLabel.NEUTRAL),
    ("disgusted", EmotionLabel.ANGRY),
    ("fearful", EmotionLabel.SURPRISED),
    ("disgust", EmotionLabel.ANGRY),
    ("fear", EmotionLabel.SURPRISED),
    ("surprise", EmotionLabel.SURPRISED),
    ("contempt", EmotionLabel.NEUTRAL),
    ("", EmotionLabel.NEUTRAL),
])
def test_map_expression(raw, expected):
    assert map_expression(raw) is expected
    # same input, same output
    assert map_expression(raw) is map_expression(raw)


def test_top_expression_tie_goes_to_first_label():
    assert top_expression(make_face(sad=0.5, happy=0.5)) == ("sad", 0.5)
    assert top_expression(make_face(happy=0.5, sad=0.5)) == ("happy", 0.5)


def test_pick_emotion_uses_first_face_only():
    faces = [make_face(neutral=0.6, happy=0.4), make_face(angry=0.99)]
    assert pick_emotion(faces) == (EmotionLabel.NEUTRAL, "neutral", 0.6)


def test_pick_emotion_empty():
    assert pick_emotion([]) is None
    assert pick_emotion([make_face()]) is None


def test_gate_is_strict():
    assert passes_gate(0.41, 0.4)
    assert not passes_gate(0.4, 0.4)
    assert not passes_gate(0.35, 0.4)


class DummyDeepFace:
    result = None
    calls = []

    @staticmethod
    def analyze(frame, actions, enforce_detection, detector_backend):
        DummyDeepFace.calls.append((actions, enforce_detection, detector_backend))
        return DummyDeepFace.result


def _oracle(monkeypatch, result):
    monkeypatch.setitem(sys.modules, "deepface", types.SimpleNamespace(DeepFace=DummyDeepFace))
    DummyDeepFace.result = result
    DummyDeepFace.calls = []
    return DeepFaceOracle(Settings(DETECTOR_BACKEND="retinaface"))


def test_deepface_percentages_are_normalized(monkeypatch):
    oracle = _oracle(monkeypatch, [{
        "region": {"x": 4, "y": 5, "w": 20, "h": 22},
        "face_confidence": 0.93,
        "emotion": {"angry": 1.0, "happy": 87.0, "neutral": 12.0},
    }])
    faces = oracle.detect_faces(np.zeros((64, 64, 3), dtype=np.uint8))
    assert len(faces) == 1
    assert faces[0].box.w == 20
    assert faces[0].expressions["happy"] == pytest.approx(0.87)
    assert list(faces[0].expressions) == ["angry", "happy", "neutral"]
    assert DummyDeepFace.calls == [(["emotion"], False, "retinaface")]


def test_deepface_whole_frame_without_confidence_is_no_face(monkeypatch):
    oracle = _oracle(monkeypatch, [{
        "region": {"x": 0, "y": 0, "w": 64, "h": 64},
        "face_confidence": 0,
        "emotion": {"neutral": 99.0},
    }])
    assert oracle.detect_faces(np.zeros((64, 64, 3), dtype=np.uint8)) == []


def test_deepface_dict_result_and_dominant_fallback(monkeypatch):
    oracle = _oracle(monkeypatch, {"region": {"x": 1, "y": 1, "w": 10, "h": 10}, "dominant_emotion": "sad"})
    faces = oracle.detect_faces(np.zeros((64, 64, 3), dtype=np.uint8))
    assert faces[0].expressions == {"sad": 1.0}
    assert pick_emotion(faces)[0] is EmotionLabel.SAD
