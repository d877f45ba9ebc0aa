
import pytest
from pydantic import ValidationError
from aurasync.models import (
    CaptureStatus, DetectionEvent, EmotionLabel, EnvironmentAssessment, PermissionState,
    Profile, SessionState, SourceKind,
)

def test_models():
    ev = DetectionEvent(emotion="happy", source="uploaded-image", score=0.8)
    assert ev.emotion is EmotionLabel.HAPPY
    assert ev.source is SourceKind.UPLOAD
    assert ev.ts > 0
    assert ev.model_dump(mode="json")["source"] == "uploaded-image"

    st = CaptureStatus(state=SessionState.ACTIVE, resolution=(640, 480))
    assert st.model_dump(mode="json")["state"] == "active"

def test_environment_assessment_is_frozen():
    env = EnvironmentAssessment(secure_context=True, media_supported=True)
    assert env.permission is PermissionState.UNKNOWN
    with pytest.raises(ValidationError):
        env.secure_context = False

def test_unknown_labels_rejected():
    with pytest.raises(ValidationError):
        DetectionEvent(emotion="bored", source="webcam")
    with pytest.raises(ValidationError):
        DetectionEvent(emotion="happy", source="telepathy")

def test_profile_connected():
    assert not Profile().spotify_connected
    assert Profile(access_token="tok").spotify_connected
