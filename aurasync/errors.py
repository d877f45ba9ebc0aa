"""
Error taxonomy surfaced to the host application.

Every capture failure carries a stable machine-readable ``kind`` plus a
remediation ``hint`` picked from a static table keyed by the specific cause.
None of them are retried by the core; the host re-invokes ``start()``.
"""
from __future__ import annotations
from typing import Optional

REMEDIATION_HINTS = {
    "insecure_context": "Camera access requires a secure connection. Open the app over HTTPS or on localhost.",
    "unsupported": "This platform does not support camera capture. Try a different device or browser.",
    "denied": "Camera permission denied. Please allow camera access and try again.",
    "not_found": "No camera found. Please connect a camera and try again.",
    "busy": "Camera is in use by another application.",
    "aborted": "Camera access was interrupted.",
    "timeout": "The camera did not start in time. Try again.",
    "playback": "Video playback failed. Try refreshing the page.",
}


class CaptureError(Exception):
    """Hard failure of a capture session."""
    kind = "capture_error"
    default_cause: Optional[str] = None

    def __init__(self, hint: Optional[str] = None, cause: Optional[str] = None):
        cause = cause or self.default_cause
        self.cause = cause
        self.hint = hint or REMEDIATION_HINTS.get(cause or "", "Camera access failed")
        super().__init__(self.hint)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "hint": self.hint}


class EnvironmentUnsupported(CaptureError):
    kind = "environment_unsupported"
    default_cause = "unsupported"


class PermissionDenied(CaptureError):
    kind = "permission_denied"
    default_cause = "denied"


class DeviceNotFound(CaptureError):
    kind = "device_not_found"
    default_cause = "not_found"


class DeviceBusy(CaptureError):
    kind = "device_busy"
    default_cause = "busy"


class AcquisitionTimeout(CaptureError):
    kind = "acquisition_timeout"
    default_cause = "timeout"


class PlaybackFailed(CaptureError):
    kind = "playback_failed"
    default_cause = "playback"


class SessionAlreadyActive(Exception):
    """A start request arrived while a session is live."""


class NoFaceDetected(Exception):
    """Explicit single-shot feedback for the upload path."""
    kind = "no_face_detected"

    def __init__(self, message: str = "No face detected in the uploaded image"):
        super().__init__(message)


class InvalidImage(Exception):
    kind = "invalid_image"

    def __init__(self, message: str = "Failed to load the image"):
        super().__init__(message)


class DeviceError(Exception):
    """Raised by a media provider; ``reason`` is one of denied/not_found/busy/aborted."""

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason)


_DEVICE_ERRORS = {
    "denied": PermissionDenied,
    "not_found": DeviceNotFound,
    "busy": DeviceBusy,
    "aborted": DeviceBusy,
}


def capture_error_from_device(err: DeviceError) -> CaptureError:
    cls = _DEVICE_ERRORS.get(err.reason, DeviceBusy)
    return cls(cause=err.reason if err.reason in REMEDIATION_HINTS else None)
