"""
Configuration for the capture service.
"""
from pydantic import BaseModel
import os

class Settings(BaseModel):
    """
    Runtime settings with environment-variable overrides.
    """
    LOG_LEVEL: str = (os.getenv("LOG_LEVEL", "INFO") or "INFO")

    # Capture device
    CAMERA_INDEX: int = int(os.getenv("CAMERA_INDEX", "0"))
    CAPTURE_WIDTH: int = int(os.getenv("CAPTURE_WIDTH", "640"))
    CAPTURE_HEIGHT: int = int(os.getenv("CAPTURE_HEIGHT", "480"))
    FACING_MODE: str = os.getenv("FACING_MODE", "user")

    # Product tuning constants
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "1.5"))
    CONFIDENCE_THRESHOLD: float = float(os.getenv("CONFIDENCE_THRESHOLD", "0.4"))
    ACQUIRE_TIMEOUT: float = float(os.getenv("ACQUIRE_TIMEOUT", "10"))

    DETECTOR_BACKEND: str = os.getenv("DETECTOR_BACKEND", "opencv")

    # Host application
    HISTORY_DB: str = os.getenv("HISTORY_DB", "aurasync.db")
    RECENT_EVENTS: int = int(os.getenv("RECENT_EVENTS", "50"))

    SPOTIFY_CLIENT_ID: str | None = os.getenv("SPOTIFY_CLIENT_ID") or None
    SPOTIFY_REDIRECT_URI: str = os.getenv(
        "SPOTIFY_REDIRECT_URI", "http://localhost:8000/spotify/callback"
    )
    SPOTIFY_SCOPES: str = os.getenv(
        "SPOTIFY_SCOPES",
        "user-read-private user-read-email playlist-modify-public playlist-modify-private",
    )

    def __init__(self, **data):
        super().__init__(**data)
        # Normalize LOG_LEVEL and FACING_MODE: strip, case-fold, validate
        level = (self.LOG_LEVEL or "INFO").strip().split()[0].upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            level = "INFO"
        object.__setattr__(self, "LOG_LEVEL", level)

        facing = (self.FACING_MODE or "user").strip().lower()
        if facing not in ("user", "environment"):
            facing = "user"
        object.__setattr__(self, "FACING_MODE", facing)
