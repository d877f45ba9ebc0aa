"""
Pydantic data models for capture, music and history IO.
"""
from __future__ import annotations
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional, Literal
import time

class EmotionLabel(str, Enum):
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    SURPRISED = "surprised"
    FEARFUL = "fearful"
    DISGUSTED = "disgusted"
    NEUTRAL = "neutral"
    CALM = "calm"

class SourceKind(str, Enum):
    WEBCAM = "webcam"
    MANUAL = "manual-selection"
    UPLOAD = "uploaded-image"

class PermissionState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"
    UNKNOWN = "unknown"

class SessionState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    STOPPING = "stopping"
    FAILED = "failed"

class DetectionEvent(BaseModel):
    emotion: EmotionLabel
    source: SourceKind
    score: Optional[float] = None
    ts: float = Field(default_factory=time.time)

class FaceBox(BaseModel):
    x: int
    y: int
    w: int
    h: int

class FaceDetection(BaseModel):
    box: FaceBox
    # raw oracle label -> score in 0..1, oracle order preserved
    expressions: Dict[str, float] = Field(default_factory=dict)

class EnvironmentAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    secure_context: bool
    media_supported: bool
    permission: PermissionState = PermissionState.UNKNOWN

class CaptureStatus(BaseModel):
    state: SessionState
    failure_kind: Optional[str] = None
    failure_hint: Optional[str] = None
    emotion: Optional[EmotionLabel] = None
    started_at: Optional[float] = None
    resolution: Optional[tuple[int, int]] = None


# music models


class Track(BaseModel):
    id: str
    name: str
    artist: str
    album: str = ""
    image: str = ""
    preview_url: Optional[str] = None
    spotify_url: Optional[str] = None

class AudioFeatures(BaseModel):
    target_valence: float
    target_energy: float
    target_danceability: float

class SpotifyTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"

class Recommendation(BaseModel):
    emotion: EmotionLabel
    source: Literal["spotify", "sample"]
    spotify_connected: bool
    tracks: List[Track] = Field(default_factory=list)


# history models


class MusicSuggestion(BaseModel):
    id: int
    track_id: str
    track_name: str
    artist_name: str
    album_name: Optional[str] = None
    image_url: Optional[str] = None
    preview_url: Optional[str] = None
    spotify_url: Optional[str] = None
    created_at: str

class MoodHistoryEntry(BaseModel):
    id: int
    emotion: str
    source: str
    created_at: str
    music_suggestions: List[MusicSuggestion] = Field(default_factory=list)

class Profile(BaseModel):
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    spotify_user_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def spotify_connected(self) -> bool:
        return bool(self.access_token)
