"""
REST endpoints for capture, manual intake, history and music.
"""
import sqlite3
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional
from fastapi import APIRouter, UploadFile, File, HTTPException, Form, Request, Query
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel
import logging

from aurasync.aura import emotion_css, encode_png, render_aura
from aurasync.camera import OpenCVMediaProvider
from aurasync.capture import CaptureSessionController
from aurasync.config import Settings
from aurasync.emotion import DeepFaceOracle
from aurasync.environment import assess_environment
from aurasync.errors import CaptureError, InvalidImage, NoFaceDetected, SessionAlreadyActive
from aurasync.history import HistoryStore
from aurasync.models import DetectionEvent, EmotionLabel, SessionState, Track
from aurasync.music import (
    MusicRecommender,
    SpotifyApiError,
    SpotifyAuthError,
    SpotifyClient,
    SpotifyError,
    SpotifyNotConnected,
    SpotifyTokenExpired,
)


router = APIRouter()
settings = Settings()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "environment_unsupported": 400,
    "permission_denied": 403,
    "device_not_found": 404,
    "device_busy": 409,
    "acquisition_timeout": 504,
    "playback_failed": 502,
}

recent_events: deque = deque(maxlen=settings.RECENT_EVENTS)
last_entry = {"id": None, "emotion": None}
store = HistoryStore(settings.HISTORY_DB)
recommender = MusicRecommender(SpotifyClient(settings), store)
# single worker keeps history writes in detection order
history_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="history")


def _record(event: DetectionEvent) -> None:
    try:
        entry_id = store.record(event)
    except sqlite3.Error:
        logger.exception("[api] failed to record mood history")
        return
    last_entry.update(id=entry_id, emotion=event.emotion)


def _on_detection(event: DetectionEvent) -> None:
    # called on the event loop; the sqlite write runs on the writer thread
    recent_events.append(event)
    history_writer.submit(_record, event)


def flush_history() -> None:
    """Block until every queued history write has finished."""
    history_writer.submit(lambda: None).result()


def _on_error(err: CaptureError) -> None:
    logger.warning(f"[api] capture error kind={err.kind} hint={err.hint}")


controller = CaptureSessionController(
    OpenCVMediaProvider(settings),
    DeepFaceOracle(settings),
    settings,
    on_detection=_on_detection,
    on_error=_on_error,
)


# ---- capture ----

@router.post("/capture/start")
async def capture_start(request: Request):
    """
    Open the camera and begin emotion sampling.

    The request URL decides whether this is a secure context (HTTPS or a
    loopback host). Failures return {"kind", "hint"} as the error detail.
    """
    env = assess_environment(str(request.url), controller.provider)
    logger.debug(f"[api] /capture/start env={env}")
    try:
        status = await controller.start(env)
    except SessionAlreadyActive as e:
        raise HTTPException(status_code=409, detail={"kind": "session_active", "hint": str(e)})
    except CaptureError as e:
        raise HTTPException(status_code=ERROR_STATUS.get(e.kind, 500), detail=e.to_dict())
    state = "started" if status.state is SessionState.ACTIVE else status.state.value
    return {"status": state, "capture": status.model_dump(mode="json")}

@router.post("/capture/stop")
async def capture_stop():
    status = controller.stop()
    return {"status": "stopped", "capture": status.model_dump(mode="json")}

@router.get("/capture/status")
async def capture_status():
    return controller.status().model_dump(mode="json")

@router.get("/capture/frame")
async def capture_frame():
    jpeg = controller.surface.encode_jpeg()
    if jpeg is None:
        raise HTTPException(status_code=404, detail="No frame available")
    return Response(content=jpeg, media_type="image/jpeg")


# ---- manual intake ----

@router.post("/emotion/select")
async def emotion_select(emotion: str = Form(...)):
    try:
        event = controller.select_emotion(emotion)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown emotion: {emotion}")
    return event.model_dump(mode="json")

@router.post("/emotion/upload")
async def emotion_upload(file: UploadFile = File(...)):
    """
    Detect the emotion in an uploaded photo.

    Returns the DetectionEvent, or 422 with kind no_face_detected /
    invalid_image so the user gets explicit feedback.
    """
    logger.debug(f"[api] /emotion/upload filename={file.filename}")
    data = await file.read()
    try:
        event = await controller.upload_image(data)
    except (NoFaceDetected, InvalidImage) as e:
        raise HTTPException(status_code=422, detail={"kind": e.kind, "hint": str(e)})
    except Exception as e:
        logger.exception("[api] image analysis failed")
        raise HTTPException(status_code=500, detail=f"Failed to analyze the image: {e}")
    return event.model_dump(mode="json")

@router.get("/events")
async def events(limit: int = Query(20, ge=1, le=500)):
    items = list(recent_events)[-limit:]
    return [e.model_dump(mode="json") for e in reversed(items)]


# ---- history & profile ----

class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

@router.get("/history")
def history(period: str = "week", limit: int = Query(50, ge=1, le=500)):
    flush_history()
    try:
        entries = store.list(period, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [e.model_dump() for e in entries]

@router.get("/history/stats")
def history_stats(period: str = "week"):
    flush_history()
    try:
        return store.stats(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/profile")
def profile():
    p = store.profile()
    return {"display_name": p.display_name, "avatar_url": p.avatar_url,
            "spotify_user_id": p.spotify_user_id, "spotify_connected": p.spotify_connected}

@router.put("/profile")
def update_profile(body: ProfileUpdate):
    store.update_profile(**body.model_dump(exclude_unset=True))
    return profile()


# ---- music ----

class PlaylistRequest(BaseModel):
    emotion: EmotionLabel
    tracks: List[Track]

@router.get("/music/recommendations")
def music_recommendations(emotion: str = "neutral", limit: int = Query(10, ge=1, le=50)):
    flush_history()
    rec = recommender.recommend(emotion, limit)
    if rec.source == "spotify" and last_entry["id"] is not None and last_entry["emotion"] == rec.emotion:
        try:
            store.add_suggestions(last_entry["id"], rec.tracks)
        except sqlite3.Error:
            logger.exception("[api] failed to save music suggestions")
    return rec.model_dump(mode="json")

@router.post("/music/playlist")
def music_playlist(body: PlaylistRequest):
    try:
        return recommender.save_playlist(body.emotion, body.tracks)
    except (SpotifyNotConnected, SpotifyTokenExpired, SpotifyAuthError) as e:
        raise HTTPException(status_code=401, detail=str(e))
    except SpotifyApiError as e:
        raise HTTPException(status_code=e.status if e.status < 500 else 502, detail=str(e))

@router.get("/spotify/login")
def spotify_login():
    try:
        return RedirectResponse(recommender.client.authorize_url())
    except SpotifyAuthError as e:
        raise HTTPException(status_code=503, detail=str(e))

@router.get("/spotify/callback")
def spotify_callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None):
    if error:
        raise HTTPException(status_code=400, detail=f"Spotify authorization failed: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing authorization code or state parameter")
    try:
        info = recommender.connect(code, state)
    except SpotifyError as e:
        logger.exception("[api] Spotify connection failed")
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "connected", **info}

@router.post("/spotify/disconnect")
def spotify_disconnect():
    store.clear_spotify()
    return {"status": "disconnected"}


# ---- aura ----

@router.get("/aura/{emotion}.png")
def aura_png(emotion: str, intensity: float = Query(1.0, ge=0.0, le=2.0), size: int = Query(320, ge=64, le=1024)):
    png = encode_png(render_aura(emotion, intensity, size))
    return Response(content=png, media_type="image/png", headers={"X-Aura-Color": emotion_css(emotion)})
