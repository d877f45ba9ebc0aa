
import threading
import time
from collections import deque

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

from conftest import FakeOracle, FakeProvider, make_face
from api.main import app
import api.routes as routes
from aurasync.capture import CaptureSessionController
from aurasync.config import Settings
from aurasync.errors import DeviceError, REMEDIATION_HINTS
from aurasync.history import HistoryStore
from aurasync.models import Recommendation, Track
from aurasync.music import AUTHORIZE_URL, MusicRecommender, SpotifyClient


def _png() -> bytes:
    return cv2.imencode(".png", np.full((32, 32, 3), 90, dtype=np.uint8))[1].tobytes()


@pytest.fixture
def api(monkeypatch, tmp_path, settings):
    """Swap the module-level collaborators for fakes and a scratch database."""
    store = HistoryStore(str(tmp_path / "api.db"))
    provider = FakeProvider()
    oracle = FakeOracle([make_face(happy=0.9, neutral=0.1)])
    ctl = CaptureSessionController(provider, oracle, settings,
                                   on_detection=routes._on_detection, on_error=routes._on_error)
    monkeypatch.setattr(routes, "store", store)
    monkeypatch.setattr(routes, "recent_events", deque(maxlen=50))
    monkeypatch.setattr(routes, "last_entry", {"id": None, "emotion": None})
    monkeypatch.setattr(routes, "controller", ctl)
    monkeypatch.setattr(routes, "recommender",
                        MusicRecommender(SpotifyClient(Settings(SPOTIFY_CLIENT_ID="cid")), store))
    return ctl


@pytest.fixture
def client(api):
    with TestClient(app, base_url="http://localhost") as c:
        yield c


def _wait_for_events(client, n=1, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        items = client.get("/events").json()
        if len(items) >= n:
            return items
        time.sleep(0.02)
    raise AssertionError("no detection events")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_capture_lifecycle(client, api):
    r = client.post("/capture/start")
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "started"
    assert j["capture"]["state"] == "active"

    assert client.post("/capture/start").status_code == 409

    events = _wait_for_events(client)
    assert events[0]["emotion"] == "happy"
    assert events[0]["source"] == "webcam"

    frame = client.get("/capture/frame")
    assert frame.status_code == 200
    assert frame.headers["content-type"] == "image/jpeg"
    assert client.get("/capture/status").json()["emotion"] == "happy"

    r = client.post("/capture/stop")
    assert r.json()["status"] == "stopped"
    assert client.post("/capture/stop").status_code == 200
    assert client.get("/capture/status").json()["state"] == "idle"
    assert not api.poller_running

    hist = client.get("/history").json()
    assert hist and hist[0]["source"] == "webcam"


def test_capture_requires_secure_context(api):
    with TestClient(app) as insecure:
        r = insecure.post("/capture/start")
    assert r.status_code == 400
    assert r.json()["detail"] == {"kind": "environment_unsupported",
                                  "hint": REMEDIATION_HINTS["insecure_context"]}
    assert api.provider.calls == 0


def test_capture_device_missing(client, api):
    api.provider.error = DeviceError("not_found")
    r = client.post("/capture/start")
    assert r.status_code == 404
    assert r.json()["detail"]["kind"] == "device_not_found"
    assert client.get("/capture/status").json()["failure_kind"] == "device_not_found"


def test_frame_unavailable_when_idle(client):
    assert client.get("/capture/frame").status_code == 404


def test_select_emotion(client):
    r = client.post("/emotion/select", data={"emotion": "calm"})
    assert r.status_code == 200
    assert r.json()["source"] == "manual-selection"
    client.post("/emotion/select", data={"emotion": "sad"})
    assert [e["emotion"] for e in client.get("/events").json()] == ["sad", "calm"]
    assert client.post("/emotion/select", data={"emotion": "bored"}).status_code == 422


def test_upload(client, api):
    r = client.post("/emotion/upload", files={"file": ("face.png", _png(), "image/png")})
    assert r.status_code == 200
    j = r.json()
    assert j["emotion"] == "happy"
    assert j["source"] == "uploaded-image"
    assert client.get("/capture/frame").status_code == 200

    api.oracle.results = [[]]
    api.oracle.calls = 0
    r = client.post("/emotion/upload", files={"file": ("empty.png", _png(), "image/png")})
    assert r.status_code == 422
    assert r.json()["detail"]["kind"] == "no_face_detected"

    r = client.post("/emotion/upload", files={"file": ("junk.png", b"junk", "image/png")})
    assert r.status_code == 422
    assert r.json()["detail"]["kind"] == "invalid_image"


def test_history_and_stats(client):
    client.post("/emotion/select", data={"emotion": "happy"})
    client.post("/emotion/select", data={"emotion": "happy"})
    client.post("/emotion/select", data={"emotion": "sad"})
    assert len(client.get("/history", params={"period": "all"}).json()) == 3
    st = client.get("/history/stats").json()
    assert st["most_common"] == "happy" and st["total"] == 3
    assert client.get("/history", params={"period": "forever"}).status_code == 400
    assert client.get("/history/stats", params={"period": "forever"}).status_code == 400


def test_profile(client):
    assert client.get("/profile").json()["spotify_connected"] is False
    r = client.put("/profile", json={"display_name": "Robin"})
    assert r.json()["display_name"] == "Robin"


def test_recommendations_sample(client):
    r = client.get("/music/recommendations", params={"emotion": "sad"})
    j = r.json()
    assert j["source"] == "sample"
    assert j["tracks"][0]["id"] == "mock-s-1"


def test_spotify_recommendations_are_saved_to_history(client, monkeypatch):
    class StubRecommender:
        def recommend(self, emotion, limit=10):
            return Recommendation(emotion=emotion, source="spotify", spotify_connected=True,
                                  tracks=[Track(id="t1", name="Song", artist="Band")])

    monkeypatch.setattr(routes, "recommender", StubRecommender())
    client.post("/emotion/select", data={"emotion": "happy"})
    client.get("/music/recommendations", params={"emotion": "happy"})
    # different emotion from the last entry: not attached
    client.get("/music/recommendations", params={"emotion": "sad"})
    entry = client.get("/history").json()[0]
    assert [s["track_id"] for s in entry["music_suggestions"]] == ["t1"]


def test_playlist_requires_spotify(client):
    body = {"emotion": "happy", "tracks": [{"id": "abc", "name": "n", "artist": "a"}]}
    assert client.post("/music/playlist", json=body).status_code == 401


def test_spotify_login_and_callback(client, monkeypatch):
    r = client.get("/spotify/login", follow_redirects=False)
    assert r.status_code in (302, 307)
    assert r.headers["location"].startswith(AUTHORIZE_URL)

    assert client.get("/spotify/callback", params={"error": "access_denied"}).status_code == 400
    assert client.get("/spotify/callback", params={"code": "c"}).status_code == 400
    assert client.get("/spotify/callback", params={"code": "c", "state": "nope"}).status_code == 400

    monkeypatch.setattr(routes, "recommender",
                        MusicRecommender(SpotifyClient(Settings(SPOTIFY_CLIENT_ID=None)), routes.store))
    assert client.get("/spotify/login", follow_redirects=False).status_code == 503


def test_spotify_disconnect(client):
    routes.store.update_profile(access_token="tok", spotify_user_id="u")
    assert client.get("/profile").json()["spotify_connected"] is True
    assert client.post("/spotify/disconnect").json() == {"status": "disconnected"}
    assert client.get("/profile").json()["spotify_connected"] is False


def test_aura_png(client):
    r = client.get("/aura/happy.png", params={"size": 96})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.headers["x-aura-color"] == "hsl(45 100% 65%)"
    assert client.get("/aura/happy.png", params={"size": 10}).status_code == 422


def test_history_is_written_off_the_event_loop(client, monkeypatch):
    threads = []
    real_record = routes.store.record

    def record(event):
        threads.append(threading.current_thread().name)
        return real_record(event)

    monkeypatch.setattr(routes.store, "record", record)
    client.post("/emotion/select", data={"emotion": "happy"})
    assert client.get("/history").json()[0]["emotion"] == "happy"
    assert len(threads) == 1
    assert threads[0].startswith("history")
