import asyncio
import os
import tempfile
import time
import pytest
import numpy as np
from pathlib import Path

# api.routes opens the history store at import; keep it out of the repo
os.environ.setdefault("HISTORY_DB", str(Path(tempfile.mkdtemp()) / "aurasync-test.db"))

from aurasync.camera import ReadyState
from aurasync.config import Settings
from aurasync.models import EnvironmentAssessment, FaceBox, FaceDetection, PermissionState


async def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_face(x=10, y=10, w=40, h=40, **expressions) -> FaceDetection:
    return FaceDetection(box=FaceBox(x=x, y=y, w=w, h=h), expressions=expressions)


class FakeStream:
    def __init__(self, frame=None, ready=ReadyState.HAVE_CURRENT_DATA, resolution=(640, 480)):
        self.metadata_loaded = asyncio.Event()
        self.can_play = asyncio.Event()
        self.errored = asyncio.Event()
        self._ready = ready
        self._resolution = resolution
        self.frame = np.zeros((480, 640, 3), dtype=np.uint8) if frame is None else frame
        self.releases = 0

    @property
    def ready_state(self):
        return self._ready

    @property
    def live_tracks(self):
        return 0 if self.releases else 1

    @property
    def resolution(self):
        return self._resolution

    def latest_frame(self):
        return None if self.releases else self.frame.copy()

    def release(self):
        self.releases += 1


class FakeProvider:
    supported = True

    def __init__(self, stream_factory=FakeStream, error=None, permission=PermissionState.GRANTED):
        self.stream_factory = stream_factory
        self.error = error
        self.permission = permission
        self.calls = 0
        self.streams = []
        self.constraints = None

    def query_permission(self):
        return self.permission

    async def acquire_stream(self, constraints):
        self.calls += 1
        self.constraints = constraints
        if self.error is not None:
            raise self.error
        stream = self.stream_factory()
        self.streams.append(stream)
        return stream


class FakeOracle:
    """Returns ``results`` in order, then repeats the last one."""

    def __init__(self, *results):
        self.results = list(results) or [[]]
        self.calls = 0

    def detect_faces(self, frame):
        self.calls += 1
        r = self.results[min(self.calls, len(self.results)) - 1]
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture
def settings():
    return Settings(POLL_INTERVAL=0.01, ACQUIRE_TIMEOUT=0.2)


@pytest.fixture
def secure_env():
    return EnvironmentAssessment(secure_context=True, media_supported=True, permission=PermissionState.GRANTED)
