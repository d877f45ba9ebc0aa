"""
Device-media provider backed by OpenCV.

A provider hands out ``CameraStream`` objects. A stream owns a
``cv2.VideoCapture`` plus a reader thread that keeps the latest frame and
raises three readiness signals on the owning event loop:

- ``metadata_loaded``: the device reported a non-zero resolution
- ``can_play``: the first frame was decoded
- ``errored``: the device stopped producing frames
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

from aurasync.config import Settings
from aurasync.errors import DeviceError
from aurasync.models import PermissionState

logger = logging.getLogger(__name__)

# Consecutive failed reads before a live stream is declared broken
MAX_READ_FAILURES = 30


class ReadyState(IntEnum):
    HAVE_NOTHING = 0
    HAVE_METADATA = 1
    HAVE_CURRENT_DATA = 2


@dataclass(frozen=True)
class MediaConstraints:
    width: int = 640
    height: int = 480
    facing_mode: str = "user"

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaConstraints":
        return cls(settings.CAPTURE_WIDTH, settings.CAPTURE_HEIGHT, settings.FACING_MODE)


class MediaStream(Protocol):
    metadata_loaded: asyncio.Event
    can_play: asyncio.Event
    errored: asyncio.Event

    @property
    def ready_state(self) -> ReadyState: ...

    @property
    def live_tracks(self) -> int: ...

    @property
    def resolution(self) -> Tuple[int, int]: ...

    def latest_frame(self) -> Optional[np.ndarray]: ...

    def release(self) -> None: ...


class MediaProvider(Protocol):
    @property
    def supported(self) -> bool: ...

    async def acquire_stream(self, constraints: MediaConstraints) -> MediaStream: ...


class CameraStream:
    """Live OpenCV capture with a background reader thread."""

    def __init__(self, cap, loop: asyncio.AbstractEventLoop):
        self._cap = cap
        self._loop = loop
        self._lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None
        self._run = True
        self._released = False
        self._ready = ReadyState.HAVE_NOTHING
        self.metadata_loaded = asyncio.Event()
        self.can_play = asyncio.Event()
        self.errored = asyncio.Event()
        self._thread = threading.Thread(target=self._read_loop, daemon=True)

    # ---- lifecycle ----
    def start(self) -> "CameraStream":
        w, h = self.resolution
        if w > 0 and h > 0:
            self._ready = ReadyState.HAVE_METADATA
            self.metadata_loaded.set()
        self._thread.start()
        return self

    def release(self) -> None:
        """Stop the reader and free the device. Safe to call repeatedly."""
        with self._lock:
            if self._released:
                return
            self._released = True
            self._run = False
            self._frame = None
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=1.0)
        self._cap.release()
        logger.debug("[camera] stream released")

    # ---- state ----
    @property
    def ready_state(self) -> ReadyState:
        return self._ready

    @property
    def live_tracks(self) -> int:
        return 0 if self._released else 1

    @property
    def resolution(self) -> Tuple[int, int]:
        return (int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0),
                int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0))

    def latest_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            return None if self._frame is None else self._frame.copy()

    # ---- reader ----
    def _signal(self, event: asyncio.Event) -> None:
        try:
            self._loop.call_soon_threadsafe(event.set)
        except RuntimeError:
            # loop already closed
            pass

    def _read_loop(self) -> None:
        failures = 0
        while self._run:
            ok, frame = self._cap.read()
            if not ok or frame is None:
                failures += 1
                if failures >= MAX_READ_FAILURES:
                    logger.error("[camera] device stopped producing frames")
                    self._signal(self.errored)
                    return
                time.sleep(0.03)
                continue
            failures = 0
            with self._lock:
                if not self._run:
                    return
                self._frame = frame
            if self._ready < ReadyState.HAVE_CURRENT_DATA:
                if self._ready < ReadyState.HAVE_METADATA:
                    self._signal(self.metadata_loaded)
                self._ready = ReadyState.HAVE_CURRENT_DATA
                self._signal(self.can_play)


def _device_node(index: int) -> Optional[str]:
    if sys.platform.startswith("linux"):
        return f"/dev/video{index}"
    return None


class OpenCVMediaProvider:
    """Opens the configured camera index through ``cv2.VideoCapture``."""

    def __init__(self, settings: Settings):
        self.camera_index = settings.CAMERA_INDEX

    @property
    def supported(self) -> bool:
        try:
            return len(cv2.videoio_registry.getCameraBackends()) > 0
        except AttributeError:
            return hasattr(cv2, "VideoCapture")

    def query_permission(self) -> PermissionState:
        node = _device_node(self.camera_index)
        if node is None or not os.path.exists(node):
            return PermissionState.UNKNOWN
        if os.access(node, os.R_OK | os.W_OK):
            return PermissionState.GRANTED
        return PermissionState.DENIED

    def _open(self, constraints: MediaConstraints):
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            node = _device_node(self.camera_index)
            if node is not None and os.path.exists(node):
                if not os.access(node, os.R_OK | os.W_OK):
                    raise DeviceError("denied", f"no access to {node}")
                raise DeviceError("busy", f"could not open {node}")
            raise DeviceError("not_found", f"no camera at index {self.camera_index}")
        # Preferred resolution only; the driver may pick something else
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        return cap

    async def acquire_stream(self, constraints: MediaConstraints) -> CameraStream:
        logger.debug(f"[camera] open index={self.camera_index} constraints={constraints}")
        loop = asyncio.get_running_loop()
        cap = await asyncio.to_thread(self._open, constraints)
        stream = CameraStream(cap, loop).start()
        logger.debug(f"[camera] opened resolution={stream.resolution}")
        return stream
