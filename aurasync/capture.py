# aurasync/capture.py
"""
Webcam emotion sampling.

CaptureSessionController owns one camera session at a time:
- start(): environment/permission checks, acquisition, bounded readiness wait
- a fixed-interval inference poller while the session is active
- stop(): idempotent teardown that always halts the poller and frees the device

Manual selections and photo uploads go through the same controller so that
every DetectionEvent, and every draw to the rendering surface, has one owner.

Session states: idle -> acquiring -> active -> stopping -> idle, with
failed reachable from acquiring (and from active when the live stream
errors). A generation counter is bumped on every start and teardown;
inference results carrying an older generation are dropped. At most one
inference runs at a time; ticks that find one in flight are skipped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional, Set

import cv2
import numpy as np

from aurasync.camera import MediaConstraints, MediaProvider, MediaStream, ReadyState
from aurasync.config import Settings
from aurasync.emotion import ExpressionOracle, passes_gate, pick_emotion
from aurasync.errors import (
    AcquisitionTimeout,
    CaptureError,
    DeviceError,
    EnvironmentUnsupported,
    InvalidImage,
    NoFaceDetected,
    PermissionDenied,
    PlaybackFailed,
    SessionAlreadyActive,
    capture_error_from_device,
)
from aurasync.models import (
    CaptureStatus,
    DetectionEvent,
    EmotionLabel,
    EnvironmentAssessment,
    FaceDetection,
    PermissionState,
    SessionState,
    SourceKind,
)
from aurasync.visual import RenderSurface, expression_label

logger = logging.getLogger(__name__)

DetectionCallback = Callable[[DetectionEvent], None]
ErrorCallback = Callable[[CaptureError], None]


async def wait_until_ready(stream: MediaStream, timeout: float) -> str:
    """
    Resolve on the first of metadata-loaded / can-play / error, or time out.

    The current ready state is checked before subscribing so a signal that
    fired before we got here is not missed.
    """
    if stream.ready_state >= ReadyState.HAVE_CURRENT_DATA:
        return "ready"
    waiters = {
        asyncio.ensure_future(stream.metadata_loaded.wait()): "loadedmetadata",
        asyncio.ensure_future(stream.can_play.wait()): "canplay",
        asyncio.ensure_future(stream.errored.wait()): "error",
    }
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            w.cancel()
    if not done:
        raise AcquisitionTimeout()
    if stream.errored.is_set():
        raise PlaybackFailed()
    return waiters[next(iter(done))]


def decode_image(data: bytes) -> np.ndarray:
    if not data:
        raise InvalidImage()
    buf = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise InvalidImage()
    return image


def _frame_ready(frame: Optional[np.ndarray]) -> bool:
    return frame is not None and frame.ndim >= 2 and frame.shape[0] > 0 and frame.shape[1] > 0


class CaptureSessionController:
    """Camera lifecycle, inference poller and manual intake behind one owner."""

    def __init__(self,
                 provider: MediaProvider,
                 oracle: ExpressionOracle,
                 settings: Settings,
                 on_detection: Optional[DetectionCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        self.provider = provider
        self.oracle = oracle
        self.s = settings
        self.on_detection = on_detection
        self.on_error = on_error
        self.surface = RenderSurface()

        self._state = SessionState.IDLE
        self._failure: Optional[CaptureError] = None
        self._stream: Optional[MediaStream] = None
        self._started_at: Optional[float] = None
        self._emotion: Optional[EmotionLabel] = None
        self._generation = 0

        self._timer_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._ready_task: Optional[asyncio.Future] = None
        self._pending_stream: Optional[MediaStream] = None
        self._inflight: Set[asyncio.Task] = set()

    # ---- state ----
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def emotion(self) -> Optional[EmotionLabel]:
        """Last accepted emotion, retained across transient failures."""
        return self._emotion

    @property
    def poller_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def status(self) -> CaptureStatus:
        return CaptureStatus(
            state=self._state,
            failure_kind=self._failure.kind if self._failure else None,
            failure_hint=self._failure.hint if self._failure else None,
            emotion=self._emotion,
            started_at=self._started_at,
            resolution=self._stream.resolution if self._stream is not None else None,
        )

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state is SessionState.ACTIVE

    # ---- lifecycle ----
    async def start(self, environment: EnvironmentAssessment) -> CaptureStatus:
        """
        Open the camera and begin polling.

        Raises a CaptureError subclass on any hard failure (after releasing
        whatever was acquired), or SessionAlreadyActive if a session is live.
        If stop() is called before the session becomes active, the partially
        acquired stream is released and the idle status is returned instead.
        """
        if self._state in (SessionState.ACQUIRING, SessionState.ACTIVE, SessionState.STOPPING):
            raise SessionAlreadyActive(f"capture session is {self._state.value}")

        self._generation += 1
        gen = self._generation
        self._state = SessionState.ACQUIRING
        self._failure = None
        logger.debug(f"[capture] start gen={gen} env={environment}")

        stream: Optional[MediaStream] = None
        started = False
        try:
            if not environment.secure_context:
                raise EnvironmentUnsupported(cause="insecure_context")
            if not environment.media_supported:
                raise EnvironmentUnsupported(cause="unsupported")
            if environment.permission is PermissionState.DENIED:
                raise PermissionDenied()

            try:
                stream = await self.provider.acquire_stream(MediaConstraints.from_settings(self.s))
            except DeviceError as e:
                raise capture_error_from_device(e) from e

            if gen != self._generation:
                logger.debug("[capture] stopped during acquisition; releasing")
                stream.release()
                return self.status()

            # stop() releases the pending stream and cancels the wait
            self._pending_stream = stream
            ready = asyncio.ensure_future(wait_until_ready(stream, self.s.ACQUIRE_TIMEOUT))
            self._ready_task = ready
            try:
                how = await ready
            except asyncio.CancelledError:
                if gen == self._generation:
                    raise
                logger.debug("[capture] stopped during readiness wait")
                return self.status()
            finally:
                if self._ready_task is ready:
                    self._ready_task = None

            if gen != self._generation:
                logger.debug("[capture] stopped during readiness wait")
                return self.status()
            logger.debug(f"[capture] stream ready via {how} resolution={stream.resolution}")

            self._pending_stream = None
            self._stream = stream
            self._started_at = time.time()
            self._state = SessionState.ACTIVE
            self.surface.attach(stream.latest_frame)
            self._start_poller(gen, stream)
            started = True
            return self.status()
        except CaptureError as err:
            # release before the error reaches the host
            self._drop_pending(stream)
            if gen != self._generation:
                logger.debug(f"[capture] {err.kind} after stop; ignoring")
                return self.status()
            self._fail(err)
            raise
        finally:
            if not started:
                self._drop_pending(stream)
                if gen == self._generation and self._state is SessionState.ACQUIRING:
                    self._state = SessionState.IDLE

    def stop(self) -> CaptureStatus:
        """Idempotent; safe to call with no session."""
        if self._state in (SessionState.ACQUIRING, SessionState.ACTIVE):
            self._state = SessionState.STOPPING
        self._teardown()
        self._state = SessionState.IDLE
        self._failure = None
        self._started_at = None
        logger.debug(f"[capture] stopped gen={self._generation}")
        return self.status()

    def _teardown(self) -> None:
        """Invalidate the generation, cancel all tasks and free the device."""
        self._generation += 1
        for task in (self._timer_task, self._dispatch_task, self._watch_task, self._ready_task):
            if task is not None:
                task.cancel()
        self._timer_task = None
        self._dispatch_task = None
        self._watch_task = None
        self._ready_task = None

        for stream in (self._stream, self._pending_stream):
            if stream is not None:
                stream.release()
        self._stream = None
        self._pending_stream = None
        self.surface.detach()

    def _drop_pending(self, stream: Optional[MediaStream]) -> None:
        if stream is not None and self._pending_stream is stream:
            self._pending_stream = None
            stream.release()

    def _fail(self, err: CaptureError) -> None:
        logger.warning(f"[capture] session failed kind={err.kind}")
        self._state = SessionState.FAILED
        self._failure = err
        self._started_at = None
        if self.on_error is not None:
            try:
                self.on_error(err)
            except Exception:
                logger.exception("[capture] on_error callback failed")

    # ---- poller ----
    def _start_poller(self, gen: int, stream: MediaStream) -> None:
        results: asyncio.Queue = asyncio.Queue()
        self._timer_task = asyncio.create_task(self._timer_loop(gen, results))
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(results))
        self._watch_task = asyncio.create_task(self._watch_stream(gen, stream))

    async def _watch_stream(self, gen: int, stream: MediaStream) -> None:
        """Turn a playback error on the live stream into a hard failure."""
        await stream.errored.wait()
        if not self._is_current(gen):
            return
        logger.error("[capture] live stream stopped producing frames")
        self._watch_task = None
        self._teardown()
        self._fail(PlaybackFailed())

    async def _timer_loop(self, gen: int, results: asyncio.Queue) -> None:
        """Fire a tick every POLL_INTERVAL; never waits on the oracle itself."""
        interval = max(0.01, float(self.s.POLL_INTERVAL))
        while self._is_current(gen):
            await asyncio.sleep(interval)
            if not self._is_current(gen):
                return
            if self._inflight:
                logger.debug("[capture] previous inference still running; skipping tick")
                continue
            frame = self._stream.latest_frame() if self._stream is not None else None
            if not _frame_ready(frame):
                continue
            task = asyncio.create_task(self._infer(gen, frame, results))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _infer(self, gen: int, frame: np.ndarray, results: asyncio.Queue) -> None:
        try:
            faces = await asyncio.to_thread(self.oracle.detect_faces, frame)
        except Exception:
            logger.exception("[capture] inference tick failed; continuing")
            return
        if self._is_current(gen):
            results.put_nowait((gen, faces))

    async def _dispatch_loop(self, results: asyncio.Queue) -> None:
        while True:
            gen, faces = await results.get()
            if not self._is_current(gen):
                logger.debug("[capture] discarding stale inference result")
                continue
            try:
                self._apply_webcam_result(faces)
            except Exception:
                logger.exception("[capture] failed to apply inference result; continuing")

    async def sample_once(self) -> Optional[DetectionEvent]:
        """Run a single tick inline and return the accepted event, if any."""
        if not self.is_active:
            return None
        gen = self._generation
        frame = self._stream.latest_frame() if self._stream is not None else None
        if not _frame_ready(frame):
            return None
        faces = await asyncio.to_thread(self.oracle.detect_faces, frame)
        if not self._is_current(gen):
            return None
        return self._apply_webcam_result(faces)

    def _apply_webcam_result(self, faces: List[FaceDetection]) -> Optional[DetectionEvent]:
        picked = pick_emotion(faces)
        if picked is None:
            self.surface.draw([])
            return None
        emotion, raw, score = picked
        self.surface.draw(faces, expression_label(raw, score))
        if not passes_gate(score, self.s.CONFIDENCE_THRESHOLD):
            logger.debug(f"[capture] {raw}={score:.2f} below threshold; keeping {self._emotion}")
            return None
        return self._emit(emotion, SourceKind.WEBCAM, score)

    # ---- manual intake ----
    def select_emotion(self, label: EmotionLabel | str) -> DetectionEvent:
        """Trusted as-is; only set membership is checked (ValueError otherwise)."""
        emotion = EmotionLabel(label)
        return self._emit(emotion, SourceKind.MANUAL, None)

    async def upload_image(self, data: bytes) -> DetectionEvent:
        """
        Analyze a still photo. Unlike the webcam path, zero faces raises
        NoFaceDetected and there is no confidence gate.
        """
        image = decode_image(data)
        faces = await asyncio.to_thread(self.oracle.detect_faces, image)
        picked = pick_emotion(faces)
        if picked is None:
            self.surface.show_still(image, flag="NO_FACE")
            raise NoFaceDetected()
        emotion, raw, score = picked
        self.surface.show_still(image, faces, expression_label(raw, score))
        return self._emit(emotion, SourceKind.UPLOAD, score)

    def _emit(self, emotion: EmotionLabel, source: SourceKind, score: Optional[float]) -> DetectionEvent:
        self._emotion = emotion
        event = DetectionEvent(emotion=emotion, source=source, score=score)
        logger.debug(f"[capture] detection emotion={emotion.value} source={source.value} score={score}")
        if self.on_detection is not None:
            try:
                self.on_detection(event)
            except Exception:
                logger.exception("[capture] on_detection callback failed")
        return event
