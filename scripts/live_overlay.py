"""Run a live capture session with a preview window.

Usage:
    uvicorn api.main:app --reload  # (separate, for API)
    python scripts/live_overlay.py  # (to see camera overlay window)

Press 'q' to quit the window.
"""
import asyncio
import logging

import cv2

from aurasync.camera import OpenCVMediaProvider
from aurasync.capture import CaptureSessionController
from aurasync.config import Settings
from aurasync.emotion import DeepFaceOracle
from aurasync.environment import assess_environment
from aurasync.errors import CaptureError

WINDOW = "AuraSync Live (q to quit)"


async def run_live_overlay(settings: Settings) -> None:
    def on_detection(event):
        print(f"{event.source.value}: {event.emotion.value} ({(event.score or 0) * 100:.0f}%)")

    provider = OpenCVMediaProvider(settings)
    ctl = CaptureSessionController(provider, DeepFaceOracle(settings), settings, on_detection=on_detection)
    # a local preview is always a secure context
    env = assess_environment("http://localhost/", provider)
    try:
        await ctl.start(env)
    except CaptureError as e:
        print(f"[{e.kind}] {e.hint}")
        return
    try:
        while ctl.is_active:
            frame = ctl.surface.compose()
            if frame is not None:
                cv2.imshow(WINDOW, frame)
            if (cv2.waitKey(1) & 0xFF) == ord("q"):
                break
            await asyncio.sleep(0.03)
    finally:
        ctl.stop()
        cv2.destroyAllWindows()


if __name__ == '__main__':
    s = Settings()
    logging.basicConfig(level=s.LOG_LEVEL)
    asyncio.run(run_live_overlay(s))
