"""
Decorative aura rendering for the current emotion.

The aura is a soft orb in the emotion's color with two outer glow rings,
a few inner sparkles and floating particles, drawn with OpenCV onto a
dark canvas and served as PNG.
"""
from __future__ import annotations
import colorsys
from typing import Dict, Tuple

import cv2
import numpy as np

from aurasync.models import EmotionLabel

# (hue deg, saturation %, lightness %)
EMOTION_COLORS: Dict[EmotionLabel, Tuple[int, int, int]] = {
    EmotionLabel.HAPPY: (45, 100, 65),
    EmotionLabel.SAD: (220, 60, 50),
    EmotionLabel.ANGRY: (0, 80, 60),
    EmotionLabel.SURPRISED: (280, 100, 70),
    EmotionLabel.FEARFUL: (260, 40, 40),
    EmotionLabel.DISGUSTED: (120, 30, 40),
    EmotionLabel.NEUTRAL: (210, 15, 60),
    EmotionLabel.CALM: (180, 50, 60),
}


def emotion_hsl(emotion: str) -> Tuple[int, int, int]:
    try:
        return EMOTION_COLORS[EmotionLabel(emotion)]
    except ValueError:
        return EMOTION_COLORS[EmotionLabel.NEUTRAL]


def hsl_to_bgr(h: int, s: int, l: int) -> Tuple[int, int, int]:
    r, g, b = colorsys.hls_to_rgb(h / 360.0, l / 100.0, s / 100.0)
    return int(round(b * 255)), int(round(g * 255)), int(round(r * 255))


def emotion_css(emotion: str) -> str:
    h, s, l = emotion_hsl(emotion)
    return f"hsl({h} {s}% {l}%)"


def _glow(canvas: np.ndarray, center: Tuple[int, int], radius: float,
          color: Tuple[int, int, int], strength: float) -> None:
    """Additive radial gradient, fading to nothing at ``radius``."""
    h, w = canvas.shape[:2]
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float32)
    dist = np.sqrt((xx - center[0]) ** 2 + (yy - center[1]) ** 2) / max(radius, 1.0)
    alpha = np.clip(1.0 - dist, 0.0, 1.0) * strength
    layer = np.empty_like(canvas, dtype=np.float32)
    layer[:] = color
    canvas[:] = np.clip(canvas + layer * alpha[..., None], 0, 255)


def render_aura(emotion: str, intensity: float = 1.0, size: int = 320) -> np.ndarray:
    """Return a BGR image of the aura for ``emotion``."""
    intensity = float(np.clip(intensity, 0.0, 2.0))
    size = int(np.clip(size, 64, 1024))
    color = hsl_to_bgr(*emotion_hsl(emotion))
    canvas = np.zeros((size, size, 3), dtype=np.float32)
    c = (size // 2, size // 2)
    orb = size * 0.3

    # outer rings scale with intensity
    _glow(canvas, c, orb * (1.5 + intensity * 0.5), color, 0.30)
    _glow(canvas, c, orb * (2.0 + intensity * 0.7), color, 0.20)

    # main orb, lit from the upper left
    _glow(canvas, c, orb, color, 0.75)
    hl = (int(c[0] - orb * 0.4), int(c[1] - orb * 0.4))
    _glow(canvas, hl, orb * 0.35, (255, 255, 255), 0.25)

    out = canvas.astype(np.uint8)
    cv2.circle(out, c, int(orb), color, 1, cv2.LINE_AA)

    # sparkles inside the orb
    for dx, dy, r in ((-0.45, -0.5, 3), (0.5, -0.2, 2), (-0.1, 0.55, 2)):
        cv2.circle(out, (int(c[0] + dx * orb), int(c[1] + dy * orb)), r, color, -1, cv2.LINE_AA)

    # floating particles
    for i in range(6):
        px = int(size * (0.15 + i * 0.12))
        py = int(size * (0.20 + i * 0.10))
        cv2.circle(out, (px, py), 2, color, -1, cv2.LINE_AA)
    return out


def encode_png(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", image)
    if not ok:
        raise RuntimeError("PNG encoding failed")
    return buf.tobytes()
