import numpy as np
import cv2

from conftest import make_face
from aurasync.visual import RenderSurface, draw_overlays, expression_label


def test_draw_overlays_cases():
    frame = np.zeros((40, 40, 3), dtype=np.uint8)
    out1 = draw_overlays(frame, [], flag="NO_FACE")
    assert out1.shape == frame.shape
    assert out1.any()
    out2 = draw_overlays(frame, [])
    assert not out2.any()
    # box partly outside the frame is clamped
    out3 = draw_overlays(frame, [make_face(x=30, y=30, w=50, h=50, happy=0.9)], "happy (90%)")
    assert out3.shape == frame.shape
    assert out3.any()
    # input is never modified
    assert not frame.any()


def test_expression_label():
    assert expression_label("happy", 0.874) == "happy (87%)"


def test_surface_live_source_and_overlay():
    frame = np.zeros((48, 64, 3), dtype=np.uint8)
    surface = RenderSurface()
    assert surface.compose() is None
    assert surface.encode_jpeg() is None

    surface.attach(lambda: frame)
    assert surface.attached
    assert not surface.compose().any()

    surface.draw([make_face(x=5, y=5, w=20, h=20, sad=0.7)], "sad (70%)")
    assert surface.compose().any()

    jpeg = surface.encode_jpeg()
    decoded = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == (48, 64, 3)

    surface.detach()
    assert not surface.attached
    assert surface.compose() is None


def test_surface_still_replaced_by_live_draw():
    still = np.full((20, 20, 3), 200, dtype=np.uint8)
    live = np.zeros((30, 30, 3), dtype=np.uint8)
    surface = RenderSurface()
    surface.attach(lambda: live)
    surface.show_still(still, flag="NO_FACE")
    assert surface.compose().shape == (20, 20, 3)
    surface.draw([])
    assert surface.compose().shape == (30, 30, 3)
