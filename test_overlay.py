import numpy as np
import pytest

from photobooth.borders import generate_border
from photobooth.errors import OverlayApplicationFailure
from photobooth.overlay import (
    OverlayRole,
    anchor_position,
    apply_overlay,
    blend,
    classify_overlay,
    composite,
    logo_size,
)
from photobooth.types import (
    Anchor,
    BlendMode,
    OverlayConfig,
    OverlayKind,
    OverlayPlacement,
)


def _bg(h=400, w=600, value=100):
    return np.full((h, w, 3), value, dtype=np.uint8)


def _logo(h=50, w=80, color=(255, 0, 0)):
    img = np.zeros((h, w, 4), dtype=np.uint8)
    img[..., :3] = color
    img[..., 3] = 255
    return img


# ------ 分類 ------

def test_explicit_border_kind_wins():
    role = classify_overlay((10, 10), (1000, 1000), OverlayPlacement(), OverlayKind.BORDER)
    assert role == OverlayRole.BORDER


def test_large_overlay_is_border():
    assert classify_overlay((800, 780), (1024, 1024), OverlayPlacement()) == OverlayRole.BORDER


def test_centered_full_scale_is_border():
    placement = OverlayPlacement(position=Anchor.CENTER, scale=0.95)
    assert classify_overlay((100, 100), (1024, 1024), placement) == OverlayRole.BORDER


def test_small_corner_overlay_is_logo():
    placement = OverlayPlacement(position=Anchor.BOTTOM_RIGHT, scale=1.0)
    assert classify_overlay((200, 100), (1024, 1024), placement, OverlayKind.CUSTOM) == OverlayRole.LOGO


# ------ ロゴのサイズ ------

def test_logo_capped_at_thirty_percent_of_short_side():
    w, h = logo_size((1000, 500), (1024, 768), scale=1.0)
    assert max(w, h) <= 0.3 * 768
    assert w == int(1000 * (0.3 * 768 / 1000))


@pytest.mark.parametrize("scale", [1.0, 2.0, 10.0])
def test_logo_never_upscaled(scale):
    assert logo_size((50, 40), (1024, 1024), scale=scale) == (50, 40)


def test_logo_user_scale_multiplies_cap():
    full = logo_size((1000, 1000), (1000, 1000), scale=1.0)
    half = logo_size((1000, 1000), (1000, 1000), scale=0.5)
    assert full == (300, 300)
    assert half == (150, 150)


# ------ 位置 ------

@pytest.mark.parametrize("anchor, expected", [
    (Anchor.TOP_LEFT, (10, 20)),
    (Anchor.TOP_RIGHT, (600 - 80 - 10, 20)),
    (Anchor.BOTTOM_LEFT, (10, 400 - 50 - 20)),
    (Anchor.BOTTOM_RIGHT, (600 - 80 - 10, 400 - 50 - 20)),
    (Anchor.CENTER, ((600 - 80) // 2 + 10, (400 - 50) // 2 + 20)),
    (Anchor.TOP_CENTER, ((600 - 80) // 2 + 10, 20)),
    (Anchor.CENTER_RIGHT, (600 - 80 - 10, (400 - 50) // 2 + 20)),
])
def test_anchor_position(anchor, expected):
    assert anchor_position(anchor, (600, 400), (80, 50), 10, 20) == expected


def test_offsets_cannot_push_overlay_off_canvas():
    x, y = anchor_position(Anchor.TOP_LEFT, (600, 400), (80, 50), 5000, -5000)
    assert x == 599
    assert y == 1 - 50
    x, y = anchor_position(Anchor.BOTTOM_RIGHT, (600, 400), (80, 50), 5000, 5000)
    assert x == 1 - 80
    assert y == 1 - 50


# ------ ブレンド ------

def test_blend_modes_on_known_values():
    b = np.array([0.5])
    s = np.array([0.5])
    assert blend(b, s, BlendMode.NORMAL)[0] == pytest.approx(0.5)
    assert blend(b, s, BlendMode.MULTIPLY)[0] == pytest.approx(0.25)
    assert blend(b, s, BlendMode.SCREEN)[0] == pytest.approx(0.75)
    assert blend(b, s, BlendMode.OVERLAY)[0] == pytest.approx(0.5)
    assert blend(b, s, BlendMode.HARD_LIGHT)[0] == pytest.approx(0.5)
    assert blend(b, s, BlendMode.SOFT_LIGHT)[0] == pytest.approx(0.5)


def test_soft_light_with_white_source_lightens():
    out = blend(np.array([0.2]), np.array([1.0]), BlendMode.SOFT_LIGHT)
    assert out[0] > 0.2


def test_composite_opacity_and_no_mutation():
    bg = _bg(value=0)
    logo = _logo(color=(200, 200, 200))
    out = composite(bg, logo, 0, 0, opacity=0.5)
    assert tuple(out[10, 10]) == (100, 100, 100)
    assert np.all(bg == 0)
    assert tuple(out[200, 300]) == (0, 0, 0)


def test_composite_clips_partially_outside():
    out = composite(_bg(value=0), _logo(), -40, -25)
    assert tuple(out[0, 0]) == (255, 0, 0)
    assert tuple(out[30, 0]) == (0, 0, 0)


def test_composite_respects_overlay_alpha():
    logo = _logo()
    logo[..., 3] = 0
    out = composite(_bg(), logo, 0, 0)
    assert np.array_equal(out, _bg())


# ------ apply_overlay ------

def test_minimal_line_border_is_regenerated_at_canvas_size():
    calls = []

    def render(border_id, w, h):
        calls.append((border_id, w, h))
        return generate_border(border_id, w, h)

    config = OverlayConfig(
        kind=OverlayKind.BORDER,
        image=generate_border("minimal-line", 512, 512),
        placement=OverlayPlacement(position=Anchor.CENTER),
        border_id="minimal-line",
        rendered_size=(512, 512),
    )
    bg = _bg(h=768, w=1024, value=0)
    out = apply_overlay(bg, config, render_border=render)

    assert calls == [("minimal-line", 1024, 768)]
    assert out.shape == (768, 1024, 3)
    # 線は min(1024, 768) * 0.008 * 3 ≈ 18px の位置
    assert tuple(out[384, 18]) == (255, 255, 255)
    assert tuple(out[384, 512]) == (0, 0, 0)


def test_border_rendered_at_canvas_size_is_reused():
    def render(border_id, w, h):
        raise AssertionError("should not re-render")

    config = OverlayConfig(
        kind=OverlayKind.BORDER,
        image=generate_border("polaroid", 600, 400),
        border_id="polaroid",
        rendered_size=(600, 400),
    )
    out = apply_overlay(_bg(), config, render_border=render)
    assert out.shape == (400, 600, 3)


def test_custom_bitmap_border_is_resized_to_canvas():
    frame = np.zeros((100, 100, 4), dtype=np.uint8)
    frame[:5, :, :] = (0, 255, 0, 255)
    config = OverlayConfig(kind=OverlayKind.BORDER, image=frame)
    out = apply_overlay(_bg(), config)
    assert tuple(out[0, 300]) == (0, 255, 0)
    assert tuple(out[399, 300]) == (100, 100, 100)


def test_logo_is_scaled_and_anchored():
    logo = _logo(h=200, w=200)
    config = OverlayConfig(
        kind=OverlayKind.CUSTOM,
        image=logo,
        placement=OverlayPlacement(position=Anchor.TOP_LEFT, scale=1.0),
    )
    out = apply_overlay(_bg(), config)
    # 短辺 400 の 30% = 120px
    assert tuple(out[0, 0]) == (255, 0, 0)
    assert tuple(out[119, 119]) == (255, 0, 0)
    assert tuple(out[121, 121]) == (100, 100, 100)


def test_missing_image_raises_overlay_failure():
    config = OverlayConfig(kind=OverlayKind.CUSTOM, image=None, name="broken")
    with pytest.raises(OverlayApplicationFailure):
        apply_overlay(_bg(), config)


def test_render_error_is_wrapped():
    def render(border_id, w, h):
        raise KeyError(border_id)

    config = OverlayConfig(kind=OverlayKind.BORDER, border_id="nope")
    with pytest.raises(OverlayApplicationFailure):
        apply_overlay(_bg(), config, render_border=render)


def test_placement_validation():
    with pytest.raises(ValueError):
        OverlayPlacement(opacity=1.5)
    with pytest.raises(ValueError):
        OverlayPlacement(scale=0.0)
