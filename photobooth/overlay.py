"""
photobooth/overlay.py
=====================
生成結果へのフレーム / ロゴ合成。

- フレーム: キャンバス全面に (0,0) から配置。パラメトリック枠は
  キャンバスサイズで描き直し、引き伸ばさない。
- ロゴ: 短辺の 30% 以内に縮小し、9点アンカー + オフセットで配置。

合成は毎回新しいバッファを返す純関数で、入力画像は変更しない。
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Callable, Optional

import cv2
import numpy as np

from photobooth.borders import generate_border
from photobooth.errors import OverlayApplicationFailure
from photobooth.types import (
    Anchor,
    BlendMode,
    ImageRGB,
    ImageRGBA,
    OverlayConfig,
    OverlayKind,
    OverlayPlacement,
)

logger = logging.getLogger(__name__)

# フレームとみなす最小サイズ (キャンバス短辺に対する比率)
BORDER_COVERAGE = 0.75
# 中央配置でフレームとみなす最小スケール
BORDER_CENTER_SCALE = 0.9
# ロゴの長辺上限 (キャンバス短辺に対する比率)
LOGO_MAX_RATIO = 0.3

Size = tuple[int, int]  # (width, height)


class OverlayRole(str, Enum):
    BORDER = "border"
    LOGO = "logo"


# ============================================================
# 分類・サイズ・位置 (純関数)
# ============================================================

def classify_overlay(
    overlay_size: Size,
    canvas_size: Size,
    placement: OverlayPlacement,
    kind: Optional[OverlayKind] = None,
) -> OverlayRole:
    """オーバーレイをフレームかロゴかに分類する。

    以下のいずれかならフレーム、それ以外はロゴ:
      - kind が BORDER
      - 幅・高さの両方がキャンバス短辺の 75% 以上
      - 中央配置かつ scale >= 0.9
    """
    if kind == OverlayKind.BORDER:
        return OverlayRole.BORDER

    ow, oh = overlay_size
    short_side = min(canvas_size)
    if min(ow, oh) >= short_side * BORDER_COVERAGE:
        return OverlayRole.BORDER

    if placement.position == Anchor.CENTER and placement.scale >= BORDER_CENTER_SCALE:
        return OverlayRole.BORDER

    return OverlayRole.LOGO


def logo_size(overlay_size: Size, canvas_size: Size, scale: float = 1.0) -> Size:
    """ロゴの描画サイズを求める。

    長辺はキャンバス短辺の 30% 以下、元解像度より拡大しない。
    ユーザーの scale はこの上限の上に掛け合わせる (1 を超えても上限は超えない)。
    """
    ow, oh = overlay_size
    cap = LOGO_MAX_RATIO * min(canvas_size)
    base = min(1.0, cap / max(ow, oh, 1))
    factor = base * min(max(scale, 0.0), 1.0)
    return (max(int(ow * factor), 1), max(int(oh * factor), 1))


def anchor_position(
    anchor: Anchor,
    canvas_size: Size,
    overlay_size: Size,
    offset_x: int = 0,
    offset_y: int = 0,
) -> tuple[int, int]:
    """アンカーとオフセットから左上座標を求める。

    オフセットは最低 1px がキャンバス内に残るようにクランプする。
    """
    cw, ch = canvas_size
    ow, oh = overlay_size

    h_align = anchor.horizontal
    if h_align == "left":
        x = offset_x
    elif h_align == "right":
        x = cw - ow - offset_x
    else:
        x = (cw - ow) // 2 + offset_x

    v_align = anchor.vertical
    if v_align == "top":
        y = offset_y
    elif v_align == "bottom":
        y = ch - oh - offset_y
    else:
        y = (ch - oh) // 2 + offset_y

    x = int(min(max(x, 1 - ow), cw - 1))
    y = int(min(max(y, 1 - oh), ch - 1))
    return x, y


# ============================================================
# ブレンド
# ============================================================

def _soft_light_d(b: np.ndarray) -> np.ndarray:
    return np.where(b <= 0.25, ((16.0 * b - 12.0) * b + 4.0) * b, np.sqrt(b))


def _hard_light(b: np.ndarray, s: np.ndarray) -> np.ndarray:
    return np.where(s <= 0.5, 2.0 * b * s, 1.0 - 2.0 * (1.0 - b) * (1.0 - s))


def blend(backdrop: np.ndarray, source: np.ndarray, mode: BlendMode) -> np.ndarray:
    """ブレンド関数 (入力・出力とも 0.0-1.0 の float)。

    Args:
        backdrop: 背景色 B
        source: 前景色 S
        mode: ブレンドモード

    Returns:
        B(b, s) の値
    """
    b, s = backdrop, source
    if mode == BlendMode.NORMAL:
        return s
    if mode == BlendMode.MULTIPLY:
        return b * s
    if mode == BlendMode.SCREEN:
        return b + s - b * s
    if mode == BlendMode.OVERLAY:
        return _hard_light(s, b)
    if mode == BlendMode.HARD_LIGHT:
        return _hard_light(b, s)
    if mode == BlendMode.SOFT_LIGHT:
        return np.where(
            s <= 0.5,
            b - (1.0 - 2.0 * s) * b * (1.0 - b),
            b + (2.0 * s - 1.0) * (_soft_light_d(b) - b),
        )
    raise ValueError(f"未対応のブレンドモード: {mode}")


def _ensure_rgba(image: np.ndarray) -> ImageRGBA:
    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 3:
        alpha = np.full(image.shape[:2] + (1,), 255, dtype=np.uint8)
        image = np.concatenate([image, alpha], axis=2)
    return image


def composite(
    background: ImageRGB,
    overlay: ImageRGBA,
    x: int,
    y: int,
    opacity: float = 1.0,
    blend_mode: BlendMode = BlendMode.NORMAL,
) -> ImageRGB:
    """overlay を (x, y) に合成した新しい画像を返す。

    キャンバス外にはみ出した部分は切り捨てる。
    """
    out = background.copy()
    H, W = background.shape[:2]
    overlay = _ensure_rgba(overlay)
    oh, ow = overlay.shape[:2]

    # 交差領域
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + ow, W), min(y + oh, H)
    if x1 <= x0 or y1 <= y0:
        return out

    region = overlay[y0 - y:y1 - y, x0 - x:x1 - x].astype(np.float32) / 255.0
    bg = background[y0:y1, x0:x1].astype(np.float32) / 255.0

    a = region[..., 3:4] * min(max(opacity, 0.0), 1.0)
    blended = np.clip(blend(bg, region[..., :3], blend_mode), 0.0, 1.0)
    mixed = bg * (1.0 - a) + blended * a

    out[y0:y1, x0:x1] = np.clip(mixed * 255.0 + 0.5, 0, 255).astype(np.uint8)
    return out


# ============================================================
# メイン
# ============================================================

def _prepare_border(
    config: OverlayConfig,
    canvas_size: Size,
    render_border: Callable[[str, int, int], ImageRGBA],
) -> ImageRGBA:
    W, H = canvas_size
    image = config.image
    if config.is_parametric:
        stale = (
            image is None
            or config.rendered_size != (W, H)
            or image.shape[:2] != (H, W)
        )
        if stale:
            logger.info("[Overlay] 組み込みフレーム %s を %dx%d で再描画", config.border_id, W, H)
            return render_border(config.border_id, W, H)
        return image

    if image.shape[:2] != (H, W):
        image = cv2.resize(image, (W, H), interpolation=cv2.INTER_LINEAR)
    return image


def apply_overlay(
    background: ImageRGB,
    config: OverlayConfig,
    render_border: Callable[[str, int, int], ImageRGBA] = generate_border,
) -> ImageRGB:
    """アクティブなオーバーレイを背景画像に合成する。

    Args:
        background: 生成結果 (RGB, uint8)
        config: オーバーレイ設定
        render_border: パラメトリック枠の描画関数 (border_id, w, h) → RGBA

    Returns:
        合成済みの新しい画像 (RGB, uint8)

    Raises:
        OverlayApplicationFailure: 素材の欠落・描画失敗など
    """
    H, W = background.shape[:2]
    canvas_size = (W, H)
    placement = config.placement

    try:
        if config.image is None and not config.is_parametric:
            raise OverlayApplicationFailure(f"オーバーレイ画像がありません: {config.name!r}")

        if config.image is not None:
            overlay = _ensure_rgba(config.image)
            config_image_size = (overlay.shape[1], overlay.shape[0])
        else:
            overlay = None
            config_image_size = canvas_size

        role = classify_overlay(config_image_size, canvas_size, placement, config.kind)

        if role == OverlayRole.BORDER or overlay is None:
            if overlay is not None:
                config = replace(config, image=overlay)
            layer = _ensure_rgba(_prepare_border(config, canvas_size, render_border))
            x, y = 0, 0
        else:
            lw, lh = logo_size(config_image_size, canvas_size, placement.scale)
            layer = cv2.resize(overlay, (lw, lh), interpolation=cv2.INTER_AREA)
            x, y = anchor_position(
                placement.position, canvas_size, (lw, lh),
                placement.offset_x, placement.offset_y,
            )

        return composite(background, layer, x, y, placement.opacity, placement.blend_mode)
    except OverlayApplicationFailure:
        raise
    except Exception as e:
        raise OverlayApplicationFailure(f"オーバーレイ合成に失敗: {e}") from e
