"""
photobooth/borders.py
=====================
組み込みフレーム (パラメトリック枠) のジェネレータ群。

各ジェネレータは (width, height) → RGBA 画像 の純関数。
線幅や装飾サイズは min(width, height) に対する比率で決まるため、
解像度ごとに毎回描き直す (別解像度の描画結果を引き伸ばさない)。
"""

from __future__ import annotations

from typing import Callable, Sequence

import cv2
import numpy as np

from photobooth.types import ImageRGBA

BorderGenerator = Callable[[int, int], ImageRGBA]

ColorStop = tuple[float, str]


# ============================================================
# 描画ヘルパー
# ============================================================

def _hex(color: str) -> tuple[int, int, int]:
    c = color.lstrip("#")
    return (int(c[0:2], 16), int(c[2:4], 16), int(c[4:6], 16))


def _interp_stops(t: np.ndarray, stops: Sequence[ColorStop]) -> np.ndarray:
    """t (0-1) の配列を色停止点で補間し (…, 3) の float 配列を返す。"""
    positions = [p for p, _ in stops]
    colors = np.array([_hex(c) for _, c in stops], dtype=np.float32)
    out = np.empty(t.shape + (3,), dtype=np.float32)
    for ch in range(3):
        out[..., ch] = np.interp(t, positions, colors[:, ch])
    return out


def _linear_gradient(
    width: int,
    height: int,
    stops: Sequence[ColorStop],
    x1: float,
    y1: float,
) -> np.ndarray:
    """(0,0) → (x1,y1) 方向の線形グラデーション。"""
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    length_sq = max(x1 * x1 + y1 * y1, 1e-6)
    t = np.clip((xs * x1 + ys * y1) / length_sq, 0.0, 1.0)
    return _interp_stops(t, stops)


def _radial_gradient(
    width: int,
    height: int,
    stops: Sequence[ColorStop],
    radius: float,
) -> np.ndarray:
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    dist = np.sqrt((xs - width / 2.0) ** 2 + (ys - height / 2.0) ** 2)
    t = np.clip(dist / max(radius, 1e-6), 0.0, 1.0)
    return _interp_stops(t, stops)


def _canvas(width: int, height: int) -> ImageRGBA:
    return np.zeros((height, width, 4), dtype=np.uint8)


def _from_rgb(rgb: np.ndarray, alpha: int = 255) -> ImageRGBA:
    h, w = rgb.shape[:2]
    out = np.empty((h, w, 4), dtype=np.uint8)
    out[..., :3] = np.clip(rgb, 0, 255).astype(np.uint8)
    out[..., 3] = alpha
    return out


def _clear_rect(img: ImageRGBA, x: float, y: float, w: float, h: float) -> None:
    """矩形領域を完全に透明にする (destination-out 相当)。"""
    H, W = img.shape[:2]
    x0, y0 = max(int(round(x)), 0), max(int(round(y)), 0)
    x1, y1 = min(int(round(x + w)), W), min(int(round(y + h)), H)
    if x1 > x0 and y1 > y0:
        img[y0:y1, x0:x1] = 0


def _clear_center(img: ImageRGBA, inset: float) -> None:
    h, w = img.shape[:2]
    _clear_rect(img, inset, inset, w - inset * 2, h - inset * 2)


# ============================================================
# 組み込みフレーム
# ============================================================

def chrome_metallic(width: int, height: int) -> ImageRGBA:
    border = min(width, height) * 0.06
    rgb = _linear_gradient(width, height, [
        (0.0, "#E8E8E8"), (0.1, "#F8F8F8"), (0.2, "#C8C8C8"), (0.3, "#F0F0F0"),
        (0.4, "#A8A8A8"), (0.6, "#D8D8D8"), (0.7, "#B8B8B8"), (0.8, "#F0F0F0"),
        (0.9, "#C8C8C8"), (1.0, "#E8E8E8"),
    ], 0, height)

    # 内側のベベル
    bevel = _linear_gradient(width, height, [
        (0.0, "#FFFFFF"), (0.5, "#CCCCCC"), (1.0, "#999999"),
    ], 0, height)
    b0 = int(round(border * 0.3))
    rgb[b0:height - b0, b0:width - b0] = bevel[b0:height - b0, b0:width - b0]

    img = _from_rgb(rgb)
    _clear_center(img, border)
    return img


def rose_gold_gradient(width: int, height: int) -> ImageRGBA:
    border = min(width, height) * 0.08
    rgb = _linear_gradient(width, height, [
        (0.0, "#F7C6C7"), (0.2, "#E8A87C"), (0.4, "#D4AF37"),
        (0.6, "#E8A87C"), (0.8, "#F7C6C7"), (1.0, "#E8A87C"),
    ], width, height)

    # 左上からのハイライト
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    half = max((width / 2.0) ** 2 + (height / 2.0) ** 2, 1e-6)
    t = np.clip((xs * width / 2.0 + ys * height / 2.0) / half, 0.0, 1.0)
    a = (0.4 * (1.0 - t))[..., None]
    rgb = rgb * (1.0 - a) + 255.0 * a

    img = _from_rgb(rgb)
    _clear_center(img, border)
    return img


def film_strip(width: int, height: int) -> ImageRGBA:
    strip = height * 0.12
    hole = strip * 0.6
    spacing = hole * 1.5

    img = _canvas(width, height)
    s = int(round(strip))
    img[:s, :] = (26, 26, 26, 255)
    img[height - s:, :] = (26, 26, 26, 255)

    # フィルム穴
    holes = int(width // spacing) if spacing > 0 else 0
    for i in range(holes):
        x = i * spacing + spacing / 2 - hole / 2
        _clear_rect(img, x, strip * 0.2, hole, hole)
        _clear_rect(img, x, height - strip + strip * 0.2, hole, hole)
    return img


def polaroid(width: int, height: int) -> ImageRGBA:
    border = min(width, height) * 0.06
    bottom = border * 3

    img = _canvas(width, height)
    img[:] = (248, 248, 248, 255)
    _clear_rect(img, border, border, width - border * 2, height - border - bottom)
    return img


def ornate_baroque(width: int, height: int) -> ImageRGBA:
    border = min(width, height) * 0.1
    rgb = _radial_gradient(width, height, [
        (0.0, "#8B4513"), (0.7, "#CD853F"), (1.0, "#DEB887"),
    ], max(width, height) / 2.0)
    img = _from_rgb(rgb)

    # 四隅の装飾
    corner = border * 1.5
    radius = max(int(round(corner / 3)), 1)
    for cx, cy in [
        (corner / 2, corner / 2),
        (width - corner / 2, corner / 2),
        (corner / 2, height - corner / 2),
        (width - corner / 2, height - corner / 2),
    ]:
        cv2.circle(img, (int(round(cx)), int(round(cy))), radius, (218, 165, 32, 255), -1, cv2.LINE_AA)

    _clear_center(img, border)
    return img


def minimal_line(width: int, height: int) -> ImageRGBA:
    line = min(width, height) * 0.008
    offset = line * 3

    img = _canvas(width, height)
    outer = max(int(round(line)), 1)
    inner = max(int(round(line / 2)), 1)
    o1, o2 = int(round(offset)), int(round(offset * 2))
    cv2.rectangle(img, (o1, o1), (width - 1 - o1, height - 1 - o1), (255, 255, 255, 255), outer)
    # 二重線
    cv2.rectangle(img, (o2, o2), (width - 1 - o2, height - 1 - o2), (255, 255, 255, 128), inner)
    return img


def grunge_torn(width: int, height: int) -> ImageRGBA:
    border = min(width, height) * 0.05

    # 周辺減光
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    dist = np.sqrt((xs - width / 2.0) ** 2 + (ys - height / 2.0) ** 2)
    t = np.clip(dist / (max(width, height) / 2.0), 0.0, 1.0)
    alpha = np.interp(t, [0.0, 0.8, 1.0], [0.0, 0.3 * 255, 0.8 * 255])

    img = _canvas(width, height)
    img[..., 3] = alpha.astype(np.uint8)

    # 破れた縁: サイズから決まる乱数で同じ入力に同じ出力を返す
    rng = np.random.default_rng(width * 100003 + height)
    for _ in range(50):
        x = rng.random() * width
        depth = rng.random() * border
        y = depth if rng.random() < 0.5 else height - depth
        r = int(round(rng.random() * border * 0.5))
        if r > 0:
            cv2.circle(img, (int(x), int(y)), r, (0, 0, 0, 0), -1)
    return img


def tech_grid(width: int, height: int) -> ImageRGBA:
    border = min(width, height) * 0.04
    grid = 20
    rgb = _linear_gradient(width, height, [
        (0.0, "#0a0a2a"), (0.5, "#1a1a3a"), (1.0, "#0a0a2a"),
    ], width, height)

    b = int(round(border))
    line_rgb = rgb * 0.7 + np.array([0, 255, 255], dtype=np.float32) * 0.3
    for x in range(0, width + 1, grid):
        xi = min(x, width - 1)
        rgb[:b, xi] = line_rgb[:b, xi]
        rgb[height - b:, xi] = line_rgb[height - b:, xi]
    for y in range(0, height + 1, grid):
        yi = min(y, height - 1)
        rgb[yi, :b] = line_rgb[yi, :b]
        rgb[yi, width - b:] = line_rgb[yi, width - b:]

    # 四隅のアクセント
    c = max(int(round(border / 3)), 1)
    cyan = (0, 255, 255)
    for ys_, xs_ in [
        (slice(0, b), slice(0, c)), (slice(0, c), slice(0, b)),
        (slice(0, b), slice(width - c, width)), (slice(0, c), slice(width - b, width)),
        (slice(height - b, height), slice(0, c)), (slice(height - c, height), slice(0, b)),
        (slice(height - b, height), slice(width - c, width)),
        (slice(height - c, height), slice(width - b, width)),
    ]:
        rgb[ys_, xs_] = cyan

    img = _from_rgb(rgb)
    _clear_center(img, border)
    return img


BUILT_IN_BORDERS: dict[str, BorderGenerator] = {
    "chrome-metallic": chrome_metallic,
    "rose-gold-gradient": rose_gold_gradient,
    "film-strip": film_strip,
    "polaroid": polaroid,
    "ornate-baroque": ornate_baroque,
    "minimal-line": minimal_line,
    "grunge-torn": grunge_torn,
    "tech-grid": tech_grid,
}


def available_borders() -> list[str]:
    return sorted(BUILT_IN_BORDERS)


def generate_border(border_id: str, width: int, height: int) -> ImageRGBA:
    """組み込みフレームを指定サイズで描画する。

    Args:
        border_id: フレーム ID (例: "minimal-line")
        width: 出力幅 (px)
        height: 出力高さ (px)

    Returns:
        shape (height, width, 4) の RGBA 画像

    Raises:
        KeyError: 未知のフレーム ID
        ValueError: サイズが正でない
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"フレームのサイズが不正です: {width}x{height}")
    try:
        generator = BUILT_IN_BORDERS[border_id]
    except KeyError:
        raise KeyError(f"組み込みフレームが見つかりません: {border_id}") from None
    return generator(width, height)
