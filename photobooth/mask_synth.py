"""
photobooth/mask_synth.py
========================
顔ランドマークからインペイント用マスクを生成する。

マスクの値: 0 = 元画素を保持, 255 = 生成サービスが描き直す。
顔の外周 (顎ライン + 眉) を拡大した領域を保持色で塗り、
境界をガウシアンでぼかして合成時の継ぎ目を防ぐ。
顔が1つも無い場合は画像上部中央に放射グラデーションの保持領域を置く。
"""

from __future__ import annotations

import logging
from typing import Sequence

import cv2
import numpy as np

from photobooth.errors import MaskGenerationFailure
from photobooth.types import (
    BoundingBox,
    FaceDetection,
    FaceMode,
    ImageRGB,
    MaskImage,
)

logger = logging.getLogger(__name__)

PRESERVE = 0
REGENERATE = 255

# フェザー半径の上限 (px) と画像幅に対する比率
MAX_FEATHER_PX = 20
FEATHER_WIDTH_RATIO = 0.02

# フォールバックマスクの幾何 (min(w, h) に対する比率)
FALLBACK_CENTER_Y = 0.37
FALLBACK_RADIUS_RATIO = 0.3
FALLBACK_CORE = 0.3     # 完全保持の半径 (× R)
FALLBACK_OUTER = 0.8    # 完全に再生成になる半径 (× R)

# グラデーションの色停止点: (位置 0-1, 値)
_FALLBACK_STOPS = (
    (0.0, 0.0),
    (0.5, 121.0),
    (0.8, 217.0),
    (1.0, 255.0),
)


def feather_radius_for(width: int, feather_radius: float) -> int:
    """実際に使うぼかし半径 = min(feather_radius, 20, 0.02 * width)。"""
    r = min(float(feather_radius), MAX_FEATHER_PX, width * FEATHER_WIDTH_RATIO)
    return max(int(r), 0)


def feather(mask: MaskImage, radius: int) -> MaskImage:
    """マスク境界をガウシアンでぼかす。radius=0 ならそのまま返す。"""
    if radius <= 0:
        return mask
    ksize = radius * 2 + 1  # 奇数カーネル
    return cv2.GaussianBlur(mask, (ksize, ksize), 0)


def fallback_mask(width: int, height: int, mode: FaceMode = FaceMode.PRESERVE_FACE) -> MaskImage:
    """顔未検出時の放射グラデーションマスク。

    中心 (w/2, 0.37h)、半径 R = 0.3 * min(w, h)。
    0.3R までは完全保持、0.8R で完全に再生成となる。
    (width, height, mode) に対して決定的。mode は極性に影響しない。

    Returns:
        shape (height, width), dtype uint8
    """
    cx = width / 2.0
    cy = height * FALLBACK_CENTER_Y
    radius = min(width, height) * FALLBACK_RADIUS_RATIO
    r_in = radius * FALLBACK_CORE
    r_out = radius * FALLBACK_OUTER

    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    dist = np.sqrt((xs + 0.5 - cx) ** 2 + (ys + 0.5 - cy) ** 2)
    t = np.clip((dist - r_in) / max(r_out - r_in, 1e-6), 0.0, 1.0)

    positions = [p for p, _ in _FALLBACK_STOPS]
    values = [v for _, v in _FALLBACK_STOPS]
    mask = np.interp(t, positions, values)
    return np.clip(mask, 0, 255).astype(np.uint8)


def _expand(points: np.ndarray, center: tuple[float, float], factor: float) -> np.ndarray:
    c = np.asarray(center, dtype=np.float32)
    return c + (points - c) * factor


def _fill_bbox(mask: MaskImage, bbox: BoundingBox) -> None:
    h, w = mask.shape[:2]
    x0 = int(np.clip(np.floor(bbox.x), 0, w))
    y0 = int(np.clip(np.floor(bbox.y), 0, h))
    x1 = int(np.clip(np.ceil(bbox.x + bbox.w), 0, w))
    y1 = int(np.clip(np.ceil(bbox.y + bbox.h), 0, h))
    if x1 > x0 and y1 > y0:
        mask[y0:y1, x0:x1] = PRESERVE


def _fill_face(mask: MaskImage, face: FaceDetection, expansion_factor: float) -> None:
    """1つの顔の保持領域を塗る。

    顔の外周点と拡大後のバウンディングボックスの凸包を塗るので、
    保持領域は必ず拡大後のバウンディングボックスを含む。
    """
    bbox = face.bounding_box
    outline = face.outline_points()
    outline = outline[np.all(np.isfinite(outline), axis=1)]

    if len(outline) < 3:
        logger.warning(
            "[MaskSynth] ランドマーク不足 (%d 点)、バウンディングボックスで代用", len(outline)
        )
        _fill_bbox(mask, bbox)
        return

    expanded = _expand(outline, bbox.center, expansion_factor)
    corners = np.asarray(bbox.scaled(expansion_factor).corners(), dtype=np.float32)
    pts = np.concatenate([expanded, corners])
    hull = cv2.convexHull(np.round(pts).astype(np.int32))
    cv2.fillConvexPoly(mask, hull, PRESERVE)


def synthesize(
    image: ImageRGB,
    faces: Sequence[FaceDetection],
    mode: FaceMode = FaceMode.PRESERVE_FACE,
    feather_radius: float = 15,
    expansion_factor: float = 1.2,
) -> MaskImage:
    """画像と顔検出結果からマスクを生成する。

    Args:
        image: 入力画像 (RGB, uint8) — サイズのみ参照
        faces: 顔検出結果 (空なら放射グラデーションのフォールバック)
        mode: 顔の扱い (マスクの極性は変わらない)
        feather_radius: ぼかし半径 (px)。min(20, 0.02 * 幅) で頭打ち
        expansion_factor: 顔輪郭の拡大率 (典型値 1.15-1.4)

    Returns:
        shape (H, W), dtype uint8 のマスク (0=保持, 255=再生成)

    Raises:
        MaskGenerationFailure: マスク全体の生成に失敗した場合
    """
    h, w = image.shape[:2]
    radius = feather_radius_for(w, feather_radius)

    try:
        if not faces:
            logger.info("[MaskSynth] 顔が検出されませんでした。フォールバックマスクを使用")
            return feather(fallback_mask(w, h, mode), radius)

        mask = np.full((h, w), REGENERATE, dtype=np.uint8)
        for i, face in enumerate(faces):
            try:
                _fill_face(mask, face, expansion_factor)
            except Exception as e:
                # 1つの顔の異常でマスク全体を落とさない
                logger.warning("[MaskSynth] 顔 %d の処理に失敗 (%s)、バウンディングボックスで代用", i, e)
                _fill_bbox(mask, face.bounding_box)

        return feather(mask, radius)
    except Exception as e:
        raise MaskGenerationFailure(f"マスク生成に失敗: {e}") from e
