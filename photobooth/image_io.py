"""
photobooth/image_io.py
======================
画像バッファのデコード・エンコード・リサイズ。
生成サービスへ渡す正方形キャンバスへの整形もここで行う。
"""

from __future__ import annotations

import asyncio
import base64
import io
import re

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from photobooth.errors import ImageDecodeError
from photobooth.types import ImageRGB, ImageRGBA

# 正方形キャンバスの余白色 (#1a1a1a)
PAD_COLOR = (26, 26, 26)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(;base64)?,(?P<data>.*)$", re.DOTALL)


def _open(data: bytes) -> Image.Image:
    if not data:
        raise ImageDecodeError("画像データが空です")
    try:
        pil = Image.open(io.BytesIO(data))
        pil.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ImageDecodeError(f"画像をデコードできません: {e}") from e
    return pil


def decode_image(data: bytes) -> ImageRGB:
    """エンコード済み画像を RGB 配列にデコードする。

    Raises:
        ImageDecodeError: 空データ・未対応形式・破損データ
    """
    return np.array(_open(data).convert("RGB"))


async def decode_image_async(data: bytes) -> ImageRGB:
    """decode_image をワーカースレッドで実行する。"""
    return await asyncio.to_thread(decode_image, data)


def decode_rgba(data: bytes) -> ImageRGBA:
    """オーバーレイ素材を RGBA 配列にデコードする。"""
    return np.array(_open(data).convert("RGBA"))


def encode_png(image: np.ndarray) -> bytes:
    """RGB / RGBA / グレースケール配列を PNG バイト列にする。"""
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(image)).save(buf, format="PNG")
    return buf.getvalue()


def encode_jpeg(image: ImageRGB, quality: int = 95) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(image).convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def fit_to_square(
    image: ImageRGB,
    size: int,
    fill: tuple[int, int, int] = PAD_COLOR,
) -> ImageRGB:
    """アスペクト比を保ったまま size x size のキャンバス中央に収める。

    Args:
        image: 入力画像 (RGB, uint8)
        size: キャンバスの一辺 (px)
        fill: 余白色 (RGB)

    Returns:
        shape (size, size, 3) の画像
    """
    h, w = image.shape[:2]
    if h == size and w == size:
        return image.copy()

    scale = min(size / w, size / h)
    new_w = max(int(round(w * scale)), 1)
    new_h = max(int(round(h * scale)), 1)
    interp = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(image, (new_w, new_h), interpolation=interp)

    canvas = np.empty((size, size, 3), dtype=np.uint8)
    canvas[:] = fill
    x0 = (size - new_w) // 2
    y0 = (size - new_h) // 2
    canvas[y0:y0 + new_h, x0:x0 + new_w] = resized
    return canvas


# ============================================================
# data URL
# ============================================================

def from_data_url(url: str) -> bytes:
    """data:image/...;base64,... 形式の文字列をバイト列に戻す。

    プレフィックスのない素の base64 文字列も受け付ける。
    """
    m = _DATA_URL_RE.match(url.strip())
    payload = m.group("data") if m else url.strip()
    try:
        return base64.b64decode(payload, validate=False)
    except (ValueError, TypeError) as e:
        raise ImageDecodeError(f"data URL をデコードできません: {e}") from e


def to_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
