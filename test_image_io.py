import asyncio

import numpy as np
import pytest

from photobooth.errors import ImageDecodeError
from photobooth.image_io import (
    PAD_COLOR,
    decode_image,
    decode_image_async,
    decode_rgba,
    encode_jpeg,
    encode_png,
    fit_to_square,
    from_data_url,
    to_data_url,
)


def _solid(h, w, color=(200, 30, 30)):
    img = np.zeros((h, w, 3), dtype=np.uint8)
    img[:] = color
    return img


def test_decode_png_returns_rgb_array():
    img = decode_image(encode_png(_solid(20, 30)))
    assert img.shape == (20, 30, 3)
    assert img.dtype == np.uint8
    assert tuple(img[0, 0]) == (200, 30, 30)


def test_decode_jpeg():
    img = decode_image(encode_jpeg(_solid(16, 16)))
    assert img.shape == (16, 16, 3)


def test_decode_empty_raises():
    with pytest.raises(ImageDecodeError):
        decode_image(b"")


def test_decode_garbage_raises():
    with pytest.raises(ImageDecodeError):
        decode_image(b"definitely not an image")


def test_decompression_bomb_raises_decode_error(monkeypatch):
    from PIL import Image

    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    with pytest.raises(ImageDecodeError):
        decode_image(encode_png(_solid(64, 64)))


def test_decode_async():
    img = asyncio.run(decode_image_async(encode_png(_solid(8, 12))))
    assert img.shape == (8, 12, 3)


def test_decode_rgba_adds_alpha():
    rgba = decode_rgba(encode_png(_solid(4, 4)))
    assert rgba.shape == (4, 4, 4)
    assert np.all(rgba[..., 3] == 255)


def test_fit_to_square_pads_landscape():
    out = fit_to_square(_solid(100, 200), 64)
    assert out.shape == (64, 64, 3)
    # 上下に余白、中央は元画像
    assert tuple(out[0, 32]) == PAD_COLOR
    assert tuple(out[63, 32]) == PAD_COLOR
    assert tuple(out[32, 32]) == (200, 30, 30)


def test_fit_to_square_pads_portrait():
    out = fit_to_square(_solid(200, 100), 64)
    assert tuple(out[32, 0]) == PAD_COLOR
    assert tuple(out[32, 63]) == PAD_COLOR
    assert tuple(out[32, 32]) == (200, 30, 30)


def test_fit_to_square_does_not_mutate_input():
    src = _solid(64, 64)
    out = fit_to_square(src, 64)
    out[:] = 0
    assert tuple(src[0, 0]) == (200, 30, 30)


def test_data_url_helpers():
    png = encode_png(_solid(3, 3))
    url = to_data_url(png)
    assert url.startswith("data:image/png;base64,")
    assert from_data_url(url) == png
    # プレフィックスなしの base64 も受け付ける
    assert from_data_url(url.split(",", 1)[1]) == png
