import math

import numpy as np

from photobooth.mask_synth import (
    fallback_mask,
    feather,
    feather_radius_for,
    synthesize,
)
from photobooth.types import BoundingBox, FaceDetection, FaceMode


def _image(h=512, w=512):
    return np.zeros((h, w, 3), dtype=np.uint8)


def _face(x=200.0, y=180.0, w=110.0, h=140.0):
    """顎 + 眉のそれらしいランドマークを持つ合成の顔。"""
    bbox = BoundingBox(x, y, w, h)
    cx, cy = bbox.center
    jaw = [
        (cx + math.cos(t) * w * 0.45, cy + math.sin(t) * h * 0.45)
        for t in np.linspace(math.pi, 0.0, 17)
    ]
    brow_y = y + h * 0.3
    left_brow = [(x + w * (0.15 + 0.06 * i), brow_y) for i in range(5)]
    right_brow = [(x + w * (0.6 + 0.06 * i), brow_y) for i in range(5)]
    return FaceDetection(
        bounding_box=bbox,
        landmarks={
            "jaw": jaw,
            "leftEyebrow": left_brow,
            "rightEyebrow": right_brow,
            "leftEye": [],
            "rightEye": [],
            "nose": [],
            "mouth": [],
        },
    )


def _region(mask, bbox, margin):
    x0 = int(math.ceil(bbox.x)) + margin
    y0 = int(math.ceil(bbox.y)) + margin
    x1 = int(bbox.x + bbox.w) - margin
    y1 = int(bbox.y + bbox.h) - margin
    return mask[y0:y1, x0:x1]


def test_feather_radius_is_bounded():
    assert feather_radius_for(512, 15) == 10
    assert feather_radius_for(4000, 50) == 20
    assert feather_radius_for(4000, 5) == 5
    assert feather_radius_for(512, 0) == 0


def test_fallback_mask_is_deterministic():
    a = fallback_mask(512, 512, FaceMode.PRESERVE_FACE)
    b = fallback_mask(512, 512, FaceMode.PRESERVE_FACE)
    assert np.array_equal(a, b)
    assert a.shape == (512, 512)
    assert a.dtype == np.uint8


def test_fallback_preserve_region_sits_in_upper_middle():
    mask = fallback_mask(512, 768)
    ys, xs = np.nonzero(mask < 128)
    assert len(xs) > 0
    assert abs(xs.mean() - 256) < 2
    assert 768 / 6 < ys.mean() < 768 / 2
    # 中心は保持、四隅は再生成
    assert mask[int(768 * 0.37), 256] == 0
    for y, x in [(0, 0), (0, 511), (767, 0), (767, 511)]:
        assert mask[y, x] == 255


def test_empty_faces_uses_feathered_fallback():
    image = _image()
    mask = synthesize(image, [], FaceMode.PRESERVE_FACE, feather_radius=15)
    expected = feather(fallback_mask(512, 512, FaceMode.PRESERVE_FACE), 10)
    assert np.array_equal(mask, expected)


def test_face_polygon_contains_expanded_bbox():
    face = _face()
    mask = synthesize(_image(), [face], FaceMode.PRESERVE_FACE, feather_radius=15, expansion_factor=1.2)
    assert mask.shape == (512, 512)
    inner = _region(mask, face.bounding_box.scaled(1.2), margin=11)
    assert inner.size > 0
    assert np.all(inner == 0)
    # 顔から離れた背景は再生成
    assert mask[5, 5] == 255
    assert mask[500, 500] == 255


def test_mask_polarity_does_not_depend_on_mode():
    face = _face()
    a = synthesize(_image(), [face], FaceMode.PRESERVE_FACE)
    b = synthesize(_image(), [face], FaceMode.REPLACE_FACE)
    assert np.array_equal(a, b)


def test_malformed_landmarks_fall_back_to_bbox():
    bbox = BoundingBox(100, 100, 80, 80)
    face = FaceDetection(bounding_box=bbox, landmarks={"jaw": [(120.0, 150.0), (160.0, 150.0)]})
    mask = synthesize(_image(), [face], feather_radius=15)
    assert np.all(_region(mask, bbox, margin=11) == 0)
    # 矩形の外側はそのまま再生成
    assert mask[140, 100 + 80 + 15] == 255
    assert mask[100 + 80 + 15, 140] == 255


def test_nan_landmarks_are_ignored():
    bbox = BoundingBox(100, 100, 80, 80)
    nan = float("nan")
    face = FaceDetection(bounding_box=bbox, landmarks={"jaw": [(nan, nan)] * 10})
    mask = synthesize(_image(), [face], feather_radius=0)
    assert np.all(_region(mask, bbox, margin=0) == 0)


class _BrokenFace(FaceDetection):
    def outline_points(self):
        raise RuntimeError("broken landmarks")


def test_per_face_failure_is_isolated():
    broken = _BrokenFace(bounding_box=BoundingBox(20, 20, 60, 60), landmarks={})
    good = _face()
    mask = synthesize(_image(), [broken, good], feather_radius=0)
    assert np.all(_region(mask, broken.bounding_box, margin=0) == 0)
    assert np.all(_region(mask, good.bounding_box.scaled(1.2), margin=1) == 0)


def test_zero_feather_gives_binary_mask():
    mask = synthesize(_image(), [_face()], feather_radius=0)
    assert set(np.unique(mask).tolist()) <= {0, 255}


def test_feathered_edges_are_smooth():
    mask = synthesize(_image(), [_face()], feather_radius=15)
    # ぼかしにより中間値が現れる
    values = np.unique(mask)
    assert len(values) > 2
    # 隣接画素間の段差はぼかし前の 255 よりずっと小さい
    assert np.abs(np.diff(mask.astype(np.int16), axis=1)).max() < 128
