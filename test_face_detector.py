import threading
import time
from types import SimpleNamespace

import numpy as np
import pytest

from photobooth.errors import DetectionFailure
from photobooth.face_detector import (
    BBOX_PADDING,
    GROUP_INDICES,
    FaceLandmarkProvider,
    get_landmark_provider,
    landmarks_to_detection,
)
from photobooth.types import LANDMARK_GROUPS


def _mesh(n=478, x0=0.3, x1=0.7, y0=0.2, y1=0.8):
    """正規化座標の合成メッシュ (矩形内に散らした n 点)。"""
    rng = np.random.default_rng(0)
    xs = rng.uniform(x0, x1, n)
    ys = rng.uniform(y0, y1, n)
    pts = [SimpleNamespace(x=float(x), y=float(y), z=0.0) for x, y in zip(xs, ys)]
    # 外接矩形を確定させる
    pts[0] = SimpleNamespace(x=x0, y=y0, z=0.0)
    pts[1] = SimpleNamespace(x=x1, y=y1, z=0.0)
    return pts


class _FakeLandmarker:
    def __init__(self, faces):
        self.faces = faces
        self.closed = False

    def detect(self, image):
        return self.faces

    def close(self):
        self.closed = True


def test_landmarks_to_detection_groups_and_bbox():
    det = landmarks_to_detection(_mesh(), 400, 500)
    assert set(det.landmarks) == set(LANDMARK_GROUPS)
    for name, indices in GROUP_INDICES.items():
        assert len(det.landmarks[name]) == len(indices)

    bbox = det.bounding_box
    assert bbox.x == pytest.approx(0.3 * 400 - BBOX_PADDING)
    assert bbox.y == pytest.approx(0.2 * 500 - BBOX_PADDING)
    assert bbox.x + bbox.w == pytest.approx(0.7 * 400 + BBOX_PADDING)
    assert bbox.y + bbox.h == pytest.approx(0.8 * 500 + BBOX_PADDING)


def test_bbox_is_clamped_to_image():
    det = landmarks_to_detection(_mesh(x0=0.0, x1=1.0, y0=0.0, y1=1.0), 100, 100)
    bbox = det.bounding_box
    assert bbox.x == 0.0 and bbox.y == 0.0
    assert bbox.w == 100.0 and bbox.h == 100.0


def test_left_eyebrow_is_image_left():
    pts = [SimpleNamespace(x=0.5, y=0.5) for _ in range(478)]
    for i in GROUP_INDICES["leftEyebrow"]:
        pts[i] = SimpleNamespace(x=0.35, y=0.4)
    for i in GROUP_INDICES["rightEyebrow"]:
        pts[i] = SimpleNamespace(x=0.65, y=0.4)
    det = landmarks_to_detection(pts, 200, 200)
    assert all(x < 100 for x, _ in det.landmarks["leftEyebrow"])
    assert all(x > 100 for x, _ in det.landmarks["rightEyebrow"])


def test_detect_returns_detections():
    fake = _FakeLandmarker([_mesh(), _mesh()])
    provider = FaceLandmarkProvider(loader=lambda n, c: fake)
    faces = provider.detect(np.zeros((64, 64, 3), dtype=np.uint8))
    assert len(faces) == 2


def test_detect_no_faces_returns_empty_list():
    provider = FaceLandmarkProvider(loader=lambda n, c: _FakeLandmarker([]))
    assert provider.detect(np.zeros((64, 64, 3), dtype=np.uint8)) == []


def test_load_failure_raises_detection_failure():
    def loader(n, c):
        raise OSError("model file missing")

    provider = FaceLandmarkProvider(loader=loader)
    with pytest.raises(DetectionFailure):
        provider.detect(np.zeros((8, 8, 3), dtype=np.uint8))
    assert not provider.loaded


def test_inference_failure_raises_detection_failure():
    class _Broken(_FakeLandmarker):
        def detect(self, image):
            raise RuntimeError("inference crashed")

    provider = FaceLandmarkProvider(loader=lambda n, c: _Broken([]))
    with pytest.raises(DetectionFailure):
        provider.detect(np.zeros((8, 8, 3), dtype=np.uint8))


def test_model_is_loaded_once_under_concurrency():
    calls = []

    def loader(n, c):
        calls.append(1)
        time.sleep(0.05)
        return _FakeLandmarker([])

    provider = FaceLandmarkProvider(loader=loader)
    image = np.zeros((8, 8, 3), dtype=np.uint8)
    threads = [threading.Thread(target=provider.detect, args=(image,)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(calls) == 1
    assert provider.loaded


def test_close_releases_model():
    fake = _FakeLandmarker([])
    with FaceLandmarkProvider(loader=lambda n, c: fake) as provider:
        provider.detect(np.zeros((8, 8, 3), dtype=np.uint8))
    assert fake.closed
    assert not provider.loaded


def test_shared_provider_is_singleton():
    assert get_landmark_provider() is get_landmark_provider()
