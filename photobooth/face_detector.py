"""
photobooth/face_detector.py
===========================
MediaPipe Face Landmarker (Tasks API) による顔検出アダプタ。
478点メッシュを顎・眉・目・鼻・口の名前付きグループに変換して返す。

モデルは初回の detect() で一度だけ読み込み、プロセス内で共有する。
並行して detect() が呼ばれても読み込みは 1 回しか走らない。
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable, Optional, Protocol, Sequence

import requests

from photobooth.errors import DetectionFailure
from photobooth.types import BoundingBox, FaceDetection, ImageRGB, Point

logger = logging.getLogger(__name__)

# モデルファイルのパス＆ダウンロードURL
_MODEL_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "models")
_MODEL_FILENAME = "face_landmarker.task"
_MODEL_PATH = os.path.join(_MODEL_DIR, _MODEL_FILENAME)
_MODEL_URL = (
    "https://storage.googleapis.com/mediapipe-models/"
    "face_landmarker/face_landmarker/float16/latest/face_landmarker.task"
)

# バウンディングボックスの余白 (px)
BBOX_PADDING = 10


# ============================================================
# Face Mesh インデックス → 名前付きグループ
# ============================================================
# MediaPipe の left/right は被写体から見た左右なので、
# 画像上の左右に合わせて入れ替える。

# 顎ライン: 画像左の耳 → 顎先 → 画像右の耳
JAW_IDX = [
    234, 93, 132, 58, 172, 136, 150, 149, 176, 148, 152,
    377, 400, 378, 379, 365, 397, 288, 361, 323, 454,
]
# 被写体の右眉 (画像左)
SUBJECT_RIGHT_EYEBROW_IDX = [70, 63, 105, 66, 107, 55, 65, 52, 53, 46]
# 被写体の左眉 (画像右)
SUBJECT_LEFT_EYEBROW_IDX = [300, 293, 334, 296, 336, 285, 295, 282, 283, 276]
SUBJECT_RIGHT_EYE_IDX = [33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246]
SUBJECT_LEFT_EYE_IDX = [362, 382, 381, 380, 374, 373, 390, 249, 263, 466, 388, 387, 386, 385, 384, 398]
NOSE_IDX = [168, 6, 197, 195, 5, 4, 1, 19, 94, 2]
MOUTH_IDX = [61, 146, 91, 181, 84, 17, 314, 405, 321, 375, 291, 409, 270, 269, 267, 0, 37, 39, 40, 185]

GROUP_INDICES: dict[str, list[int]] = {
    "jaw": JAW_IDX,
    "leftEyebrow": SUBJECT_RIGHT_EYEBROW_IDX,
    "rightEyebrow": SUBJECT_LEFT_EYEBROW_IDX,
    "leftEye": SUBJECT_RIGHT_EYE_IDX,
    "rightEye": SUBJECT_LEFT_EYE_IDX,
    "nose": NOSE_IDX,
    "mouth": MOUTH_IDX,
}


class Landmarker(Protocol):
    """ランドマーク推論器。正規化座標 (x, y 属性を持つ点) の列を顔ごとに返す。"""

    def detect(self, image: ImageRGB) -> Sequence[Sequence[Any]]: ...

    def close(self) -> None: ...


# ============================================================
# モデル読み込み
# ============================================================

def _ensure_model() -> str:
    """モデルファイルが存在しなければダウンロードする。"""
    if os.path.exists(_MODEL_PATH):
        return _MODEL_PATH

    os.makedirs(_MODEL_DIR, exist_ok=True)
    logger.info("[FaceDetector] モデルをダウンロード中... (%s)", _MODEL_URL)

    resp = requests.get(_MODEL_URL, timeout=60, headers={"User-Agent": "Mozilla/5.0"})
    resp.raise_for_status()
    with open(_MODEL_PATH, "wb") as f:
        f.write(resp.content)

    logger.info("[FaceDetector] ダウンロード完了: %.1f MB", len(resp.content) / (1024 * 1024))
    return _MODEL_PATH


class _MediaPipeLandmarker:
    """mediapipe.tasks の FaceLandmarker を Landmarker として包む。"""

    def __init__(self, max_faces: int, min_confidence: float):
        import mediapipe as mp
        from mediapipe.tasks.python import BaseOptions
        from mediapipe.tasks.python.vision import (
            FaceLandmarker,
            FaceLandmarkerOptions,
            RunningMode,
        )

        self._mp = mp
        model_path = _ensure_model()

        # MediaPipe の C++ バックエンドは日本語パスを処理できないため
        # model_asset_buffer (バイト列) で読み込む
        with open(model_path, "rb") as f:
            model_data = f.read()

        options = FaceLandmarkerOptions(
            base_options=BaseOptions(model_asset_buffer=model_data),
            running_mode=RunningMode.IMAGE,
            num_faces=max_faces,
            min_face_detection_confidence=min_confidence,
            min_face_presence_confidence=min_confidence,
            output_face_blendshapes=False,
            output_facial_transformation_matrixes=False,
        )
        self._landmarker = FaceLandmarker.create_from_options(options)

    def detect(self, image: ImageRGB) -> Sequence[Sequence[Any]]:
        mp_image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=image)
        result = self._landmarker.detect(mp_image)
        return result.face_landmarks or []

    def close(self) -> None:
        self._landmarker.close()


def load_mediapipe_landmarker(max_faces: int, min_confidence: float = 0.5) -> Landmarker:
    return _MediaPipeLandmarker(max_faces, min_confidence)


# ============================================================
# 座標変換
# ============================================================

def landmarks_to_detection(points: Sequence[Any], img_w: int, img_h: int) -> FaceDetection:
    """正規化ランドマーク列を FaceDetection (ピクセル座標) に変換する。

    Args:
        points: x, y 属性を持つ正規化座標の列 (478 または 468 点)
        img_w: 画像幅
        img_h: 画像高さ

    Returns:
        名前付きグループと余白付きバウンディングボックスを持つ FaceDetection
    """
    pixel: list[Point] = [(float(p.x) * img_w, float(p.y) * img_h) for p in points]

    groups: dict[str, list[Point]] = {}
    for name, indices in GROUP_INDICES.items():
        groups[name] = [pixel[i] for i in indices if i < len(pixel)]

    xs = [p[0] for p in pixel]
    ys = [p[1] for p in pixel]
    x_min = max(min(xs) - BBOX_PADDING, 0.0)
    y_min = max(min(ys) - BBOX_PADDING, 0.0)
    x_max = min(max(xs) + BBOX_PADDING, float(img_w))
    y_max = min(max(ys) + BBOX_PADDING, float(img_h))
    bbox = BoundingBox(x_min, y_min, max(x_max - x_min, 0.0), max(y_max - y_min, 0.0))

    return FaceDetection(bounding_box=bbox, landmarks=groups)


# ============================================================
# FaceLandmarkProvider
# ============================================================

class FaceLandmarkProvider:
    """遅延初期化つきの顔ランドマーク検出器。

    使用例:
        provider = get_landmark_provider()
        faces = provider.detect(image_rgb)   # 顔がなければ []

    コンテキストマネージャ対応:
        with FaceLandmarkProvider(max_faces=3) as provider:
            faces = provider.detect(image_rgb)
    """

    def __init__(
        self,
        max_faces: int = 5,
        min_confidence: float = 0.5,
        loader: Optional[Callable[[int, float], Landmarker]] = None,
    ):
        """
        Args:
            max_faces: 検出する顔の最大数
            min_confidence: 検出の最小信頼度 (0.0-1.0)
            loader: (max_faces, min_confidence) → Landmarker を返す関数
        """
        self._max_faces = max_faces
        self._min_confidence = min_confidence
        self._loader = loader or load_mediapipe_landmarker
        self._landmarker: Optional[Landmarker] = None
        self._init_lock = threading.Lock()
        # MediaPipe の IMAGE モードはスレッドセーフではない
        self._detect_lock = threading.Lock()

    # ------ コンテキストマネージャ ------
    def __enter__(self) -> "FaceLandmarkProvider":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """モデルを解放する。次回の detect() で再読み込みされる。"""
        with self._init_lock:
            if self._landmarker is not None:
                self._landmarker.close()
                self._landmarker = None

    @property
    def loaded(self) -> bool:
        return self._landmarker is not None

    def _ensure_loaded(self) -> Landmarker:
        landmarker = self._landmarker
        if landmarker is not None:
            return landmarker
        with self._init_lock:
            if self._landmarker is None:
                logger.info("[FaceDetector] ランドマークモデルを読み込み中...")
                try:
                    self._landmarker = self._loader(self._max_faces, self._min_confidence)
                except Exception as e:
                    raise DetectionFailure(f"ランドマークモデルの読み込みに失敗: {e}") from e
                logger.info("[FaceDetector] 準備完了 (max_faces=%d)", self._max_faces)
            return self._landmarker

    # ------ メイン検出 ------
    def detect(self, image: ImageRGB) -> list[FaceDetection]:
        """RGB画像から顔を検出する。

        Args:
            image: RGB画像 (numpy.ndarray, shape=(H,W,3), dtype=uint8)

        Returns:
            検出された顔のリスト。顔が見つからない場合は空リスト。

        Raises:
            DetectionFailure: モデルの読み込み・推論に失敗した場合
        """
        landmarker = self._ensure_loaded()
        h, w = image.shape[:2]

        try:
            with self._detect_lock:
                raw_faces = landmarker.detect(image)
        except Exception as e:
            raise DetectionFailure(f"顔検出の推論に失敗: {e}") from e

        faces = [landmarks_to_detection(pts, w, h) for pts in raw_faces if len(pts) > 0]
        logger.debug("[FaceDetector] 検出: %d 顔", len(faces))
        return faces


_shared_provider: Optional[FaceLandmarkProvider] = None
_shared_lock = threading.Lock()


def get_landmark_provider() -> FaceLandmarkProvider:
    """プロセス共有の FaceLandmarkProvider を返す。"""
    global _shared_provider
    if _shared_provider is None:
        with _shared_lock:
            if _shared_provider is None:
                _shared_provider = FaceLandmarkProvider()
    return _shared_provider
