"""
photobooth/types.py
===================
フォトブース生成パイプライン全体で使用するデータ型を一元定義。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

import numpy as np
from numpy.typing import NDArray


# ============================================================
# 基本画像型
# ============================================================

# RGB画像 (Pillow/Streamlit標準) — shape: (H, W, 3), dtype: uint8
ImageRGB = NDArray[np.uint8]

# RGBA画像 (オーバーレイ素材) — shape: (H, W, 4), dtype: uint8
ImageRGBA = NDArray[np.uint8]

# マスク画像 — shape: (H, W), dtype: uint8
# 0 = 元画像を保持, 255 = 再生成, 中間値 = フェザー遷移
MaskImage = NDArray[np.uint8]

Point = tuple[float, float]


# ============================================================
# 列挙型
# ============================================================

class FaceMode(str, Enum):
    """顔の扱い。"""
    PRESERVE_FACE = "preserve_face"   # 顔は元のまま、背景・衣装のみ生成
    REPLACE_FACE = "replace_face"     # 画像全体を再解釈


class GenerationOperation(str, Enum):
    """生成サービスへの呼び出し形態。"""
    INPAINT = "inpaint"
    IMAGE_TO_IMAGE = "image_to_image"


class OverlayKind(str, Enum):
    BORDER = "border"
    CUSTOM = "custom"


class Anchor(str, Enum):
    TOP_LEFT = "top-left"
    TOP_CENTER = "top-center"
    TOP_RIGHT = "top-right"
    CENTER_LEFT = "center-left"
    CENTER = "center"
    CENTER_RIGHT = "center-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_CENTER = "bottom-center"
    BOTTOM_RIGHT = "bottom-right"

    @property
    def horizontal(self) -> str:
        """'left' / 'center' / 'right'"""
        return "center" if self is Anchor.CENTER else self.value.split("-")[1]

    @property
    def vertical(self) -> str:
        """'top' / 'center' / 'bottom'"""
        return "center" if self is Anchor.CENTER else self.value.split("-")[0]


class BlendMode(str, Enum):
    NORMAL = "normal"
    MULTIPLY = "multiply"
    SCREEN = "screen"
    OVERLAY = "overlay"
    SOFT_LIGHT = "soft-light"
    HARD_LIGHT = "hard-light"


class PipelineStage(str, Enum):
    """進捗通知に使うパイプラインの段階。"""
    PREPARING = "preparing"
    DETECTING = "detecting"
    MASKING = "masking"
    GENERATING = "generating"
    VALIDATING = "validating"
    RETRYING = "retrying"
    FALLING_BACK = "falling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UPLOADING = "uploading"


# ============================================================
# 顔検出結果
# ============================================================

# ランドマークグループ名 (画像上の左右)
LANDMARK_GROUPS = (
    "jaw",
    "leftEyebrow",
    "rightEyebrow",
    "leftEye",
    "rightEye",
    "nose",
    "mouth",
)


@dataclass(frozen=True)
class BoundingBox:
    """ピクセル座標の矩形 (x, y, w, h)。"""
    x: float
    y: float
    w: float
    h: float

    @property
    def center(self) -> Point:
        return (self.x + self.w / 2.0, self.y + self.h / 2.0)

    def corners(self) -> list[Point]:
        return [
            (self.x, self.y),
            (self.x + self.w, self.y),
            (self.x + self.w, self.y + self.h),
            (self.x, self.y + self.h),
        ]

    def scaled(self, factor: float) -> "BoundingBox":
        """中心を固定して factor 倍に拡大した矩形を返す。"""
        cx, cy = self.center
        w, h = self.w * factor, self.h * factor
        return BoundingBox(cx - w / 2.0, cy - h / 2.0, w, h)


@dataclass
class FaceDetection:
    """1つの顔の検出結果。

    Attributes:
        bounding_box: 顔の外接矩形 (ピクセル座標)
        landmarks: グループ名 → 点列 (ピクセル座標)
                   jaw / leftEyebrow / rightEyebrow / leftEye / rightEye / nose / mouth
                   left / right は画像上の左右
    """
    bounding_box: BoundingBox
    landmarks: dict[str, list[Point]] = field(default_factory=dict)

    def points(self, name: str) -> NDArray[np.float32]:
        """グループの点列を shape (N, 2) の配列で返す。"""
        pts = self.landmarks.get(name) or []
        return np.asarray(pts, dtype=np.float32).reshape(-1, 2)

    def outline_points(self) -> NDArray[np.float32]:
        """顔の外周点列: 顎ライン → 右眉 (逆順) → 左眉。

        顎ラインは画像左の耳から右の耳へ進むので、
        右眉を逆順に辿ると眉を経由した閉じた輪郭になる。
        """
        return np.concatenate([
            self.points("jaw"),
            self.points("rightEyebrow")[::-1],
            self.points("leftEyebrow"),
        ])


# ============================================================
# 生成リクエスト / 結果
# ============================================================

@dataclass(frozen=True)
class GenerationRequest:
    """生成サービスへの1回分のリクエスト。

    Attributes:
        prompt: 補強済みのプロンプト
        source_image: 作業サイズに整形した PNG バイト列
        mask: PNG エンコード済みマスク (INPAINT のみ)
        mode: 顔の扱い
        operation: 呼び出し形態
        strength: 変換強度 (0.0-1.0)
        guidance_scale: プロンプト追従度
        negative_prompt: 除外プロンプト
    """
    prompt: str
    source_image: bytes
    mode: FaceMode
    operation: GenerationOperation
    strength: float
    guidance_scale: float
    mask: Optional[bytes] = None
    negative_prompt: str = ""

    def clamped(
        self,
        strength_range: tuple[float, float],
        guidance_range: tuple[float, float],
    ) -> "GenerationRequest":
        """サービスの受付範囲に強度とガイダンスを丸めたコピーを返す。"""
        s = min(max(self.strength, strength_range[0]), strength_range[1])
        g = min(max(self.guidance_scale, guidance_range[0]), guidance_range[1])
        return replace(self, strength=s, guidance_scale=g)


@dataclass
class StoredRecord:
    """ギャラリーに保存された1枚の記録。"""
    record_id: str
    path: str
    prompt: str
    content_type: str
    created_at: datetime


@dataclass
class GenerationResult:
    """生成パイプラインの最終結果。

    Attributes:
        encoded_image: PNG エンコード済みの結果画像
        provider_latency_ms: 成功した呼び出しのレイテンシ
        attempts_used: 生成サービスへの総呼び出し回数 (1-3)
        operation: 成功した呼び出し形態
        fell_back: 画像間変換へフォールバックしたか
        faces_detected: 検出された顔の数
        overlay_applied: オーバーレイを合成したか
        overlay_error: オーバーレイ合成の失敗内容 (あれば)
        record: ギャラリー保存の記録 (capture_and_store のみ)
    """
    encoded_image: bytes
    provider_latency_ms: float
    attempts_used: int
    operation: GenerationOperation
    fell_back: bool = False
    faces_detected: int = 0
    overlay_applied: bool = False
    overlay_error: Optional[str] = None
    record: Optional[StoredRecord] = None


# ============================================================
# オーバーレイ
# ============================================================

@dataclass(frozen=True)
class OverlayPlacement:
    """オーバーレイの配置パラメータ。

    Attributes:
        position: 9点アンカー
        scale: ユーザー指定の拡大率 (> 0)
        opacity: 不透明度 (0.0-1.0)
        blend_mode: 合成モード
        offset_x: 水平オフセット (px)
        offset_y: 垂直オフセット (px)
    """
    position: Anchor = Anchor.BOTTOM_RIGHT
    scale: float = 1.0
    opacity: float = 1.0
    blend_mode: BlendMode = BlendMode.NORMAL
    offset_x: int = 0
    offset_y: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.opacity <= 1.0:
            raise ValueError(f"opacity は 0-1 の範囲で指定してください: {self.opacity}")
        if self.scale <= 0.0:
            raise ValueError(f"scale は正の値で指定してください: {self.scale}")


@dataclass
class OverlayConfig:
    """管理側で設定されたアクティブなオーバーレイ (コアからは読み取り専用)。

    Attributes:
        kind: BORDER / CUSTOM
        image: RGBA ビットマップ (パラメトリック枠で未描画なら None)
        placement: 配置パラメータ
        name: 表示名
        border_id: 組み込み枠の ID (パラメトリック枠のみ)
        rendered_size: image を描画したときのキャンバスサイズ (w, h)
    """
    kind: OverlayKind
    image: Optional[ImageRGBA] = None
    placement: OverlayPlacement = field(default_factory=OverlayPlacement)
    name: str = ""
    border_id: Optional[str] = None
    rendered_size: Optional[tuple[int, int]] = None

    @property
    def is_parametric(self) -> bool:
        return self.border_id is not None


# ============================================================
# 進捗通知
# ============================================================

@dataclass(frozen=True)
class ProgressEvent:
    stage: PipelineStage
    percent: int
    message: str = ""
