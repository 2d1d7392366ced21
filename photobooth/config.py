"""
photobooth/config.py
====================
パイプライン設定。.env / 環境変数から読み込む。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = (
    "professional portrait photo, cinematic lighting, vibrant colors, "
    "highly detailed background"
)

# 顔保持時の強度帯・顔置換時の強度帯
PRESERVE_STRENGTH_RANGE = (0.7, 0.85)
REPLACE_STRENGTH_RANGE = (0.5, 0.7)

# 1 セッションあたりの生成呼び出し上限
MAX_ATTEMPTS_LIMIT = 3


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[Config] %s の値が不正です (%r)。既定値 %s を使用", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


@dataclass
class PipelineSettings:
    """生成パイプラインの設定値。

    Attributes:
        working_size: 生成サービスに渡す正方形の一辺 (px)
        feather_radius: マスク境界のぼかし半径 (px)
        expansion_factor: 顔輪郭の拡大率
        max_attempts: 生成呼び出しの総上限 (最大 3)
        inpaint_attempts: インペイントに割り当てる試行数
        backoff_base_s: 再試行待ちの基準秒数 (指数的に増加)
        request_timeout_s: 1 回の呼び出しのタイムアウト秒数
        preserve_strength: 顔保持モードの強度
        replace_strength: 顔置換モードの強度
        fallback_strength: 画像間変換フォールバック時の強度
        guidance_scale: プロンプト追従度
        image_provider: "stability" / "replicate"
    """
    working_size: int = 1024
    feather_radius: int = 15
    expansion_factor: float = 1.2
    max_attempts: int = 3
    inpaint_attempts: int = 2
    backoff_base_s: float = 1.0
    request_timeout_s: float = 180.0
    preserve_strength: float = 0.78
    replace_strength: float = 0.6
    fallback_strength: float = 0.45
    guidance_scale: float = 7.0
    image_provider: str = "stability"
    stability_api_key: str = ""
    replicate_api_token: str = ""
    gallery_dir: str = "gallery"
    overlay_config_path: str = "overlays.json"
    default_prompt: str = DEFAULT_PROMPT

    def __post_init__(self) -> None:
        self.max_attempts = int(_clamp(self.max_attempts, 1, MAX_ATTEMPTS_LIMIT))
        # フォールバック用に最低 1 回分を残す
        self.inpaint_attempts = int(
            _clamp(self.inpaint_attempts, 1, max(self.max_attempts - 1, 1))
        )
        self.preserve_strength = _clamp(self.preserve_strength, *PRESERVE_STRENGTH_RANGE)
        self.replace_strength = _clamp(self.replace_strength, *REPLACE_STRENGTH_RANGE)
        self.fallback_strength = _clamp(self.fallback_strength, 0.0, 1.0)
        self.feather_radius = max(int(self.feather_radius), 0)
        self.expansion_factor = max(float(self.expansion_factor), 1.0)
        self.backoff_base_s = max(float(self.backoff_base_s), 0.0)
        self.image_provider = self.image_provider.strip().lower()

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """.env と環境変数から設定を組み立てる。"""
        load_dotenv()
        return cls(
            working_size=_env_int("PHOTOBOOTH_WORKING_SIZE", 1024),
            feather_radius=_env_int("PHOTOBOOTH_FEATHER_RADIUS", 15),
            expansion_factor=_env_float("PHOTOBOOTH_EXPANSION_FACTOR", 1.2),
            max_attempts=_env_int("PHOTOBOOTH_MAX_ATTEMPTS", 3),
            inpaint_attempts=_env_int("PHOTOBOOTH_INPAINT_ATTEMPTS", 2),
            backoff_base_s=_env_float("PHOTOBOOTH_BACKOFF_BASE", 1.0),
            request_timeout_s=_env_float("PHOTOBOOTH_REQUEST_TIMEOUT", 180.0),
            image_provider=os.getenv("IMAGE_PROVIDER", "stability"),
            stability_api_key=os.getenv("STABILITY_API_KEY", ""),
            replicate_api_token=os.getenv("REPLICATE_API_TOKEN", ""),
            gallery_dir=os.getenv("PHOTOBOOTH_GALLERY_DIR", "gallery"),
            overlay_config_path=os.getenv("PHOTOBOOTH_OVERLAY_CONFIG", "overlays.json"),
            default_prompt=os.getenv("PHOTOBOOTH_PROMPT", DEFAULT_PROMPT),
        )
