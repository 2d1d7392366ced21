"""
providers/factory.py
====================
設定から生成サービスアダプタを選ぶ。
"""

from __future__ import annotations

from photobooth.config import PipelineSettings
from providers.base import GenerativeService


def create_service(settings: PipelineSettings) -> GenerativeService:
    """settings.image_provider に応じたアダプタを生成する。

    Raises:
        ProviderAuthError: 選んだサービスの認証情報が未設定
        ValueError: 未知のサービス名
    """
    if settings.image_provider == "stability":
        from providers.stability import StabilityService
        return StabilityService(settings.stability_api_key, timeout_s=settings.request_timeout_s)

    if settings.image_provider == "replicate":
        from providers.replicate_client import ReplicateService
        return ReplicateService(settings.replicate_api_token, timeout_s=settings.request_timeout_s)

    raise ValueError(f"未知の生成サービス: {settings.image_provider!r}")
