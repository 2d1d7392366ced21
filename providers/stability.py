"""
providers/stability.py
======================
Stability AI REST API (v2beta) アダプタ。

- インペイント:   POST /v2beta/stable-image/edit/inpaint   (image + mask)
- 画像間変換:     POST /v2beta/stable-image/generate/sd3   (mode=image-to-image)

レスポンスは Accept: image/* で PNG バイト列をそのまま受け取る。
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import requests

from photobooth.errors import (
    InvalidOutput,
    ProviderAuthError,
    ProviderServerError,
    ProviderTimeout,
    error_from_status,
)
from photobooth.types import GenerationOperation, GenerationRequest
from providers.base import GenerativeService

logger = logging.getLogger(__name__)

API_BASE = "https://api.stability.ai/v2beta/stable-image"
INPAINT_URL = f"{API_BASE}/edit/inpaint"
IMAGE_TO_IMAGE_URL = f"{API_BASE}/generate/sd3"


class StabilityService(GenerativeService):
    """Stability AI の画像生成 API クライアント。

    使い方:
        service = StabilityService(api_key)
        png = service.generate(request)

    必要な環境変数:
        STABILITY_API_KEY  — Stability AI の API キー
    """

    name = "stability"
    strength_range = (0.0, 1.0)
    guidance_range = (1.0, 10.0)

    def __init__(
        self,
        api_key: str,
        timeout_s: float = 180.0,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ProviderAuthError("STABILITY_API_KEY が設定されていません")
        self._api_key = api_key
        self._timeout = timeout_s
        self._session = session or requests.Session()
        logger.info("[Stability] Stability AI API 準備完了")

    def close(self) -> None:
        self._session.close()

    def generate(
        self,
        request: GenerationRequest,
        timeout_s: Optional[float] = None,
        stop: Optional[threading.Event] = None,
    ) -> bytes:
        if request.operation == GenerationOperation.INPAINT:
            if request.mask is None:
                raise ValueError("インペイントにはマスクが必要です")
            url = INPAINT_URL
            data = {}
            files = {
                "image": ("image.png", request.source_image, "image/png"),
                "mask": ("mask.png", request.mask, "image/png"),
            }
        else:
            url = IMAGE_TO_IMAGE_URL
            data = {"mode": "image-to-image"}
            files = {"image": ("image.png", request.source_image, "image/png")}

        data.update({
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt,
            "cfg_scale": str(request.guidance_scale),
            "strength": str(request.strength),
            "output_format": "png",
        })

        if stop is not None and stop.is_set():
            raise ProviderTimeout("呼び出し前に制限時間を過ぎました")
        timeout = self._timeout if timeout_s is None else min(self._timeout, timeout_s)

        logger.info(
            "[Stability] %s 呼び出し (strength=%.2f, cfg=%.1f)",
            request.operation.value, request.strength, request.guidance_scale,
        )
        try:
            resp = self._session.post(
                url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Accept": "image/*",
                },
                data=data,
                files=files,
                timeout=timeout,
            )
        except requests.Timeout as e:
            raise ProviderTimeout(f"Stability API タイムアウト: {e}") from e
        except requests.ConnectionError as e:
            raise ProviderServerError(f"Stability API に接続できません: {e}") from e
        except requests.RequestException as e:
            # 途中切断 (ChunkedEncodingError) など
            raise ProviderServerError(f"Stability API との通信に失敗: {e}") from e

        if resp.status_code != 200:
            raise error_from_status(resp.status_code, resp.text[:500])

        if not resp.content:
            raise InvalidOutput("Stability API が空のレスポンスを返しました")
        return resp.content
