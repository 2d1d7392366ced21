"""
providers/replicate_client.py
=============================
Replicate API 経由の SDXL アダプタ。

モデル: stability-ai/sdxl
マスクは黒 = 保持, 白 = 描き直し (photobooth のマスク規約と同じ)。
画像間変換はマスクを付けずに prompt_strength だけ渡す。

予測 (prediction) を作成してポーリングし、制限時間を過ぎるか
停止を指示されたら予測をキャンセルする。
Replicate クライアントは httpx で通信するので、通信エラーは httpx の例外で届く。
"""

from __future__ import annotations

import io
import logging
import threading
import time
from typing import Any, Optional

import httpx
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

# SDXL on Replicate
SDXL_VERSION = "7762fd07cf82c948538e41f63f77d685e02b063e37e496e96eefd46c929f9bdc"
SDXL_MODEL = f"stability-ai/sdxl:{SDXL_VERSION}"

_TERMINAL = ("succeeded", "failed", "canceled")


class ReplicateService(GenerativeService):
    """Replicate API を使った SDXL 生成。

    使い方:
        service = ReplicateService(token)
        png = service.generate(request, timeout_s=60)

    必要な環境変数:
        REPLICATE_API_TOKEN  — Replicate のAPIトークン
    """

    name = "replicate"
    strength_range = (0.0, 1.0)
    guidance_range = (1.0, 50.0)

    def __init__(
        self,
        api_token: str,
        timeout_s: float = 180.0,
        num_inference_steps: int = 30,
        poll_interval_s: float = 1.0,
    ):
        if not api_token:
            raise ProviderAuthError("REPLICATE_API_TOKEN が設定されていません")
        import replicate

        self._client = replicate.Client(api_token=api_token, timeout=httpx.Timeout(timeout_s))
        self._timeout = timeout_s
        self._steps = num_inference_steps
        self._poll_interval = poll_interval_s
        logger.info("[Replicate] Replicate API (SDXL) 準備完了")

    def _build_input(self, request: GenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "image": io.BytesIO(request.source_image),
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt,
            "prompt_strength": request.strength,
            "guidance_scale": request.guidance_scale,
            "num_inference_steps": self._steps,
            "scheduler": "K_EULER",
        }
        if request.operation == GenerationOperation.INPAINT:
            if request.mask is None:
                raise ValueError("インペイントにはマスクが必要です")
            payload["mask"] = io.BytesIO(request.mask)
        return payload

    def generate(
        self,
        request: GenerationRequest,
        timeout_s: Optional[float] = None,
        stop: Optional[threading.Event] = None,
    ) -> bytes:
        from replicate.exceptions import ReplicateError

        limit = self._timeout if timeout_s is None else min(self._timeout, timeout_s)
        deadline = time.monotonic() + limit

        logger.info(
            "[Replicate] %s 呼び出し (prompt_strength=%.2f)",
            request.operation.value, request.strength,
        )
        try:
            prediction = self._client.predictions.create(
                version=SDXL_VERSION, input=self._build_input(request)
            )
            while prediction.status not in _TERMINAL:
                if (stop is not None and stop.is_set()) or time.monotonic() >= deadline:
                    self._cancel(prediction)
                    raise ProviderTimeout(f"{limit:.0f} 秒以内に生成が終わりませんでした")
                self._wait(stop)
                prediction.reload()
        except ReplicateError as e:
            status = getattr(e, "status", None)
            if status is None:
                raise ProviderServerError(f"Replicate API エラー: {e}") from e
            raise error_from_status(int(status), str(e)) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Replicate API タイムアウト: {e}") from e
        except httpx.TransportError as e:
            raise ProviderServerError(f"Replicate API との通信に失敗: {e}") from e

        if prediction.status != "succeeded":
            raise ProviderServerError(
                f"SDXL の推論に失敗 ({prediction.status}): {getattr(prediction, 'error', None)}"
            )

        output = prediction.output
        if isinstance(output, (list, tuple)):
            output = output[0] if output else None
        if output is None:
            raise InvalidOutput("Replicate が出力を返しませんでした")

        remaining = max(deadline - time.monotonic(), 1.0)
        return self._download_result(output, remaining)

    def _wait(self, stop: Optional[threading.Event]) -> None:
        if stop is not None:
            stop.wait(self._poll_interval)
        else:
            time.sleep(self._poll_interval)

    def _cancel(self, prediction: Any) -> None:
        from replicate.exceptions import ReplicateError

        logger.warning("[Replicate] 予測 %s をキャンセル", getattr(prediction, "id", "?"))
        try:
            prediction.cancel()
        except (ReplicateError, httpx.HTTPError) as e:
            logger.error("[Replicate] キャンセルに失敗: %s", e)

    def _download_result(self, output: Any, timeout_s: float) -> bytes:
        """出力 (FileOutput または URL) から画像バイト列を取得する。"""
        if hasattr(output, "read"):
            try:
                data = output.read()
            except httpx.TimeoutException as e:
                raise ProviderTimeout(f"生成結果のダウンロードがタイムアウト: {e}") from e
            except httpx.TransportError as e:
                raise ProviderServerError(f"生成結果をダウンロードできません: {e}") from e
        else:
            try:
                resp = requests.get(
                    str(output),
                    headers={"User-Agent": "Mozilla/5.0"},
                    timeout=timeout_s,
                )
            except requests.Timeout as e:
                raise ProviderTimeout(f"生成結果のダウンロードがタイムアウト: {e}") from e
            except requests.RequestException as e:
                raise ProviderServerError(f"生成結果をダウンロードできません: {e}") from e
            if resp.status_code != 200:
                raise error_from_status(resp.status_code, "生成結果のダウンロードに失敗")
            data = resp.content

        if not data:
            raise InvalidOutput("生成結果が空です")
        return data
