"""
photobooth/pipeline.py
======================
生成オーケストレータ。

1 回のリクエストを以下の順で直列に処理する:
    準備 → 顔検出 → マスク生成 → 生成 → 検証 → (成功 | 再試行 | フォールバック | 失敗)

- 生成サービスへの呼び出しは 1 セッションあたり最大 3 回。
- 一時的な失敗 (サーバー障害・タイムアウト・不正な出力) は指数バックオフで再試行。
- 顔保持 (インペイント) が試行枠を使い切ったら、一度だけ画像間変換に切り替える。
  切り替えても試行回数のカウンタは引き継ぐ。
- オーバーレイ合成やギャラリー保存の失敗は生成結果を無効にしない。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from photobooth.config import PipelineSettings
from photobooth.errors import (
    GenerationFailed,
    ImageDecodeError,
    InvalidOutput,
    MaskGenerationFailure,
    ProviderError,
    ProviderServerError,
    ProviderTimeout,
)
from photobooth.image_io import decode_image, decode_image_async, encode_png, fit_to_square
from photobooth.mask_synth import synthesize
from photobooth.overlay import apply_overlay
from photobooth.stores import GalleryStore, OverlayConfigStore
from photobooth.types import (
    FaceDetection,
    FaceMode,
    GenerationOperation,
    GenerationRequest,
    GenerationResult,
    ImageRGB,
    PipelineStage,
    ProgressEvent,
)
from providers.base import GenerativeService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Any]


# ============================================================
# プロンプト
# ============================================================

PRESERVE_FACE_PROMPT = (
    "keep exact same face, preserve facial structure and bone structure, "
    "same person, same facial features, transform only the background, "
    "clothing and surroundings, seamless blending"
)
PRESERVE_FACE_NEGATIVE = (
    "different person, face swap, changed face, distorted face, "
    "visible mask boundary, seams, halo, blurry, low quality, deformed"
)
REPLACE_FACE_PROMPT = (
    "generate new face that fits the scene, cohesive lighting, "
    "natural skin texture, highly detailed"
)
REPLACE_FACE_NEGATIVE = (
    "blurry, low quality, deformed face, bad anatomy, extra limbs, "
    "watermark, text"
)


def build_request(
    prompt: str,
    source_image: bytes,
    mode: FaceMode,
    settings: PipelineSettings,
    mask: Optional[bytes] = None,
) -> GenerationRequest:
    """モード別に補強したプロンプトで生成リクエストを組み立てる。

    Args:
        prompt: ユーザーのプロンプト
        source_image: 作業サイズの PNG
        mode: PRESERVE_FACE ならインペイント、REPLACE_FACE なら画像間変換
        settings: 強度・ガイダンスの設定
        mask: PRESERVE_FACE 用のマスク PNG

    Returns:
        GenerationRequest (サービスの範囲へのクランプ前)
    """
    if mode == FaceMode.PRESERVE_FACE:
        if mask is None:
            raise ValueError("PRESERVE_FACE にはマスクが必要です")
        return GenerationRequest(
            prompt=f"{prompt}, {PRESERVE_FACE_PROMPT}",
            negative_prompt=PRESERVE_FACE_NEGATIVE,
            source_image=source_image,
            mask=mask,
            mode=mode,
            operation=GenerationOperation.INPAINT,
            strength=settings.preserve_strength,
            guidance_scale=settings.guidance_scale,
        )

    return GenerationRequest(
        prompt=f"{prompt}, {REPLACE_FACE_PROMPT}",
        negative_prompt=REPLACE_FACE_NEGATIVE,
        source_image=source_image,
        mask=None,
        mode=mode,
        operation=GenerationOperation.IMAGE_TO_IMAGE,
        strength=settings.replace_strength,
        guidance_scale=settings.guidance_scale,
    )


def validate_output(data: bytes) -> ImageRGB:
    """生成結果が空でなく画像としてデコードできることを確認する。

    Raises:
        InvalidOutput: 空データ・デコード不能
    """
    if not data:
        raise InvalidOutput("生成結果が空です")
    try:
        return decode_image(data)
    except ImageDecodeError as e:
        raise InvalidOutput(f"生成結果をデコードできません: {e}") from e


# ============================================================
# 進捗通知
# ============================================================

class _ProgressReporter:
    """購読者の例外でパイプラインを止めない進捗通知。"""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback

    def emit(self, stage: PipelineStage, percent: int, message: str = "") -> None:
        logger.debug("[Pipeline] %s %d%% %s", stage.value, percent, message)
        if self._callback is None:
            return
        try:
            self._callback(ProgressEvent(stage=stage, percent=percent, message=message))
        except Exception:
            logger.warning("[Pipeline] 進捗通知の購読者でエラー", exc_info=True)


# ============================================================
# GenerationOrchestrator
# ============================================================

class GenerationOrchestrator:
    """顔を考慮した生成パイプライン。

    使い方:
        orchestrator = GenerationOrchestrator(
            service=create_service(settings),
            settings=settings,
            landmark_provider=get_landmark_provider(),
            overlay_store=JsonOverlayStore(settings.overlay_config_path),
            gallery_store=LocalGalleryStore(settings.gallery_dir),
        )
        result = asyncio.run(orchestrator.generate(photo_bytes, "in a jungle"))

    インスタンスは状態を持たないので、複数のリクエストから並行して使える。
    """

    def __init__(
        self,
        service: GenerativeService,
        settings: Optional[PipelineSettings] = None,
        landmark_provider: Any = None,
        overlay_store: Optional[OverlayConfigStore] = None,
        gallery_store: Optional[GalleryStore] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            service: 生成サービスアダプタ
            settings: パイプライン設定 (省略時は既定値)
            landmark_provider: detect(image) → list[FaceDetection] を持つ検出器
                               (省略時はプロセス共有の FaceLandmarkProvider)
            overlay_store: アクティブなオーバーレイの取得元
            gallery_store: 結果の保存先 (capture_and_store で使用)
            sleep: バックオフ待機関数
        """
        if landmark_provider is None:
            from photobooth.face_detector import get_landmark_provider
            landmark_provider = get_landmark_provider()

        self._service = service
        self._settings = settings or PipelineSettings()
        self._landmarks = landmark_provider
        self._overlays = overlay_store
        self._gallery = gallery_store
        self._sleep = sleep

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    # ------ 公開 API ------
    async def generate(
        self,
        image_bytes: bytes,
        prompt: str = "",
        mode: FaceMode = FaceMode.PRESERVE_FACE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        """写真 1 枚を生成パイプラインに通す。

        Args:
            image_bytes: エンコード済みの入力写真
            prompt: ユーザーのプロンプト (空なら既定のプロンプト)
            mode: 顔の扱い
            on_progress: 進捗イベントの購読者 (省略可)

        Returns:
            GenerationResult

        Raises:
            GenerationFailed: 入力不正・マスク生成失敗・試行枠の使い切り
        """
        progress = _ProgressReporter(on_progress)
        try:
            result = await self._run(image_bytes, prompt, mode, progress)
        except GenerationFailed as e:
            progress.emit(PipelineStage.FAILED, 100, e.user_message)
            raise
        progress.emit(PipelineStage.SUCCEEDED, 100, "完成しました")
        return result

    async def capture_and_store(
        self,
        image_bytes: bytes,
        prompt: str = "",
        mode: FaceMode = FaceMode.PRESERVE_FACE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        """生成してからギャラリーに保存する。

        保存の失敗はログに残すだけで、生成結果はそのまま返す
        (result.record が None になる)。
        """
        progress = _ProgressReporter(on_progress)
        try:
            result = await self._run(image_bytes, prompt, mode, progress)
        except GenerationFailed as e:
            progress.emit(PipelineStage.FAILED, 100, e.user_message)
            raise

        if self._gallery is not None:
            progress.emit(PipelineStage.UPLOADING, 95, "ギャラリーに保存中...")
            try:
                result.record = await asyncio.to_thread(
                    self._gallery.save, result.encoded_image, self._effective_prompt(prompt), "image/png"
                )
            except Exception as e:
                logger.error("[Pipeline] ギャラリー保存に失敗 (生成結果は有効): %s", e)

        progress.emit(PipelineStage.SUCCEEDED, 100, "完成しました")
        return result

    # ------ 内部処理 ------
    def _effective_prompt(self, prompt: str) -> str:
        return (prompt or "").strip() or self._settings.default_prompt

    async def _run(
        self,
        image_bytes: bytes,
        prompt: str,
        mode: FaceMode,
        progress: _ProgressReporter,
    ) -> GenerationResult:
        s = self._settings
        prompt = self._effective_prompt(prompt)

        # --- 準備 ---
        progress.emit(PipelineStage.PREPARING, 5, "画像を準備中...")
        try:
            source = await decode_image_async(image_bytes)
        except ImageDecodeError as e:
            raise GenerationFailed(e, 0) from e
        canvas = await asyncio.to_thread(fit_to_square, source, s.working_size)
        source_png = await asyncio.to_thread(encode_png, canvas)

        # --- 顔検出 ---
        progress.emit(PipelineStage.DETECTING, 15, "顔を検出中...")
        faces = await self._detect(canvas)

        # --- マスク生成 (顔保持のみ) ---
        mask_png: Optional[bytes] = None
        if mode == FaceMode.PRESERVE_FACE:
            progress.emit(PipelineStage.MASKING, 25, "マスクを作成中...")
            try:
                mask = await asyncio.to_thread(
                    synthesize, canvas, faces, mode, s.feather_radius, s.expansion_factor
                )
            except MaskGenerationFailure as e:
                raise GenerationFailed(e, 0) from e
            mask_png = await asyncio.to_thread(encode_png, mask)

        # --- 生成 ---
        request = build_request(prompt, source_png, mode, s, mask=mask_png)
        encoded, decoded, latency_ms, attempts, operation, fell_back = (
            await self._dispatch_with_retries(request, progress)
        )

        result = GenerationResult(
            encoded_image=encoded,
            provider_latency_ms=latency_ms,
            attempts_used=attempts,
            operation=operation,
            fell_back=fell_back,
            faces_detected=len(faces),
        )
        await self._apply_overlay(result, decoded)
        logger.info(
            "[Pipeline] 生成成功 (%s, %d 回試行, %.0f ms, 顔 %d)",
            operation.value, attempts, latency_ms, len(faces),
        )
        return result

    async def _detect(self, canvas: ImageRGB) -> list[FaceDetection]:
        try:
            return list(await asyncio.to_thread(self._landmarks.detect, canvas))
        except Exception as e:
            # 検出に失敗しても顔なしとして続行 (フォールバックマスク)
            logger.warning("[Pipeline] 顔検出に失敗、顔なしとして続行: %s", e)
            return []

    async def _call_once(self, request: GenerationRequest) -> tuple[bytes, float]:
        """制限時間付きで 1 回呼び出す。

        制限時間はアダプタにも渡し、時間切れ・キャンセル時は stop をセットして
        ワーカースレッド上の呼び出しに中止を伝える。
        """
        timeout = self._settings.request_timeout_s
        stop = threading.Event()
        start = time.perf_counter()
        try:
            data = await asyncio.wait_for(
                asyncio.to_thread(self._service.generate, request, timeout, stop),
                timeout=timeout,
            )
        except asyncio.CancelledError:
            stop.set()
            raise
        except asyncio.TimeoutError as e:
            stop.set()
            raise ProviderTimeout(
                f"{self._settings.request_timeout_s:.0f} 秒以内に応答がありません"
            ) from e
        return data, (time.perf_counter() - start) * 1000.0

    async def _dispatch_with_retries(
        self,
        request: GenerationRequest,
        progress: _ProgressReporter,
    ) -> tuple[bytes, ImageRGB, float, int, GenerationOperation, bool]:
        """試行枠の範囲で生成サービスを呼び出す。

        インペイントには inpaint_attempts 回を割り当て、使い切ったら
        画像間変換に一度だけ切り替えて残りの枠を使う。

        Returns:
            (PNG バイト列, デコード済み画像, レイテンシ ms, 総試行回数, 成功した呼び出し形態, フォールバックしたか)
        """
        s = self._settings
        svc = self._service

        plan: list[tuple[GenerationRequest, int]] = []
        if request.operation == GenerationOperation.INPAINT:
            fallback = replace(
                request,
                operation=GenerationOperation.IMAGE_TO_IMAGE,
                mask=None,
                strength=s.fallback_strength,
            )
            plan.append((request, s.inpaint_attempts))
            plan.append((fallback, s.max_attempts))
        else:
            plan.append((request, s.max_attempts))

        attempts = 0
        fell_back = False
        last_error: Optional[ProviderError] = None

        for stage_index, (stage_request, budget) in enumerate(plan):
            if attempts >= s.max_attempts:
                break
            if stage_index > 0:
                fell_back = True
                logger.warning(
                    "[Pipeline] インペイントが %d 回失敗、画像間変換にフォールバック", attempts
                )
                progress.emit(PipelineStage.FALLING_BACK, 40 + attempts * 15, "別の方法で再生成します...")

            stage_request = stage_request.clamped(svc.strength_range, svc.guidance_range)
            stage_attempts = 0
            while stage_attempts < budget and attempts < s.max_attempts:
                if attempts > 0:
                    delay = s.backoff_base_s * (2 ** (attempts - 1))
                    progress.emit(
                        PipelineStage.RETRYING, 40 + attempts * 15,
                        f"再試行します ({attempts + 1}/{s.max_attempts})",
                    )
                    await self._sleep(delay)

                attempts += 1
                stage_attempts += 1
                progress.emit(
                    PipelineStage.GENERATING, 40 + (attempts - 1) * 15,
                    f"AI が生成中... ({attempts}/{s.max_attempts})",
                )
                try:
                    data, latency_ms = await self._call_once(stage_request)
                    progress.emit(PipelineStage.VALIDATING, 85, "結果を確認中...")
                    decoded = await asyncio.to_thread(validate_output, data)
                except ProviderError as e:
                    last_error = e
                    logger.warning(
                        "[Pipeline] 生成失敗 (%s, 試行 %d/%d): %s",
                        type(e).__name__, attempts, s.max_attempts, e,
                    )
                    if not e.retryable:
                        raise GenerationFailed(e, attempts) from e
                    continue
                except Exception as e:
                    # 分類外の例外は再試行せず、GenerationFailed として返す
                    logger.error(
                        "[Pipeline] 想定外のエラー (%s, 試行 %d/%d): %s",
                        type(e).__name__, attempts, s.max_attempts, e,
                    )
                    raise GenerationFailed(e, attempts) from e

                return data, decoded, latency_ms, attempts, stage_request.operation, fell_back

        if last_error is None:
            raise GenerationFailed(ProviderServerError("生成サービスを呼び出せませんでした"), attempts)
        raise GenerationFailed(last_error, attempts)

    async def _apply_overlay(self, result: GenerationResult, decoded: ImageRGB) -> None:
        """アクティブなオーバーレイを合成する。失敗しても生成結果はそのまま。"""
        if self._overlays is None:
            return
        try:
            config = await asyncio.to_thread(self._overlays.get_active_overlay)
            if config is None:
                return
            composed = await asyncio.to_thread(
                apply_overlay, decoded, config, self._overlays.regenerate_border
            )
            result.encoded_image = await asyncio.to_thread(encode_png, composed)
            result.overlay_applied = True
        except Exception as e:
            logger.warning("[Pipeline] オーバーレイ合成に失敗、合成なしの結果を返します: %s", e)
            result.overlay_error = str(e)
