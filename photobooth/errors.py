"""
photobooth/errors.py
====================
パイプラインで扱う例外の階層。

生成サービス系の例外は retryable フラグを持ち、
オーケストレータはこのフラグだけを見て再試行の可否を判断する。
"""

from __future__ import annotations

from typing import Optional


class PhotoboothError(Exception):
    """フォトブース処理の基底例外。"""

    user_message = "画像の生成に失敗しました。もう一度お試しください。"


class ImageDecodeError(PhotoboothError):
    user_message = "画像を読み込めませんでした。別の写真でお試しください。"


class DetectionFailure(PhotoboothError):
    """顔ランドマークモデルの読み込み・推論に失敗。"""


class MaskGenerationFailure(PhotoboothError):
    """マスク全体の生成に失敗。"""


class OverlayApplicationFailure(PhotoboothError):
    """オーバーレイ合成に失敗 (生成結果はそのまま返す)。"""


# ============================================================
# 生成サービス系
# ============================================================

class ProviderError(PhotoboothError):
    """生成サービス呼び出しの失敗。

    Attributes:
        retryable: 同じ呼び出しを再試行して回復しうるか
        status_code: HTTP ステータス (あれば)
    """

    retryable = False

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    user_message = "生成サービスの認証に失敗しました。スタッフにお知らせください。"


class ProviderQuotaExceeded(ProviderError):
    user_message = "生成サービスの利用上限に達しました。スタッフにお知らせください。"


class ProviderRateLimited(ProviderError):
    user_message = "混み合っています。少し待ってからもう一度お試しください。"


class ProviderClientError(ProviderError):
    user_message = "リクエスト内容に問題がありました。別の写真やプロンプトでお試しください。"


class ProviderTimeout(ProviderError):
    retryable = True
    user_message = "生成に時間がかかりすぎました。もう一度お試しください。"


class ProviderServerError(ProviderError):
    retryable = True
    user_message = "生成サービスが一時的に利用できません。しばらくしてからお試しください。"


class InvalidOutput(ProviderError):
    retryable = True
    user_message = "生成結果が正しく受け取れませんでした。もう一度お試しください。"


def error_from_status(status_code: int, detail: str = "") -> ProviderError:
    """HTTP ステータスを生成サービス例外に変換する。

    Args:
        status_code: HTTP ステータスコード (2xx 以外)
        detail: レスポンス本文などの詳細

    Returns:
        対応する ProviderError のインスタンス
    """
    message = f"HTTP {status_code}: {detail}".strip().rstrip(":")
    if status_code in (401, 403):
        return ProviderAuthError(message, status_code)
    if status_code == 402:
        return ProviderQuotaExceeded(message, status_code)
    if status_code == 429:
        return ProviderRateLimited(message, status_code)
    if status_code in (408, 504):
        return ProviderTimeout(message, status_code)
    if status_code >= 500:
        return ProviderServerError(message, status_code)
    return ProviderClientError(message, status_code)


# ============================================================
# パイプライン最終失敗
# ============================================================

class GenerationFailed(PhotoboothError):
    """再試行・フォールバックを尽くしても生成できなかった。

    Attributes:
        cause: 最後に発生した例外
        attempts_used: 生成サービスへの総呼び出し回数
    """

    def __init__(self, cause: BaseException, attempts_used: int):
        super().__init__(
            f"生成失敗 ({type(cause).__name__}, {attempts_used} 回試行): {cause}"
        )
        self.cause = cause
        self.attempts_used = attempts_used

    @property
    def kind(self) -> str:
        return type(self.cause).__name__

    @property
    def user_message(self) -> str:  # type: ignore[override]
        base = getattr(self.cause, "user_message", PhotoboothError.user_message)
        if self.attempts_used > 1:
            return f"{base} ({self.attempts_used} 回試行しました)"
        return base
