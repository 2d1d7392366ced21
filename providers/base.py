"""
providers/base.py
=================
生成サービスアダプタの共通インターフェース。

アダプタは 1 回の呼び出しを行い、失敗を photobooth.errors の
ProviderError 階層に正規化するだけ。再試行・バックオフは行わない
(GenerationOrchestrator の責務)。
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Optional

from photobooth.types import GenerationRequest


class GenerativeService(ABC):
    """生成サービスの抽象基底。

    サブクラスは name / strength_range / guidance_range を定義し、
    generate() を実装する。generate() は同期呼び出しで、
    オーケストレータからワーカースレッド上で実行される。
    """

    name: str = "base"
    strength_range: tuple[float, float] = (0.0, 1.0)
    guidance_range: tuple[float, float] = (1.0, 20.0)

    @abstractmethod
    def generate(
        self,
        request: GenerationRequest,
        timeout_s: Optional[float] = None,
        stop: Optional[threading.Event] = None,
    ) -> bytes:
        """リクエストを送信し、エンコード済み画像を返す。

        Args:
            request: 生成リクエスト
            timeout_s: この呼び出しの制限時間 (秒)。通信はこの時間で打ち切る
            stop: セットされたら実行中の呼び出しを中止する (タイムアウト時に
                  オーケストレータがセットする)

        Raises:
            ProviderError: 認証・上限・レート制限・タイムアウト・サーバー/クライアント障害
        """

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
