"""
photobooth/stores.py
====================
パイプラインの外部協調先: ギャラリー保存とオーバーレイ設定ストア。

コアはどちらも Protocol 越しに扱う。同梱の実装はローカルファイル版:
  - LocalGalleryStore: 生成結果を <uuid>.png として保存し index.json に追記
  - JsonOverlayStore:  管理画面が書き出した JSON を読むだけ (書き込まない)
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from photobooth.borders import available_borders, generate_border
from photobooth.errors import PhotoboothError
from photobooth.image_io import decode_rgba, from_data_url
from photobooth.types import (
    Anchor,
    BlendMode,
    ImageRGBA,
    OverlayConfig,
    OverlayKind,
    OverlayPlacement,
    StoredRecord,
)

logger = logging.getLogger(__name__)

# 組み込みフレームを読み込み時に描画する標準解像度
STANDARD_BORDER_SIZE = (512, 512)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


class GalleryStore(Protocol):
    def save(self, result_image: bytes, prompt: str, content_type: str) -> StoredRecord: ...


class OverlayConfigStore(Protocol):
    def get_active_overlay(self) -> Optional[OverlayConfig]: ...

    def regenerate_border(self, border_id: str, width: int, height: int) -> ImageRGBA: ...


# ============================================================
# ギャラリー
# ============================================================

class LocalGalleryStore:
    """ローカルディレクトリへのギャラリー保存。

    使い方:
        gallery = LocalGalleryStore("gallery")
        record = gallery.save(png_bytes, "cyberpunk city", "image/png")
        records = gallery.list_records()
    """

    INDEX_FILENAME = "index.json"

    def __init__(self, root: str):
        self._root = root
        self._lock = threading.Lock()

    @property
    def index_path(self) -> str:
        return os.path.join(self._root, self.INDEX_FILENAME)

    def save(self, result_image: bytes, prompt: str, content_type: str = "image/png") -> StoredRecord:
        if not result_image:
            raise ValueError("保存する画像データが空です")

        record_id = uuid.uuid4().hex
        filename = record_id + _EXTENSIONS.get(content_type, ".png")
        path = os.path.join(self._root, filename)
        record = StoredRecord(
            record_id=record_id,
            path=path,
            prompt=prompt,
            content_type=content_type,
            created_at=datetime.now(timezone.utc),
        )

        with self._lock:
            os.makedirs(self._root, exist_ok=True)
            with open(path, "wb") as f:
                f.write(result_image)

            entries = self._read_index()
            entry = asdict(record)
            entry["created_at"] = record.created_at.isoformat()
            entries.append(entry)
            with open(self.index_path, "w", encoding="utf-8") as f:
                json.dump(entries, f, ensure_ascii=False, indent=2)

        logger.info("[Gallery] 保存: %s", path)
        return record

    def list_records(self) -> list[StoredRecord]:
        """保存済みの記録を古い順に返す。"""
        with self._lock:
            entries = self._read_index()
        return [
            StoredRecord(
                record_id=e["record_id"],
                path=e["path"],
                prompt=e["prompt"],
                content_type=e["content_type"],
                created_at=datetime.fromisoformat(e["created_at"]),
            )
            for e in entries
        ]

    def _read_index(self) -> list[dict[str, Any]]:
        if not os.path.exists(self.index_path):
            return []
        with open(self.index_path, "r", encoding="utf-8") as f:
            return json.load(f)


# ============================================================
# オーバーレイ設定
# ============================================================

def _placement_from(settings: dict[str, Any]) -> OverlayPlacement:
    return OverlayPlacement(
        position=Anchor(settings.get("position", Anchor.BOTTOM_RIGHT.value)),
        scale=float(settings.get("scale", 1.0)),
        opacity=float(settings.get("opacity", 1.0)),
        blend_mode=BlendMode(settings.get("blendMode", BlendMode.NORMAL.value)),
        offset_x=int(settings.get("offsetX", 0)),
        offset_y=int(settings.get("offsetY", 0)),
    )


class JsonOverlayStore:
    """JSON ファイルに保存されたオーバーレイ設定を読む。

    ファイルはオーバーレイ項目のリストで、最後の項目がアクティブ:
        [
          {"name": "枠", "type": "border", "borderId": "minimal-line",
           "settings": {"position": "center", "scale": 1.0, "opacity": 1.0,
                        "blendMode": "normal", "offsetX": 0, "offsetY": 0}},
          {"name": "ロゴ", "type": "custom", "image": "data:image/png;base64,...",
           "settings": {...}}
        ]
    image はデータ URL か、JSON ファイルからの相対パス。
    """

    def __init__(self, path: str, border_size: tuple[int, int] = STANDARD_BORDER_SIZE):
        self._path = path
        self._border_size = border_size

    def regenerate_border(self, border_id: str, width: int, height: int) -> ImageRGBA:
        return generate_border(border_id, width, height)

    def get_active_overlay(self) -> Optional[OverlayConfig]:
        """アクティブなオーバーレイを返す。未設定・読み込み失敗なら None。"""
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                overlays = json.load(f)
            if not overlays:
                return None
            return self._to_config(overlays[-1])
        except (OSError, ValueError, KeyError, TypeError, PhotoboothError) as e:
            logger.error("[OverlayStore] オーバーレイ設定の読み込みに失敗: %s", e)
            return None

    def _to_config(self, entry: dict[str, Any]) -> OverlayConfig:
        kind = OverlayKind(entry.get("type", OverlayKind.CUSTOM.value))
        placement = _placement_from(entry.get("settings") or {})
        name = entry.get("name", "")

        border_id = entry.get("borderId")
        if kind == OverlayKind.BORDER and border_id:
            if border_id not in available_borders():
                raise KeyError(
                    f"未知のフレーム {border_id!r} (利用可能: {', '.join(available_borders())})"
                )
            w, h = self._border_size
            logger.info("[OverlayStore] 組み込みフレームを読み込み: %s", border_id)
            return OverlayConfig(
                kind=kind,
                image=self.regenerate_border(border_id, w, h),
                placement=placement,
                name=name,
                border_id=border_id,
                rendered_size=(w, h),
            )

        return OverlayConfig(
            kind=kind,
            image=self._load_image(entry["image"]),
            placement=placement,
            name=name,
        )

    def _load_image(self, ref: str) -> ImageRGBA:
        if ref.startswith("data:"):
            return decode_rgba(from_data_url(ref))
        path = ref if os.path.isabs(ref) else os.path.join(os.path.dirname(self._path), ref)
        with open(path, "rb") as f:
            return decode_rgba(f.read())
