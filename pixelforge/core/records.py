"""
Per-user asset collections.

The pipeline only talks to records through ``AssetRecordManager``; the
shipped implementation keeps one JSON document per user on disk.  There is
no optimistic-concurrency token: every write re-reads the collection under
the store lock and merges into the freshest copy (last writer wins).
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from pixelforge_shared.artifact_store import ArtifactStore
from pixelforge_shared.files import ensure_dir, safe_name

from ..schemas import AssetRecord, AssetStatus

logger = logging.getLogger(__name__)


class AssetNotFoundError(KeyError):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AssetRecordManager(Protocol):
    async def create_asset(
        self, user_id: str, image_locator: str, meta: dict[str, Any] | None = None
    ) -> AssetRecord: ...

    async def get_asset(self, user_id: str, asset_id: str) -> AssetRecord: ...

    async def list_assets(self, user_id: str) -> list[AssetRecord]: ...

    async def update_asset_meta(self, user_id: str, asset_id: str, fields: dict[str, Any]) -> AssetRecord: ...

    async def delete_asset(self, user_id: str, asset_id: str) -> bool: ...


def merge_fields(record: AssetRecord, fields: dict[str, Any]) -> AssetRecord:
    """
    Merge ``fields`` (snake_case) into ``record``.  ``meta`` is merged one
    level deep, and a ``None`` never clears an existing segmented image.
    """
    current = record.model_dump()
    updates = dict(fields)
    meta_updates = updates.pop("meta", None) or {}
    updates.pop("id", None)

    merged = {**current, **updates}
    meta = dict(current.get("meta") or {})
    for key, value in meta_updates.items():
        if value is None and key == "segmented_image" and meta.get(key):
            continue
        meta[key] = value
    merged["meta"] = meta
    return AssetRecord.model_validate(merged)


class JsonAssetRecordStore:
    def __init__(self, users_dir: Path, artifacts: ArtifactStore):
        self.users_dir = users_dir
        self.artifacts = artifacts
        self._lock = asyncio.Lock()

    def _path(self, user_id: str) -> Path:
        return self.users_dir / f"{safe_name(user_id, 'anonymous')}.json"

    def _load(self, user_id: str) -> list[AssetRecord]:
        path = self._path(user_id)
        if not path.is_file():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        return [AssetRecord.model_validate(item) for item in raw.get("assets", [])]

    def _save(self, user_id: str, assets: list[AssetRecord]) -> None:
        path = self._path(user_id)
        ensure_dir(path.parent)
        body = {"userId": user_id, "assets": [a.model_dump(mode="json", by_alias=True) for a in assets]}
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(body, indent=2), encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _index(assets: list[AssetRecord], asset_id: str) -> int:
        for idx, asset in enumerate(assets):
            if asset.id == asset_id:
                return idx
        raise AssetNotFoundError(f"Asset not found: {asset_id}")

    async def create_asset(
        self, user_id: str, image_locator: str, meta: dict[str, Any] | None = None
    ) -> AssetRecord:
        now = _utc_now()
        record = AssetRecord(
            id=uuid.uuid4().hex[:24],
            image_url=image_locator,
            glb_url=None,
            status=AssetStatus.pending,
            meta={"uploaded_at": now, **(meta or {})},
            created_at=now,
        )
        async with self._lock:
            assets = self._load(user_id)
            assets.insert(0, record)
            self._save(user_id, assets)
        logger.info("Created asset %s for user %s", record.id, user_id)
        return record

    async def get_asset(self, user_id: str, asset_id: str) -> AssetRecord:
        async with self._lock:
            assets = self._load(user_id)
            return assets[self._index(assets, asset_id)]

    async def list_assets(self, user_id: str) -> list[AssetRecord]:
        async with self._lock:
            return self._load(user_id)

    async def update_asset_meta(self, user_id: str, asset_id: str, fields: dict[str, Any]) -> AssetRecord:
        async with self._lock:
            assets = self._load(user_id)
            idx = self._index(assets, asset_id)
            updated = merge_fields(assets[idx], fields)
            assets[idx] = updated
            self._save(user_id, assets)
        return updated

    async def delete_asset(self, user_id: str, asset_id: str) -> bool:
        async with self._lock:
            assets = self._load(user_id)
            try:
                idx = self._index(assets, asset_id)
            except AssetNotFoundError:
                return False
            record = assets.pop(idx)
            self._save(user_id, assets)

        for locator in record.locators():
            self.artifacts.delete(locator)
        logger.info("Deleted asset %s for user %s", asset_id, user_id)
        return True
