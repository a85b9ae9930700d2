from __future__ import annotations

from pathlib import Path

import pytest

from pixelforge.config import ForgeSettings
from pixelforge.core.monitor import PipelineMonitor
from pixelforge.core.records import JsonAssetRecordStore
from pixelforge_shared.artifact_store import ArtifactStore


@pytest.fixture
def settings(tmp_path: Path) -> ForgeSettings:
    return ForgeSettings(
        storage_dir=tmp_path / "data",
        public_base_url="http://testserver",
        generation_service_url="http://gradio.test",
        max_concurrent_jobs=1,
        cleanup_interval_seconds=3600,
    )


@pytest.fixture
def store(settings: ForgeSettings) -> ArtifactStore:
    artifacts = ArtifactStore(settings.uploads_dir, settings.public_base_url, settings.uploads_mount_path)
    artifacts.ensure_layout()
    return artifacts


@pytest.fixture
def monitor() -> PipelineMonitor:
    return PipelineMonitor(max_events=100)


@pytest.fixture
def records(settings: ForgeSettings, store: ArtifactStore) -> JsonAssetRecordStore:
    return JsonAssetRecordStore(settings.users_dir, store)
