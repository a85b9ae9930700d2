from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from pixelforge.config import ForgeSettings
from pixelforge.core.monitor import PipelineMonitor
from pixelforge.core.orchestrator import MeshTask
from pixelforge.job_manager import GenerationJobManager, QueueFullError
from pixelforge.schemas import GenerationJobStatus, GenerationParams, MeshOutcome


def _task(asset_id: str = "a1") -> MeshTask:
    return MeshTask("u1", asset_id, "http://testserver/uploads/images/a.png", None, GenerationParams(seed=3))


class TestGenerationJobManager:
    def test_successful_job(self, settings: ForgeSettings, monitor: PipelineMonitor) -> None:
        async def work(task: MeshTask) -> MeshOutcome:
            return MeshOutcome(asset_id=task.asset_id, glb_url="http://testserver/uploads/glb/m.glb")

        async def scenario():
            jobs = GenerationJobManager(settings, monitor)
            await jobs.startup()
            try:
                record = await jobs.submit(_task(), work)
                return await jobs.wait_for_completion(record.id, timeout_seconds=5)
            finally:
                await jobs.shutdown()

        record = asyncio.run(scenario())
        assert record.status == GenerationJobStatus.succeeded
        assert record.detail == "GLB ready"
        view = record.as_view()
        assert view.request_summary["asset_id"] == "a1"
        assert view.result.glb_url.endswith("m.glb")

    def test_crashing_job_is_reported_not_swallowed(self, settings: ForgeSettings, monitor: PipelineMonitor) -> None:
        async def work(task: MeshTask) -> MeshOutcome:
            raise OSError("disk full")

        async def scenario():
            jobs = GenerationJobManager(settings, monitor)
            await jobs.startup()
            try:
                record = await jobs.submit(_task("a9"), work)
                return await jobs.wait_for_completion(record.id, timeout_seconds=5)
            finally:
                await jobs.shutdown()

        record = asyncio.run(scenario())
        assert record.status == GenerationJobStatus.failed
        assert record.error == {"message": "disk full", "type": "OSError"}
        events = monitor.recent(kind="job_failed")
        assert len(events) == 1
        assert events[0].asset_id == "a9"

    def test_queue_full(self, tmp_path, monitor: PipelineMonitor) -> None:
        settings = ForgeSettings(storage_dir=tmp_path, max_queue_size=1, max_concurrent_jobs=1)

        async def work(task: MeshTask) -> MeshOutcome:
            return MeshOutcome(asset_id=task.asset_id)

        async def scenario():
            jobs = GenerationJobManager(settings, monitor)
            await jobs.submit(_task("a1"), work)
            with pytest.raises(QueueFullError):
                await jobs.submit(_task("a2"), work)

        asyncio.run(scenario())

    def test_prune_drops_expired_records(self, settings: ForgeSettings, monitor: PipelineMonitor) -> None:
        async def work(task: MeshTask) -> MeshOutcome:
            return MeshOutcome(asset_id=task.asset_id)

        async def scenario():
            jobs = GenerationJobManager(settings, monitor)
            await jobs.startup()
            try:
                record = await jobs.submit(_task(), work)
                await jobs.wait_for_completion(record.id, timeout_seconds=5)
                record.finished_at -= timedelta(seconds=settings.finished_job_ttl_seconds + 1)
                jobs.prune()
                return record.id, jobs.jobs
            finally:
                await jobs.shutdown()

        job_id, remaining = asyncio.run(scenario())
        assert job_id not in remaining

    def test_unknown_job(self, settings: ForgeSettings, monitor: PipelineMonitor) -> None:
        jobs = GenerationJobManager(settings, monitor)
        with pytest.raises(KeyError):
            asyncio.run(jobs.get("missing"))
