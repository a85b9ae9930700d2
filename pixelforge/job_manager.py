"""
Background job manager for the mesh-generation half of the pipeline.

Provides:
  - Bounded work queue with configurable concurrency
  - Per-job status tracking (queued / running / succeeded / failed)
  - TTL-based cleanup of finished job records
  - An error channel: failed jobs are logged with traceback and recorded
    on the pipeline monitor instead of vanishing with the detached task

Jobs cannot be cancelled once submitted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .config import ForgeSettings
from .core.monitor import PipelineMonitor
from .schemas import GenerationJobStatus, JobRecordView, MeshOutcome

if TYPE_CHECKING:
    from .core.orchestrator import MeshTask

logger = logging.getLogger(__name__)

MeshWork = Callable[["MeshTask"], Awaitable[MeshOutcome]]

_FINISHED = {GenerationJobStatus.succeeded, GenerationJobStatus.failed}


class QueueFullError(RuntimeError):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    id: str
    task: "MeshTask"
    work: MeshWork
    status: GenerationJobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    detail: str = ""
    result: MeshOutcome | None = None
    error: dict[str, Any] | None = None
    done_event: asyncio.Event = field(default_factory=asyncio.Event)

    def as_view(self) -> JobRecordView:
        return JobRecordView(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            detail=self.detail,
            request_summary={
                "asset_id": self.task.asset_id,
                "user_id": self.task.user_id,
                "seed": self.task.params.seed,
                "randomize_seed": self.task.params.randomize_seed,
            },
            result=self.result,
            error=self.error,
        )


class GenerationJobManager:
    def __init__(self, settings: ForgeSettings, monitor: PipelineMonitor):
        self.settings = settings
        self.monitor = monitor
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=settings.max_queue_size)
        self.jobs: dict[str, JobRecord] = {}
        self._workers: list[asyncio.Task] = []
        self._cleanup_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        worker_count = self.settings.max_concurrent_jobs
        for idx in range(worker_count):
            self._workers.append(
                asyncio.create_task(self._worker_loop(idx), name=f"mesh-worker-{idx}")
            )
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="mesh-job-cleanup")
        logger.info("generation_job_manager_started workers=%s", worker_count)

    async def shutdown(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

    async def submit(self, task: "MeshTask", work: MeshWork) -> JobRecord:
        async with self._lock:
            if self.queue.full():
                raise QueueFullError("Job queue is full, retry later")

            record = JobRecord(
                id=str(uuid.uuid4()),
                task=task,
                work=work,
                status=GenerationJobStatus.queued,
                created_at=_utc_now(),
            )
            self.jobs[record.id] = record
            self.queue.put_nowait(record.id)
            return record

    async def get(self, job_id: str) -> JobRecord:
        record = self.jobs.get(job_id)
        if not record:
            raise KeyError(f"Job not found: {job_id}")
        return record

    async def wait_for_completion(self, job_id: str, timeout_seconds: float) -> JobRecord:
        record = await self.get(job_id)
        try:
            await asyncio.wait_for(record.done_event.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise RuntimeError(f"Job '{job_id}' did not finish within {timeout_seconds}s")
        return record

    def active_count(self) -> int:
        return sum(1 for x in self.jobs.values() if x.status not in _FINISHED)

    async def _worker_loop(self, idx: int) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                record = self.jobs.get(job_id)
                if not record:
                    continue

                record.status = GenerationJobStatus.running
                record.started_at = _utc_now()
                record.detail = "Generating mesh..."

                try:
                    outcome = await record.work(record.task)
                    record.result = outcome
                    record.status = GenerationJobStatus.succeeded
                    if outcome.glb_url:
                        record.detail = "GLB ready"
                    else:
                        record.detail = f"No GLB produced ({outcome.aborted or 'no artifact'})"

                except Exception as exc:
                    record.status = GenerationJobStatus.failed
                    record.error = {"message": str(exc), "type": type(exc).__name__}
                    record.detail = f"Error: {str(exc)[:200]}"
                    logger.exception("Worker %d: job %s failed", idx, job_id)
                    self.monitor.record(
                        "job_failed",
                        record.task.asset_id,
                        job_id=job_id,
                        error=str(exc)[:200],
                        error_type=type(exc).__name__,
                    )

                finally:
                    record.finished_at = _utc_now()
                    record.done_event.set()

            finally:
                self.queue.task_done()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            self.prune()

    def prune(self) -> None:
        now = _utc_now()
        ttl = timedelta(seconds=self.settings.finished_job_ttl_seconds)

        expired = [
            jid
            for jid, job in self.jobs.items()
            if job.status in _FINISHED and job.finished_at and now - job.finished_at > ttl
        ]
        for jid in expired:
            self.jobs.pop(jid, None)

        completed_ids = [jid for jid, job in self.jobs.items() if job.status in _FINISHED]
        overflow = max(0, len(completed_ids) - self.settings.max_job_records)
        if overflow > 0:
            completed_sorted = sorted(
                completed_ids,
                key=lambda i: self.jobs[i].finished_at or self.jobs[i].created_at,
            )
            for jid in completed_sorted[:overflow]:
                self.jobs.pop(jid, None)
