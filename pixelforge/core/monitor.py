"""
Pipeline observability hook.

The background half of the pipeline has no channel back to the caller, so
anything noteworthy (remote failures, fallbacks, GLB header anomalies,
crashed jobs) is recorded here: one structured log line per event, a
bounded in-memory event log, and per-kind counters for ``/health``.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..schemas import PipelineEventView

logger = logging.getLogger(__name__)

_WARNING_KINDS = {
    "segmentation_failed",
    "fetch_failed",
    "seed_fallback",
    "remote_timeout",
    "source_invalid",
    "transcode_failed",
    "mesh_failed",
    "mesh_missing",
    "glb_header_missing",
    "queue_full",
    "job_failed",
}


@dataclass
class PipelineEvent:
    kind: str
    at: datetime
    asset_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def as_view(self) -> PipelineEventView:
        return PipelineEventView(kind=self.kind, at=self.at, asset_id=self.asset_id, detail=self.detail)


class PipelineMonitor:
    def __init__(self, max_events: int = 500):
        self.events: deque[PipelineEvent] = deque(maxlen=max_events)
        self.counters: Counter[str] = Counter()

    def record(self, kind: str, asset_id: str | None = None, **detail: Any) -> PipelineEvent:
        event = PipelineEvent(kind=kind, at=datetime.now(timezone.utc), asset_id=asset_id, detail=detail)
        self.events.append(event)
        self.counters[kind] += 1

        level = logging.WARNING if kind in _WARNING_KINDS else logging.INFO
        logger.log(level, "pipeline_event kind=%s asset=%s detail=%s", kind, asset_id, detail)
        return event

    def recent(self, kind: str | None = None, asset_id: str | None = None, limit: int = 100) -> list[PipelineEvent]:
        matched = [
            e for e in self.events
            if (kind is None or e.kind == kind) and (asset_id is None or e.asset_id == asset_id)
        ]
        return matched[-limit:]

    def count(self, kind: str) -> int:
        return self.counters.get(kind, 0)
