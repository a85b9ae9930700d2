"""
Consumer-side status poller for asset records.

Generation is poll-based: a client uploads an image, receives an asset id,
and then re-reads ``GET /assets/{asset_id}`` until the fields it is waiting
for show up.  Two budgets are used in practice, a short one for the
segmented image and a long one for the GLB.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


class PollAuthorizationError(RuntimeError):
    """The status endpoint rejected our credentials; retrying will not help."""


class PollOutcome(str, Enum):
    satisfied = "satisfied"
    timed_out = "timed_out"
    not_found = "not_found"
    unauthorized = "unauthorized"


@dataclass(frozen=True)
class PollBudget:
    max_attempts: int
    interval_seconds: float


SEGMENTATION_BUDGET = PollBudget(max_attempts=20, interval_seconds=2.0)
MESH_BUDGET = PollBudget(max_attempts=60, interval_seconds=3.0)


@dataclass
class PollResult:
    outcome: PollOutcome
    record: dict[str, Any] | None
    attempts: int

    @property
    def satisfied(self) -> bool:
        return self.outcome == PollOutcome.satisfied


AssetFetcher = Callable[[str], Awaitable[dict[str, Any] | None]]


def fields_present(record: dict[str, Any], want_segmented: bool, want_mesh: bool) -> bool:
    meta = record.get("meta") or {}
    if want_segmented and not meta.get("segmentedImage"):
        return False
    if want_mesh and not record.get("glbUrl"):
        return False
    return True


async def poll_asset(
    fetch: AssetFetcher,
    asset_id: str,
    want_segmented: bool = False,
    want_mesh: bool = True,
    max_attempts: int = MESH_BUDGET.max_attempts,
    interval_seconds: float = MESH_BUDGET.interval_seconds,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult:
    """
    Fetch ``asset_id`` up to ``max_attempts`` times until the wanted fields
    are present.  Transport errors, malformed bodies and missing records are
    retried within the budget; authorization failures stop immediately.
    """
    last: dict[str, Any] | None = None
    found = False

    for attempt in range(1, max_attempts + 1):
        try:
            record = await fetch(asset_id)
        except PollAuthorizationError as exc:
            logger.error("Authorization failed while polling asset %s: %s", asset_id, exc)
            return PollResult(PollOutcome.unauthorized, last, attempt)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Poll attempt %d/%d for %s failed: %s", attempt, max_attempts, asset_id, exc)
            record = None
        else:
            if record is not None:
                found = True
                last = record
                if fields_present(record, want_segmented, want_mesh):
                    return PollResult(PollOutcome.satisfied, record, attempt)

        if attempt < max_attempts:
            await sleep(interval_seconds)

    outcome = PollOutcome.timed_out if found else PollOutcome.not_found
    logger.info("Stopped polling asset %s after %d attempts (%s)", asset_id, max_attempts, outcome.value)
    return PollResult(outcome, last, max_attempts)


async def wait_for_segmentation(
    fetch: AssetFetcher,
    asset_id: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult:
    return await poll_asset(
        fetch,
        asset_id,
        want_segmented=True,
        want_mesh=False,
        max_attempts=SEGMENTATION_BUDGET.max_attempts,
        interval_seconds=SEGMENTATION_BUDGET.interval_seconds,
        sleep=sleep,
    )


async def wait_for_mesh(
    fetch: AssetFetcher,
    asset_id: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult:
    return await poll_asset(
        fetch,
        asset_id,
        want_segmented=False,
        want_mesh=True,
        max_attempts=MESH_BUDGET.max_attempts,
        interval_seconds=MESH_BUDGET.interval_seconds,
        sleep=sleep,
    )


class HttpAssetFetcher:
    """Reads asset records from a running service over HTTP."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-User-Id": user_id}
        if api_key:
            self.headers["X-API-Key"] = api_key
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, asset_id: str) -> dict[str, Any] | None:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self.transport,
        ) as client:
            resp = await client.get(f"{self.base_url}/assets/{asset_id}", headers=self.headers)

        if resp.status_code in (401, 403):
            raise PollAuthorizationError(f"HTTP {resp.status_code}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        body = resp.json()
        return body.get("asset", body)
