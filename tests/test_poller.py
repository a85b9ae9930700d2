from __future__ import annotations

import asyncio

import httpx

from pixelforge_shared.asset_poller import (
    HttpAssetFetcher,
    PollAuthorizationError,
    PollOutcome,
    fields_present,
    poll_asset,
    wait_for_mesh,
    wait_for_segmentation,
)

PENDING = {"id": "a1", "status": "pending", "glbUrl": None, "meta": {}}
SEGMENTED = {"id": "a1", "status": "pending", "glbUrl": None, "meta": {"segmentedImage": "http://x/seg.png"}}
READY = {"id": "a1", "status": "ready", "glbUrl": "http://x/m.glb", "meta": {"segmentedImage": "http://x/seg.png"}}


class ScriptedFetcher:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def __call__(self, asset_id: str):
        self.calls += 1
        item = self.responses[min(self.calls, len(self.responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return item


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestPollAsset:
    def test_times_out_after_exactly_max_attempts(self) -> None:
        fetch = ScriptedFetcher(PENDING)
        sleep = SleepRecorder()
        result = asyncio.run(
            poll_asset(fetch, "a1", want_mesh=True, max_attempts=2, interval_seconds=3.0, sleep=sleep)
        )
        assert result.outcome == PollOutcome.timed_out
        assert result.attempts == 2
        assert fetch.calls == 2
        assert sleep.delays == [3.0]
        assert result.record == PENDING

    def test_stops_as_soon_as_fields_appear(self) -> None:
        fetch = ScriptedFetcher(PENDING, SEGMENTED, READY)
        result = asyncio.run(
            poll_asset(fetch, "a1", want_segmented=True, want_mesh=False, max_attempts=20, sleep=SleepRecorder())
        )
        assert result.satisfied
        assert result.attempts == 2
        assert result.record == SEGMENTED

    def test_waiting_for_both_fields(self) -> None:
        fetch = ScriptedFetcher(SEGMENTED, READY)
        result = asyncio.run(
            poll_asset(fetch, "a1", want_segmented=True, want_mesh=True, max_attempts=5, sleep=SleepRecorder())
        )
        assert result.satisfied
        assert result.record == READY

    def test_authorization_failure_stops_immediately(self) -> None:
        fetch = ScriptedFetcher(PENDING, PollAuthorizationError("HTTP 401"), READY)
        result = asyncio.run(poll_asset(fetch, "a1", max_attempts=10, sleep=SleepRecorder()))
        assert result.outcome == PollOutcome.unauthorized
        assert fetch.calls == 2
        assert result.record == PENDING

    def test_transient_errors_are_retried(self) -> None:
        fetch = ScriptedFetcher(httpx.ConnectError("refused"), READY)
        result = asyncio.run(poll_asset(fetch, "a1", max_attempts=3, sleep=SleepRecorder()))
        assert result.satisfied
        assert fetch.calls == 2

    def test_never_found(self) -> None:
        fetch = ScriptedFetcher(None)
        result = asyncio.run(poll_asset(fetch, "a1", max_attempts=3, sleep=SleepRecorder()))
        assert result.outcome == PollOutcome.not_found
        assert result.record is None
        assert fetch.calls == 3

    def test_fields_present(self) -> None:
        assert fields_present(READY, want_segmented=True, want_mesh=True)
        assert not fields_present(SEGMENTED, want_segmented=True, want_mesh=True)
        assert fields_present(PENDING, want_segmented=False, want_mesh=False)


class TestWaitHelpers:
    def test_segmentation_wait_uses_short_budget(self) -> None:
        fetch = ScriptedFetcher(PENDING)
        sleep = SleepRecorder()
        result = asyncio.run(wait_for_segmentation(fetch, "a1", sleep=sleep))
        assert result.outcome == PollOutcome.timed_out
        assert fetch.calls == 20
        assert sleep.delays == [2.0] * 19

    def test_mesh_wait_uses_long_budget(self) -> None:
        fetch = ScriptedFetcher(SEGMENTED)
        sleep = SleepRecorder()
        result = asyncio.run(wait_for_mesh(fetch, "a1", sleep=sleep))
        assert result.outcome == PollOutcome.timed_out
        assert fetch.calls == 60
        assert set(sleep.delays) == {3.0}

    def test_segmentation_wait_ignores_missing_glb(self) -> None:
        result = asyncio.run(wait_for_segmentation(ScriptedFetcher(SEGMENTED), "a1", sleep=SleepRecorder()))
        assert result.satisfied
        assert result.attempts == 1


class TestHttpAssetFetcher:
    def test_reads_asset_envelope_with_identity_headers(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["user"] = request.headers.get("x-user-id")
            seen["key"] = request.headers.get("x-api-key")
            seen["path"] = request.url.path
            return httpx.Response(200, json={"asset": READY})

        fetcher = HttpAssetFetcher("http://svc.test/", "u1", api_key="k", transport=httpx.MockTransport(handler))
        assert asyncio.run(fetcher("a1")) == READY
        assert seen == {"user": "u1", "key": "k", "path": "/assets/a1"}

    def test_not_found_returns_none(self) -> None:
        fetcher = HttpAssetFetcher(
            "http://svc.test", "u1", transport=httpx.MockTransport(lambda r: httpx.Response(404))
        )
        assert asyncio.run(fetcher("a1")) is None

    def test_forbidden_raises_authorization_error(self) -> None:
        fetcher = HttpAssetFetcher(
            "http://svc.test", "u1", transport=httpx.MockTransport(lambda r: httpx.Response(403))
        )
        result = asyncio.run(poll_asset(fetcher, "a1", max_attempts=5, sleep=SleepRecorder()))
        assert result.outcome == PollOutcome.unauthorized
        assert result.attempts == 1

    def test_malformed_body_is_retried(self) -> None:
        replies = iter([httpx.Response(200, content=b"<html>not json</html>"), httpx.Response(200, json={"asset": READY})])
        fetcher = HttpAssetFetcher(
            "http://svc.test", "u1", transport=httpx.MockTransport(lambda r: next(replies))
        )
        result = asyncio.run(poll_asset(fetcher, "a1", max_attempts=3, sleep=SleepRecorder()))
        assert result.satisfied
        assert result.attempts == 2
