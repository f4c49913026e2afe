from __future__ import annotations

import threading
from concurrent.futures import Future

import pytest

from app.errors import DataUnavailableError
from app.services.cache import Refreshed, RevalidatingCache
from app.services.cache_keys import build_cache_key


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class QueuedExecutor:
    """Collects submitted work so tests decide when background refreshes run."""

    def __init__(self) -> None:
        self.jobs: list = []

    def submit(self, fn, *args, **kwargs):
        future: Future = Future()
        self.jobs.append((fn, args, kwargs))
        return future

    def run_all(self) -> None:
        jobs, self.jobs = self.jobs, []
        for fn, args, kwargs in jobs:
            fn(*args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        self.jobs.clear()


class CountingRefresher:
    def __init__(self, *payloads) -> None:
        self.payloads = list(payloads)
        self.calls = 0
        self.fail_with: Exception | None = None

    def __call__(self) -> Refreshed:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        payload = self.payloads[min(self.calls - 1, len(self.payloads) - 1)]
        return Refreshed(payload=payload, source_version=self.calls)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> QueuedExecutor:
    return QueuedExecutor()


@pytest.fixture
def cache(clock, executor) -> RevalidatingCache:
    return RevalidatingCache(
        ttl_seconds=60, stale_seconds=300, revalidate_seconds=30, clock=clock, executor=executor
    )


def test_first_request_refreshes_and_is_fresh(cache):
    refresh = CountingRefresher("v1")

    result = cache.get("k", refresh)

    assert result.payload == "v1"
    assert result.meta.stale is False
    assert result.meta.age_seconds == 0
    assert result.meta.source_version == 1
    assert refresh.calls == 1


def test_fresh_entry_is_served_without_refresh(cache, clock):
    refresh = CountingRefresher("v1")
    cache.get("k", refresh)
    clock.advance(60)

    result = cache.get("k", refresh)

    assert result.meta.stale is False
    assert result.meta.age_seconds == 60
    assert refresh.calls == 1


def test_stale_requests_schedule_one_background_refresh(cache, clock, executor):
    refresh = CountingRefresher("v1", "v2")
    cache.get("k", refresh)
    clock.advance(120)

    results = [cache.get("k", refresh) for _ in range(100)]

    assert all(result.meta.stale for result in results)
    assert all(result.payload == "v1" for result in results)
    assert len(executor.jobs) == 1
    assert cache.is_refreshing("k")

    executor.run_all()

    assert refresh.calls == 2
    assert not cache.is_refreshing("k")
    result = cache.get("k", refresh)
    assert result.payload == "v2"
    assert result.meta.stale is False


def test_concurrent_stale_requests_schedule_one_refresh(cache, clock, executor):
    refresh = CountingRefresher("v1", "v2")
    cache.get("k", refresh)
    clock.advance(120)
    barrier = threading.Barrier(20)

    def hit():
        barrier.wait()
        for _ in range(5):
            cache.get("k", refresh)

    threads = [threading.Thread(target=hit) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(executor.jobs) == 1


def test_revalidation_is_debounced(cache, clock, executor):
    refresh = CountingRefresher("v1")
    cache.get("k", refresh)
    clock.advance(100)
    cache.get("k", refresh)
    refresh.fail_with = RuntimeError("indexer down")
    executor.run_all()

    clock.advance(10)
    cache.get("k", refresh)
    assert executor.jobs == []

    clock.advance(25)
    cache.get("k", refresh)
    assert len(executor.jobs) == 1


def test_failed_revalidation_keeps_payload_and_records_error(cache, clock, executor):
    refresh = CountingRefresher("v1")
    cache.get("k", refresh)
    clock.advance(100)
    cache.get("k", refresh)
    refresh.fail_with = RuntimeError("indexer down")

    executor.run_all()
    result = cache.get("k", refresh)

    assert result.payload == "v1"
    assert result.meta.stale is True
    assert result.meta.last_error == "RuntimeError: indexer down"
    assert result.meta.to_dict()["last_error_at"] is not None


def test_success_clears_previous_error(cache, clock, executor):
    refresh = CountingRefresher("v1", "v2")
    cache.get("k", refresh)
    clock.advance(100)
    cache.get("k", refresh)
    refresh.fail_with = RuntimeError("boom")
    executor.run_all()

    refresh.fail_with = None
    clock.advance(400)
    result = cache.get("k", refresh)

    assert result.meta.stale is False
    assert result.meta.last_error is None


def test_expired_entry_refreshes_synchronously(cache, clock, executor):
    refresh = CountingRefresher("v1", "v2")
    cache.get("k", refresh)
    clock.advance(301)

    result = cache.get("k", refresh)

    assert result.payload == "v2"
    assert result.meta.stale is False
    assert executor.jobs == []


def test_expired_entry_is_served_stale_when_refresh_fails(cache, clock):
    refresh = CountingRefresher("v1")
    cache.get("k", refresh)
    clock.advance(301)
    refresh.fail_with = RuntimeError("indexer down")

    result = cache.get("k", refresh)

    assert result.payload == "v1"
    assert result.meta.stale is True
    assert result.meta.last_error == "RuntimeError: indexer down"


def test_missing_payload_raises_data_unavailable(cache):
    refresh = CountingRefresher("v1")
    refresh.fail_with = RuntimeError("indexer down")

    with pytest.raises(DataUnavailableError) as excinfo:
        cache.get("k", refresh)

    assert excinfo.value.key == "k"
    assert isinstance(excinfo.value.cause, RuntimeError)
    entry = cache.peek("k")
    assert entry is not None and not entry.has_payload
    assert entry.last_error == "RuntimeError: indexer down"


def test_concurrent_cold_requests_share_one_refresh(clock, executor):
    cache = RevalidatingCache(ttl_seconds=60, stale_seconds=300, revalidate_seconds=30, clock=clock, executor=executor)
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_refresh() -> Refreshed:
        calls.append(1)
        started.set()
        release.wait(timeout=5)
        return Refreshed(payload="v1")

    results = []
    owner = threading.Thread(target=lambda: results.append(cache.get("k", slow_refresh)))
    owner.start()
    assert started.wait(timeout=5)
    waiters = [threading.Thread(target=lambda: results.append(cache.get("k", slow_refresh))) for _ in range(5)]
    for thread in waiters:
        thread.start()
    release.set()
    for thread in [owner, *waiters]:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert [result.payload for result in results] == ["v1"] * 6


def test_invalidate_forces_refresh(cache):
    refresh = CountingRefresher("v1", "v2")
    cache.get("k", refresh)
    cache.invalidate("k")

    assert cache.get("k", refresh).payload == "v2"


def test_stale_limit_must_cover_ttl():
    with pytest.raises(ValueError):
        RevalidatingCache(ttl_seconds=60, stale_seconds=30, revalidate_seconds=10)


def test_cache_keys_are_stable_and_versioned():
    params = {"range": "D30", "leagues": ["NBA", "NFL"], "page": 1}
    reordered = {"page": 1, "leagues": ["NBA", "NFL"], "range": "D30"}

    key = build_cache_key("leaderboard", 1, "global", params)

    assert key == build_cache_key("leaderboard", 1, "global", reordered)
    assert key.startswith("leaderboard_v1:global:")
    assert len(key.rsplit(":", 1)[1]) == 24
    assert key != build_cache_key("leaderboard", 2, "global", params)
    assert key != build_cache_key("leaderboard", 1, "global", {**params, "page": 2})
