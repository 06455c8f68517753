"""Tests for BatchOrchestrator."""

from __future__ import annotations

import asyncio

import pytest

from tiles.errors import FetchError, NetworkFailure, StorageError
from tiles.executor import BatchOrchestrator, ItemStatus, WorkItem
from tiles.fetcher import FetchResult, FetchStatus
from tiles.keys import CacheKey


class FakeFetcher:
    """Records calls and in-flight concurrency; fails selected keys."""

    def __init__(self, fail=None, delay=0.0, skipped=()):
        self.fail = fail or {}
        self.delay = delay
        self.skipped = set(skipped)
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, url, key):
        self.calls.append(key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if key in self.fail:
                raise self.fail[key]
            status = FetchStatus.SKIPPED if key in self.skipped else FetchStatus.DOWNLOADED
            return FetchResult(key=key, status=status, entry=None)
        finally:
            self.in_flight -= 1


def _items(n):
    return [
        WorkItem(key=CacheKey.for_tile(6, i, 0), url=f'https://tile.example.test/6/{i}/0.png')
        for i in range(n)
    ]


class TestBatchOrchestrator:
    """Tests for BatchOrchestrator.run."""

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self):
        """Item 5 failing should leave 9 successes and 1 failure, all attempted."""
        items = _items(10)
        fetcher = FakeFetcher(fail={items[5].key: NetworkFailure('boom', url=items[5].url)})

        result = await BatchOrchestrator(fetcher).run(items, concurrency=3)

        assert len(fetcher.calls) == 10
        assert result.total == 10
        assert result.succeeded == 9
        assert result.failed == 1
        assert result.failed_urls() == [items[5].url]
        outcome = result.outcomes[items[5].key]
        assert outcome.status is ItemStatus.FAILED
        assert isinstance(outcome.error, NetworkFailure)

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        """50 items at concurrency 5 should never exceed 5 in flight."""
        fetcher = FakeFetcher(delay=0.01)

        result = await BatchOrchestrator(fetcher).run(_items(50), concurrency=5)

        assert fetcher.max_in_flight == 5
        assert result.succeeded == 50
        assert result.downloaded == 50

    @pytest.mark.asyncio
    async def test_waves_are_sequential(self):
        """All items of a wave should start before any item of the next one."""
        items = _items(6)
        fetcher = FakeFetcher(delay=0.01)
        await BatchOrchestrator(fetcher).run(items, concurrency=4)
        assert set(fetcher.calls[:4]) == {i.key for i in items[:4]}
        assert set(fetcher.calls[4:]) == {i.key for i in items[4:]}

    @pytest.mark.asyncio
    async def test_progress_reports_each_item(self):
        calls = []
        await BatchOrchestrator(FakeFetcher()).run(
            _items(4), concurrency=2, on_progress=lambda d, t: calls.append((d, t))
        )
        assert [d for d, _ in calls] == [1, 2, 3, 4]
        assert all(t == 4 for _, t in calls)

    @pytest.mark.asyncio
    async def test_progress_callback_errors_are_ignored(self):
        def broken(done, total):
            raise RuntimeError('ui gone')

        result = await BatchOrchestrator(FakeFetcher()).run(
            _items(3), concurrency=3, on_progress=broken
        )
        assert result.succeeded == 3

    @pytest.mark.asyncio
    async def test_stop_at_wave_boundary(self):
        """A stop request should leave the remaining items unattempted."""
        fetcher = FakeFetcher()
        items = _items(10)

        result = await BatchOrchestrator(fetcher).run(
            items, concurrency=3, should_stop=lambda: len(fetcher.calls) >= 3
        )

        assert len(fetcher.calls) == 3
        assert result.stopped
        assert result.succeeded == 3
        assert result.not_attempted == 7
        assert result.outcomes[items[9].key].status is ItemStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cached_items_are_counted(self):
        items = _items(4)
        fetcher = FakeFetcher(skipped=[items[0].key, items[1].key])
        result = await BatchOrchestrator(fetcher).run(items, concurrency=4)
        assert result.cached == 2
        assert result.downloaded == 2
        assert result.succeeded == 4

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self):
        items = _items(2)
        fetcher = FakeFetcher(fail={items[0].key: KeyError('bug')})
        result = await BatchOrchestrator(fetcher).run(items, concurrency=2)
        error = result.outcomes[items[0].key].error
        assert isinstance(error, FetchError)
        assert isinstance(error.__cause__, KeyError)
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_halt_on_storage_failure(self):
        items = _items(6)
        fetcher = FakeFetcher(fail={items[0].key: StorageError('disk full')})
        result = await BatchOrchestrator(fetcher).run(
            items, concurrency=2, halt_on_storage_failure=True
        )
        assert len(fetcher.calls) == 2
        assert result.stopped
        assert result.not_attempted == 4

    @pytest.mark.asyncio
    async def test_storage_failure_continues_by_default(self):
        items = _items(6)
        fetcher = FakeFetcher(fail={items[0].key: StorageError('disk full')})
        result = await BatchOrchestrator(fetcher).run(items, concurrency=2)
        assert len(fetcher.calls) == 6
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        result = await BatchOrchestrator(FakeFetcher()).run([], concurrency=4)
        assert result.total == 0
        assert not result.stopped

    @pytest.mark.asyncio
    async def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            await BatchOrchestrator(FakeFetcher()).run(_items(1), concurrency=0)
