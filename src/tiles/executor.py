"""Bounded-concurrency batch execution of fetches in sequential waves."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from tiles.errors import FetchError, StorageError
from tiles.fetcher import FetchResult, FetchStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from tiles.keys import CacheKey

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    async def fetch(self, url: str, key: CacheKey) -> FetchResult: ...


@dataclass(frozen=True)
class WorkItem:
    """One fetch task: a cache key and its remote source."""

    key: CacheKey
    url: str


class ItemStatus(str, Enum):
    CACHED = 'cached'
    DOWNLOADED = 'downloaded'
    FAILED = 'failed'
    SKIPPED = 'skipped'  # not attempted because the batch was stopped


@dataclass
class ItemOutcome:
    item: WorkItem
    status: ItemStatus
    error: FetchError | None = None
    result: FetchResult | None = None

    @property
    def ok(self) -> bool:
        return self.status in (ItemStatus.CACHED, ItemStatus.DOWNLOADED)


@dataclass
class BatchResult:
    """Aggregate of one batch run."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cached: int = 0
    downloaded: int = 0
    not_attempted: int = 0
    duration_s: float = 0.0
    stopped: bool = False
    outcomes: dict[CacheKey, ItemOutcome] = field(default_factory=dict)

    def failed_items(self) -> list[WorkItem]:
        return [o.item for o in self.outcomes.values() if o.status is ItemStatus.FAILED]

    def failed_urls(self) -> list[str]:
        return [item.url for item in self.failed_items()]

    def record(self, outcome: ItemOutcome) -> None:
        self.outcomes[outcome.item.key] = outcome
        if outcome.status is ItemStatus.CACHED:
            self.cached += 1
            self.succeeded += 1
        elif outcome.status is ItemStatus.DOWNLOADED:
            self.downloaded += 1
            self.succeeded += 1
        elif outcome.status is ItemStatus.FAILED:
            self.failed += 1
        else:
            self.not_attempted += 1


class BatchOrchestrator:
    """Runs fetches in waves of at most ``concurrency`` items.

    Within a wave all fetches run concurrently; the next wave starts only
    after the whole wave finished. A failing item never aborts its
    siblings; every item is attempted exactly once per run.

    Usage:
        orchestrator = BatchOrchestrator(fetcher)
        result = await orchestrator.run(items, concurrency=8)
    """

    def __init__(self, fetcher: Fetcher) -> None:
        self.fetcher = fetcher

    async def run(
        self,
        items: Sequence[WorkItem],
        concurrency: int,
        *,
        on_progress: Callable[[int, int], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
        halt_on_storage_failure: bool = False,
    ) -> BatchResult:
        """
        Execute ``items`` wave by wave.

        Args:
            items: Work list; callers deduplicate keys beforehand.
            concurrency: Wave size (>= 1).
            on_progress: Called with (done, total) after each finished item.
            should_stop: Checked at every wave boundary; True stops the run.
            halt_on_storage_failure: Stop scheduling waves after a StorageError.

        Returns:
            BatchResult with one outcome per item.
        """
        if concurrency < 1:
            msg = 'concurrency must be at least 1'
            raise ValueError(msg)

        started = time.monotonic()
        result = BatchResult(total=len(items))
        done = 0
        storage_failed = False

        async def _one(item: WorkItem) -> ItemOutcome:
            nonlocal done
            try:
                fetched = await self.fetcher.fetch(item.url, item.key)
            except FetchError as e:
                logger.warning('Fetch failed for %s: %s', item.key, e)
                outcome = ItemOutcome(item=item, status=ItemStatus.FAILED, error=e)
            except Exception as e:
                logger.exception('Unexpected error fetching %s', item.key)
                error = FetchError(f'Unexpected error: {e!r}', url=item.url)
                error.__cause__ = e
                outcome = ItemOutcome(item=item, status=ItemStatus.FAILED, error=error)
            else:
                status = (
                    ItemStatus.CACHED
                    if fetched.status is FetchStatus.SKIPPED
                    else ItemStatus.DOWNLOADED
                )
                outcome = ItemOutcome(item=item, status=status, result=fetched)
            done += 1
            if on_progress is not None:
                try:
                    on_progress(done, result.total)
                except Exception as e:
                    logger.debug('Progress callback failed: %s', e)
            return outcome

        for wave_start in range(0, len(items), concurrency):
            stop_requested = should_stop is not None and should_stop()
            if stop_requested or storage_failed:
                reason = 'storage failure' if storage_failed else 'stop requested'
                logger.info(
                    'Batch stopped at wave boundary (%s): %d/%d items attempted',
                    reason,
                    wave_start,
                    len(items),
                )
                result.stopped = True
                for item in items[wave_start:]:
                    result.record(ItemOutcome(item=item, status=ItemStatus.SKIPPED))
                break

            wave = items[wave_start : wave_start + concurrency]
            outcomes = await asyncio.gather(*(_one(item) for item in wave))
            for outcome in outcomes:
                result.record(outcome)
                if halt_on_storage_failure and isinstance(outcome.error, StorageError):
                    storage_failed = True

        result.duration_s = time.monotonic() - started
        logger.info(
            'Batch finished: %d total, %d cached, %d downloaded, %d failed in %.1fs',
            result.total,
            result.cached,
            result.downloaded,
            result.failed,
            result.duration_s,
        )
        return result
