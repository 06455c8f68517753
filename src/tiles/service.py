"""Public facade of the tile cache: get, preload, stats, clean."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Union

from infrastructure.http.client import make_http_session
from monitoring.rate_limits import RateLimiter, RateLimitPolicy
from shared.constants import (
    DATASET_MARKER_FILENAME,
    MemoryTier,
    PRELOAD_LOG_MEMORY_EVERY_TILES,
)
from shared.diagnostics import log_memory_usage
from shared.progress import ConsoleProgress
from tiles.coverage import count_tiles, iter_tiles, tile_overlaps
from tiles.errors import FetchError, IntegrityError, StorageError, TileCacheError
from tiles.executor import BatchOrchestrator, BatchResult, WorkItem
from tiles.fetcher import FetchStatus, ResumableFetcher
from tiles.generation import DatasetGeneration, GenerationCheck
from tiles.keys import CacheKey, partition_from_name
from tiles.maintenance import PeriodicCleaner
from tiles.placeholder import placeholder_digest, render_placeholder_tile
from tiles.store import KeyedStore
from tiles.validation import TileValidator

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from pathlib import Path

    import aiohttp

    from monitoring.governor import MemoryGovernor
    from settings import CacheSettings
    from tiles.coverage import Bounds

logger = logging.getLogger(__name__)

Identity = Union[CacheKey, tuple[int, int, int], str]

# Незавершённые загрузки моложе этого возраста не удаляются при очистке stale
INCOMPLETE_GRACE_S = 3600


class TileSource(str, Enum):
    CACHE = 'cache'
    DOWNLOAD = 'download'
    REVALIDATED = 'revalidated'
    PLACEHOLDER = 'placeholder'
    ERROR = 'error'


@dataclass
class TileResult:
    """Answer of get_or_fetch; failures are reported, not raised."""

    data: bytes | None
    source: TileSource
    key: CacheKey | None = None
    error: TileCacheError | None = None

    @property
    def ok(self) -> bool:
        return self.data is not None and self.error is None


@dataclass
class TileStamp:
    path: str
    time: float
    date: str


@dataclass
class CacheStats:
    """Statistics about the tile store."""

    total_items: int = 0
    total_bytes: int = 0
    by_partition: dict[str, int] = field(default_factory=dict)
    bytes_by_partition: dict[str, int] = field(default_factory=dict)
    oldest: TileStamp | None = None
    newest: TileStamp | None = None
    incomplete: int = 0

    @property
    def total_size_mb(self) -> float:
        return round(self.total_bytes / (1024 * 1024), 2)


class CleanMode(str, Enum):
    ALL = 'all'
    STALE = 'stale'


@dataclass
class CleanResult:
    removed_count: int = 0
    freed_bytes: int = 0


class TileCacheService:
    """Persistent, resumable tile cache.

    One instance owns the store, fetcher, batch orchestrator and
    validator; consumers receive it explicitly.

    Usage:
        async with TileCacheService(load_settings('tilecache.toml')) as cache:
            result = await cache.get_or_fetch((12, 3263, 2112))
            if result.ok:
                send(result.data)
    """

    def __init__(
        self,
        settings: CacheSettings,
        *,
        client: aiohttp.ClientSession | None = None,
        store: KeyedStore | None = None,
        governor: MemoryGovernor | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or KeyedStore(settings.cache_path, settings.payload_suffix)
        self.validator = TileValidator.from_settings(
            settings.validation,
            extra_digests=[placeholder_digest()],
        )
        self.generation = DatasetGeneration(
            self.store, self.store.root / DATASET_MARKER_FILENAME
        )
        self.governor = governor
        self.rate_limiter = RateLimiter(RateLimitPolicy(settings.rate_limits), governor)
        self._client = client
        self._owns_client = client is None
        self._fetcher: ResumableFetcher | None = None
        self._orchestrator: BatchOrchestrator | None = None
        self.cleaner: PeriodicCleaner | None = None
        if settings.clean_interval_s:
            self.cleaner = PeriodicCleaner(
                lambda: self.clean(CleanMode.STALE), settings.clean_interval_s
            )
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Validate the store against the dataset generation, start the timers.

        Runs once; every read path calls it so no entry is trusted before
        the dataset check completed.
        """
        if self._started:
            return
        if self.settings.dataset_path:
            self.generation.check(self.settings.dataset_path)
        if self.governor is not None and self.settings.governor.enabled:
            self.governor.start()
        if self.cleaner is not None:
            self.cleaner.start()
        self._started = True
        logger.info('Tile cache started at %s', self.store.root)

    async def close(self) -> None:
        if self.governor is not None:
            self.governor.stop()
        if self.cleaner is not None:
            self.cleaner.stop()
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None
            self._fetcher = None
            self._orchestrator = None
        self._started = False

    async def __aenter__(self) -> TileCacheService:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def fetcher(self) -> ResumableFetcher:
        if self._fetcher is None:
            if self._client is None:
                self._client = make_http_session(user_agent=self.settings.fetch.user_agent)
            fetch = self.settings.fetch
            self._fetcher = ResumableFetcher(
                self._client,
                self.store,
                timeout=fetch.timeout_s,
                max_retries=fetch.max_retries,
                backoff_base=fetch.backoff_base,
                user_agent=fetch.user_agent,
                download_source=fetch.download_source,
            )
        return self._fetcher

    @property
    def orchestrator(self) -> BatchOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = BatchOrchestrator(self.fetcher)
        return self._orchestrator

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def tile_url(self, zoom: int, x: int, y: int) -> str:
        fetch = self.settings.fetch
        subdomain = fetch.subdomains[(x + y) % len(fetch.subdomains)] if fetch.subdomains else ''
        return fetch.url_template.format(z=zoom, x=x, y=y, s=subdomain)

    def resolve(self, identity: Identity | WorkItem) -> WorkItem:
        """Turn a key, (z, x, y) tuple, URL string or WorkItem into a WorkItem."""
        if isinstance(identity, WorkItem):
            return identity
        if isinstance(identity, CacheKey):
            key = identity
        elif isinstance(identity, str):
            key = CacheKey.for_url(identity)
        elif isinstance(identity, tuple) and len(identity) == 3:
            key = CacheKey.for_tile(*identity)
        else:
            msg = f'Unsupported identity: {identity!r}'
            raise ValueError(msg)
        url = self.tile_url(key.zoom, key.x, key.y) if key.is_tile else key.url
        return WorkItem(key=key, url=url)

    def in_coverage(self, key: CacheKey) -> bool:
        if not key.is_tile:
            return True
        return tile_overlaps(key.x, key.y, key.zoom, self.settings.coverage.bounds)

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    async def get_or_fetch(
        self,
        identity: Identity,
        *,
        force_refresh: bool = False,
    ) -> TileResult:
        """
        Serve an item from cache or download it.

        A cached payload failing validation is deleted and re-fetched
        exactly once; if the fresh payload is invalid too the failure is
        reported as IntegrityError.
        """
        self.start()
        item = self.resolve(identity)
        key = item.key

        if (
            self.settings.coverage.serve_placeholder_outside_coverage
            and not self.in_coverage(key)
        ):
            return TileResult(render_placeholder_tile(), TileSource.PLACEHOLDER, key)

        revalidate = False
        if not force_refresh:
            try:
                data = self.store.read(key)
            except IntegrityError as e:
                logger.warning('Cached %s is corrupt: %s', key, e)
                data = None
                revalidate = True
            except StorageError as e:
                logger.error('Cannot read %s from cache: %s', key, e)
                return TileResult(None, TileSource.ERROR, key, e)

            if data is not None:
                reason = self.validator.failure(data)
                if reason is None:
                    return TileResult(data, TileSource.CACHE, key)
                logger.warning(
                    'Cached %s failed validation (%s), forcing re-download', key, reason
                )
                revalidate = True

        return await self._download(item, force=force_refresh or revalidate, revalidate=revalidate)

    async def _download(self, item: WorkItem, *, force: bool, revalidate: bool) -> TileResult:
        key = item.key
        try:
            fetched = await self.fetcher.fetch(item.url, key, force=force)
            data = self.store.read(key)
        except FetchError as e:
            logger.warning('Fetching %s failed: %s', key, e)
            return TileResult(None, TileSource.ERROR, key, e)

        if data is None:
            error = IntegrityError(f'Entry {key} missing after fetch', url=item.url)
            return TileResult(None, TileSource.ERROR, key, error)

        reason = self.validator.failure(data)
        if reason is not None:
            try:
                self.store.delete(key)
            except StorageError as e:
                logger.error('Cannot remove invalid %s: %s', key, e)
                return TileResult(None, TileSource.ERROR, key, e)
            error = IntegrityError(f'Downloaded {key} is invalid: {reason}', url=item.url)
            logger.error('%s', error)
            return TileResult(None, TileSource.ERROR, key, error)

        if revalidate:
            logger.info('Tile %s re-downloaded successfully (%d bytes)', key, len(data))
            return TileResult(data, TileSource.REVALIDATED, key)
        if fetched.status is FetchStatus.SKIPPED:
            return TileResult(data, TileSource.CACHE, key)
        return TileResult(data, TileSource.DOWNLOAD, key)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def expand_coverage(
        self,
        bounds: Bounds | None = None,
        zooms: Iterable[int] | None = None,
    ) -> list[WorkItem]:
        coverage = self.settings.coverage
        bounds = bounds or coverage.bounds
        zooms = sorted(set(zooms)) if zooms is not None else coverage.zooms
        logger.info(
            'Coverage %s at zooms %s spans %d tiles', bounds, zooms, count_tiles(bounds, zooms)
        )
        return [self.resolve((z, x, y)) for z, x, y in iter_tiles(bounds, zooms)]

    async def preload(
        self,
        identities: Iterable[Identity | WorkItem] | None = None,
        concurrency: int | None = None,
        *,
        bounds: Bounds | None = None,
        zooms: Iterable[int] | None = None,
        on_progress: Callable[[int, int], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
        stop_on_critical_memory: bool = True,
        halt_on_storage_failure: bool = False,
    ) -> BatchResult:
        """
        Download many items with bounded concurrency.

        Without ``identities`` the coverage bounds x zoom levels (from the
        arguments or settings) are expanded into tiles. Duplicates are
        dropped. When a governor is attached and reports a critical tier,
        the run stops at the next wave boundary.
        """
        self.start()
        if identities is None:
            candidates = self.expand_coverage(bounds, zooms)
        else:
            candidates = [self.resolve(i) for i in identities]

        seen: set[CacheKey] = set()
        items: list[WorkItem] = []
        for item in candidates:
            if item.key not in seen:
                seen.add(item.key)
                items.append(item)

        if concurrency is None:
            concurrency = self.settings.fetch.concurrency
        logger.info('Preloading %d items with concurrency %d', len(items), concurrency)

        report = on_progress or ConsoleProgress(len(items), label='Preload')

        def _progress(done: int, total: int) -> None:
            report(done, total)
            if done % PRELOAD_LOG_MEMORY_EVERY_TILES == 0:
                log_memory_usage(f'after {done} tiles')

        def _stop() -> bool:
            if should_stop is not None and should_stop():
                return True
            if stop_on_critical_memory and self.governor is not None:
                if self.governor.tier is MemoryTier.CRITICAL:
                    logger.warning('Memory is critical, stopping preload')
                    return True
            return False

        return await self.orchestrator.run(
            items,
            concurrency,
            on_progress=_progress,
            should_stop=_stop,
            halt_on_storage_failure=halt_on_storage_failure,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def _stamp(self, path: Path, ts: float) -> TileStamp:
        return TileStamp(
            path=str(path.relative_to(self.store.root)),
            time=ts,
            date=datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(),
        )

    def stats(self) -> CacheStats:
        """Totals over committed entries, grouped by partition (zoom or 'url')."""
        stats = CacheStats()
        for item in self.store.iter_entries():
            try:
                entry = self.store.load_item_entry(item)
            except IntegrityError:
                stats.incomplete += 1
                continue
            if entry is None or not entry.completed or entry.byte_size != item.size:
                stats.incomplete += 1
                continue

            partition = partition_from_name(item.name)
            stats.total_items += 1
            stats.total_bytes += item.size
            stats.by_partition[partition] = stats.by_partition.get(partition, 0) + 1
            stats.bytes_by_partition[partition] = (
                stats.bytes_by_partition.get(partition, 0) + item.size
            )
            ts = entry.completed_at or item.mtime
            if stats.oldest is None or ts < stats.oldest.time:
                stats.oldest = self._stamp(item.payload_path, ts)
            if stats.newest is None or ts > stats.newest.time:
                stats.newest = self._stamp(item.payload_path, ts)
        return stats

    def clean(self, mode: CleanMode | str = CleanMode.STALE) -> CleanResult:
        """
        Remove entries from the store.

        ``all`` purges everything. ``stale`` removes incomplete downloads
        older than an hour, entries with a bad or mismatched sidecar,
        entries older than ``max_age_days`` and orphan sidecars, then
        evicts the oldest entries until the cache fits
        ``max_cache_size_mb``.
        """
        mode = CleanMode(mode)
        if mode is CleanMode.ALL:
            removed, freed = self.store.purge_all()
            return CleanResult(removed_count=removed, freed_bytes=freed)

        result = CleanResult()
        now = time.time()
        max_age_s = self.settings.max_age_days * 86400
        survivors = []

        for item in self.store.iter_entries():
            try:
                entry = self.store.load_item_entry(item)
            except IntegrityError as e:
                logger.info('Removing %s: %s', item.name, e)
                stale = True
            else:
                if entry is None or not entry.completed:
                    stale = now - item.mtime > INCOMPLETE_GRACE_S
                elif entry.byte_size != item.size:
                    stale = True
                else:
                    ts = entry.completed_at or item.mtime
                    stale = bool(max_age_s) and now - ts > max_age_s
                    if not stale:
                        survivors.append((ts, item))
            if stale:
                result.freed_bytes += self.store.delete_item(item)
                result.removed_count += 1

        for sidecar in self.store.iter_orphan_sidecars():
            try:
                if sidecar.suffix != '.tmp' or now - sidecar.stat().st_mtime > INCOMPLETE_GRACE_S:
                    sidecar.unlink(missing_ok=True)
            except OSError as e:
                msg = f'Cannot remove orphan sidecar {sidecar}: {e}'
                raise StorageError(msg) from e

        limit = self.settings.max_cache_size_mb * 1024 * 1024
        total = sum(item.size for _, item in survivors)
        if limit and total > limit:
            survivors.sort(key=lambda pair: pair[0])
            for _, item in survivors:
                if total <= limit:
                    break
                freed = self.store.delete_item(item)
                total -= freed
                result.freed_bytes += freed
                result.removed_count += 1

        logger.info(
            'Cleaned %d entries (%.1f MB)',
            result.removed_count,
            result.freed_bytes / 1024 / 1024,
        )
        return result

    def invalidate_on_dataset_change(
        self,
        dataset_path: str | Path | None = None,
    ) -> GenerationCheck:
        """Purge the store when the upstream dataset was rebuilt."""
        path = dataset_path or self.settings.dataset_path
        if not path:
            msg = 'No dataset path given or configured'
            raise ValueError(msg)
        return self.generation.check(path)

    @property
    def fetch_stats(self) -> dict[str, int]:
        return self.fetcher.stats if self._fetcher is not None else {}
