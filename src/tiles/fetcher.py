"""Single-item downloader with HTTP range resume and retry/backoff."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import aiohttp

from shared.constants import (
    DOWNLOAD_SOURCE,
    HTTP_BACKOFF_BASE,
    HTTP_OK,
    HTTP_PARTIAL_CONTENT,
    HTTP_RANGE_NOT_SATISFIABLE,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
    USER_AGENT,
)
from tiles.errors import (
    ExhaustedRetriesError,
    FetchError,
    NetworkFailure,
    RemoteRejection,
    StorageError,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tiles.keys import CacheKey
    from tiles.store import CacheEntry, KeyedStore

logger = logging.getLogger(__name__)

_CONTENT_RANGE_RE = re.compile(r'^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$', re.IGNORECASE)


class FetchStatus(str, Enum):
    SKIPPED = 'skipped'
    DOWNLOADED = 'downloaded'
    RESUMED = 'resumed'
    ALREADY_COMPLETE = 'already-complete'


@dataclass
class FetchResult:
    """Successful outcome of one fetch."""

    key: CacheKey
    status: FetchStatus
    entry: CacheEntry | None
    attempts: int = 0
    bytes_received: int = 0

    @property
    def from_network(self) -> bool:
        return self.status is not FetchStatus.SKIPPED


def parse_content_range(value: str | None) -> tuple[int | None, int | None]:
    """Parse ``bytes start-end/total`` into (start, total); unknown parts are None."""
    if not value:
        return None, None
    m = _CONTENT_RANGE_RE.match(value)
    if m is None:
        return None, None
    total = None if m.group(3) == '*' else int(m.group(3))
    return int(m.group(1)), total


def _declared_length(headers: Mapping[str, str]) -> int | None:
    # Content-Length describes the encoded body; aiohttp hands us decoded bytes
    encoding = (headers.get('Content-Encoding') or 'identity').lower()
    if encoding != 'identity':
        return None
    raw = headers.get('Content-Length')
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class ResumableFetcher:
    """Downloads one item into a KeyedStore, resuming partial payloads.

    Usage:
        fetcher = ResumableFetcher(session, store)
        result = await fetcher.fetch(url, CacheKey.for_tile(12, 3263, 2112))
    """

    def __init__(
        self,
        client: aiohttp.ClientSession,
        store: KeyedStore,
        *,
        timeout: float = HTTP_TIMEOUT_DEFAULT,
        max_retries: int = HTTP_RETRIES_DEFAULT,
        backoff_base: float = HTTP_BACKOFF_BASE,
        user_agent: str = USER_AGENT,
        download_source: str = DOWNLOAD_SOURCE,
    ) -> None:
        self.client = client
        self.store = store
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.user_agent = user_agent
        self.download_source = download_source
        self._stats_downloads = 0
        self._stats_resumed = 0
        self._stats_skipped = 0
        self._stats_errors = 0
        self._stats_bytes = 0

    @property
    def stats(self) -> dict[str, int]:
        return {
            'downloads': self._stats_downloads,
            'resumed': self._stats_resumed,
            'skipped': self._stats_skipped,
            'errors': self._stats_errors,
            'bytes_downloaded': self._stats_bytes,
        }

    async def fetch(
        self,
        url: str,
        key: CacheKey,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        force: bool = False,
    ) -> FetchResult:
        """
        Fetch ``url`` into the entry for ``key``.

        Returns immediately without network I/O when the entry is already
        complete (unless ``force``). Retryable failures are retried with
        a ``backoff_base * attempt`` delay.

        Raises:
            StorageError: disk I/O failed (never retried).
            ExhaustedRetriesError: every attempt failed.
        """
        timeout = self.timeout if timeout is None else timeout
        max_retries = self.max_retries if max_retries is None else max_retries

        if force:
            self.store.delete(key)
        elif self.store.exists(key):
            self._stats_skipped += 1
            return FetchResult(key=key, status=FetchStatus.SKIPPED, entry=self.store.load_entry(key))

        # partial_size discards committed-but-invalid entries
        resume_from = self.store.partial_size(key)
        if resume_from:
            logger.debug('Resuming %s from byte %d', key, resume_from)
        self.store.begin(key, source_identity=url, download_source=self.download_source)

        total_attempts = max_retries + 1
        last_error: FetchError | None = None
        for attempt in range(1, total_attempts + 1):
            try:
                status, received = await self._attempt(url, key, timeout)
            except StorageError:
                self._stats_errors += 1
                raise
            except FetchError as e:
                last_error = e
                logger.debug(
                    'Attempt %d/%d for %s failed: %s', attempt, total_attempts, key, e
                )
                if attempt < total_attempts:
                    await asyncio.sleep(self.backoff_base * attempt)
                continue

            entry = self.store.commit(
                key, source_identity=url, download_source=self.download_source
            )
            self._stats_bytes += received
            if status is FetchStatus.RESUMED:
                self._stats_resumed += 1
            else:
                self._stats_downloads += 1
            logger.debug('Fetched %s (%s, %d bytes)', key, status.value, entry.byte_size)
            return FetchResult(
                key=key,
                status=status,
                entry=entry,
                attempts=attempt,
                bytes_received=received,
            )

        self._stats_errors += 1
        msg = f'Failed to fetch {key} after {total_attempts} attempt(s): {last_error}'
        raise ExhaustedRetriesError(
            msg, url=url, attempts=total_attempts, last_error=last_error
        )

    async def _attempt(
        self,
        url: str,
        key: CacheKey,
        timeout: float,
    ) -> tuple[FetchStatus, int]:
        current_size = self.store.payload_size(key)
        headers = {'User-Agent': self.user_agent}
        if current_size > 0:
            headers['Range'] = f'bytes={current_size}-'

        try:
            resp = await self.client.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            msg = f'Request for {key} failed: {e!r}'
            raise NetworkFailure(msg, url=url) from e

        try:
            sc = resp.status
            if sc == HTTP_RANGE_NOT_SATISFIABLE:
                if current_size > 0:
                    logger.debug('416 for %s: partial file of %d bytes is complete', key, current_size)
                    return FetchStatus.ALREADY_COMPLETE, 0
                msg = f'HTTP 416 for {key} without a partial payload'
                raise RemoteRejection(msg, url=url, status=sc)
            if sc not in (HTTP_OK, HTTP_PARTIAL_CONTENT):
                msg = f'Unexpected HTTP {sc} for {key}'
                raise RemoteRejection(msg, url=url, status=sc)

            try:
                body = await resp.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                msg = f'Reading body for {key} failed: {e!r}'
                raise NetworkFailure(msg, url=url) from e

            if not body:
                msg = f'HTTP {sc} for {key} returned an empty body'
                raise RemoteRejection(msg, url=url, status=sc)

            if sc == HTTP_PARTIAL_CONTENT and current_size > 0:
                start, expected = parse_content_range(resp.headers.get('Content-Range'))
                if start is not None and start != current_size:
                    self.store.reset_partial(key)
                    msg = (
                        f'Content-Range for {key} starts at {start}, '
                        f'expected {current_size}; restarting'
                    )
                    raise RemoteRejection(msg, url=url, status=sc)
                self.store.append_partial(key, body)
                status = FetchStatus.RESUMED
            else:
                # full body, or the server ignored the range request
                if current_size > 0:
                    logger.debug('Server ignored range for %s, rewriting payload', key)
                if sc == HTTP_PARTIAL_CONTENT:
                    _, expected = parse_content_range(resp.headers.get('Content-Range'))
                else:
                    expected = _declared_length(resp.headers)
                self.store.write_partial(key, body)
                status = FetchStatus.DOWNLOADED

            final_size = self.store.payload_size(key)
            if final_size == 0:
                msg = f'Payload for {key} is empty after write'
                raise RemoteRejection(msg, url=url, status=sc)
            if expected is not None and final_size != expected:
                if final_size > expected:
                    self.store.reset_partial(key)
                msg = f'Payload for {key} has {final_size} bytes, expected {expected}'
                raise NetworkFailure(msg, url=url)
            return status, len(body)
        finally:
            try:
                close = getattr(resp, 'close', None)
                if callable(close):
                    close()
                release = getattr(resp, 'release', None)
                if callable(release):
                    release()
            except Exception as e:
                logger.debug('Failed to cleanup HTTP response: %s', e, exc_info=True)
