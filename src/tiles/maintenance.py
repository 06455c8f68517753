"""Background stale-clean timer for long-running cache processes."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from tiles.errors import TileCacheError

if TYPE_CHECKING:
    from collections.abc import Callable

    from tiles.service import CleanResult

logger = logging.getLogger(__name__)


class PeriodicCleaner:
    """Runs ``clean`` every ``interval_s`` seconds on a daemon thread.

    The first run happens one interval after ``start()``. A failed run is
    logged and the timer keeps going.
    """

    def __init__(self, clean: Callable[[], CleanResult], interval_s: float) -> None:
        if interval_s <= 0:
            msg = f'Clean interval must be positive, got {interval_s}'
            raise ValueError(msg)
        self._clean = clean
        self.interval_s = interval_s
        self.runs = 0
        self.failures = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> CleanResult | None:
        try:
            result = self._clean()
        except TileCacheError as e:
            self.failures += 1
            logger.error('Scheduled cache clean failed: %s', e)
            return None
        self.runs += 1
        logger.info(
            'Scheduled cache clean removed %d entries (%.1f MB)',
            result.removed_count,
            result.freed_bytes / 1024 / 1024,
        )
        return result

    def start(self) -> None:
        if self.is_running:
            logger.warning('Periodic cleaner already running')
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name='tile_cache_cleaner'
        )
        self._thread.start()
        logger.info('Periodic cache clean every %.0fs', self.interval_s)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.run_once()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning('Cleaner thread did not stop within timeout')
        self._thread = None
