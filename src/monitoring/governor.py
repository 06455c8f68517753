"""
Memory governor.

Samples the process RSS on a fixed timer, classifies it into tiers read by
rate-limit consumers, keeps a bounded history and warns about steady
growth that looks like a leak. Advisory only: it never restarts anything.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from shared.constants import MEMORY_STATS_HISTORY, MemoryTier
from shared.diagnostics import get_process_rss, get_total_memory

if TYPE_CHECKING:
    from collections.abc import Callable

    from settings import GovernorSettings

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class MemorySample:
    timestamp: float
    rss_mb: float
    percent: float
    tier: MemoryTier


class MemoryGovernor:
    """Periodic RSS sampler exposing the current memory tier.

    Thread Safety:
        ``tick()`` runs on the governor thread; ``tier``, ``history`` and
        ``stats()`` may be read from any thread.
    """

    def __init__(
        self,
        settings: GovernorSettings,
        *,
        sample_rss: Callable[[], int] = get_process_rss,
        total_memory: Callable[[], int] = get_total_memory,
        clock: Callable[[], float] = time.time,
        collect: Callable[[], Any] = gc.collect,
    ) -> None:
        self.settings = settings
        self._sample_rss = sample_rss
        self._total_memory = total_memory
        self._clock = clock
        self._collect = collect

        self._ceiling_bytes: int | None = (
            settings.memory_ceiling_mb * MB if settings.memory_ceiling_mb else None
        )
        self._history: deque[MemorySample] = deque(maxlen=settings.history_capacity)
        self._tier = MemoryTier.NORMAL
        self._leak_rate: float | None = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def tier(self) -> MemoryTier:
        with self._lock:
            return self._tier

    @property
    def history(self) -> list[MemorySample]:
        with self._lock:
            return list(self._history)

    @property
    def leak_suspected(self) -> bool:
        with self._lock:
            return self._leak_rate is not None

    @property
    def is_monitoring(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def ceiling_mb(self) -> float | None:
        return None if self._ceiling_bytes is None else self._ceiling_bytes / MB

    def classify(self, percent: float) -> MemoryTier:
        if percent >= self.settings.critical_percent:
            return MemoryTier.CRITICAL
        if percent >= self.settings.warning_percent:
            return MemoryTier.WARNING
        return MemoryTier.NORMAL

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def tick(self) -> MemorySample | None:
        """Take one sample. A failed read is logged and the tier kept."""
        try:
            if self._ceiling_bytes is None:
                self._ceiling_bytes = int(self._total_memory())
            rss = int(self._sample_rss())
        except Exception as e:
            logger.warning('Memory sample failed, keeping tier %s: %s', self.tier.value, e)
            return None
        if not self._ceiling_bytes:
            logger.warning('Memory ceiling is zero, skipping sample')
            return None

        percent = rss / self._ceiling_bytes * 100
        tier = self.classify(percent)
        sample = MemorySample(
            timestamp=self._clock(),
            rss_mb=round(rss / MB, 2),
            percent=round(percent, 2),
            tier=tier,
        )
        with self._lock:
            self._history.append(sample)
            self._tier = tier

        if tier is MemoryTier.CRITICAL:
            logger.error(
                'CRITICAL: Memory usage at %.1f%% (%.0fMB)', percent, sample.rss_mb
            )
            self._force_collect()
        elif tier is MemoryTier.WARNING:
            logger.warning(
                'WARNING: Memory usage at %.1f%% (%.0fMB)', percent, sample.rss_mb
            )
        else:
            logger.debug('Memory usage: %.1f%% (%.0fMB)', percent, sample.rss_mb)

        self._detect_leak()
        return sample

    def _force_collect(self) -> None:
        try:
            freed = self._collect()
            logger.info('Forced garbage collection (%s objects collected)', freed)
        except Exception as e:
            logger.debug('Garbage collection failed: %s', e)

    def _detect_leak(self) -> float | None:
        """Growth rate (MB/min) over the leak window when above threshold."""
        window = self.settings.leak_window
        with self._lock:
            if len(self._history) < window:
                self._leak_rate = None
                return None
            recent = list(self._history)[-window:]
        oldest, newest = recent[0], recent[-1]
        minutes = (newest.timestamp - oldest.timestamp) / 60
        if minutes <= 0:
            return None
        growth_mb = newest.rss_mb - oldest.rss_mb
        rate = growth_mb / minutes
        if rate > self.settings.leak_threshold_mb_per_min:
            logger.warning(
                'Potential memory leak detected: %.2fMB/min growth rate '
                '(%.1fMB over %.1f min)',
                rate,
                growth_mb,
                minutes,
            )
            with self._lock:
                self._leak_rate = rate
            return rate
        with self._lock:
            self._leak_rate = None
        return None

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the sampling thread; the first sample is taken immediately."""
        if self.is_monitoring:
            logger.warning('Memory governor already running')
            return
        self._stop.clear()
        self.tick()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name='memory_governor'
        )
        self._thread.start()
        logger.info(
            'Memory governor started (interval %.0fs, ceiling %s MB)',
            self.settings.interval_s,
            f'{self.ceiling_mb:.0f}' if self.ceiling_mb else 'unknown',
        )

    def _run(self) -> None:
        while not self._stop.wait(self.settings.interval_s):
            self.tick()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning('Memory governor thread did not stop within timeout')
        self._thread = None
        logger.info('Memory governor stopped')

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        history = self.history
        current = history[-1] if history else None
        return {
            'current': asdict(current) if current else None,
            'tier': self.tier.value,
            'percent': current.percent if current else None,
            'ceiling_mb': self.ceiling_mb,
            'warning_threshold': self.settings.warning_percent,
            'critical_threshold': self.settings.critical_percent,
            'leak_suspected': self.leak_suspected,
            'history': [asdict(s) for s in history[-MEMORY_STATS_HISTORY:]],
            'is_monitoring': self.is_monitoring,
        }

    def cleanup(self) -> MemorySample | None:
        """Force a garbage collection pass and re-sample."""
        logger.info('Forcing memory cleanup...')
        self._force_collect()
        return self.tick()
