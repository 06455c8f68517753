"""Per-endpoint request quotas driven by the memory tier."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from shared.constants import MemoryTier

if TYPE_CHECKING:
    from collections.abc import Callable

    from monitoring.governor import MemoryGovernor
    from settings import RateLimitSettings

    TierSource = Union[MemoryGovernor, Callable[[], MemoryTier], None]

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = 'global'


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    endpoint: str
    tier: MemoryTier
    limit: int
    remaining: int
    reset_s: int
    retry_after: int | None = None


class RateLimitPolicy:
    """Maps (endpoint, tier) to a (limit, window_s) quota.

    Tiered endpoints shrink their quota as memory pressure rises; fixed
    endpoints (cache management, preload) ignore the tier. Unknown
    endpoints fall back to the ``global`` quota.
    """

    def __init__(self, settings: RateLimitSettings) -> None:
        self.settings = settings

    def quota(self, endpoint: str, tier: MemoryTier) -> tuple[int, int]:
        fixed = self.settings.fixed.get(endpoint)
        if fixed is not None:
            limit, window = fixed
            return int(limit), int(window)
        quotas = self.settings.tier_quotas[tier.value]
        limit = quotas.get(endpoint, quotas.get(DEFAULT_ENDPOINT))
        if limit is None:
            msg = f'No quota configured for endpoint {endpoint!r}'
            raise ValueError(msg)
        return int(limit), int(self.settings.window_s)

    def quotas(self, tier: MemoryTier) -> dict[str, int]:
        return dict(self.settings.tier_quotas[tier.value])


class RateLimiter:
    """In-memory fixed-window counters per (endpoint, client).

    Usage:
        limiter = RateLimiter(RateLimitPolicy(settings.rate_limits), governor)
        decision = limiter.check('tile', client_ip)
        if not decision.allowed:
            reject(retry_after=decision.retry_after)
    """

    def __init__(
        self,
        policy: RateLimitPolicy,
        tier_source: TierSource = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        prune_interval_s: float | None = None,
    ) -> None:
        self.policy = policy
        # Expired windows are swept at most once per interval, from check()
        self.prune_interval_s = (
            policy.settings.window_s if prune_interval_s is None else prune_interval_s
        )
        self._tier_source = tier_source
        self._clock = clock
        self._windows: dict[tuple[str, str], tuple[float, int]] = {}
        self._last_prune = clock()
        self._lock = threading.Lock()

    def current_tier(self) -> MemoryTier:
        source = self._tier_source
        if source is None:
            return MemoryTier.NORMAL
        tier = getattr(source, 'tier', None)
        if isinstance(tier, MemoryTier):
            return tier
        return source()

    def check(self, endpoint: str, client_id: str = '') -> RateLimitDecision:
        """Count one request and decide whether it is admitted."""
        tier = self.current_tier()
        limit, window = self.policy.quota(endpoint, tier)
        now = self._clock()
        bucket = (endpoint, client_id)
        with self._lock:
            if now - self._last_prune >= self.prune_interval_s:
                self._prune_locked(now)
            started, count = self._windows.get(bucket, (now, 0))
            if now - started >= window:
                started, count = now, 0
            allowed = count < limit
            if allowed:
                count += 1
            self._windows[bucket] = (started, count)
        reset_s = max(0, math.ceil(started + window - now))
        if not allowed:
            logger.warning(
                'Rate limit exceeded for %s on %s (tier %s, limit %d/%ds)',
                client_id or 'anonymous',
                endpoint,
                tier.value,
                limit,
                window,
            )
        return RateLimitDecision(
            allowed=allowed,
            endpoint=endpoint,
            tier=tier,
            limit=limit,
            remaining=max(0, limit - count),
            reset_s=reset_s,
            retry_after=None if allowed else reset_s,
        )

    def prune(self) -> int:
        """Drop expired windows; returns the number removed."""
        now = self._clock()
        with self._lock:
            return self._prune_locked(now)

    def _prune_locked(self, now: float) -> int:
        self._last_prune = now
        removed = 0
        for bucket, (started, _) in list(self._windows.items()):
            _, window = self.policy.quota(bucket[0], MemoryTier.NORMAL)
            if now - started >= window:
                del self._windows[bucket]
                removed += 1
        if removed:
            logger.debug('Pruned %d expired rate-limit windows', removed)
        return removed
