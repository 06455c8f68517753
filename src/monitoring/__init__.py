"""Memory governor and tiered rate limits."""
from monitoring.governor import MemoryGovernor, MemorySample
from monitoring.rate_limits import RateLimitDecision, RateLimiter, RateLimitPolicy

__all__ = [
    'MemoryGovernor',
    'MemorySample',
    'RateLimitDecision',
    'RateLimitPolicy',
    'RateLimiter',
]
