"""
Utility helpers shared across relmap.

Provides:
- RateLimiter for batching and spacing outbound Web API calls
"""

from relmap.utils.rate_limiter import RateLimiter

__all__ = [
    "RateLimiter",
]
