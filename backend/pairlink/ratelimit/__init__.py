"""Distributed rate limiting backed by redis."""
from .limiter import RateLimitDecision, RateLimiter

__all__ = ["RateLimitDecision", "RateLimiter"]
