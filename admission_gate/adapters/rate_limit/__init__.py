"""Rate limiting adapters.

Two interchangeable sliding-window engines behind ``AbstractRateLimiter``:
an in-memory one for single-process deployments and a Redis one for
deployments where several instances must share one counter per identifier.
The factory picks between them once at startup.
"""
