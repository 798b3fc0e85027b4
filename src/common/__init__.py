"""
Common utilities for tracker-sync.

Modules:
- errors: sync error kinds with user-facing messages
- remote: remote blob client protocol
- gist: GitHub Gist blob client with rate limiting and retries
- rate_limiter: asyncio sliding-window rate limiter
- timers: cancellable call_later abstraction
"""

__all__ = [
    "errors",
    "remote",
    "gist",
    "rate_limiter",
    "timers",
]
