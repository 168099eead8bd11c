from __future__ import annotations

"""
EMBED_SUMMARY: Fixed-window request counter per bearer token and client IP.
EMBED_TAGS: rate limit, throttling, auth
"""

import time
from typing import Dict, Optional, Tuple

from fastapi import Request

from .config import get_settings
from .errors import RateLimitError


_window_counts: Dict[Tuple[str, str, int], int] = {}


def _current_window() -> int:
    return int(time.time() // 60)


def rate_limit_check(request: Request, token: str, window: Optional[int] = None) -> None:
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return
    window = _current_window() if window is None else window
    for stale in [k for k in _window_counts if k[2] < window]:
        del _window_counts[stale]

    ip = request.client.host if request.client else "unknown"
    key = (token, ip, window)
    _window_counts[key] = _window_counts.get(key, 0) + 1
    if _window_counts[key] > settings.rate_limit_per_minute:
        raise RateLimitError(f"Rate limit of {settings.rate_limit_per_minute} requests per minute exceeded")
