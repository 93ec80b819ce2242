"""Request rate limiting, keyed by caller identity."""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

CALLER_HEADER = "X-Caller-Id"


def caller_or_address(request: Request) -> str:
    caller = request.headers.get(CALLER_HEADER)
    return f"caller:{caller}" if caller else get_remote_address(request)


limiter = Limiter(key_func=caller_or_address, storage_uri="memory://")
