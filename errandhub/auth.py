"""Caller identity for the command-routing layer.

The chat gateway authenticates with a shared bearer key and forwards the
end user's external id in ``X-Caller-Id``. Operators use a separate admin key.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Request

from errandhub.config import settings
from errandhub.rate_limit import CALLER_HEADER


def _bearer(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[7:]


async def get_caller_id(request: Request) -> str:
    if settings.gateway_key is not None:
        key = _bearer(request)
        if key is None:
            raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
        if not secrets.compare_digest(key, settings.gateway_key):
            raise HTTPException(status_code=401, detail="Invalid gateway key")

    caller = request.headers.get(CALLER_HEADER, "").strip()
    if not caller:
        raise HTTPException(status_code=401, detail=f"Missing {CALLER_HEADER} header")
    if len(caller) > 64:
        raise HTTPException(status_code=400, detail=f"{CALLER_HEADER} is too long")
    return caller


Caller = Depends(get_caller_id)


async def verify_admin_key(request: Request) -> None:
    if settings.admin_key is None:
        raise HTTPException(status_code=501, detail="Admin API not configured")
    key = _bearer(request)
    if key is None:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not secrets.compare_digest(key, settings.admin_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")
