"""Identity-document verification providers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from errandhub.retry import classify_http_error

NATIONAL_ID_RE = re.compile(r"^\d{11}$")


@dataclass(frozen=True)
class IdentityCheck:
    accepted: bool
    reason: str | None = None


class IdentityVerifier(Protocol):
    async def verify_identity(self, national_id: str, claimed_name: str) -> IdentityCheck: ...


class FormatOnlyVerifier:
    """Accepts any well-formed 11-digit national id. For development setups."""

    async def verify_identity(self, national_id: str, claimed_name: str) -> IdentityCheck:
        if not NATIONAL_ID_RE.match(national_id):
            return IdentityCheck(False, "Invalid national id format")
        return IdentityCheck(True)


class HttpIdentityVerifier:
    def __init__(self, base_url: str, api_key: str | None, client: httpx.AsyncClient | None = None):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers)

    async def verify_identity(self, national_id: str, claimed_name: str) -> IdentityCheck:
        try:
            resp = await self._client.post(
                "/verify", json={"national_id": national_id, "claimed_name": claimed_name}
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc
        data = resp.json()
        return IdentityCheck(bool(data.get("accepted")), data.get("reason"))

    async def aclose(self) -> None:
        await self._client.aclose()
