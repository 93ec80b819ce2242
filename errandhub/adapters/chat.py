"""Chat transport: direct messages and private task channels."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from errandhub.ids import gen_id
from errandhub.retry import classify_http_error

logger = logging.getLogger("errandhub.adapters.chat")


class ChatTransport(Protocol):
    async def send_message(self, chat_id: str, text: str, options: dict | None = None) -> None: ...

    async def create_channel(self, title: str, participant_ids: list[str]) -> str: ...

    async def promote_member(self, channel_ref: str, user_id: str) -> None: ...

    async def remove_member(self, channel_ref: str, user_id: str) -> None: ...

    async def delete_channel(self, channel_ref: str) -> None: ...


class HttpChatGateway:
    """Talks to a bot gateway exposing one JSON POST endpoint per method.

    All methods are idempotent on the gateway side, so retrying is safe.
    """

    def __init__(self, base_url: str, token: str | None, client: httpx.AsyncClient | None = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers)

    async def _call(self, method: str, payload: dict) -> dict:
        try:
            resp = await self._client.post(f"/{method}", json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc
        return resp.json() if resp.content else {}

    async def send_message(self, chat_id: str, text: str, options: dict | None = None) -> None:
        await self._call("sendMessage", {"chat_id": chat_id, "text": text, **(options or {})})

    async def create_channel(self, title: str, participant_ids: list[str]) -> str:
        data = await self._call("createChannel", {"title": title, "members": participant_ids})
        return str(data["channel_id"])

    async def promote_member(self, channel_ref: str, user_id: str) -> None:
        await self._call("promoteMember", {"channel_id": channel_ref, "user_id": user_id})

    async def remove_member(self, channel_ref: str, user_id: str) -> None:
        await self._call("removeMember", {"channel_id": channel_ref, "user_id": user_id})

    async def delete_channel(self, channel_ref: str) -> None:
        await self._call("deleteChannel", {"channel_id": channel_ref})

    async def aclose(self) -> None:
        await self._client.aclose()


class LoggingChatTransport:
    """Writes outgoing traffic to the log. Used when no gateway is configured."""

    async def send_message(self, chat_id: str, text: str, options: dict | None = None) -> None:
        logger.info("-> %s: %s", chat_id, text.replace("\n", " | "))

    async def create_channel(self, title: str, participant_ids: list[str]) -> str:
        ref = gen_id("local_")
        logger.info("Created channel %s (%s) for %s", ref, title, ", ".join(participant_ids))
        return ref

    async def promote_member(self, channel_ref: str, user_id: str) -> None:
        logger.info("Promoted %s in %s", user_id, channel_ref)

    async def remove_member(self, channel_ref: str, user_id: str) -> None:
        logger.info("Removed %s from %s", user_id, channel_ref)

    async def delete_channel(self, channel_ref: str) -> None:
        logger.info("Deleted channel %s", channel_ref)
