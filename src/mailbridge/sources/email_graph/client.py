from __future__ import annotations

import logging
from typing import Any

import httpx

from mailbridge.errors import BackendError, NotFoundError
from mailbridge.sources.models import ThreadSnapshot

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0/me"

MESSAGE_SELECT = (
    "id,conversationId,subject,from,replyTo,toRecipients,ccRecipients,"
    "internetMessageId,internetMessageHeaders,receivedDateTime,isDraft"
)
DRAFT_SELECT = "id,conversationId,subject,from,toRecipients,bodyPreview,lastModifiedDateTime"


def recipient_addresses(items: list[dict[str, Any]] | None) -> list[str]:
    result = []
    for item in items or []:
        address = (item.get("emailAddress") or {}).get("address")
        if address:
            result.append(address)
    return result


def to_recipients(addresses: list[str] | tuple[str, ...]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": address}} for address in addresses]


class GraphClient:
    def __init__(self, access_token: str, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self._access_token = access_token
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def __aenter__(self) -> GraphClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{GRAPH_API_BASE_URL}{path}"
        logger.debug("Graph %s %s params=%s", method, path, kwargs.get("params"))
        try:
            response = await self._client.request(method, url, headers=self.headers, **kwargs)
        except httpx.RequestError as exc:
            raise BackendError(f"Graph {method} {path} failed: {exc}", backend="graph") from exc

        if response.status_code == 404:
            raise NotFoundError(f"Graph: {path} not found", {"status_code": 404})
        if response.status_code >= 400:
            logger.error("Graph %s %s returned %s", method, path, response.status_code)
            raise BackendError(
                f"Graph {method} {path} failed",
                backend="graph",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        if not response.content:
            return {}
        return response.json()

    async def list_messages(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        data = await self._json("GET", "/messages", params=params or {})
        return data.get("value", [])

    async def get_message(self, message_id: str, select: str = MESSAGE_SELECT) -> dict[str, Any]:
        return await self._json("GET", f"/messages/{message_id}", params={"$select": select})

    async def list_conversation_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        # $orderby together with a conversationId $filter is rejected; sort locally
        messages = await self.list_messages(
            {
                "$filter": f"conversationId eq '{conversation_id}'",
                "$select": MESSAGE_SELECT,
                "$top": 50,
            }
        )
        return sorted(messages, key=lambda m: m.get("receivedDateTime") or "")

    async def move_message(self, message_id: str, destination_id: str) -> dict[str, Any]:
        return await self._json("POST", f"/messages/{message_id}/move", json={"destinationId": destination_id})

    async def create_reply(self, message_id: str, reply_all: bool = False) -> dict[str, Any]:
        endpoint = "createReplyAll" if reply_all else "createReply"
        return await self._json("POST", f"/messages/{message_id}/{endpoint}", json={})

    async def create_forward(self, message_id: str) -> dict[str, Any]:
        return await self._json("POST", f"/messages/{message_id}/createForward", json={})

    async def patch_message(self, message_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._json("PATCH", f"/messages/{message_id}", json=changes)

    async def send_message(self, message_id: str) -> None:
        await self._request("POST", f"/messages/{message_id}/send")

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}")

    async def list_drafts(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        data = await self._json(
            "GET",
            "/mailFolders/drafts/messages",
            params={
                "$top": limit,
                "$skip": offset,
                "$select": DRAFT_SELECT,
                "$orderby": "lastModifiedDateTime desc",
            },
        )
        return data.get("value", [])

    async def thread_snapshot(self, conversation_id: str, self_address: str | None = None) -> ThreadSnapshot:
        messages = [m for m in await self.list_conversation_messages(conversation_id) if not m.get("isDraft")]
        if not messages:
            raise NotFoundError(f"Graph conversation {conversation_id} has no messages")
        return snapshot_from_messages(conversation_id, messages, self_address)


def snapshot_from_messages(
    conversation_id: str,
    messages: list[dict[str, Any]],
    self_address: str | None = None,
) -> ThreadSnapshot:
    last = messages[-1]
    headers = {
        (h.get("name") or "").lower(): h.get("value", "")
        for h in last.get("internetMessageHeaders") or []
    }
    references = [token for token in headers.get("references", "").split() if token]

    reply_to = recipient_addresses(last.get("replyTo")) or recipient_addresses([last.get("from") or {}])
    subject = last.get("subject") or messages[0].get("subject") or ""

    return ThreadSnapshot(
        thread_id=conversation_id,
        subject=subject,
        last_message_id=last.get("internetMessageId"),
        references=tuple(references),
        reply_to_address=reply_to[0] if reply_to else None,
        all_to=tuple(recipient_addresses(last.get("toRecipients"))),
        all_cc=tuple(recipient_addresses(last.get("ccRecipients"))),
        self_address=self_address,
        provider_message_id=last.get("id"),
    )
