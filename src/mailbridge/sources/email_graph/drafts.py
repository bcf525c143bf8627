from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from mailbridge.core.credentials import CredentialRecord
from mailbridge.sources.content import text_to_html
from mailbridge.sources.models import Draft, DraftSource, DraftUpdate

from .client import GraphClient, recipient_addresses, to_recipients

logger = logging.getLogger(__name__)


def draft_from_message(message: dict[str, Any]) -> Draft:
    sender = recipient_addresses([message.get("from") or {}])
    return Draft(
        id=message["id"],
        subject=message.get("subject") or "(no subject)",
        from_address=sender[0] if sender else "",
        source=DraftSource.OUTLOOK,
        to=recipient_addresses(message.get("toRecipients")),
        preview=message.get("bodyPreview", ""),
        timestamp=message.get("lastModifiedDateTime", ""),
        thread_id=message.get("conversationId"),
    )


class GraphDraftSource:
    source = DraftSource.OUTLOOK
    id_prefix: str | None = None

    def __init__(
        self,
        token_getter: Callable[[], Awaitable[CredentialRecord]],
        http_client: httpx.AsyncClient | None = None,
    ):
        self._token_getter = token_getter
        self._http_client = http_client

    async def _client(self) -> GraphClient:
        record = await self._token_getter()
        return GraphClient(record.access_token, client=self._http_client)

    async def list_drafts(self, limit: int = 50, offset: int = 0) -> list[Draft]:
        async with await self._client() as client:
            messages = await client.list_drafts(limit=limit, offset=offset)
        return [draft_from_message(m) for m in messages]

    async def update_draft(self, draft: Draft, updates: DraftUpdate) -> Draft:
        changes: dict[str, Any] = {}
        if updates.subject is not None:
            changes["subject"] = updates.subject
        if updates.to is not None:
            changes["toRecipients"] = to_recipients(updates.to)
        if updates.body is not None:
            changes["body"] = {"contentType": "HTML", "content": text_to_html(updates.body)}
        if changes:
            async with await self._client() as client:
                await client.patch_message(draft.id, changes)
        return updates.apply(draft)

    async def delete_draft(self, draft: Draft) -> None:
        async with await self._client() as client:
            await client.delete_message(draft.id)
