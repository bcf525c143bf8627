from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mailbridge.core.credentials import CredentialRecord
from mailbridge.sources.content import epoch_ms_to_iso, extract_body, text_to_html
from mailbridge.sources.models import Draft, DraftSource, DraftUpdate

from .client import GmailClient, build_raw_message, headers_map, split_addresses, split_message_ids

logger = logging.getLogger(__name__)


def draft_from_payload(payload: dict[str, Any]) -> Draft:
    message = payload.get("message", {})
    headers = headers_map(message.get("payload", {}))
    return Draft(
        id=payload["id"],
        subject=headers.get("subject") or "(no subject)",
        from_address=headers.get("from", ""),
        source=DraftSource.GMAIL,
        to=split_addresses(headers.get("to")),
        preview=message.get("snippet", ""),
        timestamp=epoch_ms_to_iso(message.get("internalDate")),
        thread_id=message.get("threadId"),
    )


class GmailDraftSource:
    source = DraftSource.GMAIL
    id_prefix: str | None = None

    def __init__(
        self,
        token_getter: Callable[[], Awaitable[CredentialRecord]],
        client_factory: Callable[[str], GmailClient] = GmailClient,
    ):
        self._token_getter = token_getter
        self._client_factory = client_factory

    async def _client(self) -> GmailClient:
        record = await self._token_getter()
        return self._client_factory(record.access_token)

    async def list_drafts(self, limit: int = 50, offset: int = 0) -> list[Draft]:
        client = await self._client()
        payloads = await client.list_drafts(limit=limit, offset=offset)
        drafts = [draft_from_payload(item) for item in payloads]
        logger.debug("Gmail drafts listed: %s", len(drafts))
        return drafts

    async def update_draft(self, draft: Draft, updates: DraftUpdate) -> Draft:
        client = await self._client()
        existing = await client.get_draft(draft.id, format="full")
        message = existing.get("message", {})
        headers = headers_map(message.get("payload", {}))

        if updates.body is not None:
            body, is_html = text_to_html(updates.body), True
        else:
            body, is_html = extract_body(message.get("payload", {}))

        merged = updates.apply(draft)
        raw = build_raw_message(
            to=merged.to,
            cc=split_addresses(headers.get("cc")),
            subject=merged.subject,
            body=body,
            from_address=headers.get("from") or None,
            html=is_html,
            in_reply_to=headers.get("in-reply-to") or None,
            references=split_message_ids(headers.get("references")),
        )
        await client.update_draft(draft.id, raw, thread_id=draft.thread_id)
        return merged

    async def delete_draft(self, draft: Draft) -> None:
        client = await self._client()
        await client.delete_draft(draft.id)
