from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from mailbridge.config import DEFAULT_NATIVE_API_BASE
from mailbridge.core.credentials import CredentialRecord
from mailbridge.errors import BackendError
from mailbridge.sources.models import NATIVE_DRAFT_PREFIX, Draft, DraftSource, DraftUpdate

from .client import NativeClient

logger = logging.getLogger(__name__)


def drafts_from_thread_list(thread_list: list[dict[str, Any]]) -> list[Draft]:
    drafts: list[Draft] = []
    for item in thread_list:
        thread = item.get("thread") or {}
        thread_id = thread.get("id")
        for message in (thread.get("messages") or {}).values():
            draft = (message or {}).get("draft")
            if not draft:
                continue
            drafts.append(
                Draft(
                    id=draft["id"],
                    subject=draft.get("subject") or "(no subject)",
                    from_address=draft.get("from") or "",
                    source=DraftSource.NATIVE,
                    to=list(draft.get("to") or []),
                    preview=draft.get("snippet") or "",
                    timestamp=draft.get("date") or "",
                    thread_id=thread_id,
                )
            )
    return drafts


class NativeDraftSource:
    source = DraftSource.NATIVE
    id_prefix = NATIVE_DRAFT_PREFIX

    def __init__(
        self,
        token_getter: Callable[[], Awaitable[CredentialRecord]],
        base_url: str = DEFAULT_NATIVE_API_BASE,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._token_getter = token_getter
        self._base_url = base_url
        self._http_client = http_client

    async def _record(self) -> CredentialRecord:
        return await self._token_getter()

    def _client(self, record: CredentialRecord) -> NativeClient:
        return NativeClient(
            record.proprietary_token or "",
            user_id=record.proprietary_user_id,
            base_url=self._base_url,
            client=self._http_client,
        )

    async def list_drafts(self, limit: int = 50, offset: int = 0) -> list[Draft]:
        record = await self._record()
        if not record.proprietary_token:
            logger.debug("No native backend token for %s, skipping native drafts", record.account_email)
            return []
        async with self._client(record) as client:
            thread_list = await client.get_threads("draft", limit=limit, offset=offset)
        return drafts_from_thread_list(thread_list)

    async def _writable(self, draft: Draft, action: str) -> CredentialRecord:
        if not draft.thread_id:
            raise BackendError(f"Native draft {draft.id} has no thread id, cannot {action}", backend="native")
        record = await self._record()
        if not record.proprietary_token:
            raise BackendError(f"No native backend token for {record.account_email}", backend="native")
        return record

    async def update_draft(self, draft: Draft, updates: DraftUpdate) -> Draft:
        record = await self._writable(draft, "update")
        merged = updates.apply(draft)
        async with self._client(record) as client:
            await client.write_draft(
                draft.thread_id,
                draft.id,
                from_address=draft.from_address or record.account_email,
                to=merged.to,
                subject=merged.subject,
                body=merged.preview,
            )
        return merged

    async def delete_draft(self, draft: Draft) -> None:
        record = await self._writable(draft, "delete")
        async with self._client(record) as client:
            await client.delete_draft(draft.thread_id, draft.id)
