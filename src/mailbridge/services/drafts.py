from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import httpx

from mailbridge.config import Settings
from mailbridge.core.credentials import CredentialRecord
from mailbridge.errors import BackendError, NotFoundError
from mailbridge.sources.email_gmail import GmailDraftSource
from mailbridge.sources.email_graph import GraphDraftSource
from mailbridge.sources.models import Draft, DraftSource, DraftUpdate
from mailbridge.sources.native import NativeDraftSource

from .providers import Provider

module_logger = logging.getLogger(__name__)


class DraftSourceProtocol(Protocol):
    source: DraftSource

    async def list_drafts(self, limit: int = 50, offset: int = 0) -> list[Draft]: ...


@dataclass(slots=True)
class SourceFailure:
    source: DraftSource
    error: Exception


class DraftAggregationService:
    """
    Lists drafts from every registered source at once and routes edits back to
    the source that owns each draft.

    A failing source never sinks the listing; its error is logged and kept in
    ``last_failures``. Results keep registration order whatever order the
    sources answer in.
    """

    def __init__(
        self,
        sources: list[DraftSourceProtocol],
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        if not isinstance(sources, list):
            raise TypeError(f"sources must be a list, got {type(sources).__name__}")
        self.sources = list(sources)
        self.logger = logger or module_logger
        self.last_failures: list[SourceFailure] = []
        self._index: dict[tuple[DraftSource, str], Draft] = {}

    async def list_drafts(self, limit: int = 50, offset: int = 0, *, strict: bool = False) -> list[Draft]:
        if not self.sources:
            self.last_failures = []
            if strict:
                raise BackendError("No draft sources registered")
            return []

        results = await asyncio.gather(
            *(source.list_drafts(limit, offset) for source in self.sources),
            return_exceptions=True,
        )

        drafts: list[Draft] = []
        failures: list[SourceFailure] = []
        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self.logger.warning("Draft source %s failed: %s", source.source.value, result)
                failures.append(SourceFailure(source.source, result))
                continue
            for draft in result:
                self._index[draft.key] = draft
            drafts.extend(result)

        self.last_failures = failures
        if strict and len(failures) == len(self.sources):
            summary = "; ".join(f"{f.source.value}: {f.error}" for f in failures)
            raise BackendError(f"All draft sources failed: {summary}") from failures[0].error
        return drafts

    def _source_by_kind(self, kind: DraftSource) -> DraftSourceProtocol:
        for source in self.sources:
            if source.source == kind:
                return source
        raise NotFoundError(f"No draft source registered for {kind.value}")

    def _owner_for(self, draft_id: str, source: DraftSource | str | None) -> DraftSourceProtocol | None:
        if source is not None:
            return self._source_by_kind(DraftSource(source))
        for candidate in self.sources:
            prefix = getattr(candidate, "id_prefix", None)
            if prefix and draft_id.startswith(prefix):
                return candidate
        return None

    def _lookup(self, draft_id: str, kind: DraftSource | None) -> Draft | None:
        if kind is not None:
            return self._index.get((kind, draft_id))
        for (_, indexed_id), draft in self._index.items():
            if indexed_id == draft_id:
                return draft
        return None

    async def _locate(self, draft_id: str, source: DraftSource | str | None) -> tuple[DraftSourceProtocol, Draft]:
        owner = self._owner_for(draft_id, source)
        kind = owner.source if owner is not None else None

        draft = self._lookup(draft_id, kind)
        if draft is None:
            self.logger.debug("Draft %s not indexed, listing sources", draft_id)
            await self.list_drafts()
            draft = self._lookup(draft_id, kind)
        if draft is None:
            raise NotFoundError(f"Draft {draft_id} not found", {"draft_id": draft_id})

        if owner is None:
            owner = self._source_by_kind(draft.source)
        return owner, draft

    async def update_draft(
        self,
        draft_id: str,
        updates: DraftUpdate,
        source: DraftSource | str | None = None,
    ) -> Draft:
        owner, draft = await self._locate(draft_id, source)
        update = getattr(owner, "update_draft", None)
        if update is None:
            raise BackendError(f"Draft source {owner.source.value} does not support updates", backend=owner.source.value)
        updated = await update(draft, updates)
        self._index[updated.key] = updated
        self.logger.info("Updated %s draft %s", owner.source.value, draft_id)
        return updated

    async def delete_draft(self, draft_id: str, source: DraftSource | str | None = None) -> None:
        owner, draft = await self._locate(draft_id, source)
        delete = getattr(owner, "delete_draft", None)
        if delete is None:
            raise BackendError(f"Draft source {owner.source.value} does not support deletes", backend=owner.source.value)
        await delete(draft)
        self._index.pop(draft.key, None)
        self.logger.info("Deleted %s draft %s", owner.source.value, draft_id)


def filter_drafts(drafts: Iterable[Draft], to: str | None = None, subject: str | None = None) -> list[Draft]:
    to_needle = (to or "").lower()
    subject_needle = (subject or "").lower()
    result = []
    for draft in drafts:
        if to_needle and not any(to_needle in address.lower() for address in draft.to):
            continue
        if subject_needle and subject_needle not in draft.subject.lower():
            continue
        result.append(draft)
    return result


async def draft_sources_for(
    provider: Provider,
    account_email: str | None,
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> list[DraftSourceProtocol]:
    """Mail-provider drafts for the account's backend, then native drafts."""
    record = await provider.get_token(account_email)
    email = record.account_email

    async def token() -> CredentialRecord:
        return await provider.get_token(email)

    primary: DraftSourceProtocol
    if record.is_microsoft:
        primary = GraphDraftSource(token, http_client=http_client)
    else:
        primary = GmailDraftSource(token)
    return [primary, NativeDraftSource(token, base_url=settings.native_api_base, http_client=http_client)]
