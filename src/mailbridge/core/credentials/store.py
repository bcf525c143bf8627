from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping
from datetime import datetime

from mailbridge.errors import BackendError, CredentialError

from .models import BackendKind, CredentialRecord, normalize_email
from .persistence import CredentialPersistence
from .refresh import CredentialExtractor, TokenRefresher, utc_now

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 5 * 60


class CredentialStore:
    """
    Cache of account credentials with refresh-ahead semantics.

    One instance per process, passed to whoever needs tokens. Records handed
    out by ``get`` expire more than ``refresh_margin`` seconds in the future;
    anything closer is refreshed first, either through the backend's OAuth
    token endpoint (when a refresh token is stored) or by extracting the
    credential from the live client (first-time bootstrap). Concurrent
    refreshes of the same account share one in-flight task.
    """

    def __init__(
        self,
        persistence: CredentialPersistence,
        refreshers: Mapping[BackendKind, TokenRefresher] | None = None,
        extractor: CredentialExtractor | None = None,
        clock: Callable[[], datetime] = utc_now,
        refresh_margin: float = REFRESH_MARGIN_SECONDS,
    ):
        self.persistence = persistence
        self.refreshers: dict[BackendKind, TokenRefresher] = dict(refreshers or {})
        self.refresh_margin = refresh_margin
        self._extractor = extractor
        self._clock = clock
        self._records: dict[str, CredentialRecord] = {}
        self._inflight: dict[str, asyncio.Task[CredentialRecord]] = {}

    @property
    def extractor(self) -> CredentialExtractor | None:
        return self._extractor

    def use_extractor(self, extractor: CredentialExtractor | None) -> None:
        self._extractor = extractor

    def load(self) -> int:
        self._records.clear()
        for email, payload in self.persistence.load().items():
            try:
                record = CredentialRecord.from_dict(payload, account_email=email)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable credential entry for %s: %s", email, exc)
                continue
            self._records[record.account_email] = record
        logger.debug("Loaded %s cached credentials", len(self._records))
        return len(self._records)

    def persist(self) -> None:
        self.persistence.save({email: record.to_dict() for email, record in self._records.items()})

    def clear(self) -> None:
        self._records.clear()

    def accounts(self) -> list[str]:
        return list(self._records)

    def peek(self, account_email: str) -> CredentialRecord | None:
        return self._records.get(normalize_email(account_email))

    def put(self, record: CredentialRecord) -> CredentialRecord:
        key = normalize_email(record.account_email)
        if record.account_email != key:
            record = dataclasses.replace(record, account_email=key)
        self._records[key] = record
        self.persist()
        return record

    def forget(self, account_email: str) -> bool:
        removed = self._records.pop(normalize_email(account_email), None)
        if removed is not None:
            self.persist()
        return removed is not None

    def is_fresh(self, record: CredentialRecord) -> bool:
        return record.is_fresh(self._clock(), self.refresh_margin)

    def can_serve(self, account_email: str) -> bool:
        """True when ``get`` can succeed without a live client session."""
        record = self.peek(account_email)
        if record is None:
            return False
        return self.is_fresh(record) or bool(record.refresh_token)

    async def get(self, account_email: str) -> CredentialRecord:
        key = normalize_email(account_email)
        record = self._records.get(key)
        if record is not None and self.is_fresh(record):
            return record
        if record is None:
            logger.info("No cached credential for %s", key)
        else:
            logger.info("Credential for %s expires at %s, refreshing", key, record.expires_at.isoformat())
        return await self.refresh(key)

    async def refresh(self, account_email: str) -> CredentialRecord:
        key = normalize_email(account_email)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._run_refresh(key))
            self._inflight[key] = task
        else:
            logger.debug("Joining in-flight refresh for %s", key)
        return await asyncio.shield(task)

    async def _run_refresh(self, key: str) -> CredentialRecord:
        try:
            fresh = await self._refresh_once(key)
        finally:
            self._inflight.pop(key, None)
        self._records[key] = fresh
        self.persist()
        return fresh

    async def _refresh_once(self, key: str) -> CredentialRecord:
        current = self._records.get(key)

        if current is not None and current.refresh_token:
            refresher = self.refreshers.get(current.backend_kind)
            if refresher is None:
                raise CredentialError("no_refresher", key, f"No token refresher for backend {current.backend_kind.name}")
            try:
                fresh = await refresher.refresh(current)
            except CredentialError as exc:
                if exc.reason != "invalid_grant":
                    raise
                # a rejected refresh token never works again
                current = dataclasses.replace(current, refresh_token=None)
                self._records[key] = current
                self.persist()
                if self._extractor is None:
                    raise
                logger.warning("Refresh token for %s was rejected, extracting from the live client", key)
                fresh = await self._extract(key, current)
            except BackendError as exc:
                if self._extractor is None:
                    raise
                logger.warning("Token endpoint failed for %s (%s), extracting from the live client", key, exc)
                fresh = dataclasses.replace(await self._extract(key, current), refresh_token=current.refresh_token)
            else:
                logger.info("Refreshed %s token for %s", current.backend_kind.name.lower(), key)
        elif self._extractor is not None:
            fresh = await self._extract(key, current)
        else:
            raise CredentialError("reauth_required", key, "No refresh token and no live client session")

        if fresh.account_email != key:
            fresh = dataclasses.replace(fresh, account_email=key)
        if not fresh.is_fresh(self._clock()):
            raise CredentialError("expired_on_arrival", key, "Refreshed credential is already expired")
        return fresh

    async def _extract(self, key: str, current: CredentialRecord | None) -> CredentialRecord:
        fresh = await self._extractor.extract_credential(key)
        if current is not None:
            fresh = dataclasses.replace(
                fresh,
                proprietary_token=fresh.proprietary_token or current.proprietary_token,
                proprietary_user_id=fresh.proprietary_user_id or current.proprietary_user_id,
            )
        logger.info("Extracted credential for %s from the live client", key)
        return fresh
