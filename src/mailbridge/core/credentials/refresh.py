from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailbridge.errors import BackendError, CredentialError

from .models import CredentialRecord

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_SCOPES = "offline_access https://graph.microsoft.com/Mail.ReadWrite https://graph.microsoft.com/Mail.Send"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenRefresher(Protocol):
    async def refresh(self, record: CredentialRecord) -> CredentialRecord: ...


class CredentialExtractor(Protocol):
    """Reads a credential out of the live client for an account."""

    async def extract_credential(self, account_email: str) -> CredentialRecord: ...


class GoogleTokenRefresher:
    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        token_uri: str = GOOGLE_TOKEN_URI,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri

    def _refresh_sync(self, record: CredentialRecord) -> Credentials:
        creds = Credentials(
            token=record.access_token,
            refresh_token=record.refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )
        creds.refresh(Request())
        return creds

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        if not self.client_id or not self.client_secret:
            raise CredentialError(
                "oauth_client_not_configured",
                record.account_email,
                "Google OAuth client id/secret are not configured",
            )
        try:
            creds = await asyncio.to_thread(self._refresh_sync, record)
        except RefreshError as exc:
            # google-auth marks 5xx/429 from the token endpoint as retryable
            if exc.retryable:
                logger.warning("Google token endpoint failed for %s: %s", record.account_email, exc)
                raise BackendError(f"Google token endpoint failed: {exc}", backend="google-oauth") from exc
            logger.warning("Google token refresh rejected for %s: %s", record.account_email, exc)
            raise CredentialError("invalid_grant", record.account_email) from exc
        except TransportError as exc:
            raise BackendError(f"Google token endpoint unreachable: {exc}", backend="google-oauth") from exc

        # google-auth keeps expiry as a naive UTC datetime
        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else utc_now() + timedelta(hours=1)
        return dataclasses.replace(
            record,
            access_token=creds.token,
            expires_at=expiry,
            refresh_token=creds.refresh_token or record.refresh_token,
        )


class MicrosoftTokenRefresher:
    def __init__(
        self,
        client_id: str | None,
        tenant: str = "common",
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        scopes: str = MICROSOFT_SCOPES,
    ):
        self.client_id = client_id
        self.token_url = MICROSOFT_TOKEN_URL.format(tenant=tenant)
        self._client = http_client
        self._clock = clock
        self.scopes = scopes

    async def _post(self, data: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.token_url, data=data)
        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
            return await client.post(self.token_url, data=data)

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        if not self.client_id:
            raise CredentialError(
                "oauth_client_not_configured",
                record.account_email,
                "Microsoft OAuth client id is not configured",
            )
        try:
            response = await self._post(
                {
                    "client_id": self.client_id,
                    "grant_type": "refresh_token",
                    "refresh_token": record.refresh_token or "",
                    "scope": self.scopes,
                }
            )
        except httpx.RequestError as exc:
            raise BackendError(f"Microsoft token endpoint unreachable: {exc}", backend="microsoft-oauth") from exc

        if 400 <= response.status_code < 500:
            logger.warning(
                "Microsoft token refresh rejected for %s: %s", record.account_email, response.status_code
            )
            raise CredentialError("invalid_grant", record.account_email)
        if response.status_code >= 500:
            raise BackendError(
                "Microsoft token endpoint failed",
                backend="microsoft-oauth",
                status_code=response.status_code,
                body=response.text,
            )

        payload = response.json()
        expires_in = int(payload.get("expires_in", 3600))
        return dataclasses.replace(
            record,
            access_token=payload["access_token"],
            expires_at=self._clock() + timedelta(seconds=expires_in),
            refresh_token=payload.get("refresh_token") or record.refresh_token,
        )
