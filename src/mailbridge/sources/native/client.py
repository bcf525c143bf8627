from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from mailbridge.config import DEFAULT_NATIVE_API_BASE
from mailbridge.errors import BackendError, NotFoundError

logger = logging.getLogger(__name__)


class NativeClient:
    """Client for the desktop app's own backend (``userdata.*`` RPC endpoints)."""

    def __init__(
        self,
        token: str,
        user_id: str | None = None,
        base_url: str = DEFAULT_NATIVE_API_BASE,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._token = token
        self.user_id = user_id
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    async def __aenter__(self) -> NativeClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{method}"
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.RequestError as exc:
            raise BackendError(f"{method} failed: {exc}", backend="native") from exc

        if response.status_code == 404:
            raise NotFoundError(f"{method}: not found", {"status_code": 404})
        if response.status_code >= 400:
            logger.error("Native %s returned %s", method, response.status_code)
            raise BackendError(
                f"{method} failed",
                backend="native",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return {}
        return response.json()

    async def get_threads(self, filter_type: str = "draft", limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        data = await self._post(
            "userdata.getThreads",
            {"filter": {"type": filter_type}, "offset": offset, "limit": limit},
        )
        return data.get("threadList") or []

    async def sync(self, start_history_id: int | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if start_history_id is not None:
            payload["startHistoryId"] = start_history_id
        return await self._post("userdata.sync", payload)

    def _draft_path(self, thread_id: str, draft_id: str) -> str:
        if not self.user_id:
            raise BackendError("native draft writes need the account's user id", backend="native")
        return f"users/{self.user_id}/threads/{thread_id}/messages/{draft_id}/draft"

    async def write_draft(
        self,
        thread_id: str,
        draft_id: str,
        *,
        from_address: str,
        to: list[str],
        subject: str,
        body: str,
        cc: list[str] | None = None,
    ) -> dict[str, Any]:
        """Create or overwrite a native draft; the same write serves both cases."""
        value = {
            "id": draft_id,
            "threadId": thread_id,
            "action": "compose",
            "from": from_address,
            "to": list(to),
            "cc": list(cc or []),
            "bcc": [],
            "subject": subject,
            "body": body,
            "snippet": body[:100],
            "date": datetime.now(timezone.utc).isoformat(),
            "labelIds": ["DRAFT"],
        }
        return await self._post(
            "userdata.writeMessage",
            {"writes": [{"path": self._draft_path(thread_id, draft_id), "value": value}]},
        )

    async def delete_draft(self, thread_id: str, draft_id: str) -> dict[str, Any]:
        return await self._post(
            "userdata.writeMessage",
            {"writes": [{"path": self._draft_path(thread_id, draft_id), "value": None}]},
        )
