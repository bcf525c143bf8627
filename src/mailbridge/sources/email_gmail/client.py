from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from email.message import EmailMessage
from email.utils import getaddresses
from typing import Any, TypeVar

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailbridge.errors import BackendError, NotFoundError
from mailbridge.sources.models import ThreadSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

THREAD_HEADERS = ["From", "Reply-To", "To", "Cc", "Subject", "Message-ID", "References", "In-Reply-To", "Date"]


def headers_map(payload: dict[str, Any]) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in payload.get("headers", []):
        name = item.get("name")
        if name:
            result[name.lower()] = item.get("value", "")
    return result


def split_addresses(value: str | None) -> list[str]:
    if not value:
        return []
    return [addr for _, addr in getaddresses([value]) if addr]


def split_message_ids(value: str | None) -> list[str]:
    if not value:
        return []
    return [token for token in value.replace(",", " ").split() if token]


def angle_bracket(message_id: str) -> str:
    message_id = message_id.strip()
    return message_id if message_id.startswith("<") else f"<{message_id}>"


def build_raw_message(
    *,
    to: list[str],
    subject: str,
    body: str,
    from_address: str | None = None,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    html: bool = True,
    in_reply_to: str | None = None,
    references: list[str] | None = None,
) -> str:
    """RFC 2822 message, base64url-encoded for the ``raw`` field."""
    message = EmailMessage()
    if from_address:
        message["From"] = from_address
    if to:
        message["To"] = ", ".join(to)
    if cc:
        message["Cc"] = ", ".join(cc)
    if bcc:
        message["Bcc"] = ", ".join(bcc)
    message["Subject"] = subject
    if in_reply_to:
        message["In-Reply-To"] = angle_bracket(in_reply_to)
    if references:
        message["References"] = " ".join(angle_bracket(ref) for ref in references)
    if html:
        message.set_content(body, subtype="html")
    else:
        message.set_content(body)
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


class GmailClient:
    """Gmail API calls for one access token.

    ``googleapiclient`` is blocking, so every call runs in a worker thread. A
    service object is not safe to share across threads; each public method does
    all of its requests inside a single worker call.
    """

    def __init__(self, access_token: str, service: Any | None = None):
        self._access_token = access_token
        self._service = service

    @property
    def users(self):  # noqa: ANN201
        if self._service is None:
            creds = Credentials(token=self._access_token)
            self._service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return self._service.users()

    async def _call(self, what: str, func: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(func)
        except HttpError as exc:
            status = int(getattr(exc.resp, "status", 0) or 0)
            body = exc.content.decode("utf-8", errors="replace") if isinstance(exc.content, bytes) else str(exc.content)
            if status == 404:
                raise NotFoundError(f"Gmail: {what} not found", {"status_code": status}) from exc
            raise BackendError(f"Gmail {what} failed", backend="gmail", status_code=status, body=body) from exc

    async def list_messages(
        self,
        query: str | None = None,
        label_ids: list[str] | None = None,
        max_results: int = 20,
    ) -> list[dict[str, Any]]:
        def run() -> list[dict[str, Any]]:
            kwargs: dict[str, Any] = {"userId": "me", "maxResults": min(max_results, 500)}
            if query:
                kwargs["q"] = query
            if label_ids:
                kwargs["labelIds"] = label_ids
            return self.users.messages().list(**kwargs).execute().get("messages", [])

        return await self._call("messages.list", run)

    async def get_message(self, message_id: str, format: str = "metadata") -> dict[str, Any]:
        return await self._call(
            f"message {message_id}",
            lambda: self.users.messages()
            .get(userId="me", id=message_id, format=format, metadataHeaders=THREAD_HEADERS)
            .execute(),
        )

    async def get_thread(self, thread_id: str, format: str = "metadata") -> dict[str, Any]:
        return await self._call(
            f"thread {thread_id}",
            lambda: self.users.threads()
            .get(userId="me", id=thread_id, format=format, metadataHeaders=THREAD_HEADERS)
            .execute(),
        )

    async def modify_thread_labels(
        self,
        thread_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> dict[str, Any]:
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        return await self._call(
            f"thread {thread_id} modify",
            lambda: self.users.threads().modify(userId="me", id=thread_id, body=body).execute(),
        )

    async def send_raw(self, raw: str, thread_id: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        return await self._call("messages.send", lambda: self.users.messages().send(userId="me", body=body).execute())

    async def list_drafts(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        """Draft metadata (``format=metadata``) for ``limit`` drafts after ``offset``."""

        def run() -> list[dict[str, Any]]:
            drafts = self.users.drafts()
            wanted = offset + limit
            refs: list[dict[str, Any]] = []
            request = drafts.list(userId="me", maxResults=min(wanted, 500))
            while request is not None and len(refs) < wanted:
                response = request.execute()
                refs.extend(response.get("drafts", []))
                if len(refs) >= wanted:
                    break
                request = drafts.list_next(request, response)
            return [
                drafts.get(userId="me", id=ref["id"], format="metadata").execute()
                for ref in refs[offset:wanted]
            ]

        return await self._call("drafts.list", run)

    async def get_draft(self, draft_id: str, format: str = "full") -> dict[str, Any]:
        return await self._call(
            f"draft {draft_id}",
            lambda: self.users.drafts().get(userId="me", id=draft_id, format=format).execute(),
        )

    async def create_draft(self, raw: str, thread_id: str | None = None) -> dict[str, Any]:
        message: dict[str, Any] = {"raw": raw}
        if thread_id:
            message["threadId"] = thread_id
        return await self._call(
            "drafts.create",
            lambda: self.users.drafts().create(userId="me", body={"message": message}).execute(),
        )

    async def update_draft(self, draft_id: str, raw: str, thread_id: str | None = None) -> dict[str, Any]:
        message: dict[str, Any] = {"raw": raw}
        if thread_id:
            message["threadId"] = thread_id
        return await self._call(
            f"draft {draft_id} update",
            lambda: self.users.drafts()
            .update(userId="me", id=draft_id, body={"id": draft_id, "message": message})
            .execute(),
        )

    async def delete_draft(self, draft_id: str) -> None:
        await self._call(
            f"draft {draft_id} delete",
            lambda: self.users.drafts().delete(userId="me", id=draft_id).execute(),
        )

    async def send_draft(self, draft_id: str) -> dict[str, Any]:
        return await self._call(
            f"draft {draft_id} send",
            lambda: self.users.drafts().send(userId="me", body={"id": draft_id}).execute(),
        )

    async def thread_snapshot(self, thread_id: str, self_address: str | None = None) -> ThreadSnapshot:
        thread = await self.get_thread(thread_id)
        return snapshot_from_thread(thread, self_address)


def snapshot_from_thread(thread: dict[str, Any], self_address: str | None = None) -> ThreadSnapshot:
    messages = [m for m in thread.get("messages", []) if "DRAFT" not in (m.get("labelIds") or [])]
    if not messages:
        raise NotFoundError(f"Gmail thread {thread.get('id')} has no messages")

    last = messages[-1]
    headers = headers_map(last.get("payload", {}))
    subject = headers.get("subject") or headers_map(messages[0].get("payload", {})).get("subject", "")

    references = split_message_ids(headers.get("references"))
    if not references and headers.get("in-reply-to"):
        references = split_message_ids(headers.get("in-reply-to"))

    reply_to = split_addresses(headers.get("reply-to")) or split_addresses(headers.get("from"))

    return ThreadSnapshot(
        thread_id=thread.get("id") or last.get("threadId", ""),
        subject=subject,
        last_message_id=headers.get("message-id") or None,
        references=tuple(references),
        reply_to_address=reply_to[0] if reply_to else None,
        all_to=tuple(split_addresses(headers.get("to"))),
        all_cc=tuple(split_addresses(headers.get("cc"))),
        self_address=self_address,
        provider_message_id=last.get("id"),
    )
