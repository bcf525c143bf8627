"""
Transport encoding of a ``ReplyPlan``.

Gmail threads by the ``In-Reply-To``/``References`` headers of a raw message
plus ``threadId``. Graph rejects client threading headers, so replies go
through createReply/createReplyAll/createForward on the backend message id and
the plan's recipients and subject are patched onto the generated draft.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from mailbridge.core.credentials import CredentialRecord
from mailbridge.core.replies import ReplyMode, ReplyPlan
from mailbridge.errors import ThreadingError
from mailbridge.sources.content import text_to_html
from mailbridge.sources.email_gmail import GmailClient, build_raw_message
from mailbridge.sources.email_graph import GraphClient, to_recipients
from mailbridge.sources.models import ThreadSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchResult:
    backend: str
    action: str
    message_id: str | None
    thread_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "action": self.action,
            "messageId": self.message_id,
            "threadId": self.thread_id,
        }


class ReplyDispatcher:
    def __init__(
        self,
        record: CredentialRecord,
        gmail_factory: Callable[[str], GmailClient] = GmailClient,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.record = record
        self._gmail_factory = gmail_factory
        self._http_client = http_client

    async def snapshot_for(self, thread_id: str) -> ThreadSnapshot:
        if self.record.is_microsoft:
            async with GraphClient(self.record.access_token, client=self._http_client) as client:
                return await client.thread_snapshot(thread_id, self.record.account_email)
        client = self._gmail_factory(self.record.access_token)
        return await client.thread_snapshot(thread_id, self.record.account_email)

    async def dispatch(
        self,
        snapshot: ThreadSnapshot,
        plan: ReplyPlan,
        body: str,
        *,
        send: bool = False,
    ) -> DispatchResult:
        if self.record.is_microsoft:
            return await self._dispatch_graph(snapshot, plan, body, send)
        return await self._dispatch_gmail(snapshot, plan, body, send)

    async def _dispatch_gmail(self, snapshot: ThreadSnapshot, plan: ReplyPlan, body: str, send: bool) -> DispatchResult:
        raw = build_raw_message(
            to=list(plan.to),
            cc=list(plan.cc),
            subject=plan.subject,
            body=text_to_html(body),
            from_address=self.record.account_email,
            in_reply_to=plan.in_reply_to,
            references=list(plan.references),
        )
        thread_id = None if plan.mode is ReplyMode.FORWARD else snapshot.thread_id
        client = self._gmail_factory(self.record.access_token)

        if send:
            sent = await client.send_raw(raw, thread_id=thread_id)
            logger.info("Sent %s via gmail in thread %s", plan.mode.value, sent.get("threadId"))
            return DispatchResult("gmail", "sent", sent.get("id"), sent.get("threadId"))

        draft = await client.create_draft(raw, thread_id=thread_id)
        message = draft.get("message") or {}
        logger.info("Saved %s draft %s via gmail", plan.mode.value, draft.get("id"))
        return DispatchResult("gmail", "draft", draft.get("id"), message.get("threadId"))

    async def _dispatch_graph(self, snapshot: ThreadSnapshot, plan: ReplyPlan, body: str, send: bool) -> DispatchResult:
        source_id = snapshot.provider_message_id
        if not source_id:
            raise ThreadingError(
                f"Thread {snapshot.thread_id} has no Graph message id to reply to",
                {"thread_id": snapshot.thread_id},
            )

        async with GraphClient(self.record.access_token, client=self._http_client) as client:
            if plan.mode is ReplyMode.FORWARD:
                draft = await client.create_forward(source_id)
            else:
                draft = await client.create_reply(source_id, reply_all=plan.mode is ReplyMode.REPLY_ALL)

            # the generated draft carries the quoted original; put the new text above it
            quoted = (draft.get("body") or {}).get("content", "")
            await client.patch_message(
                draft["id"],
                {
                    "subject": plan.subject,
                    "toRecipients": to_recipients(plan.to),
                    "ccRecipients": to_recipients(plan.cc),
                    "body": {"contentType": "HTML", "content": text_to_html(body) + quoted},
                },
            )
            if send:
                await client.send_message(draft["id"])

        action = "sent" if send else "draft"
        logger.info("%s %s via graph (draft %s)", action.capitalize(), plan.mode.value, draft["id"])
        return DispatchResult("outlook", action, draft["id"], draft.get("conversationId") or snapshot.thread_id)
