from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mailbridge.core.credentials import BackendKind, CredentialRecord, normalize_email, parse_expiry
from mailbridge.errors import AutomationError, NotFoundError
from mailbridge.sources.models import Account, ThreadSnapshot

from .bridge import AutomationSession

logger = logging.getLogger(__name__)

LIST_ACCOUNTS_JS = """
(() => {
  const ga = window.GoogleAccount;
  const current = (ga?.emailAddress || '').toLowerCase();
  const list = ga?.accountList?.() || ga?.accounts || [];
  const emails = list.map(a => typeof a === 'string' ? a : (a?.emailAddress || a?.email || ''));
  if (current && !emails.some(e => e.toLowerCase() === current)) emails.unshift(ga.emailAddress);
  return emails.filter(Boolean).map(e => ({ email: e, isCurrent: e.toLowerCase() === current }));
})()
"""

SWITCH_ACCOUNT_JS = """
(async () => {
  const target = %s;
  const vs = window.ViewState;
  if (!vs?.switchAccount) return { ok: false, error: 'account switching unavailable' };
  await vs.switchAccount(target);
  return { ok: true };
})()
"""

EXTRACT_CREDENTIAL_JS = """
(() => {
  try {
    const ga = window.GoogleAccount;
    const authData = ga?.credential?._authData;
    if (!authData?.accessToken) return { error: 'No access token found' };
    const native = ga?.credential?._superhumanToken || ga?.backend?._token || null;
    return {
      accessToken: authData.accessToken,
      email: ga?.emailAddress || '',
      expires: authData.expires || (Date.now() + 3600000),
      isMicrosoft: !!ga?.di?.get?.('isMicrosoft'),
      proprietaryToken: native?.token || null,
      proprietaryUserId: ga?.userId || native?.userId || null,
    };
  } catch (e) {
    return { error: e.message };
  }
})()
"""

THREAD_SNAPSHOT_JS = """
(() => {
  const thread = window.GoogleAccount?.threads?.identityMap?.get(%s);
  const model = thread?._threadModel;
  if (!model) return null;
  const messages = (model.messages || []).filter(m => !m.isDraft);
  const last = messages[messages.length - 1];
  if (!last) return null;
  const addr = r => (r && (r.email || r.emailAddress)) || '';
  const headers = last.rawJson?.headers || [];
  const header = name => {
    const h = headers.find(x => (x.name || '').toLowerCase() === name);
    return h ? h.value : '';
  };
  return {
    threadId: model.id,
    subject: last.subject || model.subject || '',
    messageId: header('message-id') || last.rfc822Id || null,
    references: (header('references') || '').split(/\\s+/).filter(Boolean),
    replyTo: addr((last.replyTo || [])[0]) || addr(last.from),
    to: (last.to || []).map(addr).filter(Boolean),
    cc: (last.cc || []).map(addr).filter(Boolean),
    self: window.GoogleAccount?.emailAddress || null,
    providerMessageId: last.id || null,
  };
})()
"""


class LiveClient:
    """Drives the running desktop client through an automation session."""

    def __init__(
        self,
        session: AutomationSession,
        switch_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session = session
        self.switch_delay = switch_delay
        self._sleep = sleep

    async def list_accounts(self) -> list[Account]:
        rows = await self.session.evaluate(LIST_ACCOUNTS_JS) or []
        return [Account(email=row["email"], is_current=bool(row.get("isCurrent"))) for row in rows]

    async def current_account(self) -> str | None:
        for account in await self.list_accounts():
            if account.is_current:
                return account.email
        return None

    async def switch_account(self, account_email: str) -> None:
        accounts = await self.list_accounts()
        wanted = normalize_email(account_email)
        match = next((a for a in accounts if normalize_email(a.email) == wanted), None)
        if match is None:
            available = ", ".join(a.email for a in accounts) or "none"
            raise NotFoundError(f"Account not found: {account_email}. Available: {available}")
        if match.is_current:
            return

        await self.session.press_key("Escape")
        result = await self.session.evaluate(SWITCH_ACCOUNT_JS % json.dumps(match.email), await_promise=True) or {}
        if not result.get("ok"):
            raise AutomationError(f"Failed to switch to {account_email}: {result.get('error', 'unknown error')}")
        # no readiness signal from the client, wait a fixed settle delay
        await self._sleep(self.switch_delay)

        current = await self.current_account()
        if current is None or normalize_email(current) != wanted:
            raise AutomationError(f"Switch to {account_email} did not take effect (current: {current})")
        logger.info("Switched live client to %s", match.email)

    async def extract_credential(self, account_email: str) -> CredentialRecord:
        await self.switch_account(account_email)
        value = await self.session.evaluate(EXTRACT_CREDENTIAL_JS) or {}
        if "error" in value:
            raise AutomationError(f"Token extraction failed: {value['error']}")

        return CredentialRecord(
            account_email=normalize_email(value.get("email") or account_email),
            access_token=value["accessToken"],
            expires_at=parse_expiry(value.get("expires")),
            backend_kind=BackendKind.MICROSOFT if value.get("isMicrosoft") else BackendKind.GOOGLE,
            proprietary_token=value.get("proprietaryToken"),
            proprietary_user_id=value.get("proprietaryUserId"),
        )

    async def thread_snapshot(self, thread_id: str) -> ThreadSnapshot:
        value = await self.session.evaluate(THREAD_SNAPSHOT_JS % json.dumps(thread_id))
        if not value:
            raise NotFoundError(f"Thread {thread_id} is not loaded in the live client")
        return ThreadSnapshot(
            thread_id=value.get("threadId") or thread_id,
            subject=value.get("subject") or "",
            last_message_id=value.get("messageId"),
            references=tuple(value.get("references") or ()),
            reply_to_address=value.get("replyTo") or None,
            all_to=tuple(value.get("to") or ()),
            all_cc=tuple(value.get("cc") or ()),
            self_address=value.get("self"),
            provider_message_id=value.get("providerMessageId"),
        )

    async def close(self) -> None:
        await self.session.close()
