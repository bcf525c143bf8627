"""
Reply, reply-all and forward planning.

Everything here is pure and backend-agnostic: a ``ThreadSnapshot`` goes in, an
immutable ``ReplyPlan`` comes out. Transport encoding of the plan lives in
``mailbridge.services.replies``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from email.utils import parseaddr
from enum import Enum
from typing import Any

from mailbridge.errors import ThreadingError
from mailbridge.sources.models import ThreadSnapshot

_PREFIX_TOKEN = re.compile(r"\s*(re|fwd?)\s*(?:\[\d+\])?\s*:\s*", re.IGNORECASE)


class ReplyMode(str, Enum):
    REPLY = "reply"
    REPLY_ALL = "reply-all"
    FORWARD = "forward"

    @classmethod
    def parse(cls, value: str | ReplyMode) -> ReplyMode:
        if isinstance(value, cls):
            return value
        text = value.strip().lower().replace("_", "-")
        if text in {"replyall", "all"}:
            text = cls.REPLY_ALL.value
        if text in {"fwd", "fw"}:
            text = cls.FORWARD.value
        return cls(text)


@dataclass(frozen=True, slots=True)
class ReplyPlan:
    mode: ReplyMode
    subject: str
    to: tuple[str, ...]
    cc: tuple[str, ...] = ()
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "subject": self.subject,
            "to": list(self.to),
            "cc": list(self.cc),
            "inReplyTo": self.in_reply_to,
            "references": list(self.references),
        }


def _leading_tokens(subject: str) -> list[tuple[str, int]]:
    """Return ``(kind, end_offset)`` for each prefix token at the start."""
    tokens: list[tuple[str, int]] = []
    pos = 0
    while True:
        match = _PREFIX_TOKEN.match(subject, pos)
        if not match or match.end() == pos:
            break
        kind = "re" if match.group(1).lower() == "re" else "fwd"
        tokens.append((kind, match.end()))
        pos = match.end()
    return tokens


def normalize_subject(original: str | None, mode: ReplyMode | str) -> str:
    mode = ReplyMode.parse(mode)
    subject = original or ""
    tokens = _leading_tokens(subject)

    if mode is ReplyMode.FORWARD:
        cut = tokens[-1][1] if tokens else 0
        prefix = "Fwd:"
    else:
        # strip through the last "Re:" of the leading run; a forward marker
        # that is not followed by another "Re:" is kept
        re_ends = [end for kind, end in tokens if kind == "re"]
        cut = re_ends[-1] if re_ends else 0
        prefix = "Re:"

    remainder = subject[cut:].lstrip()
    return f"{prefix} {remainder}" if remainder else prefix


def address_key(value: str) -> str:
    _, addr = parseaddr(value)
    return (addr or value).strip().lower()


def dedupe_addresses(values: Iterable[str | None], exclude: Iterable[str | None] = ()) -> list[str]:
    """Case-insensitive, order-preserving dedupe that drops blanks and ``exclude``."""
    seen = {address_key(item) for item in exclude if item and item.strip()}
    result: list[str] = []
    for value in values:
        if not value or not value.strip():
            continue
        key = address_key(value)
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(value.strip())
    return result


def compute_recipients(
    snapshot: ThreadSnapshot,
    mode: ReplyMode | str,
    explicit_to: Iterable[str] | None = None,
) -> tuple[list[str], list[str]]:
    mode = ReplyMode.parse(mode)

    if mode is ReplyMode.FORWARD:
        to = dedupe_addresses(explicit_to or [])
        if not to:
            raise ThreadingError("Forward needs at least one recipient")
        return to, []

    sender = (snapshot.reply_to_address or "").strip()
    if not sender:
        raise ThreadingError(
            f"Cannot determine who to reply to in thread {snapshot.thread_id}",
            {"thread_id": snapshot.thread_id},
        )

    self_address = [snapshot.self_address]
    sender_is_self = bool(snapshot.self_address) and address_key(sender) == address_key(snapshot.self_address)

    if mode is ReplyMode.REPLY:
        if not sender_is_self:
            return [sender], []
        # our own message was last: reply goes back to its recipients
        to = dedupe_addresses(snapshot.all_to, exclude=self_address)
        if not to:
            raise ThreadingError(
                f"Nobody but the current account is on thread {snapshot.thread_id}",
                {"thread_id": snapshot.thread_id},
            )
        return to, []

    to = dedupe_addresses([sender, *snapshot.all_to], exclude=self_address)
    cc = dedupe_addresses(snapshot.all_cc, exclude=[*self_address, *to])
    if not to and cc:
        # replying to a message we sent ourselves: promote the first cc
        to, cc = cc[:1], cc[1:]
    if not to:
        raise ThreadingError(
            f"Nobody but the current account is on thread {snapshot.thread_id}",
            {"thread_id": snapshot.thread_id},
        )
    return to, cc


def compute_threading_metadata(snapshot: ThreadSnapshot) -> tuple[str | None, list[str]]:
    references = list(snapshot.references)
    last_id = snapshot.last_message_id
    if last_id and last_id not in references:
        references.append(last_id)
    return last_id, references


def build_reply_plan(
    snapshot: ThreadSnapshot,
    mode: ReplyMode | str,
    explicit_to: Iterable[str] | None = None,
) -> ReplyPlan:
    mode = ReplyMode.parse(mode)
    to, cc = compute_recipients(snapshot, mode, explicit_to)

    if mode is ReplyMode.FORWARD:
        in_reply_to, references = None, []
    else:
        in_reply_to, references = compute_threading_metadata(snapshot)

    return ReplyPlan(
        mode=mode,
        subject=normalize_subject(snapshot.subject, mode),
        to=tuple(to),
        cc=tuple(cc),
        in_reply_to=in_reply_to,
        references=tuple(references),
    )
