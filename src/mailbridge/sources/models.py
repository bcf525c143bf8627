from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

NATIVE_DRAFT_PREFIX = "draft00"


class DraftSource(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    NATIVE = "native"


@dataclass(slots=True)
class Account:
    email: str
    is_current: bool = False


@dataclass(slots=True)
class Draft:
    id: str
    subject: str
    from_address: str
    source: DraftSource
    to: list[str] = field(default_factory=list)
    preview: str = ""
    timestamp: str = ""
    thread_id: str | None = None

    @property
    def key(self) -> tuple[DraftSource, str]:
        return (self.source, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "from": self.from_address,
            "to": list(self.to),
            "preview": self.preview,
            "timestamp": self.timestamp,
            "source": self.source.value,
            "threadId": self.thread_id,
        }


@dataclass(frozen=True, slots=True)
class DraftUpdate:
    subject: str | None = None
    to: list[str] | None = None
    body: str | None = None

    def apply(self, draft: Draft) -> Draft:
        return Draft(
            id=draft.id,
            subject=self.subject if self.subject is not None else draft.subject,
            from_address=draft.from_address,
            source=draft.source,
            to=list(self.to) if self.to is not None else list(draft.to),
            preview=self.body if self.body is not None else draft.preview,
            timestamp=draft.timestamp,
            thread_id=draft.thread_id,
        )


@dataclass(frozen=True, slots=True)
class ThreadSnapshot:
    thread_id: str
    subject: str
    last_message_id: str | None = None
    references: tuple[str, ...] = ()
    reply_to_address: str | None = None
    all_to: tuple[str, ...] = ()
    all_cc: tuple[str, ...] = ()
    self_address: str | None = None
    provider_message_id: str | None = None
