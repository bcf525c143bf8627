from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from dateutil import parser as dt_parser


class BackendKind(str, Enum):
    GOOGLE = "A"
    MICROSOFT = "B"

    @classmethod
    def parse(cls, value: Any) -> BackendKind:
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text in {"a", "google", "gmail"}:
            return cls.GOOGLE
        if text in {"b", "microsoft", "outlook", "msgraph"}:
            return cls.MICROSOFT
        raise ValueError(f"Unknown backend kind: {value!r}")


def normalize_email(value: str) -> str:
    return value.strip().lower()


def parse_expiry(value: Any) -> datetime:
    """Accept ISO-8601 strings, aware/naive datetimes and epoch milliseconds."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # the live client reports milliseconds since the epoch
        seconds = value / 1000 if value > 10**11 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value.strip().isdigit():
        return parse_expiry(int(value.strip()))
    else:
        parsed = dt_parser.isoparse(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    account_email: str
    access_token: str
    expires_at: datetime
    backend_kind: BackendKind
    refresh_token: str | None = None
    proprietary_token: str | None = None
    proprietary_user_id: str | None = None

    @property
    def is_microsoft(self) -> bool:
        return self.backend_kind is BackendKind.MICROSOFT

    def is_fresh(self, now: datetime, margin_seconds: float = 0) -> bool:
        return (self.expires_at - now).total_seconds() > margin_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountEmail": self.account_email,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at.isoformat(),
            "backendKind": self.backend_kind.value,
            "proprietaryToken": self.proprietary_token,
            "proprietaryUserId": self.proprietary_user_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], account_email: str | None = None) -> CredentialRecord:
        email = data.get("accountEmail") or data.get("email") or account_email
        if not email:
            raise ValueError("credential record without account email")
        expires = data.get("expiresAt", data.get("expires"))
        if expires is None:
            raise ValueError(f"credential record for {email} has no expiry")
        kind = data.get("backendKind")
        if kind is None:
            kind = BackendKind.MICROSOFT if data.get("isMicrosoft") else BackendKind.GOOGLE
        return cls(
            account_email=normalize_email(email),
            access_token=data["accessToken"],
            expires_at=parse_expiry(expires),
            backend_kind=BackendKind.parse(kind),
            refresh_token=data.get("refreshToken") or None,
            proprietary_token=data.get("proprietaryToken") or None,
            proprietary_user_id=data.get("proprietaryUserId") or None,
        )
