from __future__ import annotations

from typing import Any


class MailbridgeError(Exception):
    """Base class for errors surfaced to the command line."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CredentialError(MailbridgeError):
    """No usable credential: the user has to re-authenticate."""

    def __init__(self, reason: str, account_email: str | None = None, message: str | None = None):
        self.reason = reason
        self.account_email = account_email
        text = message or reason
        if account_email:
            text = f"{text} ({account_email})"
        super().__init__(text, {"reason": reason, "account_email": account_email})


class NotFoundError(MailbridgeError):
    pass


class BackendError(MailbridgeError):
    def __init__(
        self,
        message: str,
        backend: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message, {"backend": backend, "status_code": status_code})
        self.backend = backend
        self.status_code = status_code
        self.body = body

    @property
    def is_transient(self) -> bool:
        if self.status_code is None:
            return False
        return self.status_code >= 500 or self.status_code == 429

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} [{self.backend} HTTP {self.status_code}]"


class AutomationError(MailbridgeError):
    pass


class ThreadingError(MailbridgeError, ValueError):
    pass
