from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from mailbridge.config import Settings
from mailbridge.core.credentials import (
    BackendKind,
    CredentialRecord,
    CredentialStore,
    MemoryCredentialPersistence,
)
from mailbridge.errors import AutomationError
from mailbridge.sources.desktop import Target

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeSession:
    """Automation session that answers scripts by substring match."""

    def __init__(self, responses: dict[str, Any] | None = None):
        self.responses = dict(responses or {})
        self.scripts: list[str] = []
        self.keys: list[str] = []
        self.closed = False

    async def evaluate(self, expression: str, await_promise: bool = False) -> Any:
        self.scripts.append(expression)
        for marker, response in self.responses.items():
            if marker in expression:
                return response(expression) if callable(response) else response
        raise AutomationError(f"unexpected script: {expression[:40]}")

    async def press_key(self, key: str, code: str | None = None) -> None:
        self.keys.append(key)

    async def close(self) -> None:
        self.closed = True


class FakeBridge:
    def __init__(self, targets: list[Target | None] | None = None, session: FakeSession | None = None):
        self.targets = list(targets or [])
        self.session = session or FakeSession()
        self.find_calls = 0
        self.launches: list[int] = []
        self.connected: list[Target] = []

    async def find_target(self, port: int) -> Target | None:
        self.find_calls += 1
        if not self.targets:
            return None
        if len(self.targets) == 1:
            return self.targets[0]
        return self.targets.pop(0)

    async def connect(self, port: int, target: Target) -> FakeSession:
        self.connected.append(target)
        return self.session

    def launch(self, port: int) -> None:
        self.launches.append(port)


class FakeRefresher:
    def __init__(self, clock: FrozenClock, lifetime: int = 3600, error: Exception | None = None):
        self.clock = clock
        self.lifetime = lifetime
        self.error = error
        self.calls: list[str] = []

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        self.calls.append(record.account_email)
        if self.error is not None:
            raise self.error
        return CredentialRecord(
            account_email=record.account_email,
            access_token=f"refreshed-{len(self.calls)}",
            expires_at=self.clock() + timedelta(seconds=self.lifetime),
            backend_kind=record.backend_kind,
            refresh_token=record.refresh_token,
            proprietary_token=record.proprietary_token,
            proprietary_user_id=record.proprietary_user_id,
        )


async def no_sleep(seconds: float) -> None:
    return None


def make_record(
    email: str = "me@example.com",
    expires_in: float = 3600,
    now: datetime = NOW,
    kind: BackendKind = BackendKind.GOOGLE,
    **kwargs: Any,
) -> CredentialRecord:
    return CredentialRecord(
        account_email=email,
        access_token=kwargs.pop("access_token", "token-" + email.split("@")[0]),
        expires_at=now + timedelta(seconds=expires_in),
        backend_kind=kind,
        **kwargs,
    )


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch) -> Settings:
    for name in ("MAILBRIDGE_HOME", "MAILBRIDGE_CREDENTIALS_PATH", "MAILBRIDGE_LOG_DIR", "MAILBRIDGE_ACCOUNT"):
        monkeypatch.delenv(name, raising=False)
    root = tmp_path / "home"
    root.mkdir(parents=True, exist_ok=True)
    s = Settings.load(base_dir=root)
    s.ensure_directories()
    return s


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def persistence() -> MemoryCredentialPersistence:
    return MemoryCredentialPersistence()


@pytest.fixture()
def refresher(clock: FrozenClock) -> FakeRefresher:
    return FakeRefresher(clock)


@pytest.fixture()
def store(persistence: MemoryCredentialPersistence, refresher: FakeRefresher, clock: FrozenClock) -> CredentialStore:
    return CredentialStore(
        persistence,
        refreshers={BackendKind.GOOGLE: refresher, BackendKind.MICROSOFT: refresher},
        clock=clock,
    )


@pytest.fixture()
def test_logger() -> logging.Logger:
    logger = logging.getLogger("mailbridge-test")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.INFO)
    return logger
