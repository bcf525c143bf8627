from __future__ import annotations

import asyncio
import json
import os
import stat
from datetime import datetime, timezone

import pytest
from conftest import NOW, FakeRefresher, make_record

from mailbridge.core.credentials import (
    BackendKind,
    CredentialRecord,
    CredentialStore,
    JsonFileCredentialPersistence,
    MemoryCredentialPersistence,
    parse_expiry,
)
from mailbridge.errors import AutomationError, CredentialError


class FakeExtractor:
    def __init__(self, record: CredentialRecord | None = None, error: Exception | None = None):
        self.record = record
        self.error = error
        self.calls: list[str] = []

    async def extract_credential(self, account_email: str) -> CredentialRecord:
        self.calls.append(account_email)
        if self.error is not None:
            raise self.error
        return self.record


def test_parse_expiry_accepts_epoch_millis_and_iso() -> None:
    millis = int(NOW.timestamp() * 1000)
    assert parse_expiry(millis) == NOW
    assert parse_expiry(str(millis)) == NOW
    assert parse_expiry("2026-03-01T12:00:00+00:00") == NOW
    assert parse_expiry(datetime(2026, 3, 1, 12, 0)) == NOW


def test_record_round_trip_and_legacy_fields() -> None:
    record = make_record("Me@Example.com", refresh_token="r1", proprietary_token="p1", proprietary_user_id="u1")
    restored = CredentialRecord.from_dict(record.to_dict())
    assert restored.account_email == "me@example.com"
    assert restored.expires_at == record.expires_at
    assert restored.refresh_token == "r1"
    assert restored.proprietary_user_id == "u1"

    legacy = CredentialRecord.from_dict(
        {"accessToken": "t", "email": "x@corp.com", "expires": int(NOW.timestamp() * 1000), "isMicrosoft": True}
    )
    assert legacy.backend_kind is BackendKind.MICROSOFT
    assert legacy.expires_at == NOW


@pytest.mark.asyncio
async def test_get_returns_cached_record_when_fresh(store, refresher) -> None:
    record = store.put(make_record(expires_in=3600))
    assert await store.get("ME@example.com") is record
    assert refresher.calls == []


@pytest.mark.asyncio
async def test_get_refreshes_inside_margin(store, refresher, clock, persistence) -> None:
    store.put(make_record(expires_in=120, refresh_token="r1"))

    fresh = await store.get("me@example.com")

    assert refresher.calls == ["me@example.com"]
    assert fresh.access_token == "refreshed-1"
    assert fresh.expires_at > clock()
    assert persistence.payload["me@example.com"]["accessToken"] == "refreshed-1"


@pytest.mark.asyncio
async def test_expired_record_is_never_returned(store, clock) -> None:
    store.put(make_record(expires_in=-600, refresh_token="r1"))
    fresh = await store.get("me@example.com")
    assert fresh.expires_at > clock()


@pytest.mark.asyncio
async def test_concurrent_gets_share_one_refresh(persistence, clock) -> None:
    class SlowRefresher(FakeRefresher):
        async def refresh(self, record):
            await asyncio.sleep(0.01)
            return await super().refresh(record)

    slow = SlowRefresher(clock)
    store = CredentialStore(persistence, refreshers={BackendKind.GOOGLE: slow}, clock=clock)
    store.put(make_record(expires_in=-1, refresh_token="r1"))

    results = await asyncio.gather(*(store.get("me@example.com") for _ in range(5)))

    assert slow.calls == ["me@example.com"]
    assert all(result is results[0] for result in results)


@pytest.mark.asyncio
async def test_concurrent_gets_share_the_same_error(persistence, clock) -> None:
    failing = FakeRefresher(clock, error=CredentialError("invalid_grant", "me@example.com"))
    store = CredentialStore(persistence, refreshers={BackendKind.GOOGLE: failing}, clock=clock)
    store.put(make_record(expires_in=-1, refresh_token="r1"))

    results = await asyncio.gather(*(store.get("me@example.com") for _ in range(3)), return_exceptions=True)

    assert len(failing.calls) == 1
    assert all(isinstance(r, CredentialError) and r.reason == "invalid_grant" for r in results)


@pytest.mark.asyncio
async def test_rejected_refresh_token_is_dropped(persistence, clock) -> None:
    failing = FakeRefresher(clock, error=CredentialError("invalid_grant", "me@example.com"))
    store = CredentialStore(persistence, refreshers={BackendKind.GOOGLE: failing}, clock=clock)
    store.put(make_record(expires_in=-1, refresh_token="revoked"))

    with pytest.raises(CredentialError):
        await store.get("me@example.com")

    assert store.peek("me@example.com").refresh_token is None
    assert persistence.load()["me@example.com"]["refreshToken"] is None
    assert not store.can_serve("me@example.com")


@pytest.mark.asyncio
async def test_rejected_refresh_token_falls_back_to_extractor(persistence, clock) -> None:
    failing = FakeRefresher(clock, error=CredentialError("invalid_grant", "me@example.com"))
    store = CredentialStore(persistence, refreshers={BackendKind.GOOGLE: failing}, clock=clock)
    store.put(make_record(expires_in=-1, refresh_token="revoked", proprietary_token="native-1"))
    extractor = FakeExtractor(make_record(access_token="extracted", expires_in=3600))
    store.use_extractor(extractor)

    fresh = await store.get("me@example.com")

    assert failing.calls == ["me@example.com"]
    assert extractor.calls == ["me@example.com"]
    assert fresh.access_token == "extracted"
    assert fresh.refresh_token is None
    assert fresh.proprietary_token == "native-1"


@pytest.mark.asyncio
async def test_other_refresh_errors_do_not_use_extractor(persistence, clock) -> None:
    failing = FakeRefresher(clock, error=CredentialError("oauth_client_not_configured", "me@example.com"))
    store = CredentialStore(persistence, refreshers={BackendKind.GOOGLE: failing}, clock=clock)
    store.put(make_record(expires_in=-1, refresh_token="r1"))
    extractor = FakeExtractor(make_record(expires_in=3600))
    store.use_extractor(extractor)

    with pytest.raises(CredentialError) as excinfo:
        await store.get("me@example.com")

    assert excinfo.value.reason == "oauth_client_not_configured"
    assert extractor.calls == []
    assert store.peek("me@example.com").refresh_token == "r1"


@pytest.mark.asyncio
async def test_missing_refresh_token_uses_extractor_and_keeps_native_token(store, clock) -> None:
    store.put(make_record(expires_in=-1, proprietary_token="native-1", proprietary_user_id="u-1"))
    extractor = FakeExtractor(make_record(access_token="extracted", expires_in=3600))
    store.use_extractor(extractor)

    fresh = await store.get("me@example.com")

    assert extractor.calls == ["me@example.com"]
    assert fresh.access_token == "extracted"
    assert fresh.proprietary_token == "native-1"
    assert fresh.proprietary_user_id == "u-1"


@pytest.mark.asyncio
async def test_no_refresh_token_and_no_extractor_requires_reauth(store) -> None:
    store.put(make_record(expires_in=-1))
    with pytest.raises(CredentialError) as excinfo:
        await store.get("me@example.com")
    assert excinfo.value.reason == "reauth_required"


@pytest.mark.asyncio
async def test_already_expired_refresh_result_is_rejected(store) -> None:
    store.use_extractor(FakeExtractor(make_record(expires_in=-5)))
    with pytest.raises(CredentialError) as excinfo:
        await store.get("new@example.com")
    assert excinfo.value.reason == "expired_on_arrival"
    assert store.peek("new@example.com") is None


@pytest.mark.asyncio
async def test_extractor_failure_propagates_and_clears_inflight(store) -> None:
    store.use_extractor(FakeExtractor(error=AutomationError("no target")))
    with pytest.raises(AutomationError):
        await store.get("me@example.com")
    store.use_extractor(FakeExtractor(make_record(expires_in=3600)))
    assert (await store.get("me@example.com")).account_email == "me@example.com"


def test_forget_and_accounts(store, persistence) -> None:
    store.put(make_record("a@example.com"))
    store.put(make_record("b@example.com"))
    assert store.accounts() == ["a@example.com", "b@example.com"]

    assert store.forget("A@example.com") is True
    assert store.forget("missing@example.com") is False
    assert store.accounts() == ["b@example.com"]
    assert list(persistence.payload) == ["b@example.com"]


def test_load_skips_broken_entries(clock) -> None:
    good = make_record("ok@example.com").to_dict()
    persistence = MemoryCredentialPersistence({"ok@example.com": good, "bad@example.com": {"accessToken": "x"}})
    store = CredentialStore(persistence, clock=clock)
    assert store.load() == 1
    assert store.accounts() == ["ok@example.com"]


def test_json_file_round_trip_is_private(tmp_path, clock) -> None:
    path = tmp_path / "cfg" / "credentials.json"
    store = CredentialStore(JsonFileCredentialPersistence(path), clock=clock)
    store.put(make_record("me@example.com", refresh_token="r1", kind=BackendKind.MICROSOFT))

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["me@example.com"]["backendKind"] == "B"

    reloaded = CredentialStore(JsonFileCredentialPersistence(path), clock=clock)
    assert reloaded.load() == 1
    record = reloaded.peek("me@example.com")
    assert record.refresh_token == "r1"
    assert record.is_microsoft
    assert record.expires_at.tzinfo == timezone.utc


def test_json_file_rejects_non_object(tmp_path) -> None:
    path = tmp_path / "credentials.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        JsonFileCredentialPersistence(path).load()
