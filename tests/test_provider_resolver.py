from __future__ import annotations

import pytest
from conftest import NOW, FakeBridge, FakeRefresher, FakeSession, make_record, no_sleep

from mailbridge.core.credentials import BackendKind, CredentialStore
from mailbridge.errors import AutomationError, BackendError, CredentialError
from mailbridge.services.providers import CredentialProvider, LiveSessionProvider, ProviderResolver
from mailbridge.sources.desktop import LiveClient, Target

TARGET = Target(id="p1", url="https://mail.superhuman.com/", type="page", ws_url="ws://127.0.0.1:9333/devtools/page/p1")


class FailingBridge(FakeBridge):
    def launch(self, port: int) -> None:
        super().launch(port)
        raise AutomationError("executable missing")


@pytest.mark.asyncio
async def test_fresh_cached_credential_wins(settings, store) -> None:
    store.put(make_record("me@example.com", expires_in=3600))
    bridge = FakeBridge([TARGET])
    resolver = ProviderResolver(settings, store, bridge, sleep=no_sleep)

    provider = await resolver.resolve("me@example.com")

    assert isinstance(provider, CredentialProvider)
    assert not isinstance(provider, LiveSessionProvider)
    assert bridge.find_calls == 0
    assert (await provider.get_token()).account_email == "me@example.com"


@pytest.mark.asyncio
async def test_refreshable_credential_is_refreshed_during_resolution(settings, store, refresher) -> None:
    store.put(make_record("me@example.com", expires_in=-10, refresh_token="r1"))
    resolver = ProviderResolver(settings, store, FakeBridge(), sleep=no_sleep)

    provider = await resolver.resolve("me@example.com")

    assert isinstance(provider, CredentialProvider)
    assert refresher.calls == ["me@example.com"]


@pytest.mark.asyncio
async def test_without_account_uses_first_cached(settings, store) -> None:
    store.put(make_record("stale@example.com", expires_in=-10))
    store.put(make_record("first@example.com"))
    store.put(make_record("second@example.com"))
    resolver = ProviderResolver(settings, store, FakeBridge(), sleep=no_sleep)

    provider = await resolver.resolve()

    assert provider.account_email == "first@example.com"


def live_session_for(email: str, access_token: str = "live-token") -> FakeSession:
    return FakeSession(
        {
            "accountList": [{"email": email, "isCurrent": True}],
            "_authData": {
                "accessToken": access_token,
                "email": email,
                "expires": int(NOW.timestamp() * 1000) + 3_600_000,
                "isMicrosoft": False,
                "proprietaryToken": None,
                "proprietaryUserId": None,
            },
        }
    )


@pytest.mark.asyncio
async def test_invalid_grant_falls_through_to_live_session(settings, persistence, clock) -> None:
    failing = FakeRefresher(clock, error=CredentialError("invalid_grant"))
    store = CredentialStore(persistence, refreshers={BackendKind.GOOGLE: failing}, clock=clock)
    store.put(make_record("me@example.com", expires_in=-10, refresh_token="revoked"))
    session = live_session_for("me@example.com")
    bridge = FakeBridge([TARGET], session)
    resolver = ProviderResolver(settings, store, bridge, sleep=no_sleep)

    provider = await resolver.resolve("me@example.com")

    assert isinstance(provider, LiveSessionProvider)
    assert isinstance(provider.session, LiveClient)
    assert store.extractor is provider.session
    assert bridge.launches == []

    record = await provider.get_token("me@example.com")

    assert record.access_token == "live-token"
    assert record.refresh_token is None
    assert failing.calls == ["me@example.com"]
    assert any("_authData" in script for script in session.scripts)


@pytest.mark.asyncio
async def test_unreachable_token_endpoint_falls_through_to_live_session(settings, persistence, clock) -> None:
    failing = FakeRefresher(clock, error=BackendError("token endpoint down", backend="google-oauth", status_code=503))
    store = CredentialStore(persistence, refreshers={BackendKind.GOOGLE: failing}, clock=clock)
    store.put(make_record("me@example.com", expires_in=-10, refresh_token="still-valid"))
    resolver = ProviderResolver(settings, store, FakeBridge([TARGET], live_session_for("me@example.com")), sleep=no_sleep)

    provider = await resolver.resolve("me@example.com")
    record = await provider.get_token()

    assert isinstance(provider, LiveSessionProvider)
    assert record.access_token == "live-token"
    assert record.refresh_token == "still-valid"
    assert len(failing.calls) == 2


@pytest.mark.asyncio
async def test_launches_client_and_polls_until_ready(settings, store) -> None:
    bridge = FakeBridge([None, None, TARGET])
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    resolver = ProviderResolver(settings, store, bridge, sleep=record_sleep)

    provider = await resolver.resolve("me@example.com", port=9444)

    assert isinstance(provider, LiveSessionProvider)
    assert bridge.launches == [9444]
    assert sleeps == [settings.launch_poll_interval_sec, settings.launch_poll_interval_sec]
    assert bridge.connected == [TARGET]


@pytest.mark.asyncio
async def test_launch_timeout_becomes_credential_error(settings, store) -> None:
    settings.launch_timeout_sec = 3
    bridge = FakeBridge([])
    resolver = ProviderResolver(settings, store, bridge, sleep=no_sleep)

    with pytest.raises(CredentialError) as excinfo:
        await resolver.resolve("me@example.com")

    assert excinfo.value.reason == "no_cached_and_no_live_session"
    assert isinstance(excinfo.value.__cause__, AutomationError)
    assert bridge.find_calls == 4


@pytest.mark.asyncio
async def test_launch_failure_is_chained(settings, store) -> None:
    resolver = ProviderResolver(settings, store, FailingBridge([]), sleep=no_sleep)

    with pytest.raises(CredentialError) as excinfo:
        await resolver.resolve()

    assert "executable missing" in str(excinfo.value.__cause__)


@pytest.mark.asyncio
async def test_live_provider_extracts_through_store_and_disconnects(settings, store) -> None:
    session = FakeSession(
        {
            "accountList": [{"email": "me@example.com", "isCurrent": True}],
            "_authData": {
                "accessToken": "live-token",
                "email": "me@example.com",
                "expires": int(NOW.timestamp() * 1000) + 3_600_000,
                "isMicrosoft": False,
                "proprietaryToken": "native",
                "proprietaryUserId": "u1",
            },
        }
    )
    resolver = ProviderResolver(settings, store, FakeBridge([TARGET], session), sleep=no_sleep)

    provider = await resolver.resolve()
    record = await provider.get_token()

    assert record.access_token == "live-token"
    assert record.proprietary_token == "native"
    assert store.peek("me@example.com") == record

    await provider.disconnect()
    assert session.closed
    assert store.extractor is None
