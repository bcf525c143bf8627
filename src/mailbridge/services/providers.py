from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from mailbridge.config import Settings
from mailbridge.core.credentials import CredentialRecord, CredentialStore
from mailbridge.errors import AutomationError, BackendError, CredentialError
from mailbridge.sources.desktop import AutomationBridge, AutomationSession, LiveClient

module_logger = logging.getLogger(__name__)


class Provider(Protocol):
    async def get_token(self, email: str | None = None) -> CredentialRecord: ...

    async def disconnect(self) -> None: ...


class CredentialProvider:
    """Serves tokens from the credential store only."""

    kind = "credential"

    def __init__(self, store: CredentialStore, account_email: str | None = None):
        self.store = store
        self.account_email = account_email

    async def _target(self, email: str | None) -> str:
        target = email or self.account_email
        if not target:
            raise CredentialError("no_account", message="No account given and none selected")
        return target

    async def get_token(self, email: str | None = None) -> CredentialRecord:
        return await self.store.get(await self._target(email))

    async def disconnect(self) -> None:
        return None


class LiveSessionProvider(CredentialProvider):
    """Credential provider backed by a connected live client."""

    kind = "live"

    def __init__(self, store: CredentialStore, session: LiveClient, account_email: str | None = None):
        super().__init__(store, account_email)
        self.session = session

    async def _target(self, email: str | None) -> str:
        target = email or self.account_email or await self.session.current_account()
        if not target:
            raise CredentialError("no_account", message="The live client has no signed-in account")
        return target

    async def disconnect(self) -> None:
        if self.store.extractor is self.session:
            self.store.use_extractor(None)
        await self.session.close()


class ProviderResolver:
    """
    Picks how an operation gets its tokens.

    A usable cached credential wins. Otherwise the resolver attaches to the
    running desktop client, launching it when no debuggable window is found,
    and wires it into the store as the credential extractor.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        bridge: AutomationBridge,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.settings = settings
        self.store = store
        self.bridge = bridge
        self._sleep = sleep
        self.logger = logger or module_logger

    async def resolve(self, account_email: str | None = None, port: int | None = None) -> Provider:
        account_email = account_email or self.settings.default_account
        port = port or self.settings.debug_port

        provider = await self._from_credentials(account_email)
        if provider is not None:
            return provider

        try:
            return await self.live_session(account_email, port)
        except AutomationError as exc:
            self.logger.warning("Live client unavailable on port %s: %s", port, exc)
            raise CredentialError(
                "no_cached_and_no_live_session",
                account_email,
                "No cached credential and no live client session. Run `mailbridge auth google` "
                "or start the desktop client",
            ) from exc

    async def live_session(self, account_email: str | None = None, port: int | None = None) -> LiveSessionProvider:
        """Attach to the desktop client, launching it if needed, and use it as the extractor."""
        port = port or self.settings.debug_port
        session = await self._connect_live(port)
        live = LiveClient(session, switch_delay=self.settings.account_switch_delay_sec, sleep=self._sleep)
        self.store.use_extractor(live)
        self.logger.info("Using live client session on port %s", port)
        return LiveSessionProvider(self.store, live, account_email)

    async def _from_credentials(self, account_email: str | None) -> CredentialProvider | None:
        candidates = [account_email] if account_email else self.store.accounts()
        for email in candidates:
            if not self.store.can_serve(email):
                continue
            try:
                record = await self.store.get(email)
            except CredentialError as exc:
                self.logger.warning("Cached credential for %s unusable (%s), trying live client", email, exc.reason)
                continue
            except BackendError as exc:
                self.logger.warning("Token refresh for %s failed (%s), trying live client", email, exc)
                continue
            self.logger.info("Using cached credential for %s", record.account_email)
            return CredentialProvider(self.store, record.account_email)
        return None

    async def _connect_live(self, port: int) -> AutomationSession:
        target = await self.bridge.find_target(port)
        if target is None:
            self.bridge.launch(port)
            waited = 0.0
            while target is None:
                if waited >= self.settings.launch_timeout_sec:
                    raise AutomationError(
                        f"Client did not expose a debuggable window within {self.settings.launch_timeout_sec}s"
                    )
                await self._sleep(self.settings.launch_poll_interval_sec)
                waited += self.settings.launch_poll_interval_sec
                target = await self.bridge.find_target(port)
        return await self.bridge.connect(port, target)
