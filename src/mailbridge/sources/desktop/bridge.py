from __future__ import annotations

import asyncio
import itertools
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from mailbridge.errors import AutomationError

logger = logging.getLogger(__name__)

EXCLUDED_URL_MARKERS = ("background", "serviceworker")


@dataclass(frozen=True, slots=True)
class Target:
    id: str
    url: str
    type: str
    title: str = ""
    ws_url: str | None = None

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> Target:
        return cls(
            id=payload.get("id", ""),
            url=payload.get("url", ""),
            type=payload.get("type", ""),
            title=payload.get("title", ""),
            ws_url=payload.get("webSocketDebuggerUrl"),
        )


def select_target(targets: list[Target], url_match: str) -> Target | None:
    """Main window of the client: a ``page`` target on the app URL that is not a worker."""
    for target in targets:
        if target.type != "page" or url_match not in target.url:
            continue
        if any(marker in target.url for marker in EXCLUDED_URL_MARKERS):
            continue
        return target
    return None


class AutomationSession(Protocol):
    async def evaluate(self, expression: str, await_promise: bool = False) -> Any: ...

    async def press_key(self, key: str, code: str | None = None) -> None: ...

    async def close(self) -> None: ...


class AutomationBridge(Protocol):
    async def find_target(self, port: int) -> Target | None: ...

    async def connect(self, port: int, target: Target) -> AutomationSession: ...

    def launch(self, port: int) -> None: ...


class CdpSession:
    """One DevTools websocket to a page target."""

    def __init__(self, http: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse, timeout: float = 30.0):
        self._http = http
        self._ws = ws
        self._ids = itertools.count(1)
        self._timeout = timeout

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        message_id = next(self._ids)
        await self._ws.send_json({"id": message_id, "method": method, "params": params or {}})
        try:
            async with asyncio.timeout(self._timeout):
                while True:
                    message = await self._ws.receive()
                    if message.type != aiohttp.WSMsgType.TEXT:
                        raise AutomationError(f"DevTools connection closed during {method}")
                    payload = message.json()
                    if payload.get("id") != message_id:
                        continue
                    if "error" in payload:
                        raise AutomationError(
                            f"{method} failed: {payload['error'].get('message', payload['error'])}",
                            {"method": method},
                        )
                    return payload.get("result", {})
        except TimeoutError as exc:
            raise AutomationError(f"{method} timed out after {self._timeout}s") from exc

    async def evaluate(self, expression: str, await_promise: bool = False) -> Any:
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": await_promise},
        )
        if "exceptionDetails" in result:
            details = result["exceptionDetails"]
            text = (details.get("exception") or {}).get("description") or details.get("text", "script error")
            raise AutomationError(f"Script evaluation failed: {text}")
        return (result.get("result") or {}).get("value")

    async def press_key(self, key: str, code: str | None = None) -> None:
        for event_type in ("keyDown", "keyUp"):
            await self.send("Input.dispatchKeyEvent", {"type": event_type, "key": key, "code": code or key})

    async def close(self) -> None:
        await self._ws.close()
        await self._http.close()


class CdpBridge:
    def __init__(
        self,
        url_match: str,
        executable: str | None = None,
        host: str = "127.0.0.1",
        timeout: float = 30.0,
    ):
        self.url_match = url_match
        self.executable = executable
        self.host = host
        self.timeout = timeout

    def _endpoint(self, port: int, path: str) -> str:
        return f"http://{self.host}:{port}{path}"

    async def list_targets(self, port: int) -> list[Target]:
        timeout = aiohttp.ClientTimeout(total=5, connect=2)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.get(self._endpoint(port, "/json/list")) as response:
                    response.raise_for_status()
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.debug("DevTools endpoint on port %s unreachable: %s", port, exc)
            return []
        return [Target.from_json(item) for item in payload or []]

    async def find_target(self, port: int) -> Target | None:
        return select_target(await self.list_targets(port), self.url_match)

    async def connect(self, port: int, target: Target) -> CdpSession:
        if not target.ws_url:
            raise AutomationError(f"Target {target.id} exposes no debugger websocket")
        http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=10))
        try:
            ws = await http.ws_connect(target.ws_url, max_msg_size=0)
        except aiohttp.ClientError as exc:
            await http.close()
            raise AutomationError(f"Could not attach to {target.url}: {exc}") from exc
        logger.info("Attached to %s on port %s", target.url, port)
        return CdpSession(http, ws, timeout=self.timeout)

    def launch(self, port: int) -> None:
        if not self.executable:
            raise AutomationError("No client executable configured (MAILBRIDGE_CLIENT_EXECUTABLE)")
        logger.info("Launching %s with remote debugging on port %s", self.executable, port)
        try:
            subprocess.Popen(
                [self.executable, f"--remote-debugging-port={port}"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise AutomationError(f"Failed to launch {self.executable}: {exc}") from exc
