"""Shared test fixtures."""

import asyncio
from collections.abc import AsyncGenerator
from typing import Callable, Optional

import pytest
import pytest_asyncio

from termbridge.client.api import CreateResult, TerminalTarget
from termbridge.client.transport import CloseInfo, TransportClosed
from termbridge.config import TermBridgeConfig, TerminalConfig
from termbridge.exceptions import TransportError
from termbridge.protocol import DataFrame, PingFrame, PongFrame, decode_frame, encode_control, encode_data
from termbridge.server.registry import SessionRegistry


class RecordingTransport:
    """Stands in for a server-side WebSocket; records what a Connection sends."""

    def __init__(self, fail_sends: bool = False):
        self.sent: list[bytes] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.fail_sends = fail_sends
        self.closed = asyncio.Event()

    async def send_bytes(self, data: bytes) -> None:
        if self.fail_sends:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.close_code = code
        self.close_reason = reason
        self.closed.set()

    def frames(self) -> list:
        return [decode_frame(payload) for payload in self.sent]

    def output(self) -> str:
        return "".join(
            frame.data.decode("utf-8", errors="replace")
            for frame in self.frames()
            if isinstance(frame, DataFrame)
        )


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def test_config() -> TermBridgeConfig:
    """Config with a predictable shell and a fast kill grace period."""
    return TermBridgeConfig(terminal=TerminalConfig(shell="/bin/sh", kill_grace_seconds=0.5))


@pytest_asyncio.fixture
async def registry(test_config: TermBridgeConfig) -> AsyncGenerator[SessionRegistry, None]:
    registry = SessionRegistry(test_config)
    yield registry
    await registry.aclose()


# ── Client-side fakes ───────────────────────────────────────


class FakeClientTransport:
    """Client end of a connection to ``FakeServer``."""

    def __init__(self, session_id: str, headers: dict, auto_pong: bool = True):
        self.session_id = session_id
        self.headers = headers
        self.auto_pong = auto_pong
        self.sent: list[bytes] = []
        self.client_close: Optional[tuple[int, str]] = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._closed: Optional[CloseInfo] = None

    def push(self, payload) -> None:
        self._incoming.put_nowait(payload)

    def server_close(self, code: int, reason: str = "") -> None:
        self._incoming.put_nowait(CloseInfo(code=code, reason=reason))

    async def recv(self):
        if self._closed is not None:
            raise TransportClosed(self._closed)
        item = await self._incoming.get()
        if isinstance(item, CloseInfo):
            self._closed = item
            raise TransportClosed(item)
        return item

    async def send(self, data: bytes) -> None:
        if self._closed is not None or self.client_close is not None:
            raise TransportClosed(self._closed or CloseInfo())
        self.sent.append(data)
        if self.auto_pong and data == encode_control(PingFrame()):
            self.push(encode_control(PongFrame()))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.client_close is None and self._closed is None:
            self.client_close = (code, reason)
            self.server_close(code, reason)


class FakeServer:
    """
    In-memory backend plus transport factory.

    Sessions in ``live`` accept connections (and replay ``replays[id]``);
    anything else is closed immediately with ``session-not-found``, the way
    the real server rejects unknown ids.
    """

    endpoint = "http://fake-server"

    def __init__(self):
        self.live: set[str] = set()
        self.replays: dict[str, bytes] = {}
        self.latest: Optional[str] = None
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.refreshes: list[bool] = []
        self.opened: list[FakeClientTransport] = []
        self.create_delay = 0.0
        self.create_error: Optional[str] = None
        self.open_error: Optional[TransportError] = None
        self.close_on_open: Optional[tuple[int, str]] = None
        self.auto_pong = True
        self._ids = 0

    # SessionBackend

    async def create_session(self, target: TerminalTarget, cols: int, rows: int, startup_command=None):
        self._ids += 1
        session_id = f"s-{self._ids}"
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error:
            return CreateResult(success=False, error=self.create_error)
        self.created.append(session_id)
        self.live.add(session_id)
        self.latest = session_id
        return CreateResult(success=True, session_id=session_id, created=True)

    async def destroy_session(self, session_id: str) -> bool:
        self.destroyed.append(session_id)
        if session_id in self.live:
            self.live.discard(session_id)
            return True
        return False

    async def latest_session(self, target: TerminalTarget) -> Optional[str]:
        return self.latest if self.latest in self.live else None

    def websocket_url(self, session_id: str) -> str:
        return f"ws://fake-server/api/terminals/{session_id}/ws"

    def auth_headers(self) -> dict:
        return {}

    async def refresh_credentials(self, force: bool = False) -> None:
        self.refreshes.append(force)

    # Transport factory

    async def open(self, url: str, headers: dict) -> FakeClientTransport:
        if self.open_error is not None:
            raise self.open_error
        session_id = url.rstrip("/").split("/")[-2]
        transport = FakeClientTransport(session_id, headers, auto_pong=self.auto_pong)
        self.opened.append(transport)
        if session_id not in self.live:
            transport.server_close(1008, "session-not-found")
        elif self.close_on_open is not None:
            transport.server_close(*self.close_on_open)
        elif session_id in self.replays:
            transport.push(encode_data(self.replays[session_id]))
        return transport

    def current(self) -> FakeClientTransport:
        return self.opened[-1]
