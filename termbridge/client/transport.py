"""Client side of a session connection."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from termbridge.exceptions import TransportError
from termbridge.protocol import CLOSE_NORMAL

logger = logging.getLogger(__name__)

# Close code used when the socket went away without a close frame
CLOSE_ABNORMAL = 1006

_TOKEN_RE = re.compile(r"(accessToken=)[^&\s]+")


def redact(url: str) -> str:
    """Hide access tokens in URLs before they reach logs or error messages."""
    return _TOKEN_RE.sub(r"\1***", url)


@dataclass
class CloseInfo:
    """Why a connection ended, as far as the client can tell."""

    code: int = CLOSE_ABNORMAL
    reason: str = ""
    hint: Optional[str] = None
    exited: bool = False


class TransportClosed(Exception):
    """Raised by ``recv()`` once the connection is gone."""

    def __init__(self, info: CloseInfo):
        super().__init__(f"connection closed ({info.code} {info.reason})")
        self.info = info


class ClientTransport(Protocol):
    async def send(self, data: bytes) -> None: ...

    async def recv(self) -> Union[bytes, str]: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


class WebSocketTransport:
    """``ClientTransport`` over a websockets client connection."""

    def __init__(self, ws: ClientConnection):
        self._ws = ws

    async def send(self, data: bytes) -> None:
        try:
            await self._ws.send(data)
        except ConnectionClosed as e:
            raise TransportClosed(self._close_info(e)) from e

    async def recv(self) -> Union[bytes, str]:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportClosed(self._close_info(e)) from e

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        await self._ws.close(code=code, reason=reason)

    @staticmethod
    def _close_info(exc: ConnectionClosed) -> CloseInfo:
        if exc.rcvd is not None:
            return CloseInfo(code=exc.rcvd.code, reason=exc.rcvd.reason)
        if exc.sent is not None:
            return CloseInfo(code=exc.sent.code, reason=exc.sent.reason)
        return CloseInfo()


async def open_websocket(url: str, headers: Optional[dict[str, str]] = None) -> WebSocketTransport:
    """
    Open a session connection.

    Library keepalive pings are off; the reconnection engine runs its own
    heartbeat over control frames. Raises TransportError, with the HTTP
    status when the handshake was rejected.
    """
    try:
        ws = await connect(
            url,
            additional_headers=headers or None,
            ping_interval=None,
            max_size=None,
            open_timeout=10,
        )
    except InvalidStatus as e:
        status = e.response.status_code
        raise TransportError(redact(url), f"handshake rejected with HTTP {status}", status=status) from e
    except (InvalidHandshake, OSError, asyncio.TimeoutError) as e:
        raise TransportError(redact(url), str(e) or type(e).__name__) from e

    logger.debug("Connected to %s", redact(url))
    return WebSocketTransport(ws)
