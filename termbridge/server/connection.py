"""A single attached transport connection for a session."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Optional, Protocol

from pydantic import BaseModel

from termbridge.protocol import (
    CLOSE_BACKPRESSURE,
    CLOSE_NORMAL,
    REASON_BACKPRESSURE,
    encode_control,
    encode_data,
)

logger = logging.getLogger(__name__)

_ids = itertools.count(1)

DEFAULT_MAX_PENDING_BYTES = 4 * 1024 * 1024


class Transport(Protocol):
    """What a connection needs from the socket underneath (a Starlette WebSocket fits)."""

    async def send_bytes(self, data: bytes) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None: ...


class _Close:
    def __init__(self, code: int, reason: str):
        self.code = code
        self.reason = reason


class Connection:
    """
    Outbound side of one duplex stream.

    Frames are queued and written by a single pump task, so whatever is
    enqueued first reaches the peer first. ``close()`` flushes the queue
    before closing the socket.

    A peer that stops reading cannot make the queue grow without limit:
    once more than ``max_pending_bytes`` are waiting, the queued frames are
    dropped and the connection closes with ``backpressure``. The client
    reattaches and gets the session's output buffer replayed.
    """

    def __init__(
        self,
        transport: Transport,
        peer: str = "",
        max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES,
    ):
        self.id = next(_ids)
        self.peer = peer
        self.max_pending_bytes = max_pending_bytes
        self._transport = transport
        self._queue: asyncio.Queue[bytes | _Close] = asyncio.Queue()
        self._pending_bytes = 0
        self._closing = False
        self._closed = asyncio.Event()
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._pump_task = asyncio.get_running_loop().create_task(self._pump())

    @property
    def open(self) -> bool:
        return not self._closing

    @property
    def pending_bytes(self) -> int:
        """Bytes queued but not yet handed to the transport."""
        return self._pending_bytes

    def send_data(self, text: str) -> None:
        """Queue terminal output."""
        self._enqueue(encode_data(text.encode("utf-8")))

    def send_control(self, frame: BaseModel) -> None:
        """Queue a control frame."""
        self._enqueue(encode_control(frame))

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close after everything already queued has been sent. Idempotent."""
        if self._closing:
            return
        self._closing = True
        self.close_code = code
        self.close_reason = reason
        self._queue.put_nowait(_Close(code, reason))

    def abort(self) -> None:
        """The peer is already gone: stop sending without a close handshake."""
        self._closing = True
        if not self._pump_task.done():
            self._pump_task.cancel()
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _enqueue(self, payload: bytes) -> None:
        if self._closing:
            return
        if self._pending_bytes + len(payload) > self.max_pending_bytes:
            self._overflow()
            return
        self._pending_bytes += len(payload)
        self._queue.put_nowait(payload)

    def _overflow(self) -> None:
        logger.warning(
            "Connection %s (%s) fell %s bytes behind; closing",
            self.id,
            self.peer or "-",
            self._pending_bytes,
        )
        while not self._queue.empty():
            self._queue.get_nowait()
        self._pending_bytes = 0
        self.close(CLOSE_BACKPRESSURE, REASON_BACKPRESSURE)

    async def _pump(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                if isinstance(item, _Close):
                    try:
                        await self._transport.close(code=item.code, reason=item.reason)
                    except Exception as e:
                        logger.debug("Close of connection %s failed: %s", self.id, e)
                    return
                self._pending_bytes -= len(item)
                try:
                    await self._transport.send_bytes(item)
                except Exception as e:
                    # Peer went away mid-send; the receive side notices and detaches
                    logger.debug("Send on connection %s failed: %s", self.id, e)
                    self._closing = True
                    return
        finally:
            self._closed.set()

    def __repr__(self) -> str:
        return f"<Connection {self.id} {self.peer or '-'}{' closing' if self._closing else ''}>"
