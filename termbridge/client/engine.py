"""Reconnection engine — keeps a client attached to one logical terminal.

``connect()`` is idempotent and safe to call again at any time: every call
starts a new *generation*, and anything still running on behalf of an older
generation (a pending create, a retry timer, a read loop) drops its result
instead of touching engine state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from termbridge.client.api import SessionBackend, TerminalTarget
from termbridge.client.cache import MemorySessionCache, SessionCache
from termbridge.client.transport import (
    CLOSE_ABNORMAL,
    ClientTransport,
    CloseInfo,
    TransportClosed,
    open_websocket,
)
from termbridge.config import ClientConfig
from termbridge.exceptions import ProtocolError, TermBridgeError, TransportError
from termbridge.protocol import (
    CLOSE_HEARTBEAT,
    CLOSE_NORMAL,
    REASON_DESTROYED,
    REASON_EXITED,
    REASON_HEARTBEAT_TIMEOUT,
    REASON_PROJECT_FORBIDDEN,
    REASON_REPLACED,
    REASON_SCOPE_FORBIDDEN,
    REASON_SESSION_NOT_FOUND,
    REASON_SPAWN_FAILED,
    REASON_UNAUTHENTICATED,
    DataFrame,
    ExitFrame,
    PingFrame,
    PongFrame,
    ResizeFrame,
    decode_frame,
    encode_control,
    encode_data,
)

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, dict[str, str]], Awaitable[ClientTransport]]
Payload = Union[bytes, str]


class RecoveryAction(str, Enum):
    """What to do after a connection closed unexpectedly."""

    STOP = "stop"
    DISCOVER_LATEST = "discover_latest"
    REFRESH_AUTH = "refresh_auth"
    RETRY = "retry"


_STOP_MESSAGES = {
    REASON_PROJECT_FORBIDDEN: "Terminal disconnected: project access denied.",
    REASON_SCOPE_FORBIDDEN: "Terminal disconnected: scope is not allowed.",
    REASON_REPLACED: "Terminal was opened from another client.",
    REASON_DESTROYED: "Terminal session was closed.",
    REASON_SPAWN_FAILED: "Failed to start terminal session.",
    REASON_EXITED: "Terminal session ended.",
}


def classify_close(code: int, reason: str) -> tuple[RecoveryAction, Optional[str]]:
    """Map a close code and reason to a recovery action and a user-facing message."""
    reason = (reason or "").strip()
    if reason in _STOP_MESSAGES:
        return RecoveryAction.STOP, _STOP_MESSAGES[reason]
    if reason == REASON_SESSION_NOT_FOUND:
        return RecoveryAction.DISCOVER_LATEST, None
    if reason == REASON_UNAUTHENTICATED:
        return RecoveryAction.REFRESH_AUTH, None
    return RecoveryAction.RETRY, None


def describe_close(info: CloseInfo) -> str:
    text = str(info.code)
    if info.reason:
        text += f": {info.reason}"
    elif info.hint:
        text += f": {info.hint}"
    return text


@dataclass
class ReconnectState:
    generation: int = 0
    reconnect_attempt: int = 0
    last_heartbeat_at: Optional[float] = None
    last_failure_reason: Optional[str] = None


@dataclass
class _Attempt:
    """Result of opening a connection and waiting out the stability window."""

    transport: Optional[ClientTransport] = None
    frames: list[Payload] = field(default_factory=list)
    failure: Optional[CloseInfo] = None

    async def discard(self) -> None:
        if self.transport is not None:
            await _close_quietly(self.transport)
            self.transport = None


async def _close_quietly(transport: ClientTransport, code: int = CLOSE_NORMAL, reason: str = "") -> None:
    try:
        await transport.close(code, reason)
    except (TransportClosed, OSError) as e:
        logger.debug("Close failed: %s", e)


def _is_exit_frame(payload: Payload) -> bool:
    if not isinstance(payload, bytes):
        return False
    try:
        return isinstance(decode_frame(payload), ExitFrame)
    except ProtocolError:
        return False


class ReconnectionEngine:
    """
    Client for one logical terminal (worktree + scope) on one backend.

    Reuses the cached session when it is still alive, creates a fresh one
    when it is not, and recovers from dropped connections by classifying
    the close reason. Output goes to ``on_data``; status changes go to
    ``on_status(status, message)``.
    """

    def __init__(
        self,
        backend: SessionBackend,
        target: TerminalTarget,
        cache: Optional[SessionCache] = None,
        config: Optional[ClientConfig] = None,
        transport_factory: TransportFactory = open_websocket,
        on_data: Optional[Callable[[bytes], None]] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
        on_status: Optional[Callable[[str, Optional[str]], None]] = None,
        startup_command: Optional[str] = None,
        size_provider: Optional[Callable[[], tuple[int, int]]] = None,
    ):
        self.backend = backend
        self.target = target
        self.cache = cache if cache is not None else MemorySessionCache()
        self.config = config or ClientConfig()
        self.transport_factory = transport_factory
        self.on_data = on_data
        self.on_exit = on_exit
        self.on_status = on_status
        self.startup_command = startup_command
        self.size_provider = size_provider or (lambda: (80, 24))

        self.state = ReconnectState()
        self.error: Optional[str] = None
        self.status = "idle"
        self._session_id: Optional[str] = None
        self._connection_source: Optional[str] = None
        self._transport: Optional[ClientTransport] = None
        self._last_size: Optional[tuple[int, int]] = None
        self._exit_seen = False
        self._tasks: set[asyncio.Task] = set()

    # ── Public surface ──────────────────────────────────────

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_connected(self) -> bool:
        return self._transport is not None

    @property
    def connection_source(self) -> Optional[str]:
        """``"reused"`` when the cached session was resumed, ``"new"`` when one was created."""
        return self._connection_source

    @property
    def cache_key(self):
        return self.target.cache_key(self.backend.endpoint)

    async def connect(self) -> bool:
        """
        Attach to the logical terminal, reusing the cached session if it is alive.

        Returns True once a connection has stayed open through the stability
        window. Returns False if a newer ``connect()``/``disconnect()``
        superseded this one or if the session could not be established
        (``error`` then says why).
        """
        generation = await self._begin()
        self.error = None
        self.state.reconnect_attempt = 0
        self.state.last_failure_reason = None
        self._set_status("connecting")
        key = self.cache_key

        cached = self.cache.get(key)
        if cached:
            attempt = await self._open_stable(generation, cached)
            if not self._current(generation):
                await attempt.discard()
                return False
            if attempt.failure is None:
                await self._adopt(generation, cached, "reused", attempt)
                return True
            logger.info(
                "Cached session %s did not stay open (%s); starting a fresh one",
                cached,
                describe_close(attempt.failure),
            )
            self.cache.delete(key)
            await self.backend.destroy_session(cached)
            if not self._current(generation):
                return False

        cols, rows = self.size_provider()
        result = await self.backend.create_session(self.target, cols, rows, self.startup_command)
        if not self._current(generation):
            if result.success and result.created:
                logger.info("Discarding session %s created for a superseded connect", result.session_id)
                await self.backend.destroy_session(result.session_id)
            return False
        if not result.success:
            self._fail(result.error or "Failed to create terminal session.")
            return False

        attempt = await self._open_stable(generation, result.session_id)
        if not self._current(generation):
            await attempt.discard()
            return False
        if attempt.failure is not None:
            if attempt.failure.exited:
                self._session_id = result.session_id
                self._finish_exited(attempt.frames)
                return False
            if result.created:
                # Nothing will ever attach to it again
                await self.backend.destroy_session(result.session_id)
                if not self._current(generation):
                    return False
            self._fail(
                f"Terminal session {result.session_id} closed right after opening "
                f"({describe_close(attempt.failure)})."
            )
            return False

        await self._adopt(generation, result.session_id, "new", attempt)
        return True

    async def disconnect(self) -> None:
        """Drop the connection and stop recovering. The server-side session keeps running."""
        await self._begin()
        self._set_status("disconnected")

    async def destroy(self) -> bool:
        """Disconnect, forget the cached id and destroy the session on the server."""
        session_id = self._session_id or self.cache.get(self.cache_key)
        await self._begin()
        self.cache.delete(self.cache_key)
        self._session_id = None
        self._set_status("disconnected")
        if session_id is None:
            return False
        return await self.backend.destroy_session(session_id)

    async def send_data(self, data: Union[bytes, str]) -> bool:
        """Forward keyboard input. Returns False when not connected."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return await self._send(encode_data(data))

    async def send_resize(self, cols: int, rows: int) -> bool:
        """Tell the server the viewer's size; repeats of the last size are skipped."""
        if self._transport is None:
            return False
        if self._last_size == (cols, rows):
            return True
        if await self._send(encode_control(ResizeFrame(cols=cols, rows=rows))):
            self._last_size = (cols, rows)
            return True
        return False

    # ── Generation bookkeeping ──────────────────────────────

    def _current(self, generation: int) -> bool:
        return self.state.generation == generation

    def _viewing(self, generation: int, session_id: Optional[str]) -> bool:
        """Still the same connect() and still looking at the same session."""
        return self._current(generation) and self._session_id == session_id

    async def _begin(self) -> int:
        """Start a new generation: cancel everything the previous one had running."""
        self.state.generation += 1
        self._cancel_tasks()
        transport, self._transport = self._transport, None
        self._last_size = None
        self._exit_seen = False
        if transport is not None:
            await _close_quietly(transport)
        return self.state.generation

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Opening connections ─────────────────────────────────

    async def _open(self, session_id: str) -> ClientTransport:
        return await self.transport_factory(
            self.backend.websocket_url(session_id), self.backend.auth_headers()
        )

    async def _open_stable(self, generation: int, session_id: str) -> _Attempt:
        """
        Open a connection and keep it only if it survives the stability window.

        Frames that arrive inside the window (the buffer replay, typically)
        are held in the attempt and delivered once it is adopted.
        """
        attempt = _Attempt()
        try:
            transport = await self._open(session_id)
        except TransportError as e:
            reason = REASON_UNAUTHENTICATED if e.status == 401 else ""
            attempt.failure = CloseInfo(code=CLOSE_ABNORMAL, reason=reason, hint=e.message)
            return attempt

        attempt.transport = transport
        if not self._current(generation):
            return attempt

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.stability_window_seconds
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    payload = await asyncio.wait_for(transport.recv(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                attempt.frames.append(payload)
        except TransportClosed as e:
            attempt.transport = None
            attempt.failure = e.info
            attempt.failure.exited = any(_is_exit_frame(p) for p in attempt.frames)
        return attempt

    async def _adopt(self, generation: int, session_id: str, source: str, attempt: _Attempt) -> None:
        """Make a stable connection the live one."""
        transport = attempt.transport
        self._transport = transport
        self._session_id = session_id
        self._connection_source = source
        self._exit_seen = False
        self.error = None
        self.state.reconnect_attempt = 0
        self.state.last_heartbeat_at = asyncio.get_running_loop().time()
        self.cache.set(self.cache_key, session_id)
        logger.info("Attached to session %s (%s)", session_id, source)
        self._set_status("connected")

        self._spawn(self._read_loop(generation, transport, attempt.frames))
        self._spawn(self._heartbeat(generation, transport))
        cols, rows = self.size_provider()
        await self.send_resize(cols, rows)

    # ── Live connection ─────────────────────────────────────

    async def _send(self, payload: bytes) -> bool:
        transport = self._transport
        if transport is None:
            return False
        try:
            await transport.send(payload)
        except TransportClosed:
            # The read loop sees the same close and handles it
            return False
        return True

    async def _read_loop(self, generation: int, transport: ClientTransport, pending: list[Payload]) -> None:
        for payload in pending:
            await self._dispatch(payload)
        try:
            while True:
                payload = await transport.recv()
                if not self._current(generation) or self._transport is not transport:
                    return
                await self._dispatch(payload)
        except TransportClosed as e:
            if self._current(generation) and self._transport is transport:
                await self._handle_close(generation, e.info)

    async def _dispatch(self, payload: Payload) -> None:
        if isinstance(payload, str):
            self._emit_data(payload.encode("utf-8"))
            return
        try:
            frame = decode_frame(payload)
        except ProtocolError as e:
            logger.debug("Dropped frame: %s", e.message)
            return

        if isinstance(frame, DataFrame):
            self._emit_data(frame.data)
        elif isinstance(frame, PongFrame):
            self.state.last_heartbeat_at = asyncio.get_running_loop().time()
        elif isinstance(frame, PingFrame):
            await self._send(encode_control(PongFrame()))
        elif isinstance(frame, ExitFrame):
            if not self._exit_seen:
                self._exit_seen = True
                logger.info("Session %s exited with code %s", self._session_id, frame.exit_code)
                if self.on_exit is not None:
                    self.on_exit(frame.exit_code)

    def _emit_data(self, data: bytes) -> None:
        if self.on_data is not None and data:
            self.on_data(data)

    async def _heartbeat(self, generation: int, transport: ClientTransport) -> None:
        """Ping on an interval; force-close a connection whose pongs stopped."""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            if not self._current(generation) or self._transport is not transport:
                return
            silent_for = loop.time() - (self.state.last_heartbeat_at or loop.time())
            if silent_for > self.config.heartbeat_timeout_seconds:
                logger.warning(
                    "No pong from session %s for %.1fs; reconnecting", self._session_id, silent_for
                )
                self._set_status("reconnecting", "Terminal heartbeat timed out. Reconnecting...")
                await _close_quietly(transport, CLOSE_HEARTBEAT, REASON_HEARTBEAT_TIMEOUT)
                return
            try:
                await transport.send(encode_control(PingFrame()))
            except TransportClosed:
                return

    # ── Recovery ────────────────────────────────────────────

    async def _handle_close(self, generation: int, info: CloseInfo) -> None:
        session_id = self._session_id
        self._transport = None
        self._cancel_tasks()
        if self._exit_seen:
            info.exited = True

        logger.info("Connection to session %s closed (%s)", session_id, describe_close(info))
        self.state.last_failure_reason = info.reason or info.hint or f"code {info.code}"
        if info.exited or info.reason == REASON_EXITED:
            self._finish_exited([])
            return

        action, message = classify_close(info.code, info.reason)
        if action is RecoveryAction.STOP:
            self._stop(info, message)
            return
        self._spawn(self._recover(generation, session_id, info))

    async def _recover(self, generation: int, session_id: Optional[str], info: CloseInfo) -> None:
        """Retry loop: back off linearly, pick a session to attach to, try it."""
        limit = self.config.max_reconnect_attempts
        while True:
            action, message = classify_close(info.code, info.reason)
            if action is RecoveryAction.STOP:
                self._stop(info, message)
                return

            attempt_no = self.state.reconnect_attempt + 1
            if attempt_no > limit:
                self._fail(
                    f"Terminal disconnected ({describe_close(info)}). Reconnect limit reached. "
                    "Connect again to retry."
                )
                return
            self.state.reconnect_attempt = attempt_no

            if action is not RecoveryAction.DISCOVER_LATEST:
                delay = self.config.reconnect_delay_seconds * attempt_no
                self._set_status(
                    "reconnecting",
                    f"Terminal disconnected ({describe_close(info)}). Recovering {attempt_no}/{limit}...",
                )
                await asyncio.sleep(delay)
                if not self._viewing(generation, session_id):
                    logger.debug("Recovery of %s cancelled; active session changed", session_id)
                    return

            next_id = await self._next_session(generation, session_id, action)
            if not self._viewing(generation, session_id) or next_id is None:
                return

            attempt = await self._open_stable(generation, next_id)
            if not self._viewing(generation, session_id):
                await attempt.discard()
                return
            if attempt.failure is None:
                await self._adopt(generation, next_id, "reused", attempt)
                return
            if attempt.failure.exited:
                self._finish_exited(attempt.frames)
                return
            info = attempt.failure

    async def _next_session(
        self,
        generation: int,
        session_id: Optional[str],
        action: RecoveryAction,
    ) -> Optional[str]:
        """
        Which session to reattach to. Returns None after reporting why there is none.
        """
        if action is RecoveryAction.DISCOVER_LATEST:
            latest = await self.backend.latest_session(self.target)
            if not self._viewing(generation, session_id):
                return None
            if latest is None or latest == session_id:
                self.cache.delete(self.cache_key)
                self._fail(
                    "Terminal disconnected: session no longer exists. Start a new session to continue."
                )
                return None
            logger.info("Session %s is gone; switching to latest session %s", session_id, latest)
            return latest

        if action is RecoveryAction.REFRESH_AUTH:
            try:
                await self.backend.refresh_credentials(force=True)
            except TermBridgeError as e:
                self._fail(f"Reconnect failed during auth refresh: {e.message}")
                return None
        return session_id

    # ── Outcomes ────────────────────────────────────────────

    def _stop(self, info: CloseInfo, message: Optional[str]) -> None:
        if info.exited or info.reason == REASON_EXITED:
            self._finish_exited([])
            return
        if info.reason in (REASON_DESTROYED, REASON_SPAWN_FAILED):
            self.cache.delete(self.cache_key)
        self._fail(message or f"Terminal disconnected ({describe_close(info)}).")

    def _finish_exited(self, frames: list[Payload]) -> None:
        """The process ended; nothing to reconnect to."""
        for payload in frames:
            if isinstance(payload, bytes) and _is_exit_frame(payload):
                exit_code = decode_frame(payload).exit_code
                if not self._exit_seen and self.on_exit is not None:
                    self.on_exit(exit_code)
                self._exit_seen = True
            elif isinstance(payload, bytes):
                try:
                    frame = decode_frame(payload)
                except ProtocolError:
                    continue
                if isinstance(frame, DataFrame):
                    self._emit_data(frame.data)
            else:
                self._emit_data(payload.encode("utf-8"))
        self.cache.delete(self.cache_key)
        self._transport = None
        self._set_status("exited", _STOP_MESSAGES[REASON_EXITED])

    def _fail(self, message: str) -> None:
        self.error = message
        logger.warning("%s", message)
        self._set_status("error", message)

    def _set_status(self, status: str, message: Optional[str] = None) -> None:
        self.status = status
        if self.on_status is not None:
            self.on_status(status, message)
