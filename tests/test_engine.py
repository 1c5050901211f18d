"""Tests for the client reconnection engine."""

import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from termbridge.client.api import TerminalTarget
from termbridge.client.cache import MemorySessionCache
from termbridge.client.engine import ReconnectionEngine, RecoveryAction, classify_close
from termbridge.config import ClientConfig
from termbridge.exceptions import TransportError
from termbridge.protocol import (
    DataFrame,
    ExitFrame,
    PingFrame,
    PongFrame,
    ResizeFrame,
    decode_frame,
    encode_control,
    encode_data,
)
from tests.conftest import FakeServer, wait_until

FAST = ClientConfig(
    stability_window_seconds=0.05,
    reconnect_delay_seconds=0.01,
    heartbeat_interval_seconds=0.05,
    heartbeat_timeout_seconds=5.0,
    max_reconnect_attempts=3,
)

TARGET = TerminalTarget(worktree_id="wt-1", working_directory="/tmp")


class Recorder:
    """Collects everything an engine reports through its callbacks."""

    def __init__(self):
        self.data = bytearray()
        self.exits: list[Optional[int]] = []
        self.statuses: list[tuple[str, Optional[str]]] = []

    def on_data(self, data: bytes) -> None:
        self.data.extend(data)

    def on_exit(self, exit_code: Optional[int]) -> None:
        self.exits.append(exit_code)

    def on_status(self, status: str, message: Optional[str]) -> None:
        self.statuses.append((status, message))


def sent_frames(transport, frame_type):
    return [f for f in (decode_frame(p) for p in transport.sent) if isinstance(f, frame_type)]


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def cache():
    return MemorySessionCache()


@pytest_asyncio.fixture
async def make_engine(server, cache):
    engines = []

    def factory(config: ClientConfig = FAST, **kwargs):
        recorder = Recorder()
        engine = ReconnectionEngine(
            server,
            TARGET,
            cache=cache,
            config=config,
            transport_factory=server.open,
            on_data=recorder.on_data,
            on_exit=recorder.on_exit,
            on_status=recorder.on_status,
            **kwargs,
        )
        engines.append(engine)
        return engine, recorder

    yield factory
    for engine in engines:
        await engine.disconnect()


class TestClassifyClose:
    @pytest.mark.parametrize(
        "reason",
        [
            "project-forbidden",
            "scope-forbidden",
            "session-replaced",
            "session-destroyed",
            "terminal-spawn-failed",
            "session-exited",
        ],
    )
    def test_terminal_reasons_stop(self, reason):
        action, message = classify_close(1000, reason)
        assert action is RecoveryAction.STOP
        assert message

    def test_session_not_found_discovers_latest(self):
        assert classify_close(1008, "session-not-found") == (RecoveryAction.DISCOVER_LATEST, None)

    def test_unauthenticated_refreshes(self):
        assert classify_close(1008, "unauthenticated") == (RecoveryAction.REFRESH_AUTH, None)

    @pytest.mark.parametrize("code,reason", [(1006, ""), (4002, "heartbeat-timeout"), (1011, "boom")])
    def test_everything_else_retries(self, code, reason):
        assert classify_close(code, reason) == (RecoveryAction.RETRY, None)

    def test_reason_whitespace_ignored(self):
        assert classify_close(1000, "  session-replaced \n")[0] is RecoveryAction.STOP


class TestConnect:
    @pytest.mark.asyncio
    async def test_fresh_connect_creates_and_caches(self, server, cache, make_engine):
        engine, recorder = make_engine()

        assert await engine.connect() is True
        assert engine.session_id == "s-1"
        assert engine.connection_source == "new"
        assert engine.is_connected
        assert engine.status == "connected"
        assert cache.get(engine.cache_key) == "s-1"
        assert server.created == ["s-1"]
        assert ("connected", None) in recorder.statuses

    @pytest.mark.asyncio
    async def test_sends_initial_size(self, server, make_engine):
        engine, _ = make_engine(size_provider=lambda: (132, 43))
        await engine.connect()

        resizes = sent_frames(server.current(), ResizeFrame)
        assert [(r.cols, r.rows) for r in resizes] == [(132, 43)]

    @pytest.mark.asyncio
    async def test_reuses_live_cached_session(self, server, cache, make_engine):
        server.live.add("s-old")
        server.replays["s-old"] = b"$ previous output\r\n"
        engine, recorder = make_engine()
        cache.set(engine.cache_key, "s-old")

        assert await engine.connect() is True
        assert engine.session_id == "s-old"
        assert engine.connection_source == "reused"
        assert server.created == []
        await wait_until(lambda: bytes(recorder.data) == b"$ previous output\r\n")

    @pytest.mark.asyncio
    async def test_stale_cached_session_is_replaced(self, server, cache, make_engine):
        engine, _ = make_engine()
        cache.set(engine.cache_key, "s-dead")

        assert await engine.connect() is True
        assert engine.session_id == "s-1"
        assert engine.connection_source == "new"
        assert "s-dead" in server.destroyed
        assert cache.get(engine.cache_key) == "s-1"

    @pytest.mark.asyncio
    async def test_create_failure_is_reported(self, server, make_engine):
        server.create_error = "Working directory not found: /nope"
        engine, recorder = make_engine()

        assert await engine.connect() is False
        assert engine.error == "Working directory not found: /nope"
        assert engine.status == "error"
        assert recorder.statuses[-1] == ("error", "Working directory not found: /nope")

    @pytest.mark.asyncio
    async def test_fresh_session_that_will_not_stay_open(self, server, cache, make_engine):
        server.close_on_open = (1011, "terminal-spawn-failed")
        engine, _ = make_engine()

        assert await engine.connect() is False
        assert "closed right after opening" in engine.error
        assert "terminal-spawn-failed" in engine.error
        # no retry loop for a session that never came up
        assert server.created == ["s-1"]
        assert server.destroyed == ["s-1"]
        assert cache.get(engine.cache_key) is None

    @pytest.mark.asyncio
    async def test_open_error_on_fresh_session(self, server, make_engine):
        server.open_error = TransportError("ws://fake", "connection refused")
        engine, _ = make_engine()

        assert await engine.connect() is False
        assert "connection refused" in engine.error

    @pytest.mark.asyncio
    async def test_newer_connect_supersedes_older(self, server, make_engine):
        server.create_delay = 0.05
        engine, _ = make_engine()

        first, second = await asyncio.gather(engine.connect(), engine.connect())

        assert (first, second) == (False, True)
        assert engine.session_id == "s-2"
        # the session created for the superseded call is cleaned up
        assert "s-1" in server.destroyed
        assert "s-2" not in server.destroyed

    @pytest.mark.asyncio
    async def test_disconnect_during_create_discards_session(self, server, make_engine):
        server.create_delay = 0.05
        engine, _ = make_engine()

        pending = asyncio.ensure_future(engine.connect())
        await asyncio.sleep(0.01)
        await engine.disconnect()

        assert await pending is False
        assert server.destroyed == ["s-1"]
        assert engine.session_id is None
        assert not engine.is_connected

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, server, make_engine):
        engine, _ = make_engine()
        await engine.connect()
        await engine.connect()

        assert engine.session_id == "s-1"
        assert server.created == ["s-1"]
        assert engine.connection_source == "reused"


class TestLiveConnection:
    @pytest.mark.asyncio
    async def test_output_reaches_on_data(self, server, make_engine):
        engine, recorder = make_engine()
        await engine.connect()

        server.current().push(encode_data(b"hello "))
        server.current().push("world")
        await wait_until(lambda: bytes(recorder.data) == b"hello world")

    @pytest.mark.asyncio
    async def test_send_data(self, server, make_engine):
        engine, _ = make_engine()
        await engine.connect()

        assert await engine.send_data("ls\r") is True
        assert await engine.send_data(b"\x03") is True
        data = [f.data for f in sent_frames(server.current(), DataFrame)]
        assert data == [b"ls\r", b"\x03"]

    @pytest.mark.asyncio
    async def test_send_when_disconnected(self, make_engine):
        engine, _ = make_engine()
        assert await engine.send_data("ls\r") is False
        assert await engine.send_resize(100, 30) is False

    @pytest.mark.asyncio
    async def test_repeated_resize_is_skipped(self, server, make_engine):
        engine, _ = make_engine()
        await engine.connect()

        assert await engine.send_resize(80, 24) is True
        assert await engine.send_resize(100, 30) is True
        assert await engine.send_resize(100, 30) is True

        sizes = [(r.cols, r.rows) for r in sent_frames(server.current(), ResizeFrame)]
        assert sizes == [(80, 24), (100, 30)]

    @pytest.mark.asyncio
    async def test_answers_server_ping(self, server, make_engine):
        engine, _ = make_engine(config=FAST.model_copy(update={"heartbeat_interval_seconds": 60.0}))
        await engine.connect()
        transport = server.current()
        before = len(transport.sent)

        transport.push(encode_control(PingFrame()))
        await wait_until(lambda: len(transport.sent) > before)
        assert transport.sent[-1] == encode_control(PongFrame())

    @pytest.mark.asyncio
    async def test_heartbeat_pings_while_healthy(self, server, make_engine):
        engine, _ = make_engine()
        await engine.connect()
        transport = server.current()

        await wait_until(lambda: len(sent_frames(transport, PingFrame)) >= 2)
        assert engine.is_connected
        assert len(server.opened) == 1
        assert engine.state.last_heartbeat_at is not None

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_reconnects(self, server, make_engine):
        server.auto_pong = False
        config = FAST.model_copy(
            update={"heartbeat_interval_seconds": 0.02, "heartbeat_timeout_seconds": 0.1}
        )
        engine, recorder = make_engine(config=config)
        await engine.connect()
        first = server.current()

        await wait_until(lambda: len(server.opened) >= 2)
        assert first.client_close == (4002, "heartbeat-timeout")
        assert ("reconnecting", "Terminal heartbeat timed out. Reconnecting...") in recorder.statuses
        await wait_until(lambda: engine.is_connected)
        assert engine.session_id == "s-1"

    @pytest.mark.asyncio
    async def test_disconnect_keeps_cache(self, server, cache, make_engine):
        engine, _ = make_engine()
        await engine.connect()
        transport = server.current()

        await engine.disconnect()

        assert not engine.is_connected
        assert engine.status == "disconnected"
        assert transport.client_close == (1000, "")
        assert cache.get(engine.cache_key) == "s-1"
        assert server.destroyed == []

    @pytest.mark.asyncio
    async def test_events_after_disconnect_are_ignored(self, server, make_engine):
        engine, recorder = make_engine()
        await engine.connect()
        transport = server.current()
        await engine.disconnect()

        transport.push(encode_data(b"late"))
        await asyncio.sleep(0.05)
        assert b"late" not in recorder.data
        assert len(server.opened) == 1

    @pytest.mark.asyncio
    async def test_destroy(self, server, cache, make_engine):
        engine, _ = make_engine()
        await engine.connect()

        assert await engine.destroy() is True
        assert server.destroyed == ["s-1"]
        assert cache.get(engine.cache_key) is None
        assert engine.session_id is None


class TestExit:
    @pytest.mark.asyncio
    async def test_exit_is_reported_once_and_not_retried(self, server, cache, make_engine):
        engine, recorder = make_engine()
        await engine.connect()
        transport = server.current()

        transport.push(encode_data(b"bye\r\n"))
        transport.push(encode_control(ExitFrame(exit_code=3)))
        transport.server_close(1000, "session-exited")

        await wait_until(lambda: engine.status == "exited")
        assert recorder.exits == [3]
        assert b"bye" in recorder.data
        assert cache.get(engine.cache_key) is None
        await asyncio.sleep(0.05)
        assert len(server.opened) == 1

    @pytest.mark.asyncio
    async def test_exit_inside_stability_window_of_new_session(self, server, make_engine):
        engine, recorder = make_engine()
        original_open = server.open

        async def open_then_exit(url, headers):
            transport = await original_open(url, headers)
            transport.push(encode_data(b"command not found\r\n"))
            transport.push(encode_control(ExitFrame(exit_code=127)))
            transport.server_close(1000, "session-exited")
            return transport

        engine.transport_factory = open_then_exit

        assert await engine.connect() is False
        assert engine.status == "exited"
        assert recorder.exits == [127]
        assert b"command not found" in recorder.data
        assert engine.error is None


class TestRecovery:
    @pytest.mark.asyncio
    async def test_transient_drop_reattaches_same_session(self, server, make_engine):
        engine, recorder = make_engine()
        await engine.connect()
        first = server.current()

        first.server_close(1006)
        await wait_until(lambda: len(server.opened) == 2 and engine.is_connected)

        assert engine.session_id == "s-1"
        assert engine.connection_source == "reused"
        assert engine.state.reconnect_attempt == 0
        assert server.created == ["s-1"]
        assert any(status == "reconnecting" for status, _ in recorder.statuses)

    @pytest.mark.asyncio
    async def test_replay_after_reconnect(self, server, make_engine):
        engine, recorder = make_engine()
        await engine.connect()

        server.replays["s-1"] = b"[replayed]"
        server.current().server_close(1006)
        await wait_until(lambda: b"[replayed]" in recorder.data)

    @pytest.mark.asyncio
    async def test_session_not_found_switches_to_latest(self, server, cache, make_engine):
        engine, _ = make_engine()
        await engine.connect()

        # the session is gone, and the scope is running a newer one
        server.live.discard("s-1")
        server.live.add("s-7")
        server.latest = "s-7"
        server.current().server_close(1008, "session-not-found")

        await wait_until(lambda: engine.session_id == "s-7" and engine.is_connected)
        assert cache.get(engine.cache_key) == "s-7"
        assert server.created == ["s-1"]

    @pytest.mark.asyncio
    async def test_session_not_found_without_successor(self, server, cache, make_engine):
        engine, _ = make_engine()
        await engine.connect()

        server.live.discard("s-1")
        server.latest = None
        server.current().server_close(1008, "session-not-found")

        await wait_until(lambda: engine.status == "error")
        assert "session no longer exists" in engine.error
        assert cache.get(engine.cache_key) is None
        assert len(server.opened) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reason,message",
        [
            ("session-replaced", "Terminal was opened from another client."),
            ("project-forbidden", "Terminal disconnected: project access denied."),
            ("scope-forbidden", "Terminal disconnected: scope is not allowed."),
        ],
    )
    async def test_terminal_close_stops(self, server, cache, make_engine, reason, message):
        engine, _ = make_engine()
        await engine.connect()

        server.current().server_close(1008 if "forbidden" in reason else 4001, reason)

        await wait_until(lambda: engine.status == "error")
        assert engine.error == message
        await asyncio.sleep(0.05)
        assert len(server.opened) == 1
        # the session is still alive elsewhere, so its id stays cached
        assert cache.get(engine.cache_key) == "s-1"

    @pytest.mark.asyncio
    async def test_destroyed_session_clears_cache(self, server, cache, make_engine):
        engine, _ = make_engine()
        await engine.connect()

        server.current().server_close(1000, "session-destroyed")

        await wait_until(lambda: engine.status == "error")
        assert engine.error == "Terminal session was closed."
        assert cache.get(engine.cache_key) is None

    @pytest.mark.asyncio
    async def test_unauthenticated_refreshes_credentials(self, server, make_engine):
        engine, _ = make_engine()
        await engine.connect()

        server.current().server_close(1008, "unauthenticated")

        await wait_until(lambda: len(server.opened) == 2 and engine.is_connected)
        assert server.refreshes == [True]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, server, make_engine):
        engine, recorder = make_engine()
        await engine.connect()

        server.open_error = TransportError("ws://fake", "connection refused")
        server.current().server_close(1006)

        await wait_until(lambda: engine.status == "error")
        assert "Reconnect limit reached" in engine.error
        assert engine.state.reconnect_attempt == FAST.max_reconnect_attempts
        reconnecting = [m for s, m in recorder.statuses if s == "reconnecting"]
        assert len(reconnecting) == FAST.max_reconnect_attempts
        assert reconnecting[-1].endswith("Recovering 3/3...")

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_recovery(self, server, make_engine):
        engine, _ = make_engine(config=FAST.model_copy(update={"reconnect_delay_seconds": 0.2}))
        await engine.connect()

        server.current().server_close(1006)
        await wait_until(lambda: engine.status == "reconnecting")
        await engine.disconnect()
        await asyncio.sleep(0.3)

        assert len(server.opened) == 1
        assert engine.status == "disconnected"

    @pytest.mark.asyncio
    async def test_exit_during_recovery(self, server, make_engine):
        engine, recorder = make_engine()
        await engine.connect()
        original_open = server.open

        async def open_then_exit(url, headers):
            transport = await original_open(url, headers)
            transport.push(encode_control(ExitFrame(exit_code=0)))
            transport.server_close(1000, "session-exited")
            return transport

        engine.transport_factory = open_then_exit
        server.current().server_close(1006)

        await wait_until(lambda: engine.status == "exited")
        assert engine.error is None
