"""Tests for the gateway-backed mobile reconnection engine."""

import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from termbridge.client.api import TerminalTarget
from termbridge.client.cache import MemorySessionCache
from termbridge.client.mobile import MobileReconnectionEngine
from termbridge.config import ClientConfig, GatewayConfig
from termbridge.exceptions import GatewayError
from termbridge.models import SessionScope
from tests.conftest import FakeServer, wait_until

FAST = ClientConfig(
    stability_window_seconds=0.05,
    reconnect_delay_seconds=0.01,
    heartbeat_interval_seconds=0.05,
    max_reconnect_attempts=3,
)

TARGET = TerminalTarget(worktree_id="wt-1", working_directory="/srv/app", scope=SessionScope.CLAUDE)


class FakeGatewayClient:
    def __init__(self):
        self.config = GatewayConfig(refresh_interval_seconds=0.05)
        self.fresh_calls = 0
        self.error: Optional[GatewayError] = None

    async def ensure_fresh(self):
        self.fresh_calls += 1
        if self.error is not None:
            raise self.error


class FakeGateway(FakeServer):
    """FakeServer with the token handling a gateway backend adds."""

    endpoint = "https://gateway.example.com#proj-1"

    def __init__(self):
        super().__init__()
        self.client = FakeGatewayClient()
        self.refresh_error: Optional[GatewayError] = None

    async def refresh_credentials(self, force: bool = False) -> None:
        if self.refresh_error is not None:
            raise self.refresh_error
        await super().refresh_credentials(force)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def engine(gateway):
    engine = MobileReconnectionEngine(
        gateway,
        TARGET,
        cache=MemorySessionCache(),
        config=FAST,
        transport_factory=gateway.open,
    )
    yield engine
    await engine.disconnect()


class TestMobileConnect:
    @pytest.mark.asyncio
    async def test_checks_token_before_connecting(self, gateway, engine):
        assert await engine.connect() is True
        assert gateway.client.fresh_calls >= 1
        assert engine.session_id == "s-1"

    @pytest.mark.asyncio
    async def test_expired_token_fails_fast(self, gateway, engine):
        gateway.client.error = GatewayError("Device was unpaired.", status=401)

        assert await engine.connect() is False
        assert engine.error == "Gateway session expired: Device was unpaired."
        assert gateway.created == []

    @pytest.mark.asyncio
    async def test_refresh_loop_keeps_token_fresh(self, gateway, engine):
        await engine.connect()
        calls = gateway.client.fresh_calls

        await wait_until(lambda: gateway.client.fresh_calls >= calls + 2)
        assert engine.is_connected

    @pytest.mark.asyncio
    async def test_refresh_failure_ends_connection(self, gateway, engine):
        await engine.connect()
        transport = gateway.current()

        gateway.client.error = GatewayError("Session revoked.")

        await wait_until(lambda: engine.status == "error")
        assert engine.error == "Session revoked."
        assert not engine.is_connected
        assert transport.client_close == (1000, "")

    @pytest.mark.asyncio
    async def test_disconnect_stops_refresh_loop(self, gateway, engine):
        await engine.connect()
        await engine.disconnect()
        calls = gateway.client.fresh_calls

        await asyncio.sleep(0.15)
        assert gateway.client.fresh_calls == calls


class TestMobileRecovery:
    @pytest.mark.asyncio
    async def test_reattaches_running_session(self, gateway, engine):
        await engine.connect()

        gateway.current().server_close(1006)

        await wait_until(lambda: len(gateway.opened) == 2 and engine.is_connected)
        assert engine.session_id == "s-1"
        assert gateway.refreshes == [False]

    @pytest.mark.asyncio
    async def test_switches_to_latest_agent_session(self, gateway, engine):
        await engine.connect()

        gateway.live.discard("s-1")
        gateway.live.add("s-5")
        gateway.latest = "s-5"
        gateway.current().server_close(1006)

        await wait_until(lambda: engine.session_id == "s-5" and engine.is_connected)
        assert gateway.created == ["s-1"]

    @pytest.mark.asyncio
    async def test_starts_agent_when_none_running(self, gateway, engine):
        await engine.connect()

        gateway.live.discard("s-1")
        gateway.latest = None
        gateway.current().server_close(1006)

        await wait_until(lambda: engine.session_id == "s-2" and engine.is_connected)
        assert gateway.created == ["s-1", "s-2"]

    @pytest.mark.asyncio
    async def test_session_not_found_does_not_start_new_agent(self, gateway, engine):
        await engine.connect()

        gateway.live.discard("s-1")
        gateway.latest = None
        gateway.current().server_close(1008, "session-not-found")

        await wait_until(lambda: engine.status == "error")
        assert "session no longer exists" in engine.error
        assert gateway.created == ["s-1"]
        assert engine.cache.get(engine.cache_key) is None

    @pytest.mark.asyncio
    async def test_unauthenticated_forces_refresh(self, gateway, engine):
        await engine.connect()

        gateway.current().server_close(1008, "unauthenticated")

        await wait_until(lambda: len(gateway.opened) == 2 and engine.is_connected)
        assert gateway.refreshes == [True]

    @pytest.mark.asyncio
    async def test_refresh_failure_during_recovery(self, gateway, engine):
        await engine.connect()

        gateway.refresh_error = GatewayError("Refresh token expired.")
        gateway.current().server_close(1006)

        await wait_until(lambda: engine.status == "error")
        assert engine.error == "Reconnect failed during auth refresh: Refresh token expired."
        assert len(gateway.opened) == 1

    @pytest.mark.asyncio
    async def test_start_failure_during_recovery(self, gateway, engine):
        await engine.connect()

        gateway.live.discard("s-1")
        gateway.latest = None
        gateway.create_error = "Agent limit reached."
        gateway.current().server_close(1006)

        await wait_until(lambda: engine.status == "error")
        assert engine.error == "Reconnect failed: Agent limit reached."
