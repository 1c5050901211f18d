"""Reconnection engine for paired mobile devices, on top of the gateway client."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from termbridge.client.engine import ReconnectionEngine, RecoveryAction
from termbridge.client.gateway import GatewayBackend
from termbridge.config import GatewayConfig
from termbridge.exceptions import GatewayError

logger = logging.getLogger(__name__)


class MobileReconnectionEngine(ReconnectionEngine):
    """
    Keeps a mobile client attached to an agent session through the gateway.

    On top of the base engine it keeps the device token fresh in the
    background and recovers the way the mobile app does: refresh the token,
    attach to whatever session the scope is running now, and start one when
    there is none.
    """

    backend: GatewayBackend

    def __init__(
        self,
        backend: GatewayBackend,
        *args: Any,
        gateway_config: Optional[GatewayConfig] = None,
        **kwargs: Any,
    ):
        super().__init__(backend, *args, **kwargs)
        self.gateway_config = gateway_config or backend.client.config
        self._refresh_task: Optional[asyncio.Task] = None

    async def connect(self) -> bool:
        try:
            await self.backend.client.ensure_fresh()
        except GatewayError as e:
            await self._begin()
            self._fail(f"Gateway session expired: {e.message}")
            return False
        connected = await super().connect()
        if connected:
            self._start_refresh_loop()
        return connected

    async def disconnect(self) -> None:
        self._stop_refresh_loop()
        await super().disconnect()

    async def destroy(self) -> bool:
        self._stop_refresh_loop()
        return await super().destroy()

    # ── Token refresh ───────────────────────────────────────

    def _start_refresh_loop(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh_loop())

    def _stop_refresh_loop(self) -> None:
        if self._refresh_task is not None and self._refresh_task is not asyncio.current_task():
            self._refresh_task.cancel()
        self._refresh_task = None

    async def _refresh_loop(self) -> None:
        """Refresh the token ahead of expiry; a failed refresh ends the connection."""
        while True:
            await asyncio.sleep(self.gateway_config.refresh_interval_seconds)
            try:
                await self.backend.client.ensure_fresh()
            except GatewayError as e:
                logger.warning("Gateway token refresh failed: %s", e.message)
                self._refresh_task = None
                await self._begin()
                self._fail(e.message)
                return

    # ── Recovery ────────────────────────────────────────────

    async def _next_session(
        self,
        generation: int,
        session_id: Optional[str],
        action: RecoveryAction,
    ) -> Optional[str]:
        try:
            await self.backend.refresh_credentials(force=action is RecoveryAction.REFRESH_AUTH)
        except GatewayError as e:
            self._fail(f"Reconnect failed during auth refresh: {e.message}")
            return None
        if not self._viewing(generation, session_id):
            return None

        latest = await self.backend.latest_session(self.target)
        if not self._viewing(generation, session_id):
            return None
        if latest is not None:
            if latest != session_id:
                logger.info("Recovering latest %s session %s", self.target.scope.value, latest)
            return latest

        if action is RecoveryAction.DISCOVER_LATEST:
            self.cache.delete(self.cache_key)
            self._fail(
                "Terminal disconnected: session no longer exists. "
                "Start a new session to start a fresh agent."
            )
            return None

        cols, rows = self.size_provider()
        result = await self.backend.create_session(self.target, cols, rows, self.startup_command)
        if not self._viewing(generation, session_id):
            return None
        if not result.success:
            self._fail(f"Reconnect failed: {result.error}")
            return None
        logger.info(
            "Recovered by %s %s session %s",
            "starting" if result.created else "attaching to",
            self.target.scope.value,
            result.session_id,
        )
        return result.session_id
