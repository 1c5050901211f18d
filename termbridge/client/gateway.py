"""Client for the mobile pairing gateway.

The gateway fronts a termbridge server for paired mobile devices. A device
holds a short-lived session token (JWT) that must be refreshed before it
expires; every API call and every terminal WebSocket carries it.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from termbridge.client.api import CreateResult, TerminalTarget
from termbridge.config import GatewayConfig
from termbridge.exceptions import GatewayError
from termbridge.models import SessionScope

logger = logging.getLogger(__name__)


def session_expiry(payload: dict[str, Any], default_ttl: float = 15 * 60) -> float:
    """
    Absolute expiry (epoch seconds) of a token response.

    ``expiresAt`` (ISO timestamp) wins, then ``expiresIn`` (seconds from
    now), then ``default_ttl``.
    """
    expires_at = payload.get("expiresAt")
    if isinstance(expires_at, str):
        try:
            return datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
        except ValueError:
            pass
    expires_in = payload.get("expiresIn")
    if isinstance(expires_in, (int, float)) and expires_in > 0:
        return time.time() + expires_in
    return time.time() + default_ttl


class GatewaySession(BaseModel):
    """A paired device's credentials for one project."""

    session_jwt: str
    expires_at: float
    gateway_origin: str
    project_id: str
    project_name: Optional[str] = None

    @property
    def api_base(self) -> str:
        return f"{self.gateway_origin.rstrip('/')}/_ok/mobile/v1"

    def needs_refresh(self, window: float) -> bool:
        return time.time() + window >= self.expires_at


class AgentSessionSummary(BaseModel):
    scope: SessionScope
    session_id: Optional[str] = None
    active: bool = False


class GatewayClient:
    """Token-aware HTTP client for the gateway's mobile API."""

    def __init__(
        self,
        session: GatewaySession,
        config: Optional[GatewayConfig] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session = session
        self.config = config or GatewayConfig()
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def auth_headers(self) -> dict[str, str]:
        return {"authorization": f"Bearer {self.session.session_jwt}"}

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayError("Timed out while contacting the gateway.") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Cannot reach the gateway: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.is_error:
            error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
            message = error.get("message") or f"Request failed with status {response.status_code}."
            retry_after = payload.get("retryAfterSec")
            if isinstance(retry_after, (int, float)):
                message = f"{message} Retry in {max(1, int(retry_after))}s."
            raise GatewayError(message, status=response.status_code)
        return payload

    # ── Token ───────────────────────────────────────────────

    async def refresh(self) -> GatewaySession:
        """Exchange the current token for a new one."""
        payload = await self._request(
            "POST", f"{self.session.gateway_origin.rstrip('/')}/_ok/refresh", headers=self.auth_headers()
        )
        token = payload.get("sessionJwt")
        if not payload.get("success") or not token:
            raise GatewayError("Gateway session refresh did not return a usable session.")
        self.session = self.session.model_copy(
            update={
                "session_jwt": token,
                "expires_at": session_expiry(payload, self.config.default_ttl_seconds),
            }
        )
        logger.debug("Gateway token refreshed for project %s", self.session.project_id)
        return self.session

    async def ensure_fresh(self) -> GatewaySession:
        """Refresh only when the token expires within the refresh window."""
        if self.session.needs_refresh(self.config.refresh_window_seconds):
            return await self.refresh()
        return self.session

    # ── Agent sessions ──────────────────────────────────────

    async def list_agent_sessions(self, worktree_id: str) -> list[AgentSessionSummary]:
        if not worktree_id.strip():
            raise GatewayError("worktree_id is required.")
        await self.ensure_fresh()
        payload = await self._request(
            "GET",
            f"{self.session.api_base}/agent-sessions",
            params={"worktreeId": worktree_id},
            headers=self.auth_headers(),
        )
        sessions = payload.get("sessions")
        if not payload.get("success") or not isinstance(sessions, list):
            raise GatewayError("Gateway did not return a valid agent session list.")
        try:
            return [
                AgentSessionSummary(
                    scope=entry.get("scope"),
                    session_id=entry.get("sessionId") if isinstance(entry.get("sessionId"), str) else None,
                    active=entry.get("active") is True,
                )
                for entry in sessions
            ]
        except ValueError as e:
            raise GatewayError("Server returned an invalid agent scope.") from e

    async def connect_agent_session(
        self,
        worktree_id: str,
        scope: SessionScope,
        start_if_missing: bool = True,
        prompt: Optional[str] = None,
        skip_permissions: bool = False,
        cols: int = 120,
        rows: int = 30,
    ) -> tuple[str, bool]:
        """Attach to the scope's running agent, or start one. Returns (session_id, created)."""
        await self.ensure_fresh()
        body: dict[str, Any] = {
            "worktreeId": worktree_id,
            "scope": scope.value,
            "startIfMissing": start_if_missing,
            "cols": cols,
            "rows": rows,
        }
        if prompt:
            body["prompt"] = prompt
        if skip_permissions:
            body["skipPermissions"] = True

        payload = await self._request(
            "POST", f"{self.session.api_base}/agent-sessions/connect", json=body, headers=self.auth_headers()
        )
        session_id = payload.get("sessionId")
        if not payload.get("success") or not session_id:
            raise GatewayError("Gateway did not return a valid session connection response.")
        return session_id, payload.get("created") is True

    def websocket_url(self, session_id: str) -> str:
        if not session_id.strip():
            raise GatewayError("session_id is required.")
        origin = self.session.gateway_origin.rstrip("/")
        if origin.startswith("http"):
            origin = "ws" + origin[len("http") :]
        token = quote(self.session.session_jwt, safe="")
        return f"{origin}/_ok/mobile/v1/agent-sessions/{quote(session_id, safe='')}/ws?accessToken={token}"


class GatewayBackend:
    """``SessionBackend`` that reaches agent sessions through the gateway."""

    def __init__(self, client: GatewayClient, prompt: Optional[str] = None, skip_permissions: bool = False):
        self.client = client
        self.prompt = prompt
        self.skip_permissions = skip_permissions

    @property
    def endpoint(self) -> str:
        return f"{self.client.session.gateway_origin}#{self.client.session.project_id}"

    async def create_session(
        self,
        target: TerminalTarget,
        cols: int,
        rows: int,
        startup_command: Optional[str] = None,
    ) -> CreateResult:
        # The gateway builds the agent command itself from the scope and prompt
        try:
            session_id, created = await self.client.connect_agent_session(
                target.worktree_id,
                target.scope,
                start_if_missing=True,
                prompt=self.prompt,
                skip_permissions=self.skip_permissions,
                cols=cols,
                rows=rows,
            )
        except GatewayError as e:
            return CreateResult(success=False, error=e.message)
        return CreateResult(success=True, session_id=session_id, created=created)

    async def destroy_session(self, session_id: str) -> bool:
        """Mobile clients cannot destroy sessions; they only detach."""
        return False

    async def latest_session(self, target: TerminalTarget) -> Optional[str]:
        try:
            sessions = await self.client.list_agent_sessions(target.worktree_id)
        except GatewayError as e:
            logger.info("Latest-session lookup failed: %s", e.message)
            return None
        for entry in sessions:
            if entry.scope == target.scope and entry.session_id:
                return entry.session_id
        return None

    def websocket_url(self, session_id: str) -> str:
        return self.client.websocket_url(session_id)

    def auth_headers(self) -> dict[str, str]:
        return self.client.auth_headers()

    async def refresh_credentials(self, force: bool = False) -> None:
        if force:
            await self.client.refresh()
        else:
            await self.client.ensure_fresh()
