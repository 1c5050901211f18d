"""HTTP client for the termbridge session API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from termbridge.client.cache import CacheKey
from termbridge.models import SessionScope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TerminalTarget:
    """The logical terminal a client wants: a worktree, where to start, and which program."""

    worktree_id: str
    working_directory: str
    scope: SessionScope = SessionScope.TERMINAL

    def cache_key(self, endpoint: str) -> CacheKey:
        return CacheKey(endpoint=endpoint, worktree_id=self.worktree_id, scope=self.scope.value)


@dataclass
class CreateResult:
    """Outcome of a create request. Failures are values, not exceptions."""

    success: bool
    session_id: Optional[str] = None
    error: Optional[str] = None
    created: bool = True


class SessionBackend(Protocol):
    """What the reconnection engine needs from whoever hands out sessions."""

    @property
    def endpoint(self) -> str: ...

    async def create_session(
        self,
        target: TerminalTarget,
        cols: int,
        rows: int,
        startup_command: Optional[str] = None,
    ) -> CreateResult: ...

    async def destroy_session(self, session_id: str) -> bool: ...

    async def latest_session(self, target: TerminalTarget) -> Optional[str]: ...

    def websocket_url(self, session_id: str) -> str: ...

    def auth_headers(self) -> dict[str, str]: ...

    async def refresh_credentials(self, force: bool = False) -> None: ...


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"HTTP {response.status_code}"


class TerminalApiClient:
    """
    Talks to a termbridge server over HTTP.

    Every call reports failure through its return value (``CreateResult``
    with ``success=False``, ``False`` or ``None``) so callers in the
    reconnection path never need to catch network errors.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:9385",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @property
    def endpoint(self) -> str:
        return self.base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "TerminalApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── Session lifecycle ───────────────────────────────────

    async def create_session(
        self,
        target: TerminalTarget,
        cols: int,
        rows: int,
        startup_command: Optional[str] = None,
    ) -> CreateResult:
        payload = {
            "worktree_id": target.worktree_id,
            "working_directory": target.working_directory,
            "scope": target.scope.value,
            "cols": cols,
            "rows": rows,
            "startup_command": startup_command,
        }
        try:
            response = await self._client.post("/api/terminals", json=payload)
        except httpx.HTTPError as e:
            logger.warning("Create session request to %s failed: %s", self.base_url, e)
            return CreateResult(success=False, error=f"Cannot reach terminal server: {e}")

        if response.status_code not in (200, 201):
            return CreateResult(success=False, error=_error_message(response))

        body = response.json()
        session_id = body.get("session_id")
        if not body.get("success") or not session_id:
            return CreateResult(success=False, error="Server returned no session id")
        return CreateResult(success=True, session_id=session_id, created=body.get("created", True))

    async def destroy_session(self, session_id: str) -> bool:
        try:
            response = await self._client.delete(f"/api/terminals/{session_id}")
        except httpx.HTTPError as e:
            logger.debug("Destroy of %s failed: %s", session_id, e)
            return False
        return response.status_code == 200

    async def latest_session(self, target: TerminalTarget) -> Optional[str]:
        try:
            response = await self._client.get(
                "/api/terminals/active",
                params={"worktree_id": target.worktree_id, "scope": target.scope.value},
            )
        except httpx.HTTPError as e:
            logger.debug("Latest-session lookup failed: %s", e)
            return None
        if response.status_code != 200:
            return None
        return response.json().get("session_id")

    async def resize_session(self, session_id: str, cols: int, rows: int) -> bool:
        try:
            response = await self._client.post(
                f"/api/terminals/{session_id}/resize", json={"cols": cols, "rows": rows}
            )
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    # ── Connection details ──────────────────────────────────

    def websocket_url(self, session_id: str) -> str:
        if self.base_url.startswith("https://"):
            base = "wss://" + self.base_url[len("https://") :]
        elif self.base_url.startswith("http://"):
            base = "ws://" + self.base_url[len("http://") :]
        else:
            base = self.base_url
        return f"{base}/api/terminals/{session_id}/ws"

    def auth_headers(self) -> dict[str, str]:
        return {}

    async def refresh_credentials(self, force: bool = False) -> None:
        """The local server has no credentials to refresh."""

    # ── Info ────────────────────────────────────────────────

    async def health(self) -> bool:
        """Check if the server is reachable."""
        try:
            response = await self._client.get("/api/health", timeout=2.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def list_sessions(self) -> Optional[list[dict[str, Any]]]:
        try:
            response = await self._client.get("/api/terminals")
        except httpx.HTTPError:
            return None
        if response.status_code != 200:
            return None
        return response.json().get("sessions", [])
