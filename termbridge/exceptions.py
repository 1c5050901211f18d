"""Exception hierarchy for termbridge."""

from __future__ import annotations

from typing import Any


class TermBridgeError(Exception):
    """Base exception for all termbridge errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class WorkingDirectoryNotFoundError(TermBridgeError):
    """The directory a session should start in does not exist."""

    def __init__(self, path: str):
        super().__init__(
            code="WORKING_DIRECTORY_NOT_FOUND",
            message=f"Working directory does not exist: {path}",
            details={"path": path},
        )


class ShellNotFoundError(TermBridgeError):
    """The configured login shell does not exist."""

    def __init__(self, shell: str):
        super().__init__(
            code="SHELL_NOT_FOUND",
            message=f"Shell not found: {shell}",
            details={"shell": shell},
        )


class SpawnError(TermBridgeError):
    """The pseudo-terminal or its child process could not be started."""

    def __init__(self, argv: list[str], reason: str):
        super().__init__(
            code="SPAWN_FAILED",
            message=f"Failed to start terminal process: {reason}",
            details={"argv": argv},
        )


class SessionNotFoundError(TermBridgeError):
    """Session with given ID does not exist."""

    def __init__(self, session_id: str):
        super().__init__(
            code="SESSION_NOT_FOUND",
            message=f"Session '{session_id}' not found",
            details={"session_id": session_id},
        )


class NoActiveSessionError(TermBridgeError):
    """An agent session was asked to resume but none is running."""

    def __init__(self, worktree_id: str, scope: str):
        super().__init__(
            code="NO_ACTIVE_SESSION",
            message=f"No active {scope} session to resume. Start a new {scope} session first.",
            details={"worktree_id": worktree_id, "scope": scope},
        )


class ProtocolError(TermBridgeError):
    """A frame on a session connection could not be decoded."""

    def __init__(self, message: str):
        super().__init__(code="PROTOCOL_ERROR", message=message)


class TransportError(TermBridgeError):
    """A client connection to a session could not be opened."""

    def __init__(self, url: str, reason: str, status: int | None = None):
        super().__init__(
            code="TRANSPORT_ERROR",
            message=f"Could not connect to {url}: {reason}",
            details={"url": url, "status": status},
        )
        self.status = status


class GatewayError(TermBridgeError):
    """A request to the mobile pairing gateway failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(
            code="GATEWAY_ERROR",
            message=message,
            details={"status": status},
        )
        self.status = status
