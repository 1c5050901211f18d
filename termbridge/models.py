"""Shared data models for termbridge."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from termbridge.protocol import MAX_WINDOW_DIMENSION


class SessionScope(str, Enum):
    """Launch profile of a session: a plain shell or a coding agent."""

    TERMINAL = "terminal"
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    OPENCODE = "opencode"

    @property
    def is_agent(self) -> bool:
        return self is not SessionScope.TERMINAL


AGENT_SCOPES = tuple(scope for scope in SessionScope if scope.is_agent)


class SessionState(str, Enum):
    """
    State of a live session.

    The process starts on first attach, so a session goes straight from
    ``created`` to ``attached``. Exit and destroy remove the session; the
    ``closed`` lifecycle event carries which one it was.
    """

    CREATED = "created"
    ATTACHED = "attached"
    DETACHED = "detached"


class CloseReason(str, Enum):
    """Why a session left the registry."""

    DESTROYED = "destroyed"
    EXITED = "exited"
    SPAWN_FAILED = "spawn-failed"


class LifecycleEvent(BaseModel):
    """Emitted by the registry when a session is created or closed."""

    action: Literal["created", "closed"]
    session_id: str
    worktree_id: str
    scope: SessionScope
    reason: CloseReason | None = None
    exit_code: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_successful_agent_exit(self) -> bool:
        """True when an agent process finished on its own with code 0."""
        return (
            self.action == "closed"
            and self.reason is CloseReason.EXITED
            and self.exit_code == 0
            and self.scope.is_agent
        )


class SessionInfo(BaseModel):
    """Read-only view of a session for listings and metadata lookups."""

    session_id: str
    worktree_id: str
    scope: SessionScope
    working_directory: str
    cols: int
    rows: int
    state: SessionState
    attached: bool = False
    buffered_chars: int = 0
    pid: int | None = None
    created_at: datetime


class CreateSessionRequest(BaseModel):
    """Body of ``POST /api/terminals``."""

    worktree_id: str = Field(min_length=1)
    working_directory: str = Field(min_length=1)
    scope: SessionScope = SessionScope.TERMINAL
    cols: int = Field(default=80, gt=0, le=MAX_WINDOW_DIMENSION)
    rows: int = Field(default=24, gt=0, le=MAX_WINDOW_DIMENSION)
    startup_command: str | None = None


class ResizeRequest(BaseModel):
    """Body of ``POST /api/terminals/{session_id}/resize``."""

    cols: int = Field(gt=0, le=MAX_WINDOW_DIMENSION)
    rows: int = Field(gt=0, le=MAX_WINDOW_DIMENSION)
