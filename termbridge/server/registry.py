"""Session registry — owns every session's process and its one attached connection."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from termbridge.config import TermBridgeConfig, resolve_shell
from termbridge.exceptions import (
    ProtocolError,
    ShellNotFoundError,
    SpawnError,
    WorkingDirectoryNotFoundError,
)
from termbridge.models import (
    CloseReason,
    LifecycleEvent,
    SessionInfo,
    SessionScope,
    SessionState,
)
from termbridge.protocol import (
    CLOSE_INTERNAL,
    CLOSE_NORMAL,
    CLOSE_REPLACED,
    REASON_DESTROYED,
    REASON_EXITED,
    REASON_REPLACED,
    REASON_SPAWN_FAILED,
    DataFrame,
    ExitFrame,
    PingFrame,
    PongFrame,
    ResizeFrame,
    decode_frame,
)
from termbridge.server.buffer import OutputBuffer
from termbridge.server.connection import Connection
from termbridge.server.pty_host import PtyHost, build_argv, build_env

logger = logging.getLogger(__name__)

LifecycleListener = Callable[[LifecycleEvent], None]


@dataclass
class TerminalSession:
    """One process, its trailing output, and at most one live connection."""

    id: str
    worktree_id: str
    scope: SessionScope
    working_directory: str
    startup_command: Optional[str]
    cols: int
    rows: int
    buffer: OutputBuffer
    host: Optional[PtyHost] = None
    connection: Optional[Connection] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def state(self) -> SessionState:
        if self.host is None:
            return SessionState.CREATED
        if self.connection is not None:
            return SessionState.ATTACHED
        return SessionState.DETACHED

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.id,
            worktree_id=self.worktree_id,
            scope=self.scope,
            working_directory=self.working_directory,
            cols=self.cols,
            rows=self.rows,
            state=self.state,
            attached=self.connection is not None,
            buffered_chars=len(self.buffer),
            pid=self.host.pid if self.host else None,
            created_at=self.created_at,
        )


class SessionRegistry:
    """
    In-memory table of terminal sessions.

    Processes are spawned lazily on first attach and never restarted. A new
    attach closes whichever connection was attached before it, then replays
    the session's buffered output ahead of any live output. When a process
    exits, its connection receives an exit frame and the session is removed.

    All methods must be called from the event loop thread.
    """

    def __init__(self, config: Optional[TermBridgeConfig] = None):
        self.config = config or TermBridgeConfig()
        self._sessions: dict[str, TerminalSession] = {}
        self._latest_by_scope: dict[tuple[str, SessionScope], str] = {}
        self._listeners: list[LifecycleListener] = []
        self._hosts: set[PtyHost] = set()

    # ── Lifecycle listeners ─────────────────────────────────

    def subscribe(self, listener: LifecycleListener) -> Callable[[], None]:
        """Register for created/closed events. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: LifecycleEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Lifecycle listener failed for %s", event.session_id)

    # ── Create / attach ─────────────────────────────────────

    def create(
        self,
        worktree_id: str,
        working_directory: str,
        scope: SessionScope = SessionScope.TERMINAL,
        cols: int = 80,
        rows: int = 24,
        startup_command: Optional[str] = None,
    ) -> str:
        """Session id for a worktree and scope; see ``get_or_create``."""
        session_id, _ = self.get_or_create(
            worktree_id, working_directory, scope, cols, rows, startup_command
        )
        return session_id

    def get_or_create(
        self,
        worktree_id: str,
        working_directory: str,
        scope: SessionScope = SessionScope.TERMINAL,
        cols: int = 80,
        rows: int = 24,
        startup_command: Optional[str] = None,
    ) -> tuple[str, bool]:
        """
        Return ``(session_id, created)``.

        A worktree runs at most one live session per scope: if one exists it
        is returned as is (its startup command and size are left alone).
        Otherwise a new session is registered; its process starts on first
        attach.

        Raises WorkingDirectoryNotFoundError or ShellNotFoundError; nothing is
        registered in that case.
        """
        if not os.path.isdir(working_directory):
            raise WorkingDirectoryNotFoundError(working_directory)
        shell = resolve_shell(self.config.terminal)
        if not os.path.exists(shell):
            raise ShellNotFoundError(shell)

        existing = self.latest_session_for_scope(worktree_id, scope)
        if existing is not None:
            logger.info("Session %s reused for worktree=%s scope=%s", existing, worktree_id, scope.value)
            return existing, False

        session = TerminalSession(
            id=f"term-{uuid.uuid4().hex[:12]}",
            worktree_id=worktree_id,
            scope=scope,
            working_directory=working_directory,
            startup_command=startup_command or None,
            cols=cols,
            rows=rows,
            buffer=OutputBuffer(self.config.terminal.max_buffer_chars),
        )
        self._sessions[session.id] = session
        self._latest_by_scope[(worktree_id, scope)] = session.id
        logger.info(
            "Session %s created (worktree=%s scope=%s startup_command=%s %sx%s)",
            session.id,
            worktree_id,
            scope.value,
            bool(session.startup_command),
            cols,
            rows,
        )

        self._emit(
            LifecycleEvent(
                action="created",
                session_id=session.id,
                worktree_id=worktree_id,
                scope=scope,
            )
        )
        return session.id, True

    def attach(self, session_id: str, connection: Connection) -> bool:
        """
        Make ``connection`` the session's only connection.

        Returns False if the session does not exist or its process cannot be
        started. On success the full output buffer is queued to the new
        connection before any live output.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False

        previous = session.connection
        if previous is not None and previous is not connection:
            logger.info("Session %s: connection %s replaced by %s", session_id, previous.id, connection.id)
            previous.close(CLOSE_REPLACED, REASON_REPLACED)
        session.connection = connection

        if session.host is None and not self._spawn(session):
            connection.send_data("\r\nFailed to start terminal session\r\n")
            connection.close(CLOSE_INTERNAL, REASON_SPAWN_FAILED)
            self._finalize(session, CloseReason.SPAWN_FAILED)
            return False

        replay = session.buffer.snapshot()
        if replay:
            connection.send_data(replay)
        logger.info("Session %s: connection %s attached (replayed %s chars)", session_id, connection.id, len(replay))
        return True

    def detach(self, session_id: str, connection: Connection) -> None:
        """Forget ``connection`` if it is still the attached one."""
        session = self._sessions.get(session_id)
        if session is not None and session.connection is connection:
            session.connection = None
            logger.info("Session %s: connection %s detached", session_id, connection.id)

    def receive(self, session_id: str, connection: Connection, payload: bytes) -> None:
        """Handle one inbound binary frame from an attached connection."""
        session = self._sessions.get(session_id)
        if session is None or session.connection is not connection or session.host is None:
            return

        try:
            frame = decode_frame(payload)
        except ProtocolError as e:
            logger.warning("Session %s: dropped frame: %s", session_id, e.message)
            return

        if isinstance(frame, DataFrame):
            session.host.write(frame.data)
        elif isinstance(frame, ResizeFrame):
            self.resize(session_id, frame.cols, frame.rows)
        elif isinstance(frame, PingFrame):
            connection.send_control(PongFrame())
        else:
            logger.debug("Session %s: ignoring %s frame from client", session_id, frame.type)

    def receive_text(self, session_id: str, connection: Connection, text: str) -> None:
        """Text frames are always keyboard input."""
        session = self._sessions.get(session_id)
        if session is None or session.connection is not connection or session.host is None:
            return
        session.host.write(text.encode("utf-8"))

    # ── Resize / destroy ────────────────────────────────────

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.cols = cols
        session.rows = rows
        if session.host is not None:
            session.host.resize(cols, rows)
        return True

    def destroy(self, session_id: str) -> bool:
        """Close the connection, kill the process, forget the session. Idempotent."""
        session = self._sessions.get(session_id)
        if session is None:
            return False

        host = session.host
        if host is not None:
            host.dispose()
        if session.connection is not None:
            session.connection.close(CLOSE_NORMAL, REASON_DESTROYED)
            session.connection = None
        self._finalize(session, CloseReason.DESTROYED)
        if host is not None:
            host.kill()
        return True

    def destroy_all_for(self, worktree_id: str) -> int:
        """Destroy every session of a worktree; called when the worktree is removed."""
        doomed = [s.id for s in self._sessions.values() if s.worktree_id == worktree_id]
        for session_id in doomed:
            self.destroy(session_id)
        if doomed:
            logger.info("Destroyed %s session(s) for worktree %s", len(doomed), worktree_id)
        return len(doomed)

    def destroy_all(self) -> None:
        for session_id in list(self._sessions):
            self.destroy(session_id)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Destroy all sessions and wait for their processes to be reaped."""
        self.destroy_all()
        pending = [host.wait() for host in self._hosts if host.alive]
        if pending:
            await asyncio.wait_for(asyncio.gather(*pending), timeout=timeout)
        logger.info("All terminal sessions cleaned up")

    # ── Queries ─────────────────────────────────────────────

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[TerminalSession]:
        return self._sessions.get(session_id)

    def info(self, session_id: str) -> Optional[SessionInfo]:
        session = self._sessions.get(session_id)
        return session.to_info() if session else None

    def list_sessions(self) -> list[SessionInfo]:
        return [s.to_info() for s in self._sessions.values()]

    def latest_session_for_scope(self, worktree_id: str, scope: SessionScope) -> Optional[str]:
        """The live session for a worktree and scope, if any."""
        key = (worktree_id, scope)
        session_id = self._latest_by_scope.get(key)
        if session_id is None:
            return None
        if session_id not in self._sessions:
            del self._latest_by_scope[key]
            return None
        return session_id

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Internals ───────────────────────────────────────────

    def _spawn(self, session: TerminalSession) -> bool:
        shell = resolve_shell(self.config.terminal)
        host = PtyHost(
            argv=build_argv(shell, session.startup_command),
            cwd=session.working_directory,
            env=build_env(shell, self.config.terminal.term),
            cols=session.cols,
            rows=session.rows,
            on_data=lambda text: self._on_output(session, text),
            on_exit=lambda code: self._on_exit(session, code),
            kill_grace_seconds=self.config.terminal.kill_grace_seconds,
        )
        try:
            host.spawn()
        except SpawnError as e:
            logger.error("Session %s: %s", session.id, e.message)
            return False

        session.host = host
        self._hosts.add(host)
        asyncio.get_running_loop().create_task(self._forget_host(host))
        logger.info("Session %s spawned pid %s", session.id, host.pid)
        return True

    async def _forget_host(self, host: PtyHost) -> None:
        await host.wait()
        self._hosts.discard(host)

    def _on_output(self, session: TerminalSession, text: str) -> None:
        session.buffer.append(text)
        if session.connection is not None:
            session.connection.send_data(text)

    def _on_exit(self, session: TerminalSession, exit_code: int) -> None:
        if self._sessions.get(session.id) is not session:
            return
        logger.info(
            "Session %s exited with code %s (worktree=%s scope=%s)",
            session.id,
            exit_code,
            session.worktree_id,
            session.scope.value,
        )
        if session.host is not None:
            session.host.dispose()
        connection = session.connection
        if connection is not None:
            connection.send_control(ExitFrame(exit_code=exit_code))
            connection.close(CLOSE_NORMAL, REASON_EXITED)
            session.connection = None
        self._finalize(session, CloseReason.EXITED, exit_code)

    def _finalize(
        self,
        session: TerminalSession,
        reason: CloseReason,
        exit_code: Optional[int] = None,
    ) -> None:
        if self._sessions.get(session.id) is not session:
            return
        del self._sessions[session.id]
        key = (session.worktree_id, session.scope)
        if self._latest_by_scope.get(key) == session.id:
            del self._latest_by_scope[key]

        self._emit(
            LifecycleEvent(
                action="closed",
                session_id=session.id,
                worktree_id=session.worktree_id,
                scope=session.scope,
                reason=reason,
                exit_code=exit_code,
            )
        )
