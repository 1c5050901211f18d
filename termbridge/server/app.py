"""FastAPI server — session lifecycle over REST, terminal I/O over WebSocket."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from termbridge import __version__
from termbridge.config import TermBridgeConfig
from termbridge.exceptions import (
    NoActiveSessionError,
    SessionNotFoundError,
    TermBridgeError,
)
from termbridge.models import (
    CreateSessionRequest,
    LifecycleEvent,
    ResizeRequest,
    SessionScope,
)
from termbridge.protocol import CLOSE_POLICY, REASON_SESSION_NOT_FOUND
from termbridge.server.connection import Connection
from termbridge.server.registry import SessionRegistry

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "WORKING_DIRECTORY_NOT_FOUND": 400,
    "PROTOCOL_ERROR": 400,
    "SESSION_NOT_FOUND": 404,
    "NO_ACTIVE_SESSION": 404,
    "SHELL_NOT_FOUND": 500,
    "SPAWN_FAILED": 500,
    "TRANSPORT_ERROR": 502,
    "GATEWAY_ERROR": 502,
}


def _log_lifecycle(event: LifecycleEvent) -> None:
    if event.action == "created":
        logger.debug("lifecycle: %s created", event.session_id)
        return
    logger.info(
        "lifecycle: %s closed (%s, exit code %s)",
        event.session_id,
        event.reason.value if event.reason else "-",
        event.exit_code,
    )
    if event.is_successful_agent_exit:
        logger.info("Agent session %s finished successfully", event.session_id)


def create_app(
    config: Optional[TermBridgeConfig] = None,
    registry: Optional[SessionRegistry] = None,
) -> FastAPI:
    """Build the server app around a session registry."""
    config = config or TermBridgeConfig()
    registry = registry or SessionRegistry(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Destroy every session when the server shuts down."""
        unsubscribe = registry.subscribe(_log_lifecycle)
        logger.info("termbridge server ready on %s:%s", config.server.bind, config.server.port)
        yield
        unsubscribe()
        await registry.aclose()

    app = FastAPI(
        title="termbridge",
        description="Remote terminal sessions that survive dropped connections",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TermBridgeError)
    async def termbridge_error_handler(request: Request, exc: TermBridgeError):
        status = ERROR_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status,
            content={
                "success": False,
                "error": {"code": exc.code, "message": exc.message, "details": exc.details},
            },
        )

    # ── REST Endpoints ──────────────────────────────────────

    @app.get("/api/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "version": __version__, "sessions": len(registry)}

    @app.get("/api/terminals")
    async def list_terminals():
        """List all live sessions."""
        return {"sessions": [info.model_dump(mode="json") for info in registry.list_sessions()]}

    @app.post("/api/terminals", status_code=201)
    async def create_terminal(req: CreateSessionRequest, response: Response):
        """
        Create a session, or return the one the worktree already runs for the scope.

        An agent scope without a startup command only resumes: it never starts
        an agent. A reused session is answered with 200 and ``created: false``.
        """
        if req.scope.is_agent and not req.startup_command:
            session_id = registry.latest_session_for_scope(req.worktree_id, req.scope)
            if session_id is None:
                raise NoActiveSessionError(req.worktree_id, req.scope.value)
            response.status_code = 200
            return {"success": True, "session_id": session_id, "created": False}

        session_id, created = registry.get_or_create(
            worktree_id=req.worktree_id,
            working_directory=req.working_directory,
            scope=req.scope,
            cols=req.cols,
            rows=req.rows,
            startup_command=req.startup_command,
        )
        if not created:
            response.status_code = 200
        return {"success": True, "session_id": session_id, "created": created}

    @app.get("/api/terminals/active")
    async def active_terminal(worktree_id: str, scope: SessionScope = SessionScope.TERMINAL):
        """The live session for a worktree and scope, if any."""
        return {"session_id": registry.latest_session_for_scope(worktree_id, scope)}

    @app.get("/api/terminals/{session_id}")
    async def get_terminal(session_id: str):
        info = registry.info(session_id)
        if info is None:
            raise SessionNotFoundError(session_id)
        return info.model_dump(mode="json")

    @app.post("/api/terminals/{session_id}/resize")
    async def resize_terminal(session_id: str, req: ResizeRequest):
        if not registry.resize(session_id, req.cols, req.rows):
            raise SessionNotFoundError(session_id)
        return {"success": True}

    @app.delete("/api/terminals/{session_id}")
    async def destroy_terminal(session_id: str):
        if not registry.destroy(session_id):
            raise SessionNotFoundError(session_id)
        return {"success": True}

    @app.delete("/api/worktrees/{worktree_id}/terminals")
    async def destroy_worktree_terminals(worktree_id: str):
        """Called by the worktree manager when a worktree is removed."""
        return {"destroyed": registry.destroy_all_for(worktree_id)}

    # ── WebSocket Endpoint ──────────────────────────────────

    @app.websocket("/api/terminals/{session_id}/ws")
    async def terminal_socket(websocket: WebSocket, session_id: str):
        """Attach to a session: output out, keyboard input and control frames in."""
        await websocket.accept()

        if not registry.has_session(session_id):
            logger.info("Rejected attach to unknown session %s", session_id)
            await websocket.close(code=CLOSE_POLICY, reason=REASON_SESSION_NOT_FOUND)
            return

        peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else ""
        connection = Connection(
            websocket, peer=peer, max_pending_bytes=config.terminal.max_pending_output_bytes
        )

        if not registry.attach(session_id, connection):
            await connection.wait_closed()
            return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    registry.receive(session_id, connection, message["bytes"])
                elif message.get("text") is not None:
                    registry.receive_text(session_id, connection, message["text"])
        finally:
            registry.detach(session_id, connection)
            if connection.open:
                connection.abort()

    return app
