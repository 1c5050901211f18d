"""Local terminal plumbing for ``termbridge attach``."""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import select
import signal
import sys
import termios
import tty
from typing import Optional

from termbridge.client.engine import ReconnectionEngine

logger = logging.getLogger(__name__)

READ_CHUNK = 16384


def get_terminal_size() -> tuple[int, int]:
    """Current terminal size as (cols, rows)."""
    try:
        size = os.get_terminal_size()
        return (size.columns, size.lines)
    except OSError:
        return (80, 24)


def _set_nonblocking(fd: int, enabled: bool) -> None:
    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
    flags = flags | os.O_NONBLOCK if enabled else flags & ~os.O_NONBLOCK
    fcntl.fcntl(fd, fcntl.F_SETFL, flags)


class LocalConsole:
    """
    Bridges the user's terminal to a reconnection engine.

    Stdin goes to the session in raw mode, session output goes to stdout,
    and SIGWINCH becomes a resize. The detach key ends the attachment and
    leaves the session running on the server.
    """

    def __init__(self, detach_key: str = "\x1d"):
        self.detach_key = detach_key.encode()
        self.stdin_fd = sys.stdin.fileno()
        self.stdout_fd = sys.stdout.fileno()
        self.outcome: Optional[str] = None
        self._done = asyncio.Event()
        self._old_termios: Optional[list] = None

    # ── Engine callbacks ────────────────────────────────────

    def write(self, data: bytes) -> None:
        while data:
            try:
                written = os.write(self.stdout_fd, data)
            except BlockingIOError:
                # stdin and stdout usually share one non-blocking tty description
                select.select([], [self.stdout_fd], [])
                continue
            data = data[written:]

    def on_exit(self, exit_code: Optional[int]) -> None:
        self.finish("exited")

    def on_status(self, status: str, message: Optional[str]) -> None:
        if message and status in ("reconnecting", "error"):
            self.write(f"\r\n[termbridge] {message}\r\n".encode())
        if status in ("error", "exited"):
            self.finish(status)

    def finish(self, outcome: str) -> None:
        if self.outcome is None:
            self.outcome = outcome
        self._done.set()

    # ── Main loop ───────────────────────────────────────────

    async def run(self, engine: ReconnectionEngine) -> str:
        """Pump stdin and resizes into ``engine`` until detach, exit or error."""
        loop = asyncio.get_running_loop()
        self._enter_raw_mode()
        _set_nonblocking(self.stdin_fd, True)
        loop.add_reader(self.stdin_fd, self._on_stdin, engine)
        loop.add_signal_handler(signal.SIGWINCH, self._on_resize, engine)
        try:
            await self._done.wait()
        finally:
            loop.remove_signal_handler(signal.SIGWINCH)
            loop.remove_reader(self.stdin_fd)
            _set_nonblocking(self.stdin_fd, False)
            self._restore_terminal()
        return self.outcome or "detached"

    def _on_stdin(self, engine: ReconnectionEngine) -> None:
        try:
            data = os.read(self.stdin_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug("stdin read failed: %s", e)
            data = b""
        if not data:
            self.finish("detached")
            return

        index = data.find(self.detach_key)
        if index >= 0:
            if index:
                asyncio.ensure_future(engine.send_data(data[:index]))
            self.finish("detached")
            return
        asyncio.ensure_future(engine.send_data(data))

    def _on_resize(self, engine: ReconnectionEngine) -> None:
        cols, rows = get_terminal_size()
        asyncio.ensure_future(engine.send_resize(cols, rows))

    def _enter_raw_mode(self) -> None:
        try:
            self._old_termios = termios.tcgetattr(self.stdin_fd)
        except termios.error:
            self._old_termios = None
            return
        tty.setraw(self.stdin_fd)

    def _restore_terminal(self) -> None:
        if self._old_termios is not None:
            try:
                termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, self._old_termios)
            except termios.error:
                pass
            self._old_termios = None
