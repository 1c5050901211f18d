"""PTY host — owns one pseudo-terminal-backed child process per session."""

from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import Callable, Optional

from termbridge.exceptions import SpawnError

logger = logging.getLogger(__name__)

READ_CHUNK = 16384
REAP_POLL_SECONDS = 0.05


def _set_nonblocking(fd: int) -> None:
    """Set a file descriptor to non-blocking mode."""
    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)


def _set_pty_size(fd: int, rows: int, cols: int) -> None:
    """Set the PTY window size."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def build_argv(shell: str, startup_command: Optional[str]) -> list[str]:
    """
    Arguments for the session's login shell.

    With a startup command the shell runs ``-lc <command>``; the command
    begins with ``exec`` so the target program replaces the shell.
    """
    if startup_command:
        return [shell, "-lc", startup_command]
    return [shell]


def build_env(shell: str, term: str) -> dict[str, str]:
    """Environment for the child: the server's own plus terminal settings."""
    env = dict(os.environ)
    env.update({"SHELL": shell, "TERM": term, "COLORTERM": "truecolor"})
    return env


class PtyHost:
    """
    Runs one child process on a pseudo-terminal, driven by the event loop.

    Output is read as it becomes available and handed to ``on_data`` as
    text. ``on_exit`` fires once, after the last output chunk, with the
    child's exit code (-1 if it was killed by a signal).
    """

    def __init__(
        self,
        argv: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_data: Optional[Callable[[str], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
        kill_grace_seconds: float = 2.0,
    ):
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.cols = cols
        self.rows = rows
        self.on_data = on_data
        self.on_exit = on_exit
        self.kill_grace_seconds = kill_grace_seconds

        self._master_fd: Optional[int] = None
        self._child_pid: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_writes = bytearray()
        self._reap_task: Optional[asyncio.Task] = None
        self._kill_deadline: Optional[float] = None
        self._exit_code: Optional[int] = None
        self._exited = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._child_pid

    @property
    def spawned(self) -> bool:
        return self._child_pid is not None

    @property
    def alive(self) -> bool:
        return self.spawned and not self._exited.is_set()

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    def spawn(self) -> None:
        """
        Fork the child onto a new pseudo-terminal.

        Must be called from the event loop thread. Raises SpawnError.
        """
        if self.spawned:
            return
        if not os.path.isdir(self.cwd):
            raise SpawnError(self.argv, f"working directory does not exist: {self.cwd}")

        self._loop = asyncio.get_running_loop()

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(self.argv, f"openpty failed: {e}") from e

        try:
            _set_pty_size(master_fd, self.rows, self.cols)
        except (OSError, struct.error) as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise SpawnError(self.argv, f"cannot set window size {self.cols}x{self.rows}: {e}") from e

        try:
            pid = os.fork()
        except OSError as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise SpawnError(self.argv, f"fork failed: {e}") from e

        if pid == 0:
            # === CHILD PROCESS ===
            try:
                os.close(master_fd)
                os.setsid()

                # Set the slave as the controlling terminal
                fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)

                os.dup2(slave_fd, 0)
                os.dup2(slave_fd, 1)
                os.dup2(slave_fd, 2)
                if slave_fd > 2:
                    os.close(slave_fd)

                os.chdir(self.cwd)
                os.execvpe(self.argv[0], self.argv, self.env)
            except OSError as e:
                os.write(2, f"termbridge: cannot start {self.argv[0]}: {e}\r\n".encode())
            finally:
                os._exit(127)

        # === PARENT PROCESS ===
        os.close(slave_fd)
        self._master_fd = master_fd
        self._child_pid = pid
        _set_nonblocking(master_fd)
        self._loop.add_reader(master_fd, self._on_readable)
        self._reap_task = self._loop.create_task(self._reap())
        logger.debug("Spawned pid %s: %s (cwd=%s)", pid, self.argv, self.cwd)

    def write(self, data: bytes) -> None:
        """Write keyboard input to the child."""
        if self._master_fd is None or not data:
            return
        if self._pending_writes:
            self._pending_writes.extend(data)
            return

        try:
            written = os.write(self._master_fd, data)
        except BlockingIOError:
            written = 0
        except OSError as e:
            logger.debug("Write to pid %s failed: %s", self._child_pid, e)
            return

        if written < len(data):
            self._pending_writes.extend(data[written:])
            self._loop.add_writer(self._master_fd, self._on_writable)

    def resize(self, cols: int, rows: int) -> None:
        """Apply a new window size. No-op before spawn or after exit."""
        self.cols = cols
        self.rows = rows
        if self._master_fd is None:
            return
        try:
            _set_pty_size(self._master_fd, rows, cols)
        except (OSError, struct.error) as e:
            logger.debug("Resize of pid %s failed: %s", self._child_pid, e)

    def dispose(self) -> None:
        """Stop delivering output; the process keeps running until killed."""
        self.on_data = None

    def kill(self) -> None:
        """Hang up the child; escalate to SIGKILL after the grace period."""
        if not self.alive:
            return
        try:
            os.kill(self._child_pid, signal.SIGHUP)
        except ProcessLookupError:
            return
        self._kill_deadline = self._loop.time() + self.kill_grace_seconds

    async def wait(self) -> int:
        """Wait for the child to exit and return its exit code."""
        await self._exited.wait()
        return self._exit_code

    # ── Event loop callbacks ────────────────────────────────

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError as e:
            if e.errno != errno.EIO:
                logger.debug("Read from pid %s failed: %s", self._child_pid, e)
            data = b""  # EIO: child closed the PTY

        if not data:
            # The reaper flushes whatever is left once the child is gone
            self._loop.remove_reader(self._master_fd)
            return

        text = self._decoder.decode(data)
        if text:
            self._deliver(text)

    def _drain(self) -> None:
        """Deliver output still sitting in the PTY after the child exited."""
        while self._master_fd is not None:
            try:
                data = os.read(self._master_fd, READ_CHUNK)
            except OSError:
                break
            if not data:
                break
            text = self._decoder.decode(data)
            if text:
                self._deliver(text)
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._deliver(tail)

    def _on_writable(self) -> None:
        try:
            written = os.write(self._master_fd, self._pending_writes)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug("Write to pid %s failed: %s", self._child_pid, e)
            written = len(self._pending_writes)
        del self._pending_writes[:written]
        if not self._pending_writes:
            self._loop.remove_writer(self._master_fd)

    def _deliver(self, text: str) -> None:
        if self.on_data is not None:
            self.on_data(text)

    async def _reap(self) -> None:
        """Poll for the child's exit status, then drain and release the PTY."""
        exit_code = -1
        while True:
            try:
                pid, status = os.waitpid(self._child_pid, os.WNOHANG)
            except ChildProcessError:
                break
            if pid != 0:
                if os.WIFEXITED(status):
                    exit_code = os.WEXITSTATUS(status)
                break
            if self._kill_deadline is not None and self._loop.time() >= self._kill_deadline:
                self._kill_deadline = None
                try:
                    os.kill(self._child_pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            await asyncio.sleep(REAP_POLL_SECONDS)

        self._drain()
        self._close_master()
        self._exit_code = exit_code
        self._exited.set()
        logger.debug("pid %s exited with code %s", self._child_pid, exit_code)

        if self.on_exit is not None:
            on_exit, self.on_exit = self.on_exit, None
            on_exit(exit_code)

    def _close_master(self) -> None:
        if self._master_fd is None:
            return
        self._loop.remove_reader(self._master_fd)
        self._loop.remove_writer(self._master_fd)
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = None
