"""termbridge CLI — command-line interface."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from termbridge import __version__
from termbridge.models import SessionScope

app = typer.Typer(
    name="termbridge",
    help="Long-lived terminal sessions you can drop and pick up again from anywhere.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Route log records to stderr through rich, and optionally to a file."""
    handlers: list[logging.Handler] = [
        RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
    ]
    if log_file:
        from termbridge.config import LOG_DIR, ensure_dirs

        ensure_dirs()
        path = Path(log_file)
        if not path.is_absolute():
            path = LOG_DIR / path
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=level.upper(), format="%(message)s", datefmt="[%X]", handlers=handlers, force=True)


def get_local_ip() -> str:
    """Best-effort LAN address, for printing reachable URLs."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("10.255.255.255", 1))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def version_callback(value: bool):
    if value:
        console.print(f"[bold cyan]termbridge[/bold cyan] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """termbridge — terminals that outlive your connection."""
    pass


def _server_url(url: Optional[str]) -> str:
    from termbridge.config import load_config

    return url or load_config().client.server_url


# ── Server Commands ─────────────────────────────────────────


server_app = typer.Typer(help="Run the termbridge session server.")
app.add_typer(server_app, name="server")


@server_app.command("start")
def server_start(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port."),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
):
    """Start the termbridge server."""
    import uvicorn

    from termbridge.config import load_config
    from termbridge.server.app import create_app

    config = load_config()
    if port is not None:
        config.server.port = port
    if host is not None:
        config.server.bind = host
    setup_logging(config.logging.level, config.logging.file)

    shown_host = get_local_ip() if config.server.bind == "0.0.0.0" else config.server.bind
    console.print("\n[bold cyan]⚡ termbridge server[/bold cyan]")
    console.print(f"  [dim]HTTP: http://{shown_host}:{config.server.port}[/dim]")
    console.print(f"  [dim]WS:   ws://{shown_host}:{config.server.port}/api/terminals/<id>/ws[/dim]")
    console.print()

    uvicorn.run(
        create_app(config),
        host=config.server.bind,
        port=config.server.port,
        log_level="warning",
    )


@server_app.command("status")
def server_status(
    url: Optional[str] = typer.Option(None, "--url", help="Server URL."),
):
    """Check if the termbridge server is running."""
    from termbridge.client.api import TerminalApiClient

    async def check() -> bool:
        async with TerminalApiClient(_server_url(url)) as client:
            return await client.health()

    if asyncio.run(check()):
        console.print("[green]✓[/green] termbridge server is running")
    else:
        console.print("[red]✗[/red] termbridge server is not running")
        console.print("  Start it with: [cyan]termbridge server start[/cyan]")
        raise typer.Exit(1)


# ── Session Commands ────────────────────────────────────────


@app.command()
def sessions(
    url: Optional[str] = typer.Option(None, "--url", help="Server URL."),
):
    """List live terminal sessions."""
    from termbridge.client.api import TerminalApiClient

    async def fetch():
        async with TerminalApiClient(_server_url(url)) as client:
            return await client.list_sessions()

    sess_list = asyncio.run(fetch())
    if sess_list is None:
        console.print("[red]✗[/red] Cannot connect to server.")
        console.print("  Start it with: [cyan]termbridge server start[/cyan]")
        raise typer.Exit(1)

    if not sess_list:
        console.print("[dim]No live sessions.[/dim]")
        return

    table = Table(title="Live Sessions")
    table.add_column("Session ID", style="yellow")
    table.add_column("Worktree", style="cyan")
    table.add_column("Scope")
    table.add_column("State", style="green")
    table.add_column("Size", style="dim")
    table.add_column("Directory", style="dim")

    for s in sess_list:
        state_style = "green" if s.get("attached") else "yellow"
        table.add_row(
            s.get("session_id", "?"),
            s.get("worktree_id", "?"),
            s.get("scope", "?"),
            f"[{state_style}]{s.get('state', '?')}[/{state_style}]",
            f"{s.get('cols', '?')}x{s.get('rows', '?')}",
            s.get("working_directory", ""),
        )

    console.print(table)


@app.command()
def destroy(
    session_id: str = typer.Argument(..., help="Session to destroy."),
    url: Optional[str] = typer.Option(None, "--url", help="Server URL."),
):
    """Kill a session's process and remove it."""
    from termbridge.client.api import TerminalApiClient

    async def run() -> bool:
        async with TerminalApiClient(_server_url(url)) as client:
            return await client.destroy_session(session_id)

    if asyncio.run(run()):
        console.print(f"[green]✓[/green] Destroyed {session_id}")
    else:
        console.print(f"[red]✗[/red] No such session: {session_id}")
        raise typer.Exit(1)


@app.command()
def attach(
    worktree: str = typer.Option("default", "--worktree", "-w", help="Worktree the session belongs to."),
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory a new session starts in."),
    scope: SessionScope = typer.Option(SessionScope.TERMINAL, "--scope", "-s", help="Shell or agent to run."),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Initial prompt for an agent scope."),
    skip_permissions: bool = typer.Option(
        False, "--skip-permissions", help="Start the agent without permission prompts."
    ),
    new: bool = typer.Option(False, "--new", help="Ignore the cached session and start a fresh one."),
    url: Optional[str] = typer.Option(None, "--url", help="Server URL."),
):
    """
    Attach this terminal to a session, resuming the last one if it is still alive.

    Press Ctrl-] to detach; the session keeps running.

    Usage:
        termbridge attach
        termbridge attach --scope claude --prompt "fix the failing test"
    """
    from termbridge.client.api import TerminalApiClient, TerminalTarget
    from termbridge.client.cache import YamlSessionCache
    from termbridge.client.console import LocalConsole, get_terminal_size
    from termbridge.client.engine import ReconnectionEngine
    from termbridge.config import load_config
    from termbridge.scopes import DEFAULT_AGENT_PROMPT, build_startup_command, scope_label

    config = load_config()
    setup_logging("WARNING", config.logging.file)
    working_directory = str(directory.expanduser().resolve())
    if not os.path.isdir(working_directory):
        console.print(f"[red]✗[/red] Not a directory: {working_directory}")
        raise typer.Exit(1)

    startup_command = None
    if scope.is_agent:
        startup_command = build_startup_command(
            scope, prompt or DEFAULT_AGENT_PROMPT, skip_permissions=skip_permissions
        )

    target = TerminalTarget(worktree_id=worktree, working_directory=working_directory, scope=scope)
    cache = YamlSessionCache()

    async def run() -> tuple[str, str]:
        async with TerminalApiClient(
            _server_url(url), timeout=config.client.request_timeout_seconds
        ) as client:
            if new:
                cache.delete(target.cache_key(client.endpoint))
            local = LocalConsole(config.client.detach_key)
            engine = ReconnectionEngine(
                client,
                target,
                cache=cache,
                config=config.client,
                on_data=local.write,
                on_exit=local.on_exit,
                on_status=local.on_status,
                startup_command=startup_command,
                size_provider=get_terminal_size,
            )
            if not await engine.connect():
                return "error", engine.error or "Could not attach."
            verb = "Resumed" if engine.connection_source == "reused" else "Started"
            err_console.print(
                f"[dim]{verb} {scope_label(scope)} session {engine.session_id}. Ctrl-] to detach.[/dim]"
            )
            outcome = await local.run(engine)
            await engine.disconnect()
            return outcome, engine.error or ""

    outcome, error = asyncio.run(run())
    if outcome == "error":
        console.print(f"\n[red]✗[/red] {error or 'Connection lost.'}")
        raise typer.Exit(1)
    if outcome == "exited":
        console.print("\n[dim]Session ended.[/dim]")
    else:
        console.print("\n[dim]Detached. Run the same command to resume.[/dim]")


# ── Config Commands ─────────────────────────────────────────


config_app = typer.Typer(help="Manage termbridge configuration.")
app.add_typer(config_app, name="config")


@config_app.command("init")
def config_init():
    """Create the default configuration file."""
    from termbridge.config import CONFIG_FILE, ensure_dirs, save_default_config

    ensure_dirs()

    if CONFIG_FILE.exists():
        console.print(f"[yellow]Config already exists:[/yellow] {CONFIG_FILE}")
    else:
        path = save_default_config()
        console.print(f"[green]✓[/green] Created config: {path}")


@config_app.command("show")
def config_show():
    """Show current configuration."""
    from termbridge.config import load_config

    config = load_config()
    console.print_json(data=config.model_dump())


if __name__ == "__main__":
    app()
