"""Configuration management for termbridge."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


TERMBRIDGE_DIR = Path.home() / ".termbridge"
CONFIG_FILE = TERMBRIDGE_DIR / "config.yaml"
SESSION_CACHE_FILE = TERMBRIDGE_DIR / "sessions.yaml"
LOG_DIR = TERMBRIDGE_DIR / "logs"

FALLBACK_SHELL = "/bin/sh"


class ServerConfig(BaseModel):
    """Server settings."""

    port: int = 9385
    bind: str = "127.0.0.1"


class TerminalConfig(BaseModel):
    """Pseudo-terminal settings for server-side sessions."""

    shell: str | None = None  # None: $SHELL, then /bin/sh
    term: str = "xterm-256color"
    max_buffer_chars: int = Field(default=400_000, ge=1)
    kill_grace_seconds: float = Field(default=2.0, ge=0.0)
    max_pending_output_bytes: int = Field(default=4 * 1024 * 1024, ge=1)


class ClientConfig(BaseModel):
    """Reconnection engine settings."""

    server_url: str = "http://127.0.0.1:9385"
    stability_window_seconds: float = Field(default=0.18, ge=0.0)
    max_reconnect_attempts: int = Field(default=8, ge=0)
    reconnect_delay_seconds: float = Field(default=1.2, ge=0.0)
    heartbeat_interval_seconds: float = Field(default=8.0, gt=0.0)
    heartbeat_timeout_seconds: float = Field(default=25.0, gt=0.0)
    request_timeout_seconds: float = Field(default=10.0, gt=0.0)
    detach_key: str = "\x1d"  # Ctrl-]


class GatewayConfig(BaseModel):
    """Mobile gateway token settings."""

    refresh_window_seconds: float = 60.0
    refresh_interval_seconds: float = 30.0
    default_ttl_seconds: float = 15 * 60


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    file: str | None = None


class TermBridgeConfig(BaseModel):
    """Root configuration model."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def ensure_dirs() -> None:
    """Create termbridge directories if they don't exist."""
    TERMBRIDGE_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def load_config() -> TermBridgeConfig:
    """Load configuration from ~/.termbridge/config.yaml, falling back to defaults."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return TermBridgeConfig(**raw)
    return TermBridgeConfig()


def save_default_config() -> Path:
    """Write default config to ~/.termbridge/config.yaml."""
    ensure_dirs()
    config = TermBridgeConfig()
    with open(CONFIG_FILE, "w") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
    return CONFIG_FILE


def load_yaml(path: Path) -> dict[str, Any]:
    """Safely load a YAML file, returning empty dict when it is missing or empty."""
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def resolve_shell(config: TerminalConfig) -> str:
    """The login shell sessions are launched with."""
    return config.shell or os.environ.get("SHELL") or FALLBACK_SHELL
