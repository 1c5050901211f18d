"""Client-side cache of session ids, so a logical terminal can be resumed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import yaml

from termbridge.config import SESSION_CACHE_FILE, load_yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    """Identifies a logical terminal: which server, which worktree, which scope."""

    endpoint: str
    worktree_id: str
    scope: str

    def as_string(self) -> str:
        return f"{self.endpoint}|{self.worktree_id}|{self.scope}"


class SessionCache(Protocol):
    def get(self, key: CacheKey) -> Optional[str]: ...

    def set(self, key: CacheKey, session_id: str) -> None: ...

    def delete(self, key: CacheKey) -> None: ...


class MemorySessionCache:
    """In-process cache; lives as long as the client object that owns it."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, str] = {}

    def get(self, key: CacheKey) -> Optional[str]:
        return self._entries.get(key)

    def set(self, key: CacheKey, session_id: str) -> None:
        self._entries[key] = session_id

    def delete(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class YamlSessionCache:
    """
    Cache persisted to a YAML file (``~/.termbridge/sessions.yaml`` by default).

    Lets ``termbridge attach`` find its shell again after the CLI process
    exits. The file is re-read on every lookup so concurrent CLI processes
    see each other's writes.
    """

    def __init__(self, path: Path = SESSION_CACHE_FILE):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        try:
            raw = load_yaml(self.path)
        except yaml.YAMLError as e:
            logger.warning("Ignoring unreadable session cache %s: %s", self.path, e)
            return {}
        sessions = raw.get("sessions") or {}
        return {str(k): str(v) for k, v in sessions.items()}

    def _save(self, entries: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump({"sessions": entries}, f, default_flow_style=False, sort_keys=True)

    def get(self, key: CacheKey) -> Optional[str]:
        return self._load().get(key.as_string())

    def set(self, key: CacheKey, session_id: str) -> None:
        entries = self._load()
        entries[key.as_string()] = session_id
        self._save(entries)

    def delete(self, key: CacheKey) -> None:
        entries = self._load()
        if entries.pop(key.as_string(), None) is not None:
            self._save(entries)
