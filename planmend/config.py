"""
Configuration management for Planmend.

Loads and validates:
- planmend.yml: Main configuration (recovery policy, event history, fan-out, server)

Environment variables override file values for the event history and
fan-out knobs so that deployments can tune them without editing YAML.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "planmend.yml"
STATE_DIRNAME = ".planmend"


@dataclass
class RecoveryConfig:
    """Reconciliation and recovery policy."""

    max_backups: int = 3
    concurrency: int = 8
    worktrees_dir: str = ".worktrees"
    candidate_preview: int = 5


@dataclass
class EventHistoryConfig:
    """Bounded event history settings."""

    max_events: int = 1000
    cache_ttl_ms: int = 2000


@dataclass
class EventsConfig:
    """In-process event fan-out settings."""

    batch_ms: int = 0
    max_queue: int = 1000


@dataclass
class ServerConfig:
    """Web server settings."""

    host: str = "127.0.0.1"
    port: int = 8430
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )


@dataclass
class PlanmendConfig:
    """Complete Planmend configuration."""

    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    event_history: EventHistoryConfig = field(default_factory=EventHistoryConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    repo_root: Path | None = None

    @classmethod
    def load(cls, repo_root: Path | None = None) -> "PlanmendConfig":
        """Load configuration from repo root directory, then apply env overrides."""
        if repo_root is None:
            repo_root = get_repo_root()
        config = cls(repo_root=repo_root.resolve())

        config_path = repo_root / CONFIG_FILENAME
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{CONFIG_FILENAME} must contain a mapping")
            config = cls._parse_main_config(data, repo_root=repo_root.resolve())

        config.apply_env(os.environ)
        return config

    @classmethod
    def _parse_main_config(cls, data: dict[str, Any], repo_root: Path) -> "PlanmendConfig":
        config = cls(repo_root=repo_root)

        recovery_data = data.get("recovery", {}) or {}
        config.recovery = RecoveryConfig(
            max_backups=int(recovery_data.get("max_backups", 3)),
            concurrency=int(recovery_data.get("concurrency", 8)),
            worktrees_dir=str(recovery_data.get("worktrees_dir", ".worktrees")),
            candidate_preview=int(recovery_data.get("candidate_preview", 5)),
        )

        history_data = data.get("event_history", {}) or {}
        config.event_history = EventHistoryConfig(
            max_events=int(history_data.get("max_events", 1000)),
            cache_ttl_ms=int(history_data.get("cache_ttl_ms", 2000)),
        )

        events_data = data.get("events", {}) or {}
        config.events = EventsConfig(
            batch_ms=int(events_data.get("batch_ms", 0)),
            max_queue=int(events_data.get("max_queue", 1000)),
        )

        server_data = data.get("server", {}) or {}
        server = ServerConfig(
            host=str(server_data.get("host", "127.0.0.1")),
            port=int(server_data.get("port", 8430)),
        )
        origins = server_data.get("cors_origins")
        if isinstance(origins, list):
            server.cors_origins = [str(origin) for origin in origins]
        config.server = server

        return config

    def apply_env(self, environ: Any) -> None:
        """Override numeric knobs from PLANMEND_* environment variables.

        Unparseable or out-of-range values are ignored and the current value kept.
        """
        self.event_history.max_events = _env_int(
            environ, "PLANMEND_EVENT_HISTORY_MAX_EVENTS", self.event_history.max_events, minimum=1
        )
        self.event_history.cache_ttl_ms = _env_int(
            environ, "PLANMEND_EVENT_HISTORY_CACHE_TTL_MS", self.event_history.cache_ttl_ms, minimum=0
        )
        self.events.batch_ms = _env_int(
            environ, "PLANMEND_EVENT_EMIT_BATCH_MS", self.events.batch_ms, minimum=0
        )
        self.events.max_queue = _env_int(
            environ, "PLANMEND_EVENT_EMIT_QUEUE_MAX", self.events.max_queue, minimum=1
        )


def _env_int(environ: Any, name: str, default: int, minimum: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def get_repo_root() -> Path:
    """Find the repository root (directory containing .git)."""

    current = Path.cwd()
    while current != current.parent:
        if (current / ".git").exists():
            return current
        current = current.parent
    return Path.cwd()


def get_state_dir(project_path: Path) -> Path:
    """Get the .planmend state directory for a project."""

    return Path(project_path) / STATE_DIRNAME


def ensure_state_dir(project_path: Path) -> Path:
    """Ensure the .planmend directory exists and return its path."""

    state_dir = get_state_dir(project_path)
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir
