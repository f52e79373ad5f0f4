"""
Configuration for the session dependency resolver.

Settings can be constructed programmatically, loaded from a YAML file, or
taken from ``SESSION_DEPS_*`` environment variables (a ``.env`` file in the
working directory is honoured).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

DEFAULT_DB_FILENAME = "session-deps.json"

# Searched in order by the CLI when no --config is given.
CONFIG_SEARCH_PATHS = [
    Path.cwd() / "session-deps.yaml",
    Path.home() / ".config" / "session-deps" / "config.yaml",
]


def _default_data_dir() -> Path:
    return Path.home() / ".ccui"


def _default_history_dir() -> Path:
    return Path.home() / ".claude" / "projects"


@dataclass
class SessionDepsConfig:
    """
    Settings for :class:`~session_deps.service.SessionDepsService`.

    Example YAML:
        data_dir: ~/.ccui
        db_filename: session-deps.json
        history_dir: ~/.claude/projects
        fetch_timeout_seconds: 10
        store_timeout_seconds: 10
        max_concurrent_fetches: 8
        log_level: INFO
    """

    data_dir: Path = field(default_factory=_default_data_dir)  # Private data directory
    db_filename: str = DEFAULT_DB_FILENAME
    history_dir: Path = field(default_factory=_default_history_dir)  # Transcript root

    # Timeouts (seconds); None disables the limit
    fetch_timeout_seconds: float | None = 10.0
    store_timeout_seconds: float | None = 10.0

    max_concurrent_fetches: int = 8
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        """Location of the persisted dependency graph."""
        return self.data_dir / self.db_filename

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionDepsConfig:
        """Create config from a dictionary."""
        defaults = cls()
        return cls(
            data_dir=Path(data["data_dir"]).expanduser() if data.get("data_dir") else defaults.data_dir,
            db_filename=data.get("db_filename", DEFAULT_DB_FILENAME),
            history_dir=(
                Path(data["history_dir"]).expanduser()
                if data.get("history_dir")
                else defaults.history_dir
            ),
            fetch_timeout_seconds=data.get("fetch_timeout_seconds", 10.0),
            store_timeout_seconds=data.get("store_timeout_seconds", 10.0),
            max_concurrent_fetches=data.get("max_concurrent_fetches", 8),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> SessionDepsConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> SessionDepsConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    @classmethod
    def from_env(cls, base: SessionDepsConfig | None = None) -> SessionDepsConfig:
        """
        Apply ``SESSION_DEPS_*`` environment overrides on top of *base*.

        Recognised variables: ``SESSION_DEPS_DATA_DIR``,
        ``SESSION_DEPS_HISTORY_DIR``, ``SESSION_DEPS_DB_FILENAME``,
        ``SESSION_DEPS_FETCH_TIMEOUT``, ``SESSION_DEPS_STORE_TIMEOUT``,
        ``SESSION_DEPS_MAX_CONCURRENT_FETCHES`` and ``SESSION_DEPS_LOG_LEVEL``.
        """
        load_dotenv(find_dotenv(usecwd=True))
        data = (base or cls()).to_dict()

        overrides = {
            "data_dir": os.environ.get("SESSION_DEPS_DATA_DIR"),
            "history_dir": os.environ.get("SESSION_DEPS_HISTORY_DIR"),
            "db_filename": os.environ.get("SESSION_DEPS_DB_FILENAME"),
            "log_level": os.environ.get("SESSION_DEPS_LOG_LEVEL"),
        }
        for key, value in overrides.items():
            if value:
                data[key] = value

        numeric = {
            "fetch_timeout_seconds": ("SESSION_DEPS_FETCH_TIMEOUT", float),
            "store_timeout_seconds": ("SESSION_DEPS_STORE_TIMEOUT", float),
            "max_concurrent_fetches": ("SESSION_DEPS_MAX_CONCURRENT_FETCHES", int),
        }
        for key, (env_name, convert) in numeric.items():
            raw = os.environ.get(env_name)
            if raw:
                data[key] = convert(raw)

        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary."""
        return {
            "data_dir": str(self.data_dir),
            "db_filename": self.db_filename,
            "history_dir": str(self.history_dir),
            "fetch_timeout_seconds": self.fetch_timeout_seconds,
            "store_timeout_seconds": self.store_timeout_seconds,
            "max_concurrent_fetches": self.max_concurrent_fetches,
            "log_level": self.log_level,
        }


def load_config(path: Path | None = None) -> SessionDepsConfig:
    """
    Load configuration from *path*, or from the first existing search path.

    Environment overrides are applied last.
    """
    if path is not None:
        return SessionDepsConfig.from_env(SessionDepsConfig.from_yaml(path))

    for candidate in CONFIG_SEARCH_PATHS:
        if candidate.exists():
            return SessionDepsConfig.from_env(SessionDepsConfig.from_yaml(candidate))

    return SessionDepsConfig.from_env()
