"""Configuration utilities for the tracker."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from thread_tracker.git_helper import GitHelper
from thread_tracker.models import DEFAULT_CATEGORY, DEFAULT_STATUS
from thread_tracker.persistence import DEFAULT_STORAGE_KEY, JsonFilePersistence, Persistence
from thread_tracker.sql_store import SqlPersistence

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "THREAD_TRACKER_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "thread-tracker" / "config.json"
SNAPSHOT_FILENAME = "tracker.json"
BACKENDS = ("json", "sql")


def default_data_dir() -> str:
    """Directory holding the JSON snapshot (and the SQLite file by default)."""

    env_value = os.getenv("THREAD_TRACKER_DATA_DIR")
    if env_value:
        return str(Path(env_value).expanduser().resolve())
    return str(Path.home() / ".thread-tracker")


def default_database_url() -> str:
    env_value = os.getenv("THREAD_TRACKER_DATABASE_URL")
    if env_value:
        return env_value
    return f"sqlite:///{Path(default_data_dir()) / 'tracker.db'}"


@dataclass
class TrackerConfig:
    """Serializable configuration for the tracker."""

    data_dir: str = field(default_factory=default_data_dir)
    storage_key: str = DEFAULT_STORAGE_KEY
    backend: str = "json"
    database_url: str = field(default_factory=default_database_url)
    git_commit: bool = False
    git_push: bool = False
    default_category: str = DEFAULT_CATEGORY.value
    default_status: str = DEFAULT_STATUS.value

    @property
    def snapshot_path(self) -> Path:
        return Path(self.data_dir).expanduser() / SNAPSHOT_FILENAME

    def to_dict(self) -> dict:
        """Return the config as a JSON-serializable dictionary."""

        data = asdict(self)
        data["data_dir"] = str(Path(self.data_dir).expanduser())
        return data


def config_path() -> Path:
    """Return the filesystem path where config is stored."""

    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()

    return DEFAULT_CONFIG_PATH


def load_config() -> TrackerConfig:
    """Load configuration from disk, falling back to defaults."""

    path = config_path()
    if not path.exists():
        return TrackerConfig()

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError:
        # Malformed config; fall back to defaults but keep original file for inspection.
        logger.warning(f"Ignoring malformed config file {path}")
        return TrackerConfig()

    config = TrackerConfig()
    if data.get("data_dir"):
        config.data_dir = str(Path(data["data_dir"]).expanduser().resolve())
    config.storage_key = data.get("storage_key") or config.storage_key
    backend = str(data.get("backend", config.backend)).lower()
    config.backend = backend if backend in BACKENDS else config.backend
    config.database_url = data.get("database_url") or config.database_url
    config.git_commit = bool(data.get("git_commit", config.git_commit))
    config.git_push = bool(data.get("git_push", config.git_push))
    config.default_category = data.get("default_category", config.default_category)
    config.default_status = data.get("default_status", config.default_status)
    return config


def save_config(config: TrackerConfig) -> None:
    """Persist configuration to disk."""

    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2))


def build_persistence(config: TrackerConfig) -> Persistence:
    """Create the persistence backend selected by ``config.backend``."""

    if config.backend == "sql":
        if config.database_url.startswith("sqlite:///"):
            Path(config.database_url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return SqlPersistence.from_url(config.database_url)

    git_helper = (
        GitHelper(Path(config.data_dir).expanduser(), push=config.git_push) if config.git_commit else None
    )
    return JsonFilePersistence(config.snapshot_path, storage_key=config.storage_key, git_helper=git_helper)
