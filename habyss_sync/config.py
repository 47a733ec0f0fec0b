"""Configuration management for Habyss Sync."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "SyncSettings",
    "setup_logging",
    "DEFAULT_SUPABASE_URL",
    "DEFAULT_DATABASE_NAME",
]

logger = logging.getLogger(__name__)

APP_NAME = "Habyss Sync"
APP_AUTHOR = "Habyss"

# Backend
DEFAULT_SUPABASE_URL = "http://127.0.0.1:54321"
DEFAULT_DATABASE_NAME = "habyss.db"

# Sync settings
DEFAULT_SYNC_INTERVAL = 30  # seconds
MIN_SYNC_INTERVAL = 10
DEFAULT_PAGE_SIZE = 500
MAX_PAGE_SIZE = 1000
DEFAULT_REQUEST_TIMEOUT = 15  # seconds

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class SyncSettings:
    """Sync configuration."""

    interval_seconds: int = DEFAULT_SYNC_INTERVAL
    page_size: int = DEFAULT_PAGE_SIZE
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    # None keeps failed outbox entries forever; they are never dropped on transient failure
    max_attempts: Optional[int] = None
    purge_on_sign_out: bool = False


@dataclass
class Config:
    """Main configuration object."""

    supabase_url: str = DEFAULT_SUPABASE_URL
    supabase_anon_key: str = ""
    database_name: str = DEFAULT_DATABASE_NAME
    sync: SyncSettings = field(default_factory=SyncSettings)
    sandboxed: bool = False  # Restricted preview runtime, no embedded store
    debug_mode: bool = False

    @property
    def rest_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/auth/v1"

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite store)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @property
    def database_path(self) -> Path:
        return self.get_data_dir() / self.database_name

    @classmethod
    def load(cls) -> "Config":
        """Load config from file (or defaults), then apply environment overrides."""
        config = cls()
        config_file = cls.get_config_file()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                config = cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        config.apply_env()
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        data = dict(data)
        sync_data = data.pop("sync", {})
        sync_fields = SyncSettings.__dataclass_fields__
        sync = SyncSettings(**{k: v for k, v in sync_data.items() if k in sync_fields})
        sync.interval_seconds = max(MIN_SYNC_INTERVAL, int(sync.interval_seconds))
        sync.page_size = min(int(sync.page_size), MAX_PAGE_SIZE)

        return cls(
            sync=sync,
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def apply_env(self, environ: Optional[dict] = None) -> None:
        """Override settings from HABYSS_* environment variables."""
        env = os.environ if environ is None else environ

        if env.get("HABYSS_SUPABASE_URL"):
            self.supabase_url = env["HABYSS_SUPABASE_URL"]
        if env.get("HABYSS_SUPABASE_ANON_KEY"):
            self.supabase_anon_key = env["HABYSS_SUPABASE_ANON_KEY"]
        if "HABYSS_SANDBOX" in env:
            self.sandboxed = env["HABYSS_SANDBOX"].strip().lower() in _TRUTHY
        if "HABYSS_DEBUG" in env:
            self.debug_mode = env["HABYSS_DEBUG"].strip().lower() in _TRUTHY

    def save(self) -> None:
        """Save config to file."""
        config_file = self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "habyss-sync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
        force=True,
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
