#!/usr/bin/env python3
"""
Configuration management for RSSGrid.

All tunables of the refresh engine live here: database location, HTTP client
identity and timeout, refresh interval and cache fallback, plus the list of
feed URLs to subscribe on startup. Importing this module also configures
logging for the whole process.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOG_LEVELS = {
    "DEBUG": DEBUG,
    "INFO": INFO,
    "WARNING": WARNING,
    "ERROR": ERROR,
}

# Upper bound for feeds.yaml
FEEDS_FILE_SIZE_LIMIT = 5 * 1024 * 1024


def _setup_global_logger():
    """Configure the root logging setup once for the process.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
        LOG_TIMESTAMPS: "false" drops timestamps, e.g. when journald adds its own

    Output goes to stdout, line buffered. Modules log through get_logger().
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    log_format = '%(name)s - %(levelname)s - %(message)s'
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - ' + log_format

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # aiohttp access/client logs are noisy at INFO
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("RSSGrid")


def get_logger(name: str):
    """Return the "RSSGrid.<name>" logger, e.g. get_logger("updater")."""
    return getLogger(f"RSSGrid.{name}")


logger = _setup_global_logger()


class Config:
    """Refresh engine settings.

    Priority, lowest first: built-in defaults, process environment, a .env
    file next to this module. Feed URLs to seed come from feeds.yaml.
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path, override=True)
            logger.info(f"Loaded environment variables from {dotenv_path}")

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Read an integer setting, falling back to default when invalid or below min_val."""
        raw = environ.get(env_var)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"{env_var}={raw!r} is not an integer, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _flag(self, env_var: str, default: bool = False) -> bool:
        return environ.get(env_var, str(default)).lower() == "true"

    def _validate_and_set_config(self):
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "rssgrid.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

        # HTTP client
        self.USER_AGENT = environ.get("USER_AGENT", "RSSGrid/1.0 (+https://github.com/aggregat4/rssgrid)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)

        # Refresh cycle
        self.UPDATE_INTERVAL_MINUTES = self._validate_positive_int("UPDATE_INTERVAL_MINUTES", 30, 1)
        # Validity assumed when a response has neither Expires nor max-age
        self.DEFAULT_CACHE_SECONDS = self._validate_positive_int("DEFAULT_CACHE_SECONDS", 3600, 0)
        self.REFRESH_CONCURRENCY = self._validate_positive_int("REFRESH_CONCURRENCY", 1, 1)
        self.SCHEDULER_RUN_IMMEDIATELY = self._flag("SCHEDULER_RUN_IMMEDIATELY")

        # Subscriptions
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _safe_read_yaml(self, file_path: str, max_size: int) -> Optional[Any]:
        """Parsed YAML from file_path, or None if missing, unreadable, too large or invalid."""
        if not path.isfile(file_path):
            logger.warning(f"Feeds file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for feeds file at {file_path}")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"Feeds file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                return yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Set FEED_SOURCES, the de-duplicated list of feed URLs in feeds.yaml.

        Entries may be plain URLs or mappings with a ``url`` key, given either
        as a list or as a mapping keyed by a short name:

            feeds:
              - url: https://example.com/feed.xml
              - https://example.org/atom.xml

            feeds:
              example:
                url: https://example.com/feed.xml
        """
        self.FEED_SOURCES: List[str] = []

        data = self._safe_read_yaml(self.FEEDS_CONFIG_PATH, FEEDS_FILE_SIZE_LIMIT)
        feeds_section = data.get('feeds') if isinstance(data, dict) else None
        if isinstance(feeds_section, dict):
            entries = list(feeds_section.values())
        elif isinstance(feeds_section, list):
            entries = feeds_section
        else:
            if data is not None:
                logger.warning(f"No 'feeds' list in {self.FEEDS_CONFIG_PATH}")
            return

        for entry in entries:
            url = entry.get('url') if isinstance(entry, dict) else entry
            if not isinstance(url, str) or not url.strip():
                logger.warning(f"Skipping invalid feed entry: {entry!r}")
                continue
            url = url.strip()
            if url not in self.FEED_SOURCES:
                self.FEED_SOURCES.append(url)

        logger.info(f"Loaded {len(self.FEED_SOURCES)} feed URLs from {self.FEEDS_CONFIG_PATH}")

    def reload_feed_sources(self):
        """Re-read feeds.yaml."""
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        return {
            "database_path": self.DATABASE_PATH,
            "update_interval_minutes": self.UPDATE_INTERVAL_MINUTES,
            "http_timeout": self.HTTP_TIMEOUT,
            "default_cache_seconds": self.DEFAULT_CACHE_SECONDS,
            "refresh_concurrency": self.REFRESH_CONCURRENCY,
            "feed_count": len(self.FEED_SOURCES),
            "run_immediately": self.SCHEDULER_RUN_IMMEDIATELY,
        }


# Global configuration instance
config = Config()
