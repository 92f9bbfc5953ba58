"""Configuration for the Notion Task Dashboard."""

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass

# Dashboard application log
DASHBOARD_LOG_FILE = os.environ.get("DASHBOARD_LOG_FILE", "")

# Server configuration
HOST = os.environ.get("DASHBOARD_HOST", "127.0.0.1")
PORT = int(os.environ.get("DASHBOARD_PORT", "8000"))

# CORS allowed origins (the dashboard frontend dev servers)
CORS_ORIGINS = [
    f"http://localhost:{PORT}",
    f"http://127.0.0.1:{PORT}",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
_extra_origins = os.environ.get("DASHBOARD_CORS_ORIGINS", "")
for origin in (o.strip() for o in _extra_origins.split(",")):
    if origin and origin not in CORS_ORIGINS:
        CORS_ORIGINS.append(origin)

# Logging configuration
# Valid values: DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_LEVEL_STR = os.environ.get("DASHBOARD_LOG_LEVEL", "INFO").upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_STR, logging.INFO)

# Log format for file and console handlers
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Packages whose loggers are configured by setup_logging()
LOGGER_NAMES = ("dashboard", "taskcache")

CACHE_STRATEGIES = ("swr", "periodic")

NOTION_API_URL = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

logger = logging.getLogger(__name__)


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    """Read a positive number from the environment, falling back to default."""
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid value for %s: %r, using default %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Non-positive value for %s: %r, using default %s", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the Notion client and the cache layer.

    Built from environment variables by from_env(); tests construct it
    directly.
    """

    notion_api_key: str = ""
    notion_database_id: str = ""
    notion_api_url: str = NOTION_API_URL
    notion_version: str = NOTION_VERSION
    notion_timeout: float = 30.0
    redis_url: str = ""
    cache_strategy: str = "swr"
    fresh_ttl: float = 60.0
    stale_max_age: float = 300.0
    lock_ttl: float = 10.0
    refresh_interval: float = 60.0
    poll_interval: float = 10.0
    rate_limit_cooldown: float = 60.0
    error_cooldown: float = 10.0

    @property
    def has_notion_credentials(self) -> bool:
        """Whether both the API key and the database id are configured."""
        return bool(self.notion_api_key and self.notion_database_id)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Load settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Returns:
            Settings with invalid numeric values replaced by defaults.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        strategy = env.get("CACHE_STRATEGY", defaults.cache_strategy).strip().lower()
        if strategy not in CACHE_STRATEGIES:
            logger.warning("Unknown CACHE_STRATEGY %r, using %s", strategy, defaults.cache_strategy)
            strategy = defaults.cache_strategy

        return cls(
            notion_api_key=env.get("NOTION_API_KEY", ""),
            notion_database_id=env.get("NOTION_DATABASE_ID", ""),
            notion_api_url=env.get("NOTION_API_URL", NOTION_API_URL),
            notion_version=env.get("NOTION_VERSION", NOTION_VERSION),
            notion_timeout=_env_float(env, "NOTION_TIMEOUT_SECONDS", defaults.notion_timeout),
            redis_url=env.get("REDIS_URL") or env.get("KV_URL") or "",
            cache_strategy=strategy,
            fresh_ttl=_env_float(env, "CACHE_FRESH_TTL_SECONDS", defaults.fresh_ttl),
            stale_max_age=_env_float(env, "CACHE_STALE_MAX_AGE_SECONDS", defaults.stale_max_age),
            lock_ttl=_env_float(env, "CACHE_LOCK_TTL_SECONDS", defaults.lock_ttl),
            refresh_interval=_env_float(env, "REFRESH_INTERVAL_SECONDS", defaults.refresh_interval),
            poll_interval=_env_float(env, "REFRESH_POLL_SECONDS", defaults.poll_interval),
            rate_limit_cooldown=_env_float(
                env, "RATE_LIMIT_COOLDOWN_SECONDS", defaults.rate_limit_cooldown
            ),
            error_cooldown=_env_float(env, "ERROR_COOLDOWN_SECONDS", defaults.error_cooldown),
        )


def setup_logging() -> logging.Logger:
    """Configure logging for the dashboard and cache packages.

    Sets up a console handler and, when DASHBOARD_LOG_FILE is set, a file
    handler. The log level is configurable via DASHBOARD_LOG_LEVEL.

    Returns:
        The logger for the dashboard package.
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    for name in LOGGER_NAMES:
        pkg_logger = logging.getLogger(name)
        pkg_logger.setLevel(LOG_LEVEL)

        # Avoid duplicate handlers if setup is called multiple times
        if pkg_logger.handlers:
            continue

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(LOG_LEVEL)
        console_handler.setFormatter(formatter)
        pkg_logger.addHandler(console_handler)

        if DASHBOARD_LOG_FILE:
            try:
                file_handler = logging.FileHandler(DASHBOARD_LOG_FILE, encoding="utf-8")
                file_handler.setLevel(LOG_LEVEL)
                file_handler.setFormatter(formatter)
                pkg_logger.addHandler(file_handler)
            except OSError as e:
                pkg_logger.warning(
                    "Could not set up file logging to %s: %s", DASHBOARD_LOG_FILE, e
                )

        # Prevent propagation to root logger to avoid duplicate logs
        pkg_logger.propagate = False

    return logging.getLogger("dashboard")
