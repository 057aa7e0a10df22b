"""Static configuration for civicwatch.

All user-editable settings (crawlers, categories, ingestion, notifications,
logging) live in a single JSON file for quick edits without touching Python.
Secrets (bot token, Telegram API credentials) come from the environment or a
local .env file.
"""

import json
import os
from typing import Iterable

from dotenv import load_dotenv

from core.config import IngestConfig, NotificationConfig, RetryConfig
from core.errors import ConfigurationError

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# config.json sits at the project root; CIVICWATCH_CONFIG points elsewhere.
CONFIG_PATH = os.getenv("CIVICWATCH_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database.
DB_PATH = _resolve_path(_CONFIG.get("database", {}).get("path", "civicwatch.db"))

# Locality used by crawlers that do not set their own.
DEFAULT_LOCALITY = _CONFIG.get("default_locality")

# Display names for source types in notifications.
SOURCE_ALIASES: dict[str, str] = dict(_CONFIG.get("source_aliases", {}))

# Crawler entries: [{source_type, url, locality, enabled}].
CRAWLERS: list[dict] = list(_CONFIG.get("crawlers", []))

# Extra keywords/regex per category, merged into the built-in rules.
CATEGORY_OVERRIDES: dict[str, dict] = dict(_CONFIG.get("categories", {}))

_ingest = _CONFIG.get("ingest", {})
_retry = _ingest.get("retry", {})
INGEST_CONFIG = IngestConfig(
    precision=int(_ingest.get("precision", 6)),
    max_age_days=int(_ingest.get("max_age_days", 90)),
    slug_attempts=int(_ingest.get("slug_attempts", 10)),
    retry=RetryConfig(
        attempts=int(_retry.get("attempts", 3)),
        base_delay=float(_retry.get("base_delay", 0.5)),
    ),
)

# Notification method switches adapters without changing core logic.
_notifications = _CONFIG.get("notifications", {})
NOTIFICATION_METHOD = _notifications.get("method", "bot_api")
NOTIFICATION_CONFIG = NotificationConfig(
    app_url=_notifications.get("app_url", "http://localhost:3000"),
    preview_chars=int(_notifications.get("preview_chars", 100)),
)

# Environment keys each notification method needs before anything runs.
REQUIRED_ENV = {
    "bot_api": ["BOT_API"],
    "telethon": ["API_ID", "API_HASH", "BOT_API"],
}

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})


def verify_env(keys: Iterable[str]) -> None:
    """Raise ConfigurationError naming every missing environment variable."""

    load_dotenv()
    missing = [key for key in keys if not os.getenv(key)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}",
            missing_keys=missing,
        )
