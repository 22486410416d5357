"""
Hub configuration.

Settings come from environment variables, optionally loaded from a .env file
with python-dotenv. Invalid values fall back to the default with a warning.

Environment Variables:
- HUB_DB_PATH: SQLite state store path (default: data/automation_hub.db)
- HUB_WORKER_POOL_SIZE: Concurrently running workflows (default: 4)
- HUB_POLL_INTERVAL_SECONDS: Scheduler tick granularity (default: 1.0)
- HUB_BACKOFF_BASE_SECONDS / HUB_BACKOFF_MAX_SECONDS: Error backoff (default: 30 / 3600)
- HUB_SHUTDOWN_GRACE_SECONDS: Grace period for in-flight runs (default: 30)
- HUB_WEBHOOK_WAIT_SECONDS: Webhook wait for an in-flight workflow (default: 30)
- HUB_DEDUP_RETENTION_DAYS: Dedup key retention (default: 30)
- HUB_DELIVERY_RETENTION_DAYS: Webhook delivery retention (default: 7)
- HUB_RUN_RETENTION_COUNT / HUB_RUN_RETENTION_DAYS: Run history (default: 200 / 90)
- HUB_MAINTENANCE_INTERVAL_SECONDS: Seconds between retention passes (default: 3600)
- HUB_BOOTSTRAP: "module:function" returning a CapabilityRegistry
- HUB_AUTOSTART: Start the scheduler when the API server starts (default: true)
- WEBHOOK_SECRET_<SOURCE>: Per-source webhook secret (source id upper-cased,
  "-" replaced by "_")
- WEBHOOK_ALLOW_UNSIGNED: Accept sources without a secret (default: false)
- TODOIST_API_TOKEN / TODOIST_PROJECT_ID: Task tracker adapter
- HUB_RSS_FEEDS: Comma-separated feeds to collect, each "name=url" or a bare url
- GITHUB_TOKEN: Enables the GitHub notifications collector
- HUB_GITHUB_RELEASE_REPOS: Comma-separated "owner/name" repositories to watch
- HUB_COLLECTOR_INTERVAL_SECONDS: Recurrence of the collector workflows (default: 900)
- LOG_LEVEL: Logging level (default: INFO)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# =============================================================================
# Environment Variable Helpers
# =============================================================================

def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    elif val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"[Config] Invalid integer for {key}: {val}, using default: {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            logger.warning(f"[Config] Invalid number for {key}: {val}, using default: {default}")
    return default


def _get_env_list(key: str) -> tuple[str, ...]:
    """Get a comma-separated environment variable as a tuple of non-empty values."""
    return tuple(part.strip() for part in os.getenv(key, "").split(",") if part.strip())


def webhook_secret_env_name(source_id: str) -> str:
    """Environment variable holding a source's webhook secret."""
    return "WEBHOOK_SECRET_" + source_id.upper().replace("-", "_").replace(".", "_")


def get_webhook_secret(source_id: str) -> Optional[str]:
    """Get a source's webhook secret, or None when unset or empty."""
    return os.getenv(webhook_secret_env_name(source_id)) or None


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class HubSettings:
    """Runtime settings of the automation hub."""

    db_path: Path = Path("data/automation_hub.db")
    worker_pool_size: int = 4
    poll_interval_seconds: float = 1.0
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 3600.0
    shutdown_grace_seconds: float = 30.0
    webhook_wait_seconds: float = 30.0
    dedup_retention_days: int = 30
    delivery_retention_days: int = 7
    run_retention_count: int = 200
    run_retention_days: int = 90
    maintenance_interval_seconds: float = 3600.0
    bootstrap: Optional[str] = None
    autostart: bool = True
    allow_unsigned_webhooks: bool = False
    todoist_api_token: Optional[str] = None
    todoist_project_id: Optional[str] = None
    rss_feeds: tuple[str, ...] = ()
    github_token: Optional[str] = None
    github_release_repos: tuple[str, ...] = ()
    collector_interval_seconds: float = 900.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "HubSettings":
        """
        Build settings from the environment.

        Args:
            dotenv: Load a .env file from the working directory first
        """
        if dotenv:
            load_dotenv()

        return cls(
            db_path=Path(os.getenv("HUB_DB_PATH", "data/automation_hub.db")),
            worker_pool_size=max(1, _get_env_int("HUB_WORKER_POOL_SIZE", 4)),
            poll_interval_seconds=_get_env_float("HUB_POLL_INTERVAL_SECONDS", 1.0),
            backoff_base_seconds=_get_env_float("HUB_BACKOFF_BASE_SECONDS", 30.0),
            backoff_max_seconds=_get_env_float("HUB_BACKOFF_MAX_SECONDS", 3600.0),
            shutdown_grace_seconds=_get_env_float("HUB_SHUTDOWN_GRACE_SECONDS", 30.0),
            webhook_wait_seconds=_get_env_float("HUB_WEBHOOK_WAIT_SECONDS", 30.0),
            dedup_retention_days=_get_env_int("HUB_DEDUP_RETENTION_DAYS", 30),
            delivery_retention_days=_get_env_int("HUB_DELIVERY_RETENTION_DAYS", 7),
            run_retention_count=_get_env_int("HUB_RUN_RETENTION_COUNT", 200),
            run_retention_days=_get_env_int("HUB_RUN_RETENTION_DAYS", 90),
            maintenance_interval_seconds=_get_env_float("HUB_MAINTENANCE_INTERVAL_SECONDS", 3600.0),
            bootstrap=os.getenv("HUB_BOOTSTRAP") or None,
            autostart=_get_env_bool("HUB_AUTOSTART", True),
            allow_unsigned_webhooks=_get_env_bool("WEBHOOK_ALLOW_UNSIGNED", False),
            todoist_api_token=os.getenv("TODOIST_API_TOKEN") or None,
            todoist_project_id=os.getenv("TODOIST_PROJECT_ID") or None,
            rss_feeds=_get_env_list("HUB_RSS_FEEDS"),
            github_token=os.getenv("GITHUB_TOKEN") or None,
            github_release_repos=_get_env_list("HUB_GITHUB_RELEASE_REPOS"),
            collector_interval_seconds=_get_env_float("HUB_COLLECTOR_INTERVAL_SECONDS", 900.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
