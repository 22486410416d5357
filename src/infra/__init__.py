"""
Infrastructure module - configuration and logging.
"""

from .config import HubSettings, get_webhook_secret, webhook_secret_env_name
from .logging_config import setup_logging

__all__ = [
    # config
    "HubSettings",
    "get_webhook_secret",
    "webhook_secret_env_name",
    # logging
    "setup_logging",
]
