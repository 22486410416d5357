"""
API Dependencies package.

Admin API key authentication shared by the runs, escalations and scheduler routers.
"""

from .auth import verify_api_key, API_AUTH_ENABLED

__all__ = ["verify_api_key", "API_AUTH_ENABLED"]
