"""
Hub state management for API integration.

Provides singleton access to the AutomationService instance.
Initialized during FastAPI lifespan.

Usage:
    from ._hub_state import get_hub_service, init_hub_service

    # In lifespan:
    init_hub_service(settings)

    # In routers:
    service = get_hub_service()
"""

from typing import Optional

from src.infra.config import HubSettings
from src.scheduler.registry import CapabilityRegistry
from src.scheduler.service import AutomationService


# Global hub service instance
_hub_service: Optional[AutomationService] = None


def init_hub_service(
    settings: HubSettings,
    registry: Optional[CapabilityRegistry] = None,
) -> AutomationService:
    """
    Initialize the hub service singleton.

    Called during FastAPI lifespan startup. Does NOT start the scheduler;
    the caller decides (the app starts it unless HUB_AUTOSTART=false).

    Args:
        settings: Hub settings
        registry: Capability registry; built from settings.bootstrap if None

    Returns:
        Initialized AutomationService
    """
    global _hub_service

    if _hub_service is not None:
        return _hub_service

    _hub_service = AutomationService.create(settings, registry)
    return _hub_service


def set_hub_service(service: Optional[AutomationService]) -> None:
    """Install a prebuilt service (tests) or clear the singleton."""
    global _hub_service
    _hub_service = service


def get_hub_service() -> AutomationService:
    """
    Get the hub service singleton.

    Raises:
        RuntimeError: If hub service not initialized
    """
    if _hub_service is None:
        raise RuntimeError(
            "Hub service not initialized. "
            "Ensure init_hub_service() is called during startup."
        )

    return _hub_service


def shutdown_hub_service() -> None:
    """
    Shutdown the hub service.

    Called during FastAPI lifespan shutdown.
    Gracefully stops the scheduler if running.
    """
    global _hub_service

    if _hub_service is not None:
        if _hub_service.is_running:
            _hub_service.stop()

        _hub_service = None
