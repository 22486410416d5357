"""
Pytest configuration and shared fixtures.
"""

import os
import pytest

from src.infra.config import HubSettings
from src.scheduler import CapabilityRegistry, Item, Publisher, StaticCollector
from src.scheduler.recurrence import IntervalRecurrence
from src.webhooks.sources import HmacSignatureSource


@pytest.fixture(autouse=True, scope="function")
def reset_auth_module():
    """
    Reset auth module state before each test.

    This ensures tests run with API_AUTH_ENABLED=false by default,
    unless the test explicitly sets it otherwise.
    """
    # Store original values
    original_auth_enabled = os.environ.get("API_AUTH_ENABLED")
    original_api_key = os.environ.get("API_KEY")

    # Set defaults for tests (auth disabled)
    os.environ["API_AUTH_ENABLED"] = "false"

    yield

    # Restore original values
    if original_auth_enabled is not None:
        os.environ["API_AUTH_ENABLED"] = original_auth_enabled
    elif "API_AUTH_ENABLED" in os.environ:
        del os.environ["API_AUTH_ENABLED"]

    if original_api_key is not None:
        os.environ["API_KEY"] = original_api_key
    elif "API_KEY" in os.environ:
        del os.environ["API_KEY"]

    # Reload auth module to reset state
    try:
        import importlib
        import src.api.dependencies.auth as auth_module
        importlib.reload(auth_module)
    except ImportError:
        pass



# =============================================================================
# Hub fixtures for API tests
# =============================================================================

WEBHOOK_SECRET = "api-secret"


class ListPublisher(Publisher):
    """Publisher that records emitted item ids."""

    name = "list"

    def __init__(self):
        self.emitted = []

    def emit(self, item):
        self.emitted.append(item.item_id)


@pytest.fixture
def hub_publisher():
    return ListPublisher()


@pytest.fixture
def hub_service(tmp_path, hub_publisher):
    """
    AutomationService on a temporary database, installed as the API singleton.

    The scheduler is left stopped; tests start it when they need runs.
    """
    from src.api._hub_state import set_hub_service
    from src.scheduler.service import AutomationService

    registry = CapabilityRegistry()
    registry.register_collector(
        "feed",
        StaticCollector([Item(item_id=f"post-{n}", position=n) for n in range(1, 3)]),
    )
    registry.register_publisher("chat", hub_publisher)
    registry.register_source(
        HmacSignatureSource("acme", secret=WEBHOOK_SECRET, delivery_header="X-Delivery-Id")
    )
    registry.define_workflow(
        "digest",
        collector="feed",
        publisher="chat",
        recurrence=IntervalRecurrence(3600, run_immediately=False),
    )
    registry.define_workflow("acme-push", publisher="chat", webhook=("acme", "push"))

    settings = HubSettings(
        db_path=tmp_path / "hub.db",
        poll_interval_seconds=3600,
        shutdown_grace_seconds=5,
        webhook_wait_seconds=5,
    )
    service = AutomationService.create(settings, registry)
    set_hub_service(service)

    yield service

    if service.is_running:
        service.stop(grace_period=5)
    set_hub_service(None)
