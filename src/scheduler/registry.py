"""
Capability Registry.

Explicit registry built once during bootstrap:
- named collectors, filters, publishers, escalators
- webhook sources, keyed by source_id
- workflows, keyed by workflow_id

The AutomationService freezes it on start(); any later registration raises
RegistryFrozenError, so steady-state operation never sees the set change.
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Sequence

from .capabilities import Collector, Escalator, Filter, Publisher
from .entities import DEFAULT_RUN_TIMEOUT_SECONDS, Item, WebhookTrigger, Workflow
from .errors import (
    DuplicateRegistrationError,
    InvalidOperationError,
    RegistryFrozenError,
    WorkflowNotFoundError,
)
from .recurrence import Recurrence

if TYPE_CHECKING:
    from src.webhooks.sources import WebhookSource


logger = logging.getLogger(__name__)

# Event type that binds a workflow to every event of its source
ANY_EVENT = "*"


class CapabilityRegistry:
    """
    Name -> implementation mapping populated at bootstrap.

    Usage:
        registry = CapabilityRegistry()
        registry.register_collector("github", GitHubNotificationsCollector(...))
        registry.register_escalator("todoist", TodoistEscalator(...))
        registry.define_workflow(
            "github-notifications",
            collector="github",
            escalator="todoist",
            recurrence=IntervalRecurrence(300),
        )
    """

    def __init__(self):
        self._collectors: dict[str, Collector] = {}
        self._filters: dict[str, Filter] = {}
        self._publishers: dict[str, Publisher] = {}
        self._escalators: dict[str, Escalator] = {}
        self._sources: dict[str, "WebhookSource"] = {}
        self._workflows: dict[str, Workflow] = {}
        self._routes: dict[tuple[str, str], str] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _put(self, table: dict, kind: str, name: str, value: Any) -> Any:
        if self._frozen:
            raise RegistryFrozenError(name)
        if not name:
            raise ValueError(f"{kind} name must be non-empty")
        if name in table:
            raise DuplicateRegistrationError(kind, name)
        table[name] = value
        logger.debug(f"Registered {kind} '{name}'")
        return value

    # =========================================================================
    # Registration
    # =========================================================================

    def register_collector(self, name: str, collector: Collector) -> Collector:
        return self._put(self._collectors, "Collector", name, collector)

    def register_filter(self, name: str, item_filter: Filter) -> Filter:
        return self._put(self._filters, "Filter", name, item_filter)

    def register_publisher(self, name: str, publisher: Publisher) -> Publisher:
        return self._put(self._publishers, "Publisher", name, publisher)

    def register_escalator(self, name: str, escalator: Escalator) -> Escalator:
        return self._put(self._escalators, "Escalator", name, escalator)

    def register_source(self, source: "WebhookSource") -> "WebhookSource":
        """Register a webhook source under its source_id."""
        return self._put(self._sources, "Webhook source", source.source_id, source)

    def register_workflow(self, workflow: Workflow) -> Workflow:
        """
        Register a fully constructed workflow.

        Raises:
            DuplicateRegistrationError: Same workflow_id, or another workflow
                already bound to the same (source, event type)
        """
        if self._frozen:
            raise RegistryFrozenError(workflow.workflow_id)

        route = None
        if workflow.webhook_trigger is not None:
            route = (workflow.webhook_trigger.source_id, workflow.webhook_trigger.event_type)
            if route in self._routes:
                raise DuplicateRegistrationError(
                    "Webhook binding", f"{route[0]}:{route[1]}"
                )

        self._put(self._workflows, "Workflow", workflow.workflow_id, workflow)
        if route is not None:
            self._routes[route] = workflow.workflow_id
        return workflow

    def define_workflow(
        self,
        workflow_id: str,
        collector: Optional[str] = None,
        filters: Sequence[str] = (),
        publisher: Optional[str] = None,
        escalator: Optional[str] = None,
        recurrence: Optional[Recurrence] = None,
        webhook: Optional[tuple[str, str]] = None,
        run_timeout: float = DEFAULT_RUN_TIMEOUT_SECONDS,
        escalation_key: Optional[Callable[[Item], str]] = None,
        description: Optional[str] = None,
    ) -> Workflow:
        """
        Build and register a workflow from registered capability names.

        Args:
            webhook: (source_id, event_type) binding, if webhook-triggered

        Raises:
            InvalidOperationError: A referenced capability is not registered
        """
        workflow = Workflow(
            workflow_id=workflow_id,
            collector=self._resolve(self._collectors, "collector", collector),
            filters=tuple(self._resolve(self._filters, "filter", name) for name in filters),
            publisher=self._resolve(self._publishers, "publisher", publisher),
            escalator=self._resolve(self._escalators, "escalator", escalator),
            recurrence=recurrence,
            webhook_trigger=WebhookTrigger(*webhook) if webhook else None,
            run_timeout=run_timeout,
            escalation_key=escalation_key,
            description=description,
        )
        return self.register_workflow(workflow)

    @staticmethod
    def _resolve(table: dict, kind: str, name: Optional[str]) -> Any:
        if name is None:
            return None
        try:
            return table[name]
        except KeyError:
            raise InvalidOperationError(f"Unknown {kind} '{name}'")

    # =========================================================================
    # Freeze
    # =========================================================================

    def freeze(self) -> None:
        """
        Validate cross-references and make the registry read-only.

        Raises:
            InvalidOperationError: A workflow binds to an unregistered source
        """
        if self._frozen:
            return

        for (source_id, _), workflow_id in self._routes.items():
            if source_id not in self._sources:
                raise InvalidOperationError(
                    f"Workflow '{workflow_id}' is bound to unknown webhook source '{source_id}'"
                )

        self._frozen = True
        logger.info(
            f"Registry frozen: {len(self._workflows)} workflow(s), "
            f"{len(self._sources)} webhook source(s)"
        )

    # =========================================================================
    # Lookup
    # =========================================================================

    @property
    def workflows(self) -> dict[str, Workflow]:
        return dict(self._workflows)

    @property
    def sources(self) -> dict[str, "WebhookSource"]:
        return dict(self._sources)

    def get_workflow(self, workflow_id: str) -> Workflow:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFoundError(workflow_id)

    def get_source(self, source_id: str) -> Optional["WebhookSource"]:
        return self._sources.get(source_id)

    def routes_for(self, source_id: str) -> dict[str, str]:
        """Get event_type -> workflow_id bindings of a source."""
        return {
            event_type: workflow_id
            for (bound_source, event_type), workflow_id in self._routes.items()
            if bound_source == source_id
        }

    def names(self, kind: str) -> list[str]:
        """List registered capability names of a kind."""
        tables: dict[str, Iterable[str]] = {
            "collector": self._collectors,
            "filter": self._filters,
            "publisher": self._publishers,
            "escalator": self._escalators,
            "source": self._sources,
            "workflow": self._workflows,
        }
        return sorted(tables[kind])
