"""
Automation Service - Main entry point for the automation hub.

This service orchestrates all hub components:
- StateStore (durable watermarks, dedup keys, deliveries, escalations, runs)
- EscalationTracker (one open external task per escalation key)
- JobRunner (collect -> filter -> publish/escalate pipeline)
- BackoffController (error backoff per workflow)
- Scheduler (tick loop, worker pool, per-workflow exclusivity)
- RecoveryManager (crash recovery and retention)
- WebhookIngestion (inbound pushes)

Usage:
    service = AutomationService.create(settings, registry)
    service.start()
    # ... scheduler runs in background, webhooks call ingest_webhook ...
    service.stop()
"""

import importlib
import logging
from typing import Callable, Mapping, Optional, Union

from src.infra.config import HubSettings
from src.webhooks.ingestion import WebhookAck, WebhookIngestion
from .dispatcher import Scheduler
from .entities import EscalationRecord, EscalationStatus, Run, RunTrigger
from .errors import InvalidOperationError, RunNotFoundError
from .escalation import EscalationTracker
from .executor import JobRunner
from .persistence import StateStore
from .recovery import RecoveryManager, RetentionPolicy
from .registry import CapabilityRegistry
from .retry_controller import BackoffController


logger = logging.getLogger(__name__)


def load_bootstrap(target: str) -> Callable[[HubSettings], CapabilityRegistry]:
    """
    Resolve a "module:function" bootstrap reference.

    The function receives the HubSettings and returns a CapabilityRegistry.

    Raises:
        ValueError: Malformed reference or missing attribute
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Bootstrap must look like 'module:function', got '{target}'")

    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError:
        raise ValueError(f"Bootstrap function '{attribute}' not found in module '{module_name}'")


def build_registry(settings: HubSettings) -> CapabilityRegistry:
    """
    Build the capability registry from HUB_BOOTSTRAP, or the default one.

    Raises:
        TypeError: The bootstrap function did not return a CapabilityRegistry
    """
    if settings.bootstrap:
        factory = load_bootstrap(settings.bootstrap)
        logger.info(f"Bootstrapping registry from {settings.bootstrap}")
    else:
        from src.integrations.defaults import build_default_registry
        factory = build_default_registry

    registry = factory(settings)
    if not isinstance(registry, CapabilityRegistry):
        raise TypeError(
            f"Bootstrap returned {type(registry).__name__}, expected CapabilityRegistry"
        )
    return registry


class AutomationService:
    """
    Main service that coordinates all hub components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery
    - Graceful shutdown
    - API-friendly methods for runs, escalations and webhooks
    """

    def __init__(
        self,
        settings: HubSettings,
        registry: CapabilityRegistry,
        store: StateStore,
        tracker: EscalationTracker,
        runner: JobRunner,
        scheduler: Scheduler,
        recovery_manager: RecoveryManager,
        ingestion: WebhookIngestion,
    ):
        """
        Initialize AutomationService with all components.

        Use AutomationService.create() for convenient construction.
        """
        self.settings = settings
        self.registry = registry
        self.store = store
        self.tracker = tracker
        self.runner = runner
        self.scheduler = scheduler
        self.recovery_manager = recovery_manager
        self.ingestion = ingestion

        self._recovered = False

    @classmethod
    def create(
        cls,
        settings: HubSettings,
        registry: Optional[CapabilityRegistry] = None,
    ) -> "AutomationService":
        """
        Create an AutomationService with all components wired together.

        The registry is frozen here: the scheduler and the ingestion pipeline
        take their view of workflows and sources at construction.

        Args:
            settings: Hub settings
            registry: Capability registry; built from settings.bootstrap if None

        Returns:
            Configured AutomationService
        """
        if registry is None:
            registry = build_registry(settings)
        registry.freeze()

        # Create persistence
        store = StateStore(settings.db_path)

        # Create escalation tracker and runner
        tracker = EscalationTracker(store)
        runner = JobRunner(store, tracker)

        # Create recovery manager
        recovery_manager = RecoveryManager(
            store,
            RetentionPolicy(
                dedup_days=settings.dedup_retention_days,
                delivery_days=settings.delivery_retention_days,
                runs_per_workflow=settings.run_retention_count,
                run_days=settings.run_retention_days,
            ),
        )

        # Create scheduler with backoff and periodic retention
        scheduler = Scheduler(
            registry.workflows,
            runner,
            backoff=BackoffController(
                base_delay_seconds=settings.backoff_base_seconds,
                max_delay_seconds=settings.backoff_max_seconds,
            ),
            pool_size=settings.worker_pool_size,
            poll_interval=settings.poll_interval_seconds,
            maintenance=recovery_manager.prune_expired,
            maintenance_interval=settings.maintenance_interval_seconds,
        )

        # Create webhook ingestion
        ingestion = WebhookIngestion(
            store,
            registry,
            scheduler,
            runner,
            allow_unsigned=settings.allow_unsigned_webhooks,
            wait_timeout=settings.webhook_wait_seconds,
        )

        return cls(
            settings=settings,
            registry=registry,
            store=store,
            tracker=tracker,
            runner=runner,
            scheduler=scheduler,
            recovery_manager=recovery_manager,
            ingestion=ingestion,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True) -> dict:
        """
        Start the hub.

        Recovery runs once per service instance (restarting the scheduler
        through stop()/start() does not re-seal anything).

        Args:
            run_recovery: Whether to run crash recovery first

        Returns:
            Recovery statistics if recovery was run

        Raises:
            InvalidOperationError: The hub is already running
        """
        if self.scheduler.is_running():
            raise InvalidOperationError("Automation hub already started")

        logger.info("Starting automation hub...")

        recovery_stats = {}
        if run_recovery and not self._recovered:
            recovery_stats = self.recovery_manager.recover_on_startup()
            self._recovered = True

        self.scheduler.start()
        logger.info("Automation hub started")
        return recovery_stats

    def stop(self, grace_period: Optional[float] = None) -> int:
        """
        Stop the hub gracefully.

        Args:
            grace_period: Maximum wait for in-flight runs
                (default: settings.shutdown_grace_seconds)

        Returns:
            Number of runs abandoned after the grace period
        """
        if grace_period is None:
            grace_period = self.settings.shutdown_grace_seconds

        logger.info("Stopping automation hub...")
        abandoned = self.scheduler.stop(grace_period=grace_period)
        logger.info("Automation hub stopped")
        return abandoned

    @property
    def is_running(self) -> bool:
        """Check if the hub is running."""
        return self.scheduler.is_running()

    # =========================================================================
    # Webhooks
    # =========================================================================

    def ingest_webhook(
        self,
        source_id: str,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
    ) -> WebhookAck:
        """Authenticate, deduplicate and process one inbound delivery."""
        return self.ingestion.ingest(source_id, raw_body, headers)

    # =========================================================================
    # Runs
    # =========================================================================

    def trigger(self, workflow_id: str, wait: bool = False) -> Optional[Run]:
        """
        Fire a workflow now, outside its recurrence.

        Args:
            workflow_id: Workflow to fire
            wait: Block until the run is sealed and return it

        Returns:
            The sealed Run when wait is True, otherwise None

        Raises:
            WorkflowNotFoundError: Unknown workflow
            InvalidOperationError: Hub not running, workflow in flight, or
                workflow is webhook-only
        """
        future = self.scheduler.tick(workflow_id, RunTrigger.MANUAL)
        if future is None:
            raise InvalidOperationError(
                f"Workflow '{workflow_id}' is already in flight; trigger skipped"
            )
        if wait:
            return future.result()
        return None

    def get_run(self, run_id: str) -> Run:
        """
        Get a run by ID.

        Raises:
            RunNotFoundError: Unknown run
        """
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(self, workflow_id: Optional[str] = None, limit: int = 100) -> list[Run]:
        """List recent runs, newest first."""
        if workflow_id is not None:
            # Raises WorkflowNotFoundError for unknown workflows
            self.registry.get_workflow(workflow_id)
        return self.store.list_runs(workflow_id=workflow_id, limit=limit)

    # =========================================================================
    # Escalations
    # =========================================================================

    def list_escalations(
        self,
        status: Optional[EscalationStatus] = None,
        workflow_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[EscalationRecord]:
        """List escalation records, newest first."""
        return self.store.list_escalations(status=status, workflow_id=workflow_id, limit=limit)

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> dict:
        """
        Get hub status.

        Returns:
            Scheduler status plus registered webhook sources
        """
        status = self.scheduler.status()
        status["sources"] = sorted(self.registry.sources)
        return status
