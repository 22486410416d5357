"""
Webhook Ingestion Pipeline.

Turns an inbound push into a Job Runner invocation:

    unknown source        -> 404 unknown_source  (no side effects)
    bad signature         -> 202 rejected        (no side effects, logged)
    malformed JSON        -> 202 ignored
    delivery seen before  -> 200 duplicate       (no run)
    unmapped event        -> 202 ignored
    run success/partial   -> 200 processed
    run error / transient -> 503 failed          (delivery released so the
                                                  sender's retry is processed)

Authentication failures are acknowledged as accepted so the sender does not
retry-loop against the endpoint; the ack is decoupled from internal validity.
"""

import json
import logging
from concurrent.futures import CancelledError
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Union

from src.scheduler.dispatcher import Scheduler
from src.scheduler.entities import DeliveryStatus, RunOutcome, RunTrigger
from src.scheduler.errors import AuthenticationFailure, TransientError
from src.scheduler.executor import TRANSIENT_EXCEPTIONS, JobRunner
from src.scheduler.persistence import StateStore
from src.scheduler.registry import CapabilityRegistry
from .sources import WebhookSource, normalize_headers


logger = logging.getLogger(__name__)


class AckStatus(str, Enum):
    """Outcome labels returned to the web layer."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    FAILED = "failed"
    UNKNOWN_SOURCE = "unknown_source"


@dataclass(frozen=True)
class WebhookAck:
    """HTTP-style acknowledgment of one delivery."""

    status_code: int
    status: AckStatus
    delivery_id: Optional[str] = None
    run_id: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "delivery_id": self.delivery_id,
            "run_id": self.run_id,
            "detail": self.detail,
        }


class WebhookIngestion:
    """
    Authenticates, deduplicates and dispatches inbound deliveries.

    Webhook runs go through Scheduler.run_exclusive so they never race a
    scheduled run of the same workflow on its watermark.
    """

    def __init__(
        self,
        store: StateStore,
        registry: CapabilityRegistry,
        scheduler: Scheduler,
        runner: JobRunner,
        allow_unsigned: bool = False,
        wait_timeout: float = 30.0,
    ):
        """
        Initialize WebhookIngestion.

        Args:
            store: StateStore for delivery replay protection
            registry: Frozen registry with sources and workflow bindings
            scheduler: Scheduler providing per-workflow exclusivity
            runner: JobRunner executing the mapped workflow
            allow_unsigned: Accept deliveries for sources without a secret
            wait_timeout: Seconds to wait for an in-flight run of the workflow
        """
        self.store = store
        self.registry = registry
        self.scheduler = scheduler
        self.runner = runner
        self.allow_unsigned = allow_unsigned
        self.wait_timeout = wait_timeout

    def ingest(
        self,
        source_id: str,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
    ) -> WebhookAck:
        """
        Process one inbound delivery.

        Args:
            source_id: Source the delivery was posted to
            raw_body: Body exactly as received (signatures cover these bytes)
            headers: Request headers, any case

        Returns:
            WebhookAck for the web layer
        """
        source = self.registry.get_source(source_id)
        if source is None:
            logger.info(f"Webhook for unknown source '{source_id}'")
            return WebhookAck(404, AckStatus.UNKNOWN_SOURCE, detail=f"Unknown source: {source_id}")

        body = raw_body.encode("utf-8") if isinstance(raw_body, str) else bytes(raw_body)
        headers = normalize_headers(headers)

        try:
            self._authenticate(source, body, headers)
        except AuthenticationFailure as e:
            logger.warning(f"authentication-failure: source={e.source_id} reason={e.reason}")
            return WebhookAck(202, AckStatus.REJECTED)

        try:
            payload = json.loads(body)
        except ValueError as e:
            logger.warning(f"Malformed JSON from webhook source '{source_id}': {e}")
            return WebhookAck(202, AckStatus.IGNORED, detail="Malformed JSON payload")

        delivery_id = source.delivery_id(body, headers)

        try:
            if self.store.record_delivery(delivery_id, source_id):
                logger.info(f"Duplicate delivery {delivery_id}; skipping")
                return WebhookAck(200, AckStatus.DUPLICATE, delivery_id=delivery_id)
        except TransientError as e:
            logger.error(f"Could not record delivery {delivery_id}: {e}")
            return WebhookAck(503, AckStatus.FAILED, delivery_id=delivery_id, detail=str(e))

        return self._dispatch(source, payload, headers, delivery_id)

    def _authenticate(self, source: WebhookSource, body: bytes, headers: Mapping[str, str]) -> None:
        """
        Verify a delivery against its source's secret.

        Raises:
            AuthenticationFailure: The delivery is not authentic
        """
        if source.secret is None:
            if self.allow_unsigned:
                return
            raise AuthenticationFailure(source.source_id, "no secret configured for source")

        try:
            authentic = source.verify(body, headers, source.secret)
        except (TypeError, ValueError) as e:
            # UnicodeError is a ValueError
            raise AuthenticationFailure(source.source_id, f"signature unreadable: {e}")
        if not authentic:
            raise AuthenticationFailure(source.source_id, "signature mismatch")

    def _dispatch(
        self,
        source: WebhookSource,
        payload: object,
        headers: Mapping[str, str],
        delivery_id: str,
    ) -> WebhookAck:
        try:
            mapped = source.map_to_trigger(
                payload,
                headers,
                self.registry.routes_for(source.source_id),
                delivery_id,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Delivery {delivery_id} payload could not be mapped: {e}")
            mapped = None

        if mapped is None:
            self._set_status(delivery_id, DeliveryStatus.IGNORED)
            return WebhookAck(202, AckStatus.IGNORED, delivery_id=delivery_id)

        workflow_id, item = mapped
        workflow = self.registry.get_workflow(workflow_id)

        try:
            run = self.scheduler.run_exclusive(
                workflow_id,
                lambda cancel_event: self.runner.run(
                    workflow,
                    RunTrigger.WEBHOOK,
                    items=[item],
                    cancel_event=cancel_event,
                ),
                wait_timeout=self.wait_timeout,
            )
        except TRANSIENT_EXCEPTIONS as e:
            logger.warning(f"Delivery {delivery_id} for '{workflow_id}' not processed: {e}")
            self._release(delivery_id)
            return WebhookAck(503, AckStatus.FAILED, delivery_id=delivery_id, detail=str(e))
        except CancelledError:
            logger.warning(f"Delivery {delivery_id} for '{workflow_id}' cancelled by shutdown")
            self._release(delivery_id)
            return WebhookAck(503, AckStatus.FAILED, delivery_id=delivery_id, detail="Run cancelled")
        except Exception as e:
            logger.exception(f"Delivery {delivery_id} for '{workflow_id}' failed unexpectedly")
            self._release(delivery_id)
            return WebhookAck(
                503,
                AckStatus.FAILED,
                delivery_id=delivery_id,
                detail=f"{type(e).__name__}: {e}",
            )

        if run.outcome == RunOutcome.ERROR:
            logger.warning(
                f"Delivery {delivery_id} run {run.run_id} ended in error; "
                "released for redelivery"
            )
            self._release(delivery_id)
            return WebhookAck(
                503,
                AckStatus.FAILED,
                delivery_id=delivery_id,
                run_id=run.run_id,
                detail=run.error_summary,
            )

        self._set_status(delivery_id, DeliveryStatus.PROCESSED)
        logger.info(
            f"Delivery {delivery_id} processed by workflow '{workflow_id}' "
            f"(run {run.run_id}, outcome={run.outcome.value})"
        )
        return WebhookAck(200, AckStatus.PROCESSED, delivery_id=delivery_id, run_id=run.run_id)

    def _set_status(self, delivery_id: str, status: DeliveryStatus) -> None:
        try:
            self.store.update_delivery_status(delivery_id, status)
        except TransientError as e:
            # The delivery row already guards against replays; the status is informational
            logger.warning(f"Could not update status of delivery {delivery_id}: {e}")

    def _release(self, delivery_id: str) -> None:
        try:
            self.store.release_delivery(delivery_id)
        except TransientError as e:
            logger.error(
                f"Could not release delivery {delivery_id}; a redelivery will be "
                f"treated as duplicate: {e}"
            )
