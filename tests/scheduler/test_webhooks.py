"""
Webhook Ingestion Tests.

Tests the acknowledgment contract of the ingestion pipeline:
- Authentic, mapped deliveries run the bound workflow exactly once
- Replays of a delivery id are acknowledged as duplicates without a run
- Authentication failures are accepted (202) and leave no trace
- Transient failures answer 503 and release the delivery for redelivery
"""

import json
from concurrent.futures import CancelledError

import pytest

from src.scheduler import (
    ANY_EVENT,
    CapabilityRegistry,
    DeliveryStatus,
    PermanentError,
    RunOutcome,
    RunTrigger,
    Scheduler,
    TransientError,
    WebhookTrigger,
    Workflow,
)
from src.webhooks.ingestion import AckStatus, WebhookIngestion
from src.webhooks.sources import HmacSignatureSource, hmac_sha256_hex

from .conftest import RecordingPublisher


SECRET = "s3cret"


def _body(event="push", **fields):
    return json.dumps({"type": event, **fields}).encode("utf-8")


def _headers(body, delivery_id="d-1", secret=SECRET, **extra):
    headers = {
        "X-Signature": hmac_sha256_hex(secret, body),
        "X-Delivery-Id": delivery_id,
    }
    headers.update(extra)
    return headers


@pytest.fixture
def hook_publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def registry(hook_publisher) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register_source(
        HmacSignatureSource("acme", secret=SECRET, delivery_header="X-Delivery-Id")
    )
    registry.register_source(HmacSignatureSource("open"))
    registry.register_workflow(Workflow(
        workflow_id="acme-push",
        publisher=hook_publisher,
        webhook_trigger=WebhookTrigger("acme", "push"),
    ))
    registry.register_workflow(Workflow(
        workflow_id="open-all",
        publisher=hook_publisher,
        webhook_trigger=WebhookTrigger("open", ANY_EVENT),
    ))
    registry.freeze()
    return registry


@pytest.fixture
def scheduler(registry, runner, mock_clock):
    scheduler = Scheduler(registry.workflows, runner, poll_interval=3600, clock=mock_clock)
    scheduler.start()
    yield scheduler
    scheduler.stop(grace_period=5)


@pytest.fixture
def ingestion(store, registry, scheduler, runner) -> WebhookIngestion:
    return WebhookIngestion(store, registry, scheduler, runner, wait_timeout=5)


# =============================================================================
# Happy path
# =============================================================================


class TestProcessedDelivery:
    def test_mapped_delivery_runs_workflow(self, ingestion, store, hook_publisher):
        body = _body(ref="main")

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 200
        assert ack.status == AckStatus.PROCESSED
        assert ack.delivery_id == "acme:d-1"
        assert hook_publisher.emitted_ids == ["acme:d-1"]
        assert hook_publisher.emitted[0].payload["ref"] == "main"

        run = store.get_run(ack.run_id)
        assert run.trigger == RunTrigger.WEBHOOK
        assert run.outcome == RunOutcome.SUCCESS
        assert store.get_delivery("acme:d-1").status == DeliveryStatus.PROCESSED

    def test_header_names_are_case_insensitive(self, ingestion, hook_publisher):
        body = _body()
        headers = {k.upper(): v for k, v in _headers(body).items()}

        ack = ingestion.ingest("acme", body, headers)

        assert ack.status == AckStatus.PROCESSED

    def test_str_body_is_accepted(self, ingestion):
        body = _body()

        ack = ingestion.ingest("acme", body.decode("utf-8"), _headers(body))

        assert ack.status == AckStatus.PROCESSED

    def test_permanent_failure_is_still_processed(self, ingestion, store, hook_publisher):
        hook_publisher.failures["acme:d-1"] = PermanentError("rejected")
        body = _body()

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 200
        assert store.get_run(ack.run_id).outcome == RunOutcome.PARTIAL

    def test_wildcard_binding_catches_every_event(self, store, registry, scheduler, runner, hook_publisher):
        ingestion = WebhookIngestion(store, registry, scheduler, runner, allow_unsigned=True)

        ack = ingestion.ingest("open", _body("anything"), {})

        assert ack.status == AckStatus.PROCESSED
        assert len(hook_publisher.emitted) == 1


# =============================================================================
# Replay protection
# =============================================================================


class TestDuplicateDelivery:
    def test_replay_is_acknowledged_without_run(self, ingestion, store, hook_publisher):
        body = _body()
        ingestion.ingest("acme", body, _headers(body))

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 200
        assert ack.status == AckStatus.DUPLICATE
        assert ack.run_id is None
        assert len(hook_publisher.emitted) == 1
        assert store.count_runs("acme-push") == 1

    def test_body_hash_identifies_unlabelled_deliveries(self, store, registry, scheduler, runner):
        ingestion = WebhookIngestion(store, registry, scheduler, runner, allow_unsigned=True)
        body = _body("ping")

        first = ingestion.ingest("open", body, {})
        second = ingestion.ingest("open", body, {})

        assert first.status == AckStatus.PROCESSED
        assert second.status == AckStatus.DUPLICATE
        assert first.delivery_id == second.delivery_id

    def test_distinct_delivery_ids_are_both_processed(self, ingestion, hook_publisher):
        body = _body()

        ingestion.ingest("acme", body, _headers(body, delivery_id="d-1"))
        ingestion.ingest("acme", body, _headers(body, delivery_id="d-2"))

        assert hook_publisher.emitted_ids == ["acme:d-1", "acme:d-2"]


# =============================================================================
# Rejections
# =============================================================================


class TestRejectedDelivery:
    """Authentication failures are accepted silently and leave no state."""

    def test_bad_signature(self, ingestion, store, hook_publisher):
        body = _body()

        ack = ingestion.ingest("acme", body, _headers(body, secret="wrong"))

        assert ack.status_code == 202
        assert ack.status == AckStatus.REJECTED
        assert ack.delivery_id is None
        assert store.get_delivery("acme:d-1") is None
        assert hook_publisher.emitted == []

    def test_missing_signature(self, ingestion):
        ack = ingestion.ingest("acme", _body(), {"X-Delivery-Id": "d-1"})

        assert ack.status == AckStatus.REJECTED

    def test_tampered_body(self, ingestion):
        body = _body(ref="main")

        ack = ingestion.ingest("acme", _body(ref="evil"), _headers(body))

        assert ack.status == AckStatus.REJECTED

    def test_unsigned_source_rejected_by_default(self, ingestion):
        ack = ingestion.ingest("open", _body(), {})

        assert ack.status == AckStatus.REJECTED

    def test_non_ascii_signature_is_rejected(self, ingestion, store):
        body = _body()
        headers = _headers(body)
        headers["X-Signature"] = "éabc"

        ack = ingestion.ingest("acme", body, headers)

        assert ack.status_code == 202
        assert ack.status == AckStatus.REJECTED
        assert store.get_delivery("acme:d-1") is None

    def test_unreadable_signature_is_rejected(self, store, scheduler, runner, caplog):
        class BrokenSource(HmacSignatureSource):
            def verify(self, raw_body, headers, secret):
                raise TypeError("unsupported signature encoding")

        broken = CapabilityRegistry()
        broken.register_source(BrokenSource("acme", secret=SECRET))
        broken.freeze()
        ingestion = WebhookIngestion(store, broken, scheduler, runner)

        with caplog.at_level("WARNING", logger="src.webhooks.ingestion"):
            ack = ingestion.ingest("acme", _body(), {})

        assert ack.status == AckStatus.REJECTED
        assert "signature unreadable" in caplog.text

    def test_unknown_source(self, ingestion):
        ack = ingestion.ingest("nobody", _body(), {})

        assert ack.status_code == 404
        assert ack.status == AckStatus.UNKNOWN_SOURCE


class TestIgnoredDelivery:
    def test_malformed_json(self, ingestion, store):
        body = b"{not json"

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 202
        assert ack.status == AckStatus.IGNORED
        assert store.get_delivery("acme:d-1") is None

    def test_unmapped_event(self, ingestion, store, hook_publisher):
        body = _body("issues")

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 202
        assert ack.status == AckStatus.IGNORED
        assert store.get_delivery("acme:d-1").status == DeliveryStatus.IGNORED
        assert hook_publisher.emitted == []

    def test_non_object_payload(self, ingestion):
        body = b"[1, 2, 3]"

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status == AckStatus.IGNORED


# =============================================================================
# Failures
# =============================================================================


class TestFailedDelivery:
    """503 and release, so the sender's retry is processed."""

    def test_transient_failure_releases_delivery(self, ingestion, store, hook_publisher):
        hook_publisher.one_shot_failures["acme:d-1"] = TransientError("downstream 503")
        body = _body()

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 503
        assert ack.status == AckStatus.FAILED
        assert ack.run_id is not None
        assert store.get_delivery("acme:d-1") is None

    def test_redelivery_after_failure_is_processed(self, ingestion, hook_publisher):
        hook_publisher.one_shot_failures["acme:d-1"] = TransientError("downstream 503")
        body = _body()
        ingestion.ingest("acme", body, _headers(body))

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status == AckStatus.PROCESSED
        assert hook_publisher.emitted_ids == ["acme:d-1"]

    def test_scheduler_not_running(self, store, registry, runner, scheduler):
        scheduler.stop(grace_period=1)
        ingestion = WebhookIngestion(store, registry, scheduler, runner)
        body = _body()

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 503
        assert ack.run_id is None
        assert store.get_delivery("acme:d-1") is None

    @pytest.mark.parametrize("error", [CancelledError(), RuntimeError("worker died")])
    def test_unexpected_dispatch_error_releases_delivery(
        self, ingestion, store, scheduler, hook_publisher, monkeypatch, error
    ):
        def _fail(workflow_id, fn, wait_timeout=30.0):
            raise error

        body = _body()
        monkeypatch.setattr(scheduler, "run_exclusive", _fail)

        ack = ingestion.ingest("acme", body, _headers(body))

        assert ack.status_code == 503
        assert ack.status == AckStatus.FAILED
        assert store.get_delivery("acme:d-1") is None

        monkeypatch.undo()
        redelivered = ingestion.ingest("acme", body, _headers(body))

        assert redelivered.status == AckStatus.PROCESSED
        assert hook_publisher.emitted_ids == ["acme:d-1"]

    def test_to_dict(self, ingestion):
        ack = ingestion.ingest("nobody", _body(), {})

        assert ack.to_dict() == {
            "status": "unknown_source",
            "delivery_id": None,
            "run_id": None,
            "detail": "Unknown source: nobody",
        }
