"""
Webhook sources.

A WebhookSource knows one sender's conventions:
- how deliveries are signed (verify)
- how a delivery identifies itself (delivery_id)
- which event type a payload carries (event_type)
- how a payload becomes an Item (to_item)

Header names are matched case-insensitively: the ingestion pipeline lower-cases
every header name before calling a source. Signatures are compared with
hmac.compare_digest.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Sequence

from src.scheduler.entities import Item
from src.scheduler.registry import ANY_EVENT


logger = logging.getLogger(__name__)


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names; the last value wins for repeated names."""
    return {str(name).lower(): str(value) for name, value in headers.items()}


def hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    """Hex-encoded HMAC-SHA256 of raw_body under secret."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class WebhookSource(ABC):
    """
    Base class for an inbound webhook sender.

    Subclasses set the header names they use and implement verify() and
    to_item(). The secret is configured per source (WEBHOOK_SECRET_<SOURCE>);
    None means the source is unsigned.
    """

    # Header carrying a sender-assigned delivery identifier, if any
    delivery_header: Optional[str] = None
    # Header carrying the event type, if any (else event_type() reads the payload)
    event_header: Optional[str] = None
    # Payload field carrying the event type
    event_field: Optional[str] = "type"
    # Headers mixed into the body hash when there is no delivery header
    identity_headers: Sequence[str] = ()

    def __init__(self, source_id: str, secret: Optional[str] = None):
        if not source_id:
            raise ValueError("source_id must be non-empty")
        self.source_id = source_id
        self.secret = secret or None

    @abstractmethod
    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        """
        Check the delivery's authenticity.

        Args:
            raw_body: Body bytes exactly as received
            headers: Lower-cased request headers
            secret: The source's configured secret

        Returns:
            True if the delivery is authentic
        """
        ...

    def delivery_id(self, raw_body: bytes, headers: Mapping[str, str]) -> str:
        """
        Identify a delivery, namespaced by source.

        Uses the sender's delivery header when present, otherwise a SHA-256
        over the raw body and the source's identifying headers.
        """
        if self.delivery_header:
            provided = headers.get(self.delivery_header)
            if provided:
                return f"{self.source_id}:{provided}"

        digest = hashlib.sha256(raw_body)
        for name in self.identity_headers:
            digest.update(b"\0")
            digest.update(name.encode("utf-8"))
            digest.update(b"=")
            digest.update(headers.get(name, "").encode("utf-8"))
        return f"{self.source_id}:{digest.hexdigest()}"

    def event_type(self, payload: Any, headers: Mapping[str, str]) -> Optional[str]:
        """Extract the event type from the headers or the payload."""
        if self.event_header:
            value = headers.get(self.event_header)
            if value:
                return value
        if self.event_field and isinstance(payload, dict):
            value = payload.get(self.event_field)
            if value is not None:
                return str(value)
        return None

    @abstractmethod
    def to_item(self, payload: Any, headers: Mapping[str, str], delivery_id: str) -> Optional[Item]:
        """
        Build the Item a delivery represents.

        Returns:
            The Item, or None when the payload carries nothing to act on
        """
        ...

    def map_to_trigger(
        self,
        payload: Any,
        headers: Mapping[str, str],
        routes: Mapping[str, str],
        delivery_id: str,
    ) -> Optional[tuple[str, Item]]:
        """
        Map a verified payload to (workflow_id, Item).

        Args:
            routes: event_type -> workflow_id bindings of this source; the
                "*" binding catches every event type

        Returns:
            None for unmapped event types or payloads with nothing to act on
        """
        event_type = self.event_type(payload, headers)
        workflow_id = routes.get(event_type) if event_type is not None else None
        if workflow_id is None:
            workflow_id = routes.get(ANY_EVENT)
        if workflow_id is None:
            logger.info(
                f"No workflow bound to {self.source_id} event '{event_type}'; ignoring"
            )
            return None

        item = self.to_item(payload, headers, delivery_id)
        if item is None:
            return None
        return workflow_id, item

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.source_id!r})"


class HmacSignatureSource(WebhookSource):
    """
    Generic HMAC-SHA256 signed source.

    The signature header holds the hex digest of the raw body, optionally
    behind a prefix such as "sha256=". Hex comparison ignores case.
    """

    def __init__(
        self,
        source_id: str,
        secret: Optional[str] = None,
        signature_header: str = "x-signature",
        signature_prefix: str = "",
        delivery_header: Optional[str] = None,
        event_header: Optional[str] = None,
        event_field: Optional[str] = "type",
        id_field: Optional[str] = None,
        position_field: Optional[str] = None,
    ):
        super().__init__(source_id, secret)
        self.signature_header = signature_header.lower()
        self.signature_prefix = signature_prefix
        self.delivery_header = delivery_header.lower() if delivery_header else None
        self.event_header = event_header.lower() if event_header else None
        self.event_field = event_field
        self.id_field = id_field
        self.position_field = position_field

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        provided = headers.get(self.signature_header)
        if not provided:
            return False
        if self.signature_prefix:
            if not provided.startswith(self.signature_prefix):
                return False
            provided = provided[len(self.signature_prefix):]

        expected = hmac_sha256_hex(secret, raw_body)
        # compare_digest only accepts ASCII str, and headers may carry anything
        return hmac.compare_digest(
            provided.strip().lower().encode("utf-8", "replace"),
            expected.encode("ascii"),
        )

    def to_item(self, payload: Any, headers: Mapping[str, str], delivery_id: str) -> Optional[Item]:
        if not isinstance(payload, dict):
            return None
        item_id = delivery_id
        if self.id_field and payload.get(self.id_field) is not None:
            item_id = f"{self.source_id}:{payload[self.id_field]}"
        position = payload.get(self.position_field) if self.position_field else None
        return Item(item_id=item_id, payload=payload, position=position)


class GitHubWebhookSource(HmacSignatureSource):
    """
    GitHub repository/organization webhooks.

    X-Hub-Signature-256: sha256=<hex>, X-GitHub-Delivery, X-GitHub-Event.
    The escalation key groups deliveries per repository and event, so a
    repeatedly failing check updates one task.
    """

    def __init__(self, source_id: str = "github", secret: Optional[str] = None):
        super().__init__(
            source_id,
            secret,
            signature_header="x-hub-signature-256",
            signature_prefix="sha256=",
            delivery_header="x-github-delivery",
            event_header="x-github-event",
            event_field=None,
        )

    def to_item(self, payload: Any, headers: Mapping[str, str], delivery_id: str) -> Optional[Item]:
        if not isinstance(payload, dict):
            return None

        event = headers.get("x-github-event", "event")
        action = payload.get("action")
        repository = (payload.get("repository") or {}).get("full_name", "unknown")

        label = f"{event}.{action}" if action else event
        return Item(
            item_id=delivery_id,
            payload=payload,
            title=f"[GitHub] {repository}: {label}",
            escalation_key=f"github/{repository}/{event}",
        )


# Todoist priority per Tailscale event type (4 = most urgent)
TAILSCALE_PRIORITIES = {
    "exitNodeIPForwardingNotEnabled": 4,
    "subnetIPForwardingNotEnabled": 4,
    "nodeNeedsApproval": 4,
    "nodeKeyExpired": 4,
    "userNeedsApproval": 4,
    "policyUpdate": 3,
    "nodeCreated": 3,
    "nodeApproved": 3,
    "nodeKeyExpiringInOneDay": 3,
    "userCreated": 3,
    "userApproved": 3,
    "userRoleUpdated": 3,
    "nodeDeleted": 2,
    "webhookUpdated": 2,
    "webhookDeleted": 2,
    "test": 1,
}
TAILSCALE_DEFAULT_PRIORITY = 3


class TailscaleWebhookSource(HmacSignatureSource):
    """
    Tailscale tailnet alerts.

    Signed with HMAC-SHA256 hex in X-Tailscale-Signature. Payload fields:
    version, timestamp, type, tailnet, message, data.
    """

    def __init__(self, source_id: str = "tailscale", secret: Optional[str] = None):
        super().__init__(
            source_id,
            secret,
            signature_header="x-tailscale-signature",
            event_field="type",
        )

    def to_item(self, payload: Any, headers: Mapping[str, str], delivery_id: str) -> Optional[Item]:
        if not isinstance(payload, dict) or "type" not in payload:
            return None

        event_type = payload["type"]
        tailnet = payload.get("tailnet", "unknown")
        data = payload.get("data") or {}
        subject = data.get("nodeID") or data.get("deviceName") or data.get("user")

        escalation_key = f"tailscale/{tailnet}/{event_type}"
        if subject:
            escalation_key = f"{escalation_key}/{subject}"

        return Item(
            item_id=delivery_id,
            payload={
                **payload,
                "priority": TAILSCALE_PRIORITIES.get(event_type, TAILSCALE_DEFAULT_PRIORITY),
            },
            position=payload.get("timestamp"),
            title=f"[Tailscale](https://login.tailscale.com/admin): {payload.get('message', event_type)}",
            details=f"```\n{json.dumps(data, indent=2, sort_keys=True)}\n```",
            escalation_key=escalation_key,
        )


class HoneycombWebhookSource(WebhookSource):
    """
    Honeycomb trigger notifications.

    Authenticated by a shared token in X-Honeycomb-Webhook-Token that must
    match one of the trusted secrets (comma-separated in the configured
    secret). "triggered" opens or updates an escalation for the trigger;
    "ok" clears it. Other statuses carry nothing to act on.
    """

    token_header = "x-honeycomb-webhook-token"
    event_field = None

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        token = headers.get(self.token_header)
        if not token:
            return False
        trusted = [value.strip() for value in secret.split(",") if value.strip()]
        matched = False
        for candidate in trusted:
            # Compare against every candidate so timing does not reveal which matched
            if hmac.compare_digest(token.encode("utf-8"), candidate.encode("utf-8")):
                matched = True
        return matched

    def event_type(self, payload: Any, headers: Mapping[str, str]) -> Optional[str]:
        return "trigger"

    def to_item(self, payload: Any, headers: Mapping[str, str], delivery_id: str) -> Optional[Item]:
        if not isinstance(payload, dict):
            return None

        status = str(payload.get("status", "")).lower()
        if status not in ("triggered", "ok"):
            logger.info(f"Ignoring Honeycomb alert with status '{status}'")
            return None

        name = payload.get("name", "unnamed trigger")
        link = payload.get("result_url") or payload.get("trigger_url") or "https://ui.honeycomb.io"
        trigger_id = payload.get("id") or name

        return Item(
            item_id=delivery_id,
            payload={**payload, "priority": 4},
            title=f"[Honeycomb Alert]({link}): {name}",
            details=payload.get("description") or payload.get("summary"),
            escalation_key=f"honeycomb/{trigger_id}",
            cleared=status == "ok",
        )
