"""
HTTP publisher.

POSTs each item as JSON to a configured URL, retrying transient failures
with a short exponential delay before giving up. Discord webhook URLs get an
embed payload instead of the raw item.

Error mapping after the last attempt:
- timeout / connection error / 429 / 5xx -> TransientError
- other 4xx -> PermanentError
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from src.scheduler.capabilities import Publisher
from src.scheduler.entities import Item
from src.scheduler.errors import PermanentError, TransientError

logger = logging.getLogger(__name__)

# Publisher configuration
PUBLISH_TIMEOUT_SECONDS = 30
PUBLISH_MAX_RETRIES = 3
PUBLISH_RETRY_BASE_DELAY = 1.0  # seconds
PUBLISH_RETRY_MAX_DELAY = 10.0  # seconds
PUBLISH_USER_AGENT = "AutomationHub/1.0"

# Discord embed color
DISCORD_COLOR_INFO = 0x5865F2


def is_discord_webhook_url(url: str) -> bool:
    """
    Check if URL is a Discord webhook URL.

    Args:
        url: Webhook URL to check

    Returns:
        True if URL matches Discord webhook pattern
    """
    if not url:
        return False
    discord_patterns = [
        "https://discord.com/api/webhooks/",
        "https://www.discord.com/api/webhooks/",
        "https://discordapp.com/api/webhooks/",
        "https://www.discordapp.com/api/webhooks/",
    ]
    return any(url.startswith(pattern) for pattern in discord_patterns)


def build_item_payload(item: Item, workflow_hint: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the JSON body posted for an item.

    Args:
        item: Item to publish
        workflow_hint: Optional label identifying the publishing workflow

    Returns:
        Dictionary payload for the POST
    """
    payload = {
        "item_id": item.item_id,
        "title": item.title,
        "details": item.details,
        "payload": item.payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if workflow_hint:
        payload["workflow"] = workflow_hint
    return payload


def build_discord_embed_payload(item: Item) -> Dict[str, Any]:
    """
    Build Discord-compatible webhook payload with an embed.

    Args:
        item: Item to publish

    Returns:
        Discord-compatible payload with embeds
    """
    embed: Dict[str, Any] = {
        "title": (item.title or item.item_id)[:256],
        "color": DISCORD_COLOR_INFO,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": "Automation Hub"},
    }
    if item.details:
        embed["description"] = item.details[:4000]
    return {"embeds": [embed]}


class HttpPublisher(Publisher):
    """
    Publishes items by POSTing them to a URL.

    Usage:
        publisher = HttpPublisher("https://hooks.example.com/items")
        registry.register_publisher("http", publisher)
    """

    name = "http"

    def __init__(
        self,
        url: str,
        timeout: float = PUBLISH_TIMEOUT_SECONDS,
        max_retries: int = PUBLISH_MAX_RETRIES,
        headers: Optional[Dict[str, str]] = None,
        workflow_hint: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize HttpPublisher.

        Args:
            url: Destination URL
            timeout: Request timeout in seconds
            max_retries: Attempts per item before the failure is raised
            headers: Extra request headers
            workflow_hint: Label added to the JSON body
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Delay function between attempts
        """
        if not url:
            raise ValueError("HttpPublisher requires a URL")
        self.url = url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.headers = dict(headers or {})
        self.workflow_hint = workflow_hint
        self.transport = transport
        self._sleep = sleep

    def _body(self, item: Item) -> Dict[str, Any]:
        if is_discord_webhook_url(self.url):
            return build_discord_embed_payload(item)
        return build_item_payload(item, self.workflow_hint)

    def emit(self, item: Item) -> None:
        body = self._body(item)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": PUBLISH_USER_AGENT,
            "X-Item-ID": item.item_id,
            **self.headers,
        }
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.post(self.url, json=body, headers=headers)

                if 200 <= response.status_code < 300:
                    logger.info(
                        f"Published item {item.item_id} "
                        f"(attempt {attempt + 1}/{self.max_retries}, status={response.status_code})"
                    )
                    return

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                if response.status_code != 429 and response.status_code < 500:
                    raise PermanentError(f"Publish rejected for item {item.item_id}: {last_error}")

                logger.warning(
                    f"Publish failed for item {item.item_id} "
                    f"(attempt {attempt + 1}/{self.max_retries}): {last_error}"
                )

            except httpx.TimeoutException:
                last_error = f"Timeout after {self.timeout}s"
                logger.warning(
                    f"Publish timeout for item {item.item_id} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )

            except httpx.RequestError as e:
                last_error = f"Request error: {e}"
                logger.warning(
                    f"Publish request error for item {item.item_id} "
                    f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                )

            # Exponential backoff before retry
            if attempt < self.max_retries - 1:
                delay = min(
                    PUBLISH_RETRY_BASE_DELAY * (2 ** attempt),
                    PUBLISH_RETRY_MAX_DELAY,
                )
                logger.debug(f"Retrying publish in {delay}s...")
                self._sleep(delay)

        logger.error(
            f"Publish failed after {self.max_retries} attempts for item {item.item_id}: {last_error}"
        )
        raise TransientError(f"Publish failed for item {item.item_id}: {last_error}")
