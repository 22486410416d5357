"""Tests for the HTTP publisher."""

import json

import httpx
import pytest

from src.integrations.http_publisher import (
    DISCORD_COLOR_INFO,
    HttpPublisher,
    build_discord_embed_payload,
    build_item_payload,
    is_discord_webhook_url,
)
from src.scheduler import Item, PermanentError, TransientError


URL = "https://hooks.example.com/items"


@pytest.fixture
def sample_item():
    """Create a sample item for testing."""
    return Item(
        item_id="release-42",
        payload={"tag": "v1.2.0"},
        title="New release v1.2.0",
        details="Changelog: fixes",
    )


def _publisher(handler, url=URL, **kwargs):
    """Build a publisher whose requests are answered by handler."""
    delays = []
    publisher = HttpPublisher(
        url,
        transport=httpx.MockTransport(handler),
        sleep=delays.append,
        **kwargs,
    )
    return publisher, delays


class TestBuildItemPayload:
    """Tests for build_item_payload function."""

    def test_builds_complete_payload(self, sample_item):
        """Test building a complete payload from an item."""
        payload = build_item_payload(sample_item, workflow_hint="releases")

        assert payload["item_id"] == "release-42"
        assert payload["title"] == "New release v1.2.0"
        assert payload["details"] == "Changelog: fixes"
        assert payload["payload"] == {"tag": "v1.2.0"}
        assert payload["workflow"] == "releases"
        assert "timestamp" in payload

    def test_omits_workflow_without_hint(self, sample_item):
        """Test the workflow label is optional."""
        assert "workflow" not in build_item_payload(sample_item)


class TestDiscordPayload:
    """Tests for Discord URL detection and embeds."""

    @pytest.mark.parametrize("url", [
        "https://discord.com/api/webhooks/1/abc",
        "https://discordapp.com/api/webhooks/1/abc",
    ])
    def test_detects_discord_urls(self, url):
        assert is_discord_webhook_url(url) is True

    @pytest.mark.parametrize("url", ["", URL, "https://discord.com/channels/1"])
    def test_rejects_other_urls(self, url):
        assert is_discord_webhook_url(url) is False

    def test_embed_payload(self, sample_item):
        """Test the embed carries title, description and color."""
        payload = build_discord_embed_payload(sample_item)

        embed = payload["embeds"][0]
        assert embed["title"] == "New release v1.2.0"
        assert embed["description"] == "Changelog: fixes"
        assert embed["color"] == DISCORD_COLOR_INFO

    def test_embed_title_falls_back_to_item_id(self):
        payload = build_discord_embed_payload(Item(item_id="x" * 300))

        assert payload["embeds"][0]["title"] == "x" * 256
        assert "description" not in payload["embeds"][0]


class TestHttpPublisherEmit:
    """Tests for HttpPublisher.emit."""

    def test_successful_send(self, sample_item):
        """Test a 2xx response publishes the item."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        publisher, delays = _publisher(handler, headers={"Authorization": "Bearer t"})
        publisher.emit(sample_item)

        assert len(seen) == 1
        request = seen[0]
        assert request.method == "POST"
        assert request.headers["X-Item-ID"] == "release-42"
        assert request.headers["Authorization"] == "Bearer t"
        assert json.loads(request.content)["item_id"] == "release-42"
        assert delays == []

    def test_discord_url_gets_embed(self, sample_item):
        """Test Discord webhook URLs receive an embed body."""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        publisher, _ = _publisher(handler, url="https://discord.com/api/webhooks/1/abc")
        publisher.emit(sample_item)

        assert "embeds" in bodies[0]

    def test_client_error_is_permanent(self, sample_item):
        """Test a 4xx response fails without retrying."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad payload")

        publisher, delays = _publisher(handler)

        with pytest.raises(PermanentError, match="HTTP 400"):
            publisher.emit(sample_item)
        assert len(calls) == 1
        assert delays == []

    def test_server_error_retries_then_transient(self, sample_item):
        """Test 5xx responses are retried with backoff, then raised as transient."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        publisher, delays = _publisher(handler, max_retries=3)

        with pytest.raises(TransientError, match="HTTP 503"):
            publisher.emit(sample_item)
        assert len(calls) == 3
        assert delays == [1.0, 2.0]

    def test_rate_limit_is_retried(self, sample_item):
        """Test 429 is treated as retryable."""
        responses = iter([httpx.Response(429), httpx.Response(200)])

        publisher, delays = _publisher(lambda request: next(responses))
        publisher.emit(sample_item)

        assert delays == [1.0]

    def test_timeout_error(self, sample_item):
        """Test timeouts are retried and end as transient."""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        publisher, _ = _publisher(handler, max_retries=2, timeout=5)

        with pytest.raises(TransientError, match="Timeout after 5s"):
            publisher.emit(sample_item)

    def test_request_error(self, sample_item):
        """Test connection errors are retried and end as transient."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        publisher, delays = _publisher(handler, max_retries=2)

        with pytest.raises(TransientError, match="Request error"):
            publisher.emit(sample_item)
        assert delays == [1.0]

    def test_recovers_within_retries(self, sample_item):
        """Test a transient failure followed by success publishes once."""
        responses = iter([httpx.Response(502), httpx.Response(201)])

        publisher, _ = _publisher(lambda request: next(responses))
        publisher.emit(sample_item)

    def test_requires_url(self):
        with pytest.raises(ValueError):
            HttpPublisher("")
