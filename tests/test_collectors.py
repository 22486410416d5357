"""Tests for the HTTP collectors."""

from datetime import datetime, timezone

import httpx
import pytest

from src.integrations.collectors import (
    EPOCH,
    GitHubNotificationsCollector,
    GitHubReleasesCollector,
    RssCollector,
    parse_feed,
    parse_timestamp,
    subject_html_url,
)
from src.scheduler import (
    EscalationTracker,
    Item,
    JobRunner,
    PermanentError,
    Publisher,
    RunOutcome,
    StateStore,
    TransientError,
    Workflow,
)
from src.scheduler.recurrence import IntervalRecurrence


FEED_URL = "https://xkcd.example/rss.xml"

RSS_FEED = b"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0"><channel>
<title>xkcd.com</title>
<item>
  <title>Eclipse Clouds</title>
  <link>https://xkcd.com/2915/</link>
  <description>Cloudy with a chance of totality</description>
  <pubDate>Mon, 08 Apr 2024 04:00:00 -0000</pubDate>
  <guid>https://xkcd.com/2915/</guid>
</item>
<item>
  <title>Cursive Letters</title>
  <link>https://xkcd.com/2914/</link>
  <pubDate>Fri, 05 Apr 2024 04:00:00 -0000</pubDate>
</item>
<item>
  <title>Undated</title>
  <link>https://xkcd.com/1/</link>
</item>
</channel></rss>
"""

ATOM_FEED = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
<title>Example</title>
<entry>
  <id>urn:example:1</id>
  <title>First post</title>
  <link rel="alternate" href="https://blog.example/1"/>
  <updated>2024-04-02T10:00:00Z</updated>
  <summary>Hello</summary>
</entry>
</feed>
"""


def _feed_transport(body=RSS_FEED, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, content=body)

    return httpx.MockTransport(handler)


class ListPublisher(Publisher):
    def __init__(self):
        self.items = []

    def emit(self, item: Item) -> None:
        self.items.append(item)


# =============================================================================
# Parsing
# =============================================================================


class TestParsing:
    @pytest.mark.parametrize("value,expected", [
        ("Mon, 01 Apr 2024 04:00:00 -0000", datetime(2024, 4, 1, 4, tzinfo=timezone.utc)),
        ("2024-04-01T06:00:00+02:00", datetime(2024, 4, 1, 4, tzinfo=timezone.utc)),
        ("2024-04-01T04:00:00Z", datetime(2024, 4, 1, 4, tzinfo=timezone.utc)),
    ])
    def test_parse_timestamp(self, value, expected):
        assert parse_timestamp(value) == expected

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_unreadable_timestamp_is_none(self, value):
        assert parse_timestamp(value) is None

    def test_rss_entries(self):
        entries = parse_feed(RSS_FEED)

        assert [entry["title"] for entry in entries] == ["Eclipse Clouds", "Cursive Letters", "Undated"]
        assert entries[0]["id"] == "https://xkcd.com/2915/"
        assert entries[1]["id"] == "https://xkcd.com/2914/"
        assert entries[2]["published"] is None

    def test_atom_entries(self):
        (entry,) = parse_feed(ATOM_FEED)

        assert entry["id"] == "urn:example:1"
        assert entry["link"] == "https://blog.example/1"
        assert entry["summary"] == "Hello"
        assert entry["published"] == datetime(2024, 4, 2, 10, tzinfo=timezone.utc)

    def test_invalid_xml_is_permanent(self):
        with pytest.raises(PermanentError):
            parse_feed(b"<rss><channel>")

    def test_other_documents_are_permanent(self):
        with pytest.raises(PermanentError):
            parse_feed(b"<html><body/></html>")

    def test_subject_html_url(self):
        api_url = "https://api.github.com/repos/octo/hub/pulls/12"

        assert subject_html_url(api_url) == "https://github.com/octo/hub/pull/12"
        assert subject_html_url(None) is None


# =============================================================================
# RSS
# =============================================================================


class TestRssCollector:
    def test_first_run_returns_every_entry_oldest_first(self):
        collector = RssCollector(FEED_URL, feed_name="xkcd", transport=_feed_transport())

        items = collector.fetch_since(None)

        assert [item.payload["title"] for item in items] == ["Undated", "Cursive Letters", "Eclipse Clouds"]
        assert items[0].position == EPOCH
        assert items[2].title == "[xkcd] Eclipse Clouds"
        assert items[2].details.startswith("https://xkcd.com/2915/")

    def test_watermark_filters_older_entries(self):
        collector = RssCollector(FEED_URL, transport=_feed_transport())
        watermark = datetime(2024, 4, 5, 4, tzinfo=timezone.utc)

        items = collector.fetch_since(watermark)

        # The entry at the watermark comes back; its DedupKey skips it
        assert [item.payload["title"] for item in items] == ["Cursive Letters", "Eclipse Clouds"]

    def test_server_error_is_transient(self):
        collector = RssCollector(FEED_URL, transport=_feed_transport(status=503))

        with pytest.raises(TransientError):
            collector.fetch_since(None)

    def test_not_found_is_permanent(self):
        collector = RssCollector(FEED_URL, transport=_feed_transport(status=404))

        with pytest.raises(PermanentError):
            collector.fetch_since(None)

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        collector = RssCollector(FEED_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(TransientError):
            collector.fetch_since(None)

    def test_feed_runs_emit_each_entry_once(self, tmp_path):
        store = StateStore(tmp_path / "hub.db")
        runner = JobRunner(store, EscalationTracker(store))
        publisher = ListPublisher()
        workflow = Workflow(
            workflow_id="rss-xkcd",
            collector=RssCollector(FEED_URL, transport=_feed_transport()),
            publisher=publisher,
            recurrence=IntervalRecurrence(900),
        )

        first = runner.run(workflow)
        second = runner.run(workflow)

        assert first.outcome == RunOutcome.SUCCESS
        assert second.outcome == RunOutcome.SUCCESS
        assert len(publisher.items) == 3
        assert second.items_skipped == 1
        assert store.get_watermark("rss-xkcd") == datetime(2024, 4, 8, 4, tzinfo=timezone.utc)


# =============================================================================
# GitHub
# =============================================================================


def _thread(thread_id, updated_at, reason="mention"):
    return {
        "id": thread_id,
        "reason": reason,
        "unread": True,
        "updated_at": updated_at,
        "subject": {
            "title": f"Thread {thread_id}",
            "url": f"https://api.github.com/repos/octo/hub/issues/{thread_id}",
            "type": "Issue",
        },
        "repository": {"full_name": "octo/hub"},
    }


class TestGitHubNotificationsCollector:
    def test_follows_pages_and_sends_since(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json=[_thread("2", "2024-04-01T09:00:00Z", reason="security_alert")])
            return httpx.Response(
                200,
                json=[_thread("1", "2024-04-01T10:00:00Z")],
                headers={"Link": '<https://api.github.com/notifications?page=2>; rel="next"'},
            )

        collector = GitHubNotificationsCollector("token", transport=httpx.MockTransport(handler))
        watermark = datetime(2024, 4, 1, 8, tzinfo=timezone.utc)

        items = collector.fetch_since(watermark)

        assert [item.payload["thread_id"] for item in items] == ["2", "1"]
        assert items[0].payload["priority"] == 4
        assert items[1].payload["url"] == "https://github.com/octo/hub/issues/1"
        assert items[1].item_id == "1@2024-04-01T10:00:00.000000Z"
        assert seen[0].url.params["since"] == "2024-04-01T08:00:00Z"
        assert seen[0].headers["Authorization"] == "Bearer token"
        assert seen[0].headers["X-GitHub-Api-Version"] == "2022-11-28"

    def test_thread_update_is_a_new_item(self):
        first = GitHubNotificationsCollector._to_item(_thread("1", "2024-04-01T10:00:00Z"))
        second = GitHubNotificationsCollector._to_item(_thread("1", "2024-04-02T10:00:00Z"))

        assert first.item_id != second.item_id
        assert first.escalation_key == second.escalation_key

    def test_exhausted_rate_limit_is_transient(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(403, headers={"x-ratelimit-remaining": "0"})
        )
        collector = GitHubNotificationsCollector("token", transport=transport)

        with pytest.raises(TransientError):
            collector.fetch_since(None)

    def test_forbidden_is_permanent(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(403, text="bad token"))
        collector = GitHubNotificationsCollector("token", transport=transport)

        with pytest.raises(PermanentError):
            collector.fetch_since(None)

    def test_requires_token(self):
        with pytest.raises(ValueError):
            GitHubNotificationsCollector("")


class TestGitHubReleasesCollector:
    def _collector(self, releases):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=releases))
        return GitHubReleasesCollector("octo/hub", transport=transport)

    def test_current_releases_oldest_first_without_position(self):
        collector = self._collector([
            {"id": 3, "tag_name": "v1.2.0", "name": "", "draft": True},
            {"id": 2, "tag_name": "v1.1.0", "name": "Spring", "html_url": "https://github.com/octo/hub/releases/v1.1.0"},
            {"id": 1, "tag_name": "v1.0.0", "published_at": "2024-01-01T00:00:00Z"},
        ])

        items = collector.fetch_since("ignored")

        assert [item.item_id for item in items] == ["octo/hub:1", "octo/hub:2"]
        assert all(item.position is None for item in items)
        assert items[0].title == "[octo/hub] v1.0.0 released"
        assert items[1].payload["name"] == "Spring"

    def test_rejects_bad_repository(self):
        with pytest.raises(ValueError):
            GitHubReleasesCollector("octo")

    def test_non_list_body_is_permanent(self):
        collector = self._collector({"message": "Not Found"})

        with pytest.raises(PermanentError):
            collector.fetch_since(None)

    def test_runs_only_publish_new_releases(self, tmp_path):
        releases = [{"id": 1, "tag_name": "v1.0.0"}]
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=list(releases)))
        store = StateStore(tmp_path / "hub.db")
        runner = JobRunner(store, EscalationTracker(store))
        publisher = ListPublisher()
        workflow = Workflow(
            workflow_id="github-releases-octo-hub",
            collector=GitHubReleasesCollector("octo/hub", transport=transport),
            publisher=publisher,
            recurrence=IntervalRecurrence(900),
        )
        runner.run(workflow)

        releases.insert(0, {"id": 2, "tag_name": "v2.0.0"})
        run = runner.run(workflow)

        assert [item.item_id for item in publisher.items] == ["octo/hub:1", "octo/hub:2"]
        assert run.items_skipped == 1
        assert store.get_watermark("github-releases-octo-hub") is None
