"""
HTTP collectors.

A source tells the hub what is new in one of two ways:

- IncrementalCollector: entries carry an ordered position (publish time,
  update time). fetch_since returns the entries at or past the watermark,
  oldest first, so the runner advances the watermark item by item. Entries
  sitting exactly at the watermark come back and are skipped by their
  DedupKeys, which keeps same-timestamp siblings from being lost.
- DifferentialCollector: the source only offers its current state. Every
  entry comes back on every run without a position, the watermark never
  moves, and DedupKeys let only new identifiers through.

Concrete collectors:
- RssCollector: RSS 2.0 or Atom feed, position = entry publish time
- GitHubNotificationsCollector: /notifications, position = thread update time
- GitHubReleasesCollector: /repos/{repo}/releases, differential on release id

Error mapping (same as the Todoist adapter):
- timeout / connection error / 429 / 5xx -> TransientError
- 403 with an exhausted GitHub rate limit -> TransientError
- other 4xx, unparseable body -> PermanentError
"""

import logging
import xml.etree.ElementTree as ElementTree
from abc import abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Optional

import httpx

from src.scheduler.capabilities import Collector
from src.scheduler.entities import Item, to_iso
from src.scheduler.errors import PermanentError, TransientError


logger = logging.getLogger(__name__)

COLLECTOR_TIMEOUT_SECONDS = 15.0
COLLECTOR_USER_AGENT = "AutomationHub/1.0"

GITHUB_API_BASE_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
GITHUB_PAGE_SIZE = 50

# Position of feed entries that carry no date
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

ATOM_NS = "{http://www.w3.org/2005/Atom}"

# Todoist priority per notification reason; anything else is 1
GITHUB_REASON_PRIORITY = {
    "security_alert": 4,
    "approval_requested": 3,
    "assign": 3,
    "mention": 3,
    "team_mention": 3,
    "review_requested": 3,
    "subscribed": 2,
    "comment": 2,
    "author": 2,
}


# =============================================================================
# Parsing helpers
# =============================================================================

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 822 (RSS) or ISO 8601 (Atom, GitHub) timestamp.

    Returns:
        Aware UTC datetime, or None when the value is missing or unreadable
    """
    if not value:
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _text(node: ElementTree.Element, path: str) -> Optional[str]:
    child = node.find(path)
    if child is None or child.text is None:
        return None
    return child.text.strip() or None


def _rss_entry(node: ElementTree.Element) -> dict:
    link = _text(node, "link")
    return {
        "id": _text(node, "guid") or link or _text(node, "title"),
        "title": _text(node, "title"),
        "link": link,
        "summary": _text(node, "description"),
        "published": parse_timestamp(_text(node, "pubDate")),
    }


def _atom_entry(node: ElementTree.Element) -> dict:
    link = None
    for candidate in node.findall(f"{ATOM_NS}link"):
        if candidate.get("rel", "alternate") == "alternate":
            link = candidate.get("href")
            break
    published = _text(node, f"{ATOM_NS}published") or _text(node, f"{ATOM_NS}updated")
    return {
        "id": _text(node, f"{ATOM_NS}id") or link,
        "title": _text(node, f"{ATOM_NS}title"),
        "link": link,
        "summary": _text(node, f"{ATOM_NS}summary") or _text(node, f"{ATOM_NS}content"),
        "published": parse_timestamp(published),
    }


def parse_feed(content: bytes) -> list[dict]:
    """
    Parse an RSS 2.0 or Atom document into entry dicts.

    Each entry has id, title, link, summary and published (aware UTC
    datetime, or None when the feed gives no date).

    Raises:
        PermanentError: The document is not a feed
    """
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError as e:
        raise PermanentError(f"Feed is not valid XML: {e}") from e

    if root.tag == f"{ATOM_NS}feed":
        return [_atom_entry(node) for node in root.findall(f"{ATOM_NS}entry")]

    channel = root.find("channel")
    if root.tag == "rss" and channel is not None:
        return [_rss_entry(node) for node in channel.findall("item")]

    raise PermanentError(f"Unsupported feed document <{root.tag}>")


def subject_html_url(api_url: Optional[str]) -> Optional[str]:
    """Turn a GitHub API subject URL into the page a person would open."""
    if not api_url:
        return None
    return (
        api_url.replace("api.github.com/repos/", "github.com/")
        .replace("/pulls/", "/pull/")
    )


# =============================================================================
# Base classes
# =============================================================================

class HttpCollector(Collector):
    """Collector over an httpx client with the hub's error mapping."""

    def __init__(
        self,
        base_url: str = "",
        headers: Optional[dict] = None,
        timeout: float = COLLECTOR_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize HttpCollector.

        Args:
            base_url: Root for relative request paths
            headers: Extra default headers
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": COLLECTOR_USER_AGENT, **(headers or {})},
        )

    def close(self) -> None:
        self._client.close()

    def _get(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        """
        GET a URL and return the successful response.

        Raises:
            TransientError: Timeout, connection error, 429, 5xx or rate limit
            PermanentError: Any other 4xx
        """
        try:
            response = self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise TransientError(f"{self.name}: request timed out: GET {url}") from e
        except httpx.RequestError as e:
            raise TransientError(f"{self.name}: request error: GET {url}: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500 or self._rate_limited(response):
            raise TransientError(f"{self.name}: HTTP {status} for GET {url}")
        if status >= 400:
            raise PermanentError(
                f"{self.name}: GET {url} rejected: HTTP {status}: {response.text[:200]}"
            )
        return response

    def _rate_limited(self, response: httpx.Response) -> bool:
        return False


class IncrementalCollector(HttpCollector):
    """
    Collector whose entries carry an ordered position.

    Subclasses implement fetch_entries; it may over-fetch, fetch_since
    drops what lies before the watermark and orders the rest.
    """

    def fetch_since(self, cursor: Any) -> list[Item]:
        items = [
            item for item in self.fetch_entries(cursor)
            if cursor is None or item.position >= cursor
        ]
        items.sort(key=lambda item: item.position)
        logger.debug(f"{self.name}: {len(items)} item(s) at or after {cursor!r}")
        return items

    @abstractmethod
    def fetch_entries(self, cursor: Any) -> Iterable[Item]:
        """
        Fetch candidate items, every one with a position.

        Args:
            cursor: Current watermark, usable as a server-side filter
        """
        ...


class DifferentialCollector(HttpCollector):
    """
    Collector over a source that only offers its current state.

    Items are returned without a position so the watermark stays put;
    DedupKeys decide which of them are new.
    """

    def fetch_since(self, cursor: Any) -> list[Item]:
        items = [
            replace(item, position=None) if item.position is not None else item
            for item in self.fetch_current()
        ]
        logger.debug(f"{self.name}: {len(items)} current item(s)")
        return items

    @abstractmethod
    def fetch_current(self) -> Iterable[Item]:
        """Fetch every entry the source currently lists, oldest first."""
        ...


# =============================================================================
# RSS / Atom
# =============================================================================

class RssCollector(IncrementalCollector):
    """
    One RSS or Atom feed.

    Entries without a date sit at the epoch, so they are only seen on the
    first run. The feed name prefixes item titles.
    """

    name = "rss"

    def __init__(self, feed_url: str, feed_name: Optional[str] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.feed_url = feed_url
        self.feed_name = feed_name or feed_url

    def fetch_entries(self, cursor: Any) -> list[Item]:
        response = self._get(self.feed_url)
        items = []
        for entry in parse_feed(response.content):
            if entry["id"] is None:
                logger.debug(f"Skipping feed entry without id or title in {self.feed_url}")
                continue
            items.append(self._to_item(entry))
        return items

    def _to_item(self, entry: dict) -> Item:
        published = entry["published"] or EPOCH
        title = entry["title"] or "New article"
        details = "\n\n".join(part for part in (entry["link"], entry["summary"]) if part)
        return Item(
            item_id=entry["id"],
            payload={
                "feed": self.feed_name,
                "title": title,
                "link": entry["link"],
                "summary": entry["summary"],
                "published": to_iso(published),
            },
            position=published,
            title=f"[{self.feed_name}] {title}",
            details=details or None,
        )


# =============================================================================
# GitHub
# =============================================================================

class GitHubCollector(HttpCollector):
    """GitHub REST API access shared by the GitHub collectors."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = GITHUB_API_BASE_URL,
        **kwargs: Any,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        super().__init__(base_url=base_url, headers=headers, **kwargs)

    def _rate_limited(self, response: httpx.Response) -> bool:
        return (
            response.status_code == 403
            and response.headers.get("x-ratelimit-remaining") == "0"
        )

    def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        response = self._get(path, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise PermanentError(f"{self.name}: GitHub returned invalid JSON for {path}") from e

    def _get_pages(self, path: str, params: dict) -> list:
        """Follow Link rel="next" until the listing is exhausted."""
        entries = []
        url: Optional[str] = path
        while url is not None:
            response = self._get(url, params=params)
            try:
                page = response.json()
            except ValueError as e:
                raise PermanentError(f"{self.name}: GitHub returned invalid JSON for {url}") from e
            if not isinstance(page, list):
                raise PermanentError(f"{self.name}: expected a list from {url}")
            entries.extend(page)
            url = response.links.get("next", {}).get("url")
            # The next link already carries the query string
            params = None
        return entries


class GitHubNotificationsCollector(IncrementalCollector, GitHubCollector):
    """
    The authenticated user's unread GitHub notifications.

    A thread that updates again is a new item (the id includes updated_at),
    so fresh activity on an old thread is not swallowed by its DedupKey.
    """

    name = "github_notifications"

    def __init__(self, token: str, participating: bool = False, **kwargs: Any):
        if not token:
            raise ValueError("GitHub token is required for notifications")
        super().__init__(token=token, **kwargs)
        self.participating = participating

    def fetch_entries(self, cursor: Any) -> list[Item]:
        params: dict[str, Any] = {"per_page": GITHUB_PAGE_SIZE}
        if self.participating:
            params["participating"] = "true"
        if isinstance(cursor, datetime):
            params["since"] = cursor.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return [self._to_item(thread) for thread in self._get_pages("/notifications", params)]

    @staticmethod
    def _to_item(thread: dict) -> Item:
        updated = parse_timestamp(thread.get("updated_at")) or EPOCH
        subject = thread.get("subject") or {}
        repository = (thread.get("repository") or {}).get("full_name", "unknown")
        reason = thread.get("reason") or "other"
        html_url = subject_html_url(subject.get("url"))
        return Item(
            item_id=f"{thread['id']}@{to_iso(updated)}",
            payload={
                "thread_id": str(thread["id"]),
                "repository": repository,
                "reason": reason,
                "subject_type": subject.get("type"),
                "subject_title": subject.get("title"),
                "url": html_url,
                "updated_at": to_iso(updated),
                "priority": GITHUB_REASON_PRIORITY.get(reason, 1),
            },
            position=updated,
            title=f"[github:{repository}] {subject.get('title') or 'Notification'} ({reason})",
            details=html_url,
            escalation_key=f"github/notification/{thread['id']}",
        )


class GitHubReleasesCollector(DifferentialCollector, GitHubCollector):
    """
    Published releases of one repository.

    Differential: the first page of releases is the current state and the
    release id is the identity. Drafts are skipped.
    """

    name = "github_releases"

    def __init__(self, repository: str, token: Optional[str] = None, **kwargs: Any):
        if repository.count("/") != 1:
            raise ValueError(f"Repository must be 'owner/name', got '{repository}'")
        super().__init__(token=token, **kwargs)
        self.repository = repository

    def fetch_current(self) -> list[Item]:
        releases = self._get_json(
            f"/repos/{self.repository}/releases",
            params={"per_page": GITHUB_PAGE_SIZE},
        )
        if not isinstance(releases, list):
            raise PermanentError(f"{self.name}: expected a list of releases for {self.repository}")

        # The API lists newest first
        return [
            self._to_item(release)
            for release in reversed(releases)
            if not release.get("draft")
        ]

    def _to_item(self, release: dict) -> Item:
        label = release.get("name") or release.get("tag_name") or str(release["id"])
        details = "\n\n".join(
            part for part in (release.get("html_url"), release.get("body")) if part
        )
        return Item(
            item_id=f"{self.repository}:{release['id']}",
            payload={
                "repository": self.repository,
                "tag": release.get("tag_name"),
                "name": label,
                "url": release.get("html_url"),
                "prerelease": bool(release.get("prerelease")),
                "published_at": release.get("published_at"),
            },
            title=f"[{self.repository}] {label} released",
            details=details or None,
        )
