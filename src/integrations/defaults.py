"""
Default bootstrap.

Registers the built-in webhook sources (secrets from WEBHOOK_SECRET_<SOURCE>)
and, when a Todoist token is configured, the workflows that turn events and
collected items into Todoist tasks:

- tailscale-alerts: every Tailscale event escalated to a Todoist task
- honeycomb-alerts: Honeycomb triggers escalated, "ok" closes the task
- rss-<name>: one scheduled workflow per HUB_RSS_FEEDS entry
- github-notifications: unread GitHub notifications (needs GITHUB_TOKEN)
- github-releases-<owner>-<name>: one per HUB_GITHUB_RELEASE_REPOS entry

GitHub deliveries are accepted and recorded but stay unmapped until a
custom bootstrap binds a workflow to them.
"""

import logging
import re

from src.infra.config import HubSettings, get_webhook_secret
from src.scheduler.recurrence import IntervalRecurrence
from src.scheduler.registry import ANY_EVENT, CapabilityRegistry
from src.webhooks.sources import (
    GitHubWebhookSource,
    HoneycombWebhookSource,
    TailscaleWebhookSource,
)
from .collectors import GitHubNotificationsCollector, GitHubReleasesCollector, RssCollector
from .todoist import TodoistClient, TodoistEscalator, TodoistPublisher


logger = logging.getLogger(__name__)


def slugify(value: str) -> str:
    """Lower-case a name into a workflow id fragment."""
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "feed"


def parse_feed_entry(entry: str) -> tuple[str, str]:
    """
    Split a HUB_RSS_FEEDS entry into (name, url).

    "xkcd=https://xkcd.com/rss.xml" names the feed; a bare url is named
    after its host.
    """
    name, sep, url = entry.partition("=")
    if sep and not name.startswith(("http://", "https://")):
        return name.strip(), url.strip()
    host = re.sub(r"^https?://", "", entry).split("/")[0]
    return host, entry


def build_default_registry(settings: HubSettings) -> CapabilityRegistry:
    """
    Build the registry used when HUB_BOOTSTRAP is not set.

    Args:
        settings: Hub settings (Todoist credentials, collector sources)

    Returns:
        Unfrozen CapabilityRegistry
    """
    registry = CapabilityRegistry()

    for source in (
        GitHubWebhookSource("github", get_webhook_secret("github")),
        TailscaleWebhookSource("tailscale", get_webhook_secret("tailscale")),
        HoneycombWebhookSource("honeycomb", get_webhook_secret("honeycomb")),
    ):
        registry.register_source(source)

    if not settings.todoist_api_token:
        logger.info("TODOIST_API_TOKEN not set; alert and collector workflows are disabled")
        return registry

    client = TodoistClient(settings.todoist_api_token)
    registry.register_escalator(
        "todoist",
        TodoistEscalator(client, project_id=settings.todoist_project_id),
    )
    registry.register_publisher(
        "todoist",
        TodoistPublisher(client, project_id=settings.todoist_project_id),
    )
    registry.define_workflow(
        "tailscale-alerts",
        escalator="todoist",
        webhook=("tailscale", ANY_EVENT),
        description="Tailscale tailnet alerts to Todoist",
    )
    registry.define_workflow(
        "honeycomb-alerts",
        escalator="todoist",
        webhook=("honeycomb", "trigger"),
        description="Honeycomb trigger alerts to Todoist",
    )

    _register_collector_workflows(registry, settings)
    return registry


def _register_collector_workflows(registry: CapabilityRegistry, settings: HubSettings) -> None:
    recurrence = IntervalRecurrence(settings.collector_interval_seconds)

    for entry in settings.rss_feeds:
        name, url = parse_feed_entry(entry)
        workflow_id = f"rss-{slugify(name)}"
        registry.register_collector(workflow_id, RssCollector(url, feed_name=name))
        registry.define_workflow(
            workflow_id,
            collector=workflow_id,
            publisher="todoist",
            recurrence=recurrence,
            description=f"New {name} articles to Todoist",
        )

    if settings.github_token:
        registry.register_collector(
            "github-notifications",
            GitHubNotificationsCollector(settings.github_token),
        )
        registry.define_workflow(
            "github-notifications",
            collector="github-notifications",
            publisher="todoist",
            recurrence=recurrence,
            description="Unread GitHub notifications to Todoist",
        )
    else:
        logger.info("GITHUB_TOKEN not set; github-notifications workflow is disabled")

    for repository in settings.github_release_repos:
        workflow_id = f"github-releases-{slugify(repository)}"
        registry.register_collector(
            workflow_id,
            GitHubReleasesCollector(repository, token=settings.github_token),
        )
        registry.define_workflow(
            workflow_id,
            collector=workflow_id,
            publisher="todoist",
            recurrence=recurrence,
            description=f"New {repository} releases to Todoist",
        )
