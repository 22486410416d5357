"""
Todoist task tracker adapter.

Talks to the Todoist REST API with httpx:
- TodoistClient: thin request wrapper mapping HTTP failures onto the hub's
  error taxonomy
- TodoistEscalator: one task per escalation key (create, comment on repeat
  occurrences, reopen if completed, close when the condition clears)
- TodoistPublisher: creates a task per published item

Error mapping:
- timeout / connection error / 429 / 5xx -> TransientError
- 404 on a task -> TaskNotFoundError
- other 4xx -> PermanentError
"""

import logging
from typing import Any, Optional

import httpx

from src.scheduler.capabilities import Escalator, Publisher
from src.scheduler.entities import Item
from src.scheduler.errors import PermanentError, TaskNotFoundError, TransientError


logger = logging.getLogger(__name__)

TODOIST_API_BASE_URL = "https://api.todoist.com/rest/v2"
TODOIST_TIMEOUT_SECONDS = 10.0
TODOIST_USER_AGENT = "AutomationHub/1.0"

# Todoist priorities run 1 (normal) to 4 (urgent)
DEFAULT_PRIORITY = 1


def clamp_priority(value: Any) -> int:
    """Coerce a payload priority into Todoist's 1..4 range."""
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return max(1, min(4, priority))


class TodoistClient:
    """
    Minimal Todoist REST client.

    Usage:
        client = TodoistClient(api_token)
        task = client.create_task("Check the backup job", project_id="123")
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = TODOIST_API_BASE_URL,
        timeout: float = TODOIST_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize TodoistClient.

        Args:
            api_token: Todoist API token
            base_url: REST API root
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not api_token:
            raise ValueError("Todoist API token is required")

        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_token}",
                "User-Agent": TODOIST_USER_AGENT,
            },
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        task_id: Optional[str] = None,
    ) -> Any:
        """
        Send a request and decode the JSON response.

        Args:
            task_id: Task the request addresses; a 404 then raises TaskNotFoundError

        Returns:
            Decoded JSON body, or None for empty (204) responses
        """
        try:
            response = self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise TransientError(f"Todoist request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            raise TransientError(f"Todoist request error: {method} {path}: {e}") from e

        status = response.status_code
        if status == 404 and task_id is not None:
            raise TaskNotFoundError(task_id)
        if status == 429 or status >= 500:
            raise TransientError(f"Todoist returned HTTP {status} for {method} {path}")
        if status >= 400:
            raise PermanentError(
                f"Todoist rejected {method} {path}: HTTP {status}: {response.text[:200]}"
            )

        if status == 204 or not response.content:
            return None
        return response.json()

    # =========================================================================
    # Tasks
    # =========================================================================

    def create_task(
        self,
        content: str,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> dict:
        body: dict[str, Any] = {"content": content, "priority": priority}
        if description:
            body["description"] = description
        if project_id:
            body["project_id"] = project_id
        return self._request("POST", "/tasks", json=body)

    def get_task(self, task_id: str) -> dict:
        return self._request("GET", f"/tasks/{task_id}", task_id=task_id)

    def update_task(self, task_id: str, **fields: Any) -> dict:
        return self._request("POST", f"/tasks/{task_id}", json=fields, task_id=task_id)

    def close_task(self, task_id: str) -> None:
        self._request("POST", f"/tasks/{task_id}/close", task_id=task_id)

    def reopen_task(self, task_id: str) -> None:
        self._request("POST", f"/tasks/{task_id}/reopen", task_id=task_id)

    def add_comment(self, task_id: str, content: str) -> dict:
        return self._request(
            "POST",
            "/comments",
            json={"task_id": task_id, "content": content},
            task_id=task_id,
        )


def _task_fields(details: dict) -> dict:
    """Map escalation/publish details onto Todoist task fields."""
    payload = details.get("payload") or {}
    return {
        "content": details.get("title") or details.get("escalation_key") or "Automation hub task",
        "description": details.get("description"),
        "priority": clamp_priority(payload.get("priority", DEFAULT_PRIORITY)),
    }


class TodoistEscalator(Escalator):
    """
    Escalator keeping one Todoist task per escalation key.

    A repeat occurrence refreshes the task's title/description, adds a
    comment with the occurrence count, and reopens the task if it had been
    completed in the meantime.
    """

    name = "todoist"

    def __init__(self, client: TodoistClient, project_id: Optional[str] = None):
        self.client = client
        self.project_id = project_id

    def upsert(self, escalation_key: str, details: dict, task_id: Optional[str] = None) -> str:
        fields = _task_fields(details)

        if task_id is None:
            task = self.client.create_task(
                fields["content"],
                description=fields["description"],
                project_id=self.project_id,
                priority=fields["priority"],
            )
            logger.info(f"Created Todoist task {task['id']} for '{escalation_key}'")
            return str(task["id"])

        update = {"content": fields["content"], "priority": fields["priority"]}
        if fields["description"]:
            update["description"] = fields["description"]
        task = self.client.update_task(task_id, **update)

        if task and task.get("is_completed"):
            self.client.reopen_task(task_id)
            logger.info(f"Reopened completed Todoist task {task_id} for '{escalation_key}'")

        occurrences = details.get("occurrences", 1)
        self.client.add_comment(
            task_id,
            f"Seen again (occurrence #{occurrences}): {details.get('item_id', escalation_key)}",
        )
        return task_id

    def is_resolved(self, task_id: str) -> bool:
        task = self.client.get_task(task_id)
        return bool(task.get("is_completed"))

    def resolve(self, task_id: str) -> None:
        self.client.close_task(task_id)
        logger.info(f"Closed Todoist task {task_id}")


class TodoistPublisher(Publisher):
    """Publishes each item as a new Todoist task."""

    name = "todoist"

    def __init__(self, client: TodoistClient, project_id: Optional[str] = None):
        self.client = client
        self.project_id = project_id

    def emit(self, item: Item) -> None:
        fields = _task_fields({
            "title": item.title or item.item_id,
            "description": item.details,
            "payload": item.payload,
        })
        task = self.client.create_task(
            fields["content"],
            description=fields["description"],
            project_id=self.project_id,
            priority=fields["priority"],
        )
        logger.debug(f"Published item {item.item_id} as Todoist task {task.get('id')}")
