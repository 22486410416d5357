"""
Capability interfaces consumed by the Job Runner.

Concrete adapters (calendar, RSS, GitHub, task tracker, ...) implement these
and are registered once at bootstrap through the CapabilityRegistry.

- Collector: produce new upstream items since a watermark
- Filter: accept, reject or transform an item
- Publisher: emit an item to an external system
- Escalator: create-or-update a human task keyed by a stable identity
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

from .entities import Item


class Collector(ABC):
    """
    Produces new upstream items since a cursor.

    fetch_since must be restartable from the same cursor: calling it twice
    with the same watermark yields the same items (the runner relies on
    DedupKeys to skip the ones already handled). Raise TransientError for
    network/rate-limit problems and PermanentError for unusable responses.
    """

    name: str = "collector"

    @abstractmethod
    def fetch_since(self, cursor: Any) -> Iterable[Item]:
        """
        Return a lazy, finite sequence of items newer than cursor.

        Args:
            cursor: The workflow's current watermark, or None on first run

        Returns:
            Items in the order they must be processed
        """
        ...


class FilterAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    TRANSFORM = "transform"


@dataclass(frozen=True)
class FilterDecision:
    """Result of Filter.evaluate."""

    action: FilterAction
    item: Optional[Item] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls) -> "FilterDecision":
        return cls(FilterAction.ACCEPT)

    @classmethod
    def reject(cls, reason: Optional[str] = None) -> "FilterDecision":
        return cls(FilterAction.REJECT, reason=reason)

    @classmethod
    def transform(cls, item: Item) -> "FilterDecision":
        return cls(FilterAction.TRANSFORM, item=item)


class Filter(ABC):
    """Accepts, rejects or transforms an item."""

    name: str = "filter"

    @abstractmethod
    def evaluate(self, item: Item) -> FilterDecision:
        ...


class Publisher(ABC):
    """
    Emits an item to an external system (fire-and-confirm).

    Returns normally on success. Raises TransientError, PermanentError, or
    EscalationRequired when a human has to decide instead.
    """

    name: str = "publisher"

    @abstractmethod
    def emit(self, item: Item) -> None:
        ...


class Escalator(ABC):
    """
    Creates or updates a human-facing task in an external task tracker.

    The EscalationTracker decides whether a task must be created or updated;
    the Escalator only talks to the tracker.
    """

    name: str = "escalator"

    @abstractmethod
    def upsert(
        self,
        escalation_key: str,
        details: dict,
        task_id: Optional[str] = None,
    ) -> str:
        """
        Create a task (task_id is None) or update the existing one.

        Args:
            escalation_key: Stable identity of the escalated condition
            details: title, description, occurrences and item payload
            task_id: Existing external task to update, if any

        Returns:
            The external task identifier

        Raises:
            TaskNotFoundError: task_id no longer exists in the tracker
        """
        ...

    @abstractmethod
    def is_resolved(self, task_id: str) -> bool:
        """Check whether the external task has been marked done."""
        ...

    def resolve(self, task_id: str) -> None:
        """Close the external task after the condition cleared. Optional."""
        return None


# =============================================================================
# Built-in filters
# =============================================================================


class PredicateFilter(Filter):
    """Accepts items for which predicate(item) is truthy."""

    def __init__(self, predicate: Callable[[Item], bool], name: str = "predicate"):
        self.predicate = predicate
        self.name = name

    def evaluate(self, item: Item) -> FilterDecision:
        if self.predicate(item):
            return FilterDecision.accept()
        return FilterDecision.reject(f"{self.name} did not match")


class FieldMatchFilter(Filter):
    """
    Include/exclude rules on payload fields.

    Each rule maps a payload key to a value, a list of values, or a compiled
    regular expression. An item must match every include rule and no exclude
    rule. Dotted keys ("repository.full_name") walk nested dicts.
    """

    name = "field_match"

    def __init__(
        self,
        include: Optional[dict] = None,
        exclude: Optional[dict] = None,
    ):
        self.include = include or {}
        self.exclude = exclude or {}

    @staticmethod
    def _lookup(payload: dict, key: str) -> Any:
        value: Any = payload
        for part in key.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    @staticmethod
    def _matches(actual: Any, expected: Any) -> bool:
        if isinstance(expected, re.Pattern):
            return actual is not None and expected.search(str(actual)) is not None
        if isinstance(expected, (list, tuple, set, frozenset)):
            return actual in expected
        return actual == expected

    def evaluate(self, item: Item) -> FilterDecision:
        for key, expected in self.include.items():
            if not self._matches(self._lookup(item.payload, key), expected):
                return FilterDecision.reject(f"{key} not included")

        for key, expected in self.exclude.items():
            if self._matches(self._lookup(item.payload, key), expected):
                return FilterDecision.reject(f"{key} excluded")

        return FilterDecision.accept()


class StaticCollector(Collector):
    """
    Yields a fixed list of items newer than the cursor.

    Useful for bootstrap smoke tests and for sources that are fetched
    elsewhere and handed to the hub as a batch.
    """

    name = "static"

    def __init__(self, items: Iterable[Item]):
        self.items = list(items)

    def fetch_since(self, cursor: Any) -> Iterator[Item]:
        for item in self.items:
            if cursor is not None and item.position is not None and item.position <= cursor:
                continue
            yield item
