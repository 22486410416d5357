"""
Automation Hub Test Fixtures.

Base fixtures:
  - Empty state store on a temporary SQLite file
  - Mocked clock at fixed time
  - Fake collector, publisher and escalator with scripted failures

Per-test fixtures build workflows from these fakes; no test touches the
network.
"""

import itertools
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator, Iterable, Iterator, Optional

import pytest

from src.scheduler import (
    BackoffController,
    Collector,
    EscalationTracker,
    Escalator,
    Item,
    JobRunner,
    Publisher,
    StateStore,
    TaskNotFoundError,
)


# Fixed time for deterministic tests
FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at fixed epoch
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def now(self) -> datetime:
        return self._current

    def __call__(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


class MonotonicClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def make_item(n: int, **kwargs: Any) -> Item:
    """Item with id 'item-<n>' at position n."""
    payload = {"n": n, **kwargs.pop("payload", {})}
    kwargs.setdefault("position", n)
    return Item(item_id=f"item-{n}", payload=payload, **kwargs)


class FakeCollector(Collector):
    """
    Collector over an in-memory list of items.

    fetch_since yields items whose position is past the cursor. A failure
    scripted for an item id is raised when that item would be yielded.
    """

    name = "fake"

    def __init__(self, items: Iterable[Item] = ()):
        self.items = list(items)
        self.cursors: list[Any] = []
        self.fail_before: dict[str, Exception] = {}
        self.on_yield = None

    def fetch_since(self, cursor: Any) -> Iterator[Item]:
        self.cursors.append(cursor)
        for item in self.items:
            if cursor is not None and item.position is not None and item.position <= cursor:
                continue
            error = self.fail_before.pop(item.item_id, None)
            if error is not None:
                raise error
            if self.on_yield is not None:
                self.on_yield(item)
            yield item


class RecordingPublisher(Publisher):
    """
    Publisher that records emitted items.

    failures maps item_id -> exception raised on every emit of that item
    (one_shot_failures raise once, then succeed).
    """

    name = "recording"

    def __init__(self):
        self.emitted: list[Item] = []
        self.failures: dict[str, Exception] = {}
        self.one_shot_failures: dict[str, Exception] = {}
        self.attempts: dict[str, int] = {}
        self.block: Optional[threading.Event] = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def emit(self, item: Item) -> None:
        self.started.set()
        if self.block is not None:
            self.block.wait(timeout=10)

        with self._lock:
            self.attempts[item.item_id] = self.attempts.get(item.item_id, 0) + 1
            error = self.one_shot_failures.pop(item.item_id, None)
            if error is None:
                error = self.failures.get(item.item_id)
        if error is not None:
            raise error

        with self._lock:
            self.emitted.append(item)

    @property
    def emitted_ids(self) -> list[str]:
        return [item.item_id for item in self.emitted]


class FakeEscalator(Escalator):
    """
    In-memory task tracker.

    tasks: task_id -> {"key", "details", "done", "updates"}
    """

    name = "fake"

    def __init__(self):
        self.tasks: dict[str, dict] = {}
        self.created: list[str] = []
        self.updated: list[str] = []
        self.resolved: list[str] = []
        self.fail_next: Optional[Exception] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def upsert(self, escalation_key: str, details: dict, task_id: Optional[str] = None) -> str:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

        with self._lock:
            if task_id is None:
                task_id = f"task-{next(self._ids)}"
                self.tasks[task_id] = {
                    "key": escalation_key,
                    "details": details,
                    "done": False,
                    "updates": 0,
                }
                self.created.append(task_id)
                return task_id

            task = self.tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            task["details"] = details
            task["updates"] += 1
            self.updated.append(task_id)
            return task_id

    def is_resolved(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task["done"]

    def resolve(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        task["done"] = True
        self.resolved.append(task_id)

    def complete_externally(self, task_id: str) -> None:
        self.tasks[task_id]["done"] = True

    def delete_externally(self, task_id: str) -> None:
        del self.tasks[task_id]


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def store(temp_db_path: str) -> StateStore:
    """Create a fresh StateStore with empty database."""
    return StateStore(temp_db_path)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def tracker(store: StateStore) -> EscalationTracker:
    return EscalationTracker(store)


@pytest.fixture
def monotonic() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def runner(store: StateStore, tracker: EscalationTracker, monotonic: MonotonicClock) -> JobRunner:
    return JobRunner(store, tracker, clock=monotonic)


@pytest.fixture
def collector() -> FakeCollector:
    return FakeCollector([make_item(n) for n in range(1, 6)])


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def escalator() -> FakeEscalator:
    return FakeEscalator()


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def fixed_backoff() -> BackoffController:
    """Backoff without jitter: always the full ceiling."""
    return BackoffController(
        base_delay_seconds=60,
        max_delay_seconds=600,
        rng=lambda low, high: high,
    )
