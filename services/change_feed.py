"""Change notifications, the notification bus and refresh coordination.

The reconciliation engine knows nothing about this module. Consumers
subscribe to :class:`NotificationBus`, and :class:`RefreshCoordinator` decides
when a new report is built and which result is allowed to become current.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from .order_snapshots import OrderStatus, status_label
from .order_source import SourceFetchError
from .reconciliation import ReconciliationEngine, ReconciliationReport, ReportQuery

LOGGER = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    NEW = "new"
    STATUS_CHANGE = "status_change"
    UPDATE = "update"


class TriggerReason(str, Enum):
    REFRESH = "refresh"
    PARAMETERS = "parameters"
    CHANGE = "change"


# ---------------------------------------------------------------------------
# Change events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeEvent:
    event: str
    after: Mapping[str, Any]
    before: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        event = payload.get("event") or payload.get("eventType") or payload.get("type")
        after = payload.get("after") or payload.get("new") or {}
        before = payload.get("before") or payload.get("old")
        if not event:
            raise ValueError("Change notification is missing its event type")
        if not isinstance(after, Mapping):
            raise ValueError("Change notification 'after' must be an object")
        return cls(event=str(event).strip().lower(), after=after, before=before or None)

    @property
    def order_number(self) -> Optional[str]:
        for key in ("order_number", "order_id", "record_id", "id"):
            value = self.after.get(key)
            if value not in (None, ""):
                return str(value)
        return None

    @property
    def record_id(self) -> Optional[str]:
        value = self.after.get("record_id", self.after.get("id"))
        return None if value in (None, "") else str(value)

    @property
    def kind(self) -> Optional[ChangeKind]:
        """``None`` for events the trigger layer ignores (deletes)."""

        if self.event == "insert":
            return ChangeKind.NEW
        if self.event != "update":
            return None
        previous = (self.before or {}).get("status")
        current = self.after.get("status")
        if self.before is not None and previous != current:
            return ChangeKind.STATUS_CHANGE
        return ChangeKind.UPDATE


def classify_change(payload: Mapping[str, Any]) -> Optional[ChangeKind]:
    return ChangeEvent.from_payload(payload).kind


# ---------------------------------------------------------------------------
# Notification bus
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Notification:
    sequence: int
    kind: ChangeKind
    order_number: Optional[str]
    message: str
    status: Optional[str] = None
    previous_status: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "kind": self.kind.value,
            "orderNumber": self.order_number,
            "message": self.message,
            "status": self.status,
            "previousStatus": self.previous_status,
            "createdAt": self.created_at.isoformat(),
        }


Subscriber = Callable[[Notification], None]


class NotificationBus:
    """Explicit publish/subscribe object handed to whoever needs it.

    ``subscribe`` returns a callable that removes the subscription again.
    """

    def __init__(self, history_size: int = 200) -> None:
        self._subscribers: List[Subscriber] = []
        self._history: Deque[Notification] = deque(maxlen=history_size)
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._sequence)

    def publish(self, notification: Notification) -> int:
        """Deliver to every subscriber; a failing subscriber is logged and the
        rest still receive the notification."""

        with self._lock:
            self._history.append(notification)
            subscribers = list(self._subscribers)
        delivered = 0
        for callback in subscribers:
            try:
                callback(notification)
            except Exception:
                LOGGER.exception("Notification subscriber %r failed", callback)
                continue
            delivered += 1
        return delivered

    def since(self, cursor: int = 0) -> List[Notification]:
        with self._lock:
            return [item for item in self._history if item.sequence > cursor]


def build_notification(event: ChangeEvent, sequence: int) -> Optional[Notification]:
    kind = event.kind
    if kind is None:
        return None
    order = event.order_number or "unknown"
    current = event.after.get("status")
    previous = (event.before or {}).get("status")
    if kind is ChangeKind.NEW:
        message = f"New order #{order} assigned"
    elif kind is ChangeKind.STATUS_CHANGE:
        label = status_label(OrderStatus.parse(current), current)
        message = f"Order #{order} status changed to {label}"
    else:
        message = f"Order #{order} updated"
    return Notification(
        sequence=sequence,
        kind=kind,
        order_number=event.order_number,
        message=message,
        status=current,
        previous_status=previous,
    )


# ---------------------------------------------------------------------------
# Refresh coordination
# ---------------------------------------------------------------------------


@dataclass
class _InFlight:
    task: "asyncio.Future[ReconciliationReport]"
    generation: int


class RefreshCoordinator:
    """Last-trigger-wins report refreshes.

    Every trigger takes a new generation number. Triggers for a query already
    being computed join that computation. A result is installed only if no
    newer trigger arrived meanwhile; a failed fetch leaves the current report
    untouched and re-raises :class:`SourceFetchError`.
    """

    def __init__(self, engine: ReconciliationEngine) -> None:
        self.engine = engine
        self._generation = 0
        self._report: Optional[ReconciliationReport] = None
        self._last_query: Optional[ReportQuery] = None
        self._in_flight: Dict[ReportQuery, _InFlight] = {}
        self.last_error: Optional[SourceFetchError] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def report(self) -> Optional[ReconciliationReport]:
        return self._report

    @property
    def last_query(self) -> Optional[ReportQuery]:
        return self._last_query

    def _start(self, query: ReportQuery, generation: int) -> _InFlight:
        entry = self._in_flight.get(query)
        if entry is not None and not entry.task.done():
            LOGGER.debug("Coalescing refresh for %s into generation %d", query.describe(), generation)
            entry.generation = generation
            return entry
        task = asyncio.ensure_future(self.engine.build_report(query))
        entry = _InFlight(task=task, generation=generation)
        self._in_flight[query] = entry

        def _forget(_: Any, query: ReportQuery = query, entry: _InFlight = entry) -> None:
            if self._in_flight.get(query) is entry:
                del self._in_flight[query]

        task.add_done_callback(_forget)
        return entry

    async def request(
        self, query: ReportQuery, reason: TriggerReason = TriggerReason.REFRESH
    ) -> Optional[ReconciliationReport]:
        """Trigger a refresh and return the freshest installed report.

        A superseded caller gets whatever report is current when its
        computation finishes; its own result is discarded.
        """

        self._generation += 1
        generation = self._generation
        self._last_query = query
        LOGGER.debug("Refresh generation %d triggered by %s", generation, reason.value)
        entry = self._start(query, generation)
        try:
            report = await asyncio.shield(entry.task)
        except SourceFetchError as exc:
            if entry.generation == self._generation:
                self.last_error = exc
                LOGGER.warning("Keeping previous report after failed refresh: %s", exc)
            raise
        if entry.generation != self._generation:
            LOGGER.info(
                "Discarding stale report for generation %d (current %d)",
                entry.generation,
                self._generation,
            )
            return self._report
        self._report = report
        self.last_error = None
        return report

    async def refresh(self) -> Optional[ReconciliationReport]:
        if self._last_query is None:
            return None
        return await self.request(self._last_query, TriggerReason.REFRESH)

    def is_affected(self, event: ChangeEvent) -> bool:
        """Whether a non-status edit touches the current report."""

        if self._report is None:
            return False
        record_id = event.record_id
        order_number = event.order_number
        return any(
            snapshot.record_id == record_id or snapshot.order_number == order_number
            for snapshot in self._report.snapshots
        )


class ChangeFeedListener:
    """Routes store notifications to the bus and the coordinator."""

    def __init__(self, bus: NotificationBus, coordinator: RefreshCoordinator) -> None:
        self.bus = bus
        self.coordinator = coordinator

    def should_refresh(self, event: ChangeEvent) -> bool:
        kind = event.kind
        if kind in (ChangeKind.NEW, ChangeKind.STATUS_CHANGE):
            return True
        if kind is ChangeKind.UPDATE:
            return self.coordinator.is_affected(event)
        return False

    async def handle(self, payload: Mapping[str, Any]) -> Optional[Notification]:
        event = ChangeEvent.from_payload(payload)
        notification = build_notification(event, self.bus.next_sequence())
        if notification is None:
            LOGGER.debug("Ignoring %s change notification", event.event)
            return None
        self.bus.publish(notification)
        if self.should_refresh(event) and self.coordinator.last_query is not None:
            await self.coordinator.request(self.coordinator.last_query, TriggerReason.CHANGE)
        return notification


__all__ = [
    "ChangeEvent",
    "ChangeFeedListener",
    "ChangeKind",
    "Notification",
    "NotificationBus",
    "RefreshCoordinator",
    "TriggerReason",
    "build_notification",
    "classify_change",
]
