"""Returned-order lifecycle inclusion and outcome classification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .order_snapshots import OrderStatus, format_timestamp
from .snapshot_merge import OrderLifecycle
from .time_windows import TimeWindow


HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.0001")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class FinalOutcome(str, Enum):
    RECOVERED_DELIVERED = "Recovered - Delivered"
    LOST_CANCELED = "Lost - Canceled"
    PARTIALLY_RECOVERED = "Partially Recovered"
    STILL_RETURNED = "Still Returned"


def percentage(count: int, total: int) -> Decimal:
    if not total:
        return Decimal("0")
    return (Decimal(count) * HUNDRED / Decimal(total)).quantize(PERCENT_QUANTUM)


def classify_outcome(status: OrderStatus) -> FinalOutcome:
    if status is OrderStatus.DELIVERED:
        return FinalOutcome.RECOVERED_DELIVERED
    if status is OrderStatus.CANCELED:
        return FinalOutcome.LOST_CANCELED
    if status is OrderStatus.PARTIAL:
        return FinalOutcome.PARTIALLY_RECOVERED
    # return, assigned, hand_to_hand, receiving_part, unknown
    return FinalOutcome.STILL_RETURNED


def lifecycle_in_scope(lifecycle: OrderLifecycle, window: TimeWindow) -> bool:
    """Activity in the window, or a return with activity or the return itself
    in the window."""

    if lifecycle.has_activity_in(window):
        return True
    return lifecycle.was_returned and lifecycle.returned_in(window)


def select_lifecycles(
    lifecycles: Iterable[OrderLifecycle], window: TimeWindow
) -> List[OrderLifecycle]:
    return [lifecycle for lifecycle in lifecycles if lifecycle_in_scope(lifecycle, window)]


# ---------------------------------------------------------------------------
# Outcome records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: str
    timestamp: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "timestamp": format_timestamp(self.timestamp)}


@dataclass(frozen=True)
class ReturnedOrderDetail:
    order_id: str
    order_number: str
    customer_name: str
    total_fees: Decimal
    current_status: str
    status_history: Tuple[StatusHistoryEntry, ...]
    final_outcome: FinalOutcome
    was_delivered: bool
    was_canceled: bool
    was_partial: bool
    still_returned: bool

    @property
    def last_status_at(self) -> Optional[datetime]:
        return self.status_history[-1].timestamp if self.status_history else None


@dataclass(frozen=True)
class LifecycleStats:
    returned_then_delivered: int = 0
    returned_then_canceled: int = 0
    returned_then_partial: int = 0
    still_returned: int = 0
    total_returned_orders: int = 0

    @property
    def delivered_percentage(self) -> Decimal:
        return percentage(self.returned_then_delivered, self.total_returned_orders)

    @property
    def canceled_percentage(self) -> Decimal:
        return percentage(self.returned_then_canceled, self.total_returned_orders)

    @property
    def partial_percentage(self) -> Decimal:
        return percentage(self.returned_then_partial, self.total_returned_orders)

    @property
    def still_returned_percentage(self) -> Decimal:
        return percentage(self.still_returned, self.total_returned_orders)


@dataclass(frozen=True)
class LifecycleOutcomeSummary:
    stats: LifecycleStats
    details: Tuple[ReturnedOrderDetail, ...]


def _detail_for(lifecycle: OrderLifecycle) -> ReturnedOrderDetail:
    first, last = lifecycle.first, lifecycle.last
    outcome = classify_outcome(last.status)
    return ReturnedOrderDetail(
        order_id=first.record_id,
        order_number=lifecycle.order_number,
        customer_name=first.customer_name or "Unknown",
        total_fees=first.total_fees,
        current_status=last.status_key,
        status_history=tuple(
            StatusHistoryEntry(snapshot.status_key, snapshot.effective_timestamp)
            for snapshot in lifecycle.snapshots
        ),
        final_outcome=outcome,
        was_delivered=outcome is FinalOutcome.RECOVERED_DELIVERED,
        was_canceled=outcome is FinalOutcome.LOST_CANCELED,
        was_partial=outcome is FinalOutcome.PARTIALLY_RECOVERED,
        still_returned=outcome is FinalOutcome.STILL_RETURNED,
    )


def analyze_returned_lifecycles(lifecycles: Iterable[OrderLifecycle]) -> LifecycleOutcomeSummary:
    details = [_detail_for(lifecycle) for lifecycle in lifecycles if lifecycle.was_returned]
    stats = LifecycleStats(
        returned_then_delivered=sum(1 for detail in details if detail.was_delivered),
        returned_then_canceled=sum(1 for detail in details if detail.was_canceled),
        returned_then_partial=sum(1 for detail in details if detail.was_partial),
        still_returned=sum(1 for detail in details if detail.still_returned),
        total_returned_orders=len(details),
    )
    details.sort(key=lambda detail: detail.last_status_at or _EPOCH, reverse=True)
    return LifecycleOutcomeSummary(stats=stats, details=tuple(details))


__all__ = [
    "FinalOutcome",
    "LifecycleOutcomeSummary",
    "LifecycleStats",
    "ReturnedOrderDetail",
    "StatusHistoryEntry",
    "analyze_returned_lifecycles",
    "classify_outcome",
    "lifecycle_in_scope",
    "percentage",
    "select_lifecycles",
]
