"""Deduplicate overlapping fetches and group snapshots into order lifecycles."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .order_snapshots import OrderSnapshot, OrderStatus
from .time_windows import TimeWindow


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def merge_snapshot_sets(*snapshot_sets: Iterable[OrderSnapshot]) -> List[OrderSnapshot]:
    """Union by record id; a later set overwrites an earlier one in place."""

    merged: Dict[str, OrderSnapshot] = {}
    for snapshot_set in snapshot_sets:
        for snapshot in snapshot_set:
            merged[snapshot.record_id] = snapshot
    return list(merged.values())


def _chronological_key(snapshot: OrderSnapshot) -> datetime:
    return snapshot.effective_timestamp or _EPOCH


@dataclass(frozen=True)
class OrderLifecycle:
    order_number: str
    snapshots: Tuple[OrderSnapshot, ...]

    @property
    def first(self) -> OrderSnapshot:
        return self.snapshots[0]

    @property
    def last(self) -> OrderSnapshot:
        return self.snapshots[-1]

    @property
    def was_returned(self) -> bool:
        return any(snapshot.status is OrderStatus.RETURN for snapshot in self.snapshots)

    def has_activity_in(self, window: TimeWindow) -> bool:
        return any(window.contains(snapshot.effective_timestamp) for snapshot in self.snapshots)

    def returned_in(self, window: TimeWindow) -> bool:
        return any(
            snapshot.status is OrderStatus.RETURN and window.contains(snapshot.effective_timestamp)
            for snapshot in self.snapshots
        )

    def transitions(self) -> List[Tuple[str, str]]:
        pairs = []
        for previous, current in zip(self.snapshots, self.snapshots[1:]):
            if previous.status_key != current.status_key:
                pairs.append((previous.status_key, current.status_key))
        return pairs

    def last_timestamp(self) -> Optional[datetime]:
        return self.last.effective_timestamp


def group_lifecycles(snapshots: Iterable[OrderSnapshot]) -> List[OrderLifecycle]:
    """Group by order number; each group sorted by ``updated_at or created_at``.

    ``sorted`` is stable, so equal timestamps keep their fetch order. Groups
    come back in order of first appearance.
    """

    grouped: Dict[str, List[OrderSnapshot]] = {}
    for snapshot in snapshots:
        grouped.setdefault(snapshot.order_number, []).append(snapshot)
    return [
        OrderLifecycle(order_number, tuple(sorted(members, key=_chronological_key)))
        for order_number, members in grouped.items()
    ]


def flatten_lifecycles(lifecycles: Iterable[OrderLifecycle]) -> List[OrderSnapshot]:
    return [snapshot for lifecycle in lifecycles for snapshot in lifecycle.snapshots]


__all__ = [
    "OrderLifecycle",
    "flatten_lifecycles",
    "group_lifecycles",
    "merge_snapshot_sets",
]
