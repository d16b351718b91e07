"""Histogram of adjacent status changes within order lifecycles."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .lifecycle import percentage
from .order_snapshots import OrderStatus, status_label
from .snapshot_merge import OrderLifecycle


@dataclass(frozen=True)
class StatusTransition:
    from_status: str
    to_status: str
    count: int
    percentage: Decimal

    @property
    def label(self) -> str:
        return f"{_label(self.from_status)} → {_label(self.to_status)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status,
            "to": self.to_status,
            "label": self.label,
            "count": self.count,
            "percentage": str(self.percentage),
        }


def _label(status_key: str) -> str:
    return status_label(OrderStatus.parse(status_key), status_key)


def count_status_flow(
    lifecycles: Iterable[OrderLifecycle], *, total_orders: Optional[int] = None
) -> List[StatusTransition]:
    """Count ``from != to`` pairs; percentages use ``total_orders`` (defaults to
    the number of snapshots walked). Ties keep first-seen order."""

    histogram: Counter = Counter()
    walked = 0
    for lifecycle in lifecycles:
        walked += len(lifecycle.snapshots)
        if len(lifecycle.snapshots) < 2:
            continue
        histogram.update(lifecycle.transitions())

    denominator = walked if total_orders is None else total_orders
    ranked: List[Tuple[Tuple[str, str], int]] = sorted(
        histogram.items(), key=lambda item: item[1], reverse=True
    )
    return [
        StatusTransition(source, target, count, percentage(count, denominator))
        for (source, target), count in ranked
    ]


__all__ = ["StatusTransition", "count_status_flow"]
