"""Per-courier performance figures and ranking."""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .collection_policy import collected_amount
from .lifecycle import percentage
from .order_snapshots import ZERO, OrderSnapshot, OrderStatus

CENT = Decimal("0.01")
REVENUE_NORMALISER = Decimal("10000")
SCORE_WEIGHTS = {
    "completion": Decimal("0.4"),
    "revenue": Decimal("0.3"),
    "cancellation": Decimal("0.2"),
    "returns": Decimal("0.1"),
}


@dataclass(frozen=True)
class CourierPerformance:
    courier_id: str
    total_orders: int
    delivered_orders: int
    partial_orders: int
    canceled_orders: int
    returned_orders: int
    hand_to_hand_orders: int
    total_revenue: Decimal
    delivered_revenue: Decimal
    collected: Decimal
    average_order_value: Decimal
    completion_rate: Decimal
    cancellation_rate: Decimal
    return_rate: Decimal
    score: Decimal
    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "courierId": self.courier_id,
            "rank": self.rank,
            "score": str(self.score),
            "totalOrders": self.total_orders,
            "deliveredOrders": self.delivered_orders,
            "partialOrders": self.partial_orders,
            "canceledOrders": self.canceled_orders,
            "returnedOrders": self.returned_orders,
            "handToHandOrders": self.hand_to_hand_orders,
            "totalRevenue": str(self.total_revenue.quantize(CENT)),
            "deliveredRevenue": str(self.delivered_revenue.quantize(CENT)),
            "collected": str(self.collected.quantize(CENT)),
            "averageOrderValue": str(self.average_order_value),
            "completionRate": str(self.completion_rate),
            "cancellationRate": str(self.cancellation_rate),
            "returnRate": str(self.return_rate),
        }


def tracking_courier(snapshot: OrderSnapshot) -> Optional[str]:
    """Orders stay with the courier who first held them."""

    return snapshot.original_courier_id or snapshot.assigned_courier_id


def performance_score(
    completion_rate: Decimal,
    total_revenue: Decimal,
    cancellation_rate: Decimal,
    return_rate: Decimal,
) -> Decimal:
    revenue_component = min(total_revenue / REVENUE_NORMALISER, Decimal("100"))
    score = (
        completion_rate * SCORE_WEIGHTS["completion"]
        + revenue_component * SCORE_WEIGHTS["revenue"]
        + (Decimal("100") - cancellation_rate) * SCORE_WEIGHTS["cancellation"]
        + (Decimal("100") - return_rate) * SCORE_WEIGHTS["returns"]
    )
    return score.quantize(CENT)


def _performance(courier_id: str, snapshots: Sequence[OrderSnapshot]) -> CourierPerformance:
    total = len(snapshots)
    counts = {status: 0 for status in OrderStatus}
    for snapshot in snapshots:
        counts[snapshot.status] += 1
    total_revenue = sum((snapshot.total_fees for snapshot in snapshots), ZERO)
    delivered_revenue = sum(
        (
            snapshot.total_fees
            for snapshot in snapshots
            if snapshot.status in (OrderStatus.DELIVERED, OrderStatus.PARTIAL)
        ),
        ZERO,
    )
    completion = percentage(counts[OrderStatus.DELIVERED] + counts[OrderStatus.PARTIAL], total)
    cancellation = percentage(counts[OrderStatus.CANCELED], total)
    returns = percentage(counts[OrderStatus.RETURN], total)
    return CourierPerformance(
        courier_id=courier_id,
        total_orders=total,
        delivered_orders=counts[OrderStatus.DELIVERED],
        partial_orders=counts[OrderStatus.PARTIAL],
        canceled_orders=counts[OrderStatus.CANCELED],
        returned_orders=counts[OrderStatus.RETURN],
        hand_to_hand_orders=counts[OrderStatus.HAND_TO_HAND],
        total_revenue=total_revenue,
        delivered_revenue=delivered_revenue,
        collected=sum((collected_amount(snapshot) for snapshot in snapshots), ZERO),
        average_order_value=(total_revenue / total).quantize(CENT) if total else ZERO,
        completion_rate=completion,
        cancellation_rate=cancellation,
        return_rate=returns,
        score=performance_score(completion, total_revenue, cancellation, returns),
    )


def rank_couriers(
    snapshots: Iterable[OrderSnapshot], courier_ids: Optional[Sequence[str]] = None
) -> List[CourierPerformance]:
    """Rank couriers by score, then order volume, then id.

    ``courier_ids`` restricts the ranking and also lists couriers with no
    orders, who score on an empty record.
    """

    grouped: Dict[str, List[OrderSnapshot]] = {courier: [] for courier in courier_ids or ()}
    for snapshot in snapshots:
        courier = tracking_courier(snapshot)
        if courier is None:
            continue
        if courier_ids and courier not in grouped:
            continue
        grouped.setdefault(courier, []).append(snapshot)

    performances = [_performance(courier, members) for courier, members in grouped.items()]
    performances.sort(key=lambda perf: (-perf.score, -perf.total_orders, perf.courier_id))
    return [
        replace(perf, rank=index)
        for index, perf in enumerate(performances, start=1)
    ]


__all__ = [
    "CourierPerformance",
    "performance_score",
    "rank_couriers",
    "tracking_courier",
]
