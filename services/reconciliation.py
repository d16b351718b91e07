"""Report assembly and the reconciliation engine that feeds it."""

from __future__ import annotations

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .categories import CategoryRegistry, CategoryResult, get_category_registry
from .collection_policy import is_cash_collected
from .lifecycle import LifecycleOutcomeSummary, analyze_returned_lifecycles, percentage, select_lifecycles
from .order_snapshots import ZERO, OrderSnapshot, OrderStatus, format_timestamp
from .order_source import CourierMatch, OrderSource, RangeFetch, join_all
from .snapshot_merge import flatten_lifecycles, group_lifecycles, merge_snapshot_sets
from .status_flow import StatusTransition, count_status_flow
from .time_windows import TimeField, TimeWindow, _safe_timezone

LOGGER = logging.getLogger(__name__)

CENT = Decimal("0.01")
HISTORY_FETCH = "history"
PAYMENT_METHOD_LABELS = {
    "cash": "Cash",
    "card": "Card",
    "valu": "Valu",
    "partial": "Partial",
    "cod": "Cash on Delivery",
}
EXPORT_FIELDS = (
    "section",
    "key",
    "label",
    "count",
    "original_value",
    "collected_value",
    "percentage",
    "delivered",
    "canceled",
    "returned",
    "timestamp",
)


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------


def _decimal_text(value: Optional[Decimal]) -> Optional[str]:
    """Fixed-point text with at least two fraction digits, never fewer."""

    if value is None:
        return None
    exponent = value.as_tuple().exponent
    if isinstance(exponent, int) and exponent < -2:
        return format(value, "f")
    return format(value.quantize(CENT), "f")


def _record(section: str, key: str, label: str, **values: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {name: None for name in EXPORT_FIELDS}
    entry.update(section=section, key=key, label=label)
    for name, value in values.items():
        entry[name] = _decimal_text(value) if isinstance(value, Decimal) else value
    return entry


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class ViewMode(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    ALL = "all"

    @classmethod
    def parse(cls, value: Any) -> "ViewMode":
        if value in (None, ""):
            return cls.ACTIVE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown view mode '{value}'; expected one of {[m.value for m in cls]}")


@dataclass(frozen=True)
class ReportQuery:
    window: TimeWindow
    courier_ids: Tuple[str, ...] = ()
    view_mode: ViewMode = ViewMode.ACTIVE
    legacy_assignment_fallback: bool = True

    @property
    def courier_match(self) -> CourierMatch:
        if self.view_mode is ViewMode.ACTIVE:
            return CourierMatch.ASSIGNED
        if self.view_mode is ViewMode.ARCHIVED:
            return CourierMatch.ORIGINAL
        return CourierMatch.EITHER

    @property
    def archived(self) -> Optional[bool]:
        if self.view_mode is ViewMode.ACTIVE:
            return False
        if self.view_mode is ViewMode.ARCHIVED:
            return True
        return None

    def range_fetches(self) -> List[RangeFetch]:
        """The created/assigned/updated range queries whose union is the
        window set."""

        common = dict(
            window=self.window,
            courier_ids=self.courier_ids,
            courier_match=self.courier_match,
            archived=self.archived,
        )
        return [
            RangeFetch(TimeField.CREATED_AT, **common),
            RangeFetch(
                TimeField.ASSIGNED_AT,
                legacy_created_fallback=self.legacy_assignment_fallback,
                **common,
            ),
            RangeFetch(TimeField.UPDATED_AT, require_assigned_courier=True, **common),
        ]

    def describe(self) -> Dict[str, Any]:
        return {
            "window": self.window.to_dict(),
            "courierIds": list(self.courier_ids),
            "viewMode": self.view_mode.value,
        }


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DailyBreakdown:
    day: str
    orders: int = 0
    revenue: Decimal = ZERO
    delivered: int = 0
    canceled: int = 0
    returned: int = 0


@dataclass(frozen=True)
class PaymentMethodBreakdown:
    method: str
    label: str
    count: int
    percentage: Decimal
    revenue: Decimal


@dataclass(frozen=True)
class StatusShare:
    status: str
    label: str
    count: int
    percentage: Decimal
    revenue: Decimal


@dataclass(frozen=True)
class CashSplit:
    cash_orders: int = 0
    cash_total: Decimal = ZERO
    non_cash_orders: int = 0
    non_cash_total: Decimal = ZERO


@dataclass(frozen=True)
class ReportTotals:
    total_orders: int = 0
    total_revenue: Decimal = ZERO
    delivered_revenue: Decimal = ZERO
    total_delivery_fees: Decimal = ZERO
    average_order_value: Decimal = ZERO
    completion_rate: Decimal = ZERO
    cancellation_rate: Decimal = ZERO
    return_rate: Decimal = ZERO


@dataclass(frozen=True)
class ReconciliationReport:
    """Immutable result of one query; share freely, never mutate."""

    query: ReportQuery
    generated_at: datetime
    totals: ReportTotals
    categories: Tuple[CategoryResult, ...]
    lifecycle: LifecycleOutcomeSummary
    status_flow: Tuple[StatusTransition, ...]
    daily: Tuple[DailyBreakdown, ...]
    payment_methods: Tuple[PaymentMethodBreakdown, ...]
    status_distribution: Tuple[StatusShare, ...]
    hourly: Tuple[int, ...]
    cash_split: CashSplit
    snapshots: Tuple[OrderSnapshot, ...] = field(default=(), repr=False)

    @property
    def total_orders(self) -> int:
        return self.totals.total_orders

    def category(self, category_id: str) -> CategoryResult:
        for result in self.categories:
            if result.id == category_id:
                return result
        raise KeyError(f"Unknown category '{category_id}'")

    def to_dict(self) -> Dict[str, Any]:
        stats = self.lifecycle.stats
        return {
            "query": self.query.describe(),
            "generatedAt": self.generated_at.isoformat(),
            "totals": {
                "totalOrders": self.totals.total_orders,
                "totalRevenue": _decimal_text(self.totals.total_revenue),
                "deliveredRevenue": _decimal_text(self.totals.delivered_revenue),
                "totalDeliveryFees": _decimal_text(self.totals.total_delivery_fees),
                "averageOrderValue": _decimal_text(self.totals.average_order_value),
                "completionRate": _decimal_text(self.totals.completion_rate),
                "cancellationRate": _decimal_text(self.totals.cancellation_rate),
                "returnRate": _decimal_text(self.totals.return_rate),
            },
            "categories": [
                {
                    "id": result.id,
                    "label": result.label,
                    "count": result.count,
                    "originalValue": _decimal_text(result.original_value),
                    "collectedValue": _decimal_text(result.collected_value),
                    "estimate": result.estimate,
                }
                for result in self.categories
            ],
            "lifecycle": {
                "returnedThenDelivered": stats.returned_then_delivered,
                "returnedThenCanceled": stats.returned_then_canceled,
                "returnedThenPartial": stats.returned_then_partial,
                "stillReturned": stats.still_returned,
                "totalReturnedOrders": stats.total_returned_orders,
                "deliveredPercentage": _decimal_text(stats.delivered_percentage),
                "canceledPercentage": _decimal_text(stats.canceled_percentage),
                "partialPercentage": _decimal_text(stats.partial_percentage),
                "stillReturnedPercentage": _decimal_text(stats.still_returned_percentage),
                "details": [
                    {
                        "orderId": detail.order_id,
                        "orderNumber": detail.order_number,
                        "customerName": detail.customer_name,
                        "totalFees": _decimal_text(detail.total_fees),
                        "currentStatus": detail.current_status,
                        "statusHistory": [entry.to_dict() for entry in detail.status_history],
                        "finalOutcome": detail.final_outcome.value,
                        "wasDelivered": detail.was_delivered,
                        "wasCanceled": detail.was_canceled,
                        "wasPartial": detail.was_partial,
                        "stillReturned": detail.still_returned,
                    }
                    for detail in self.lifecycle.details
                ],
            },
            "statusFlow": [transition.to_dict() for transition in self.status_flow],
            "daily": [
                {
                    "date": day.day,
                    "orders": day.orders,
                    "revenue": _decimal_text(day.revenue),
                    "delivered": day.delivered,
                    "canceled": day.canceled,
                    "returned": day.returned,
                }
                for day in self.daily
            ],
            "paymentMethods": [
                {
                    "method": entry.method,
                    "label": entry.label,
                    "count": entry.count,
                    "percentage": _decimal_text(entry.percentage),
                    "revenue": _decimal_text(entry.revenue),
                }
                for entry in self.payment_methods
            ],
            "statusDistribution": [
                {
                    "status": entry.status,
                    "label": entry.label,
                    "count": entry.count,
                    "percentage": _decimal_text(entry.percentage),
                    "revenue": _decimal_text(entry.revenue),
                }
                for entry in self.status_distribution
            ],
            "hourly": [{"hour": f"{hour}:00", "orders": count} for hour, count in enumerate(self.hourly)],
            "cash": {
                "cashOrders": self.cash_split.cash_orders,
                "cashTotal": _decimal_text(self.cash_split.cash_total),
                "nonCashOrders": self.cash_split.non_cash_orders,
                "nonCashTotal": _decimal_text(self.cash_split.non_cash_total),
            },
        }

    def to_records(self) -> List[Dict[str, Any]]:
        """Flatten into uniform rows (``EXPORT_FIELDS``) for CSV/JSON export."""

        totals = self.totals
        stats = self.lifecycle.stats
        records = [
            _record("summary", "total_orders", "Total Orders", count=totals.total_orders),
            _record("summary", "total_revenue", "Total Revenue", original_value=totals.total_revenue),
            _record(
                "summary", "delivered_revenue", "Delivered Revenue", original_value=totals.delivered_revenue
            ),
            _record(
                "summary", "average_order_value", "Average Order Value",
                original_value=totals.average_order_value,
            ),
            _record("summary", "completion_rate", "Completion Rate", percentage=totals.completion_rate),
            _record(
                "summary", "cancellation_rate", "Cancellation Rate", percentage=totals.cancellation_rate
            ),
            _record("summary", "return_rate", "Return Rate", percentage=totals.return_rate),
        ]
        for result in self.categories:
            records.append(
                _record(
                    "category",
                    result.id,
                    result.label,
                    count=result.count,
                    original_value=result.original_value,
                    collected_value=result.collected_value,
                )
            )
        records.extend(
            [
                _record(
                    "lifecycle", "returned_then_delivered", "Returned then Delivered",
                    count=stats.returned_then_delivered, percentage=stats.delivered_percentage,
                ),
                _record(
                    "lifecycle", "returned_then_canceled", "Returned then Canceled",
                    count=stats.returned_then_canceled, percentage=stats.canceled_percentage,
                ),
                _record(
                    "lifecycle", "returned_then_partial", "Returned then Partial",
                    count=stats.returned_then_partial, percentage=stats.partial_percentage,
                ),
                _record(
                    "lifecycle", "still_returned", "Still Returned",
                    count=stats.still_returned, percentage=stats.still_returned_percentage,
                ),
            ]
        )
        for detail in self.lifecycle.details:
            records.append(
                _record(
                    "returned_order",
                    detail.order_number,
                    detail.final_outcome.value,
                    original_value=detail.total_fees,
                    timestamp=format_timestamp(detail.last_status_at),
                )
            )
        for transition in self.status_flow:
            records.append(
                _record(
                    "status_flow",
                    f"{transition.from_status}->{transition.to_status}",
                    transition.label,
                    count=transition.count,
                    percentage=transition.percentage,
                )
            )
        for day in self.daily:
            records.append(
                _record(
                    "daily",
                    day.day,
                    day.day,
                    count=day.orders,
                    original_value=day.revenue,
                    delivered=day.delivered,
                    canceled=day.canceled,
                    returned=day.returned,
                )
            )
        for entry in self.payment_methods:
            records.append(
                _record(
                    "payment_method",
                    entry.method,
                    entry.label,
                    count=entry.count,
                    percentage=entry.percentage,
                    original_value=entry.revenue,
                )
            )
        records.append(
            _record(
                "cash", "cash", "Cash Collected",
                count=self.cash_split.cash_orders, collected_value=self.cash_split.cash_total,
            )
        )
        records.append(
            _record(
                "cash", "non_cash", "Non-cash",
                count=self.cash_split.non_cash_orders, original_value=self.cash_split.non_cash_total,
            )
        )
        return records


# ---------------------------------------------------------------------------
# Breakdown builders
# ---------------------------------------------------------------------------


def _daily_breakdown(snapshots: Sequence[OrderSnapshot], tz: Any) -> Tuple[DailyBreakdown, ...]:
    buckets: Dict[str, Dict[str, Any]] = {}
    for snapshot in snapshots:
        if snapshot.created_at is None:
            continue
        day = snapshot.created_at.astimezone(tz).date().isoformat()
        bucket = buckets.setdefault(
            day, {"orders": 0, "revenue": ZERO, "delivered": 0, "canceled": 0, "returned": 0}
        )
        bucket["orders"] += 1
        bucket["revenue"] += snapshot.total_fees
        if snapshot.status in (OrderStatus.DELIVERED, OrderStatus.PARTIAL):
            bucket["delivered"] += 1
        elif snapshot.status is OrderStatus.CANCELED:
            bucket["canceled"] += 1
        elif snapshot.status is OrderStatus.RETURN:
            bucket["returned"] += 1
    return tuple(DailyBreakdown(day=day, **buckets[day]) for day in sorted(buckets))


def _payment_breakdown(snapshots: Sequence[OrderSnapshot]) -> Tuple[PaymentMethodBreakdown, ...]:
    counts: "OrderedDict[str, List[Any]]" = OrderedDict()
    for snapshot in snapshots:
        method = (snapshot.payment_method or "").strip().lower() or "unspecified"
        entry = counts.setdefault(method, [0, ZERO])
        entry[0] += 1
        entry[1] += snapshot.total_fees
    total = len(snapshots)
    ranked = sorted(counts.items(), key=lambda item: item[1][0], reverse=True)
    return tuple(
        PaymentMethodBreakdown(
            method=method,
            label=PAYMENT_METHOD_LABELS.get(method, method.replace("_", " ").title()),
            count=count,
            percentage=percentage(count, total),
            revenue=revenue,
        )
        for method, (count, revenue) in ranked
    )


def _status_distribution(snapshots: Sequence[OrderSnapshot]) -> Tuple[StatusShare, ...]:
    counts: Counter = Counter()
    revenue: Dict[str, Decimal] = {}
    labels: Dict[str, str] = {}
    for snapshot in snapshots:
        key = snapshot.status_key
        counts[key] += 1
        revenue[key] = revenue.get(key, ZERO) + snapshot.total_fees
        labels[key] = snapshot.label
    total = len(snapshots)
    return tuple(
        StatusShare(key, labels[key], count, percentage(count, total), revenue[key])
        for key, count in counts.most_common()
    )


def _hourly(snapshots: Sequence[OrderSnapshot], tz: Any) -> Tuple[int, ...]:
    hours = [0] * 24
    for snapshot in snapshots:
        if snapshot.created_at is not None:
            hours[snapshot.created_at.astimezone(tz).hour] += 1
    return tuple(hours)


def _cash_split(snapshots: Sequence[OrderSnapshot]) -> CashSplit:
    cash = [snapshot for snapshot in snapshots if is_cash_collected(snapshot)]
    non_cash = [snapshot for snapshot in snapshots if not is_cash_collected(snapshot)]
    return CashSplit(
        cash_orders=len(cash),
        cash_total=sum((snapshot.total_fees for snapshot in cash), ZERO),
        non_cash_orders=len(non_cash),
        non_cash_total=sum((snapshot.total_fees for snapshot in non_cash), ZERO),
    )


def _totals(snapshots: Sequence[OrderSnapshot]) -> ReportTotals:
    total = len(snapshots)
    by_status = Counter(snapshot.status for snapshot in snapshots)
    successful = by_status[OrderStatus.DELIVERED] + by_status[OrderStatus.PARTIAL]
    revenue = sum((snapshot.total_fees for snapshot in snapshots), ZERO)
    delivered_revenue = sum(
        (
            snapshot.total_fees
            for snapshot in snapshots
            if snapshot.status in (OrderStatus.DELIVERED, OrderStatus.PARTIAL)
        ),
        ZERO,
    )
    return ReportTotals(
        total_orders=total,
        total_revenue=revenue,
        delivered_revenue=delivered_revenue,
        total_delivery_fees=sum((snapshot.delivery_fee or ZERO for snapshot in snapshots), ZERO),
        average_order_value=(revenue / total).quantize(CENT) if total else ZERO,
        completion_rate=percentage(successful, total),
        cancellation_rate=percentage(by_status[OrderStatus.CANCELED], total),
        return_rate=percentage(by_status[OrderStatus.RETURN], total),
    )


def assemble_report(
    query: ReportQuery,
    window_sets: Iterable[Iterable[OrderSnapshot]],
    history: Optional[Iterable[OrderSnapshot]] = None,
    *,
    registry: Optional[CategoryRegistry] = None,
    timezone_name: str = "UTC",
    generated_at: Optional[datetime] = None,
) -> ReconciliationReport:
    """Build a report from already-fetched snapshot sets.

    ``history`` is the unbounded current-or-original courier history. When it
    is absent, lifecycles are reconstructed from the window sets alone.
    """

    registry = registry or get_category_registry()
    tz = _safe_timezone(timezone_name)

    window_set = merge_snapshot_sets(*window_sets)
    lifecycle_source = window_set if history is None else list(history)
    included = select_lifecycles(group_lifecycles(lifecycle_source), query.window)
    merged = merge_snapshot_sets(window_set, flatten_lifecycles(included))
    lifecycles = group_lifecycles(merged)
    # History spans every archive state; headline figures only count the viewed one.
    aggregate = [
        snapshot for snapshot in merged if query.archived is None or snapshot.archived == query.archived
    ]

    totals = _totals(aggregate)
    report = ReconciliationReport(
        query=query,
        generated_at=generated_at or datetime.now(timezone.utc),
        totals=totals,
        categories=tuple(registry.aggregate(aggregate)),
        lifecycle=analyze_returned_lifecycles(lifecycles),
        status_flow=tuple(count_status_flow(lifecycles, total_orders=totals.total_orders)),
        daily=_daily_breakdown(aggregate, tz),
        payment_methods=_payment_breakdown(aggregate),
        status_distribution=_status_distribution(aggregate),
        hourly=_hourly(aggregate, tz),
        cash_split=_cash_split(aggregate),
        snapshots=tuple(aggregate),
    )
    LOGGER.info(
        "Assembled reconciliation report: %d orders, %d lifecycles, %d returned",
        totals.total_orders,
        len(lifecycles),
        report.lifecycle.stats.total_returned_orders,
    )
    return report


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Fetches every input for a query concurrently, then assembles a report.

    Holds no report state; refresh coordination lives in
    :class:`services.change_feed.RefreshCoordinator`.
    """

    def __init__(
        self,
        source: OrderSource,
        *,
        registry: Optional[CategoryRegistry] = None,
        timezone_name: str = "UTC",
        fetch_timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.source = source
        self.registry = registry or get_category_registry()
        self.timezone_name = timezone_name
        self.fetch_timeout = fetch_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch_inputs(
        self, query: ReportQuery
    ) -> Tuple[List[List[OrderSnapshot]], Optional[List[OrderSnapshot]]]:
        fetches = {request.label: self.source.fetch_range(request) for request in query.range_fetches()}
        if query.courier_ids:
            fetches[HISTORY_FETCH] = self.source.fetch_history(query.courier_ids)
        LOGGER.debug("Fetching %d order sets for %s", len(fetches), query.describe())
        results = await join_all(fetches, timeout=self.fetch_timeout)
        history = results.pop(HISTORY_FETCH, None)
        return list(results.values()), history

    async def build_report(self, query: ReportQuery) -> ReconciliationReport:
        window_sets, history = await self.fetch_inputs(query)
        return assemble_report(
            query,
            window_sets,
            history,
            registry=self.registry,
            timezone_name=self.timezone_name,
            generated_at=self._clock(),
        )


__all__ = [
    "CashSplit",
    "DailyBreakdown",
    "EXPORT_FIELDS",
    "PaymentMethodBreakdown",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReportQuery",
    "ReportTotals",
    "StatusShare",
    "ViewMode",
    "assemble_report",
]
