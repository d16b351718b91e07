"""Status-dependent rules for how much money an order actually brought in."""

from __future__ import annotations

from decimal import Decimal

from .order_snapshots import ZERO, CollectedBy, OrderSnapshot, OrderStatus


ON_HAND_SUB_TYPE = "on_hand"
CASH_ON_DELIVERY = "cod"
ESTIMATED_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.PARTIAL})


def is_cash_collected(snapshot: OrderSnapshot) -> bool:
    if snapshot.collected_by is CollectedBy.COURIER and snapshot.payment_sub_type == ON_HAND_SUB_TYPE:
        return True
    method = snapshot.payment_method or ""
    return "cash" in method.lower() or method == CASH_ON_DELIVERY


def collected_amount(snapshot: OrderSnapshot) -> Decimal:
    """Actual amount received for a snapshot. Never raises."""

    status = snapshot.status
    if status in (OrderStatus.DELIVERED, OrderStatus.HAND_TO_HAND):
        return snapshot.total_fees if is_cash_collected(snapshot) else ZERO
    if status in (OrderStatus.PARTIAL, OrderStatus.RECEIVING_PART):
        return snapshot.partial_paid_amount or ZERO
    if status is OrderStatus.CANCELED:
        return snapshot.delivery_fee or ZERO
    if status is OrderStatus.RETURN:
        return ZERO
    # assigned, unknown
    return ZERO


def estimated_collected(snapshot: OrderSnapshot) -> Decimal:
    """Optimistic figure for rows still in flight; not interchangeable with
    :func:`collected_amount`."""

    if snapshot.status in ESTIMATED_STATUSES:
        return snapshot.total_fees
    return ZERO


__all__ = [
    "collected_amount",
    "estimated_collected",
    "is_cash_collected",
]
