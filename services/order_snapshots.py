"""Order snapshot model and the closed status vocabulary."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from dateutil.parser import parse as dateutil_parse


ZERO = Decimal("0")


class OrderStatus(str, Enum):
    ASSIGNED = "assigned"
    DELIVERED = "delivered"
    PARTIAL = "partial"
    CANCELED = "canceled"
    HAND_TO_HAND = "hand_to_hand"
    RETURN = "return"
    RECEIVING_PART = "receiving_part"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        if value is None:
            return cls.UNKNOWN
        text = str(value).strip().lower()
        if text == cls.UNKNOWN.value:
            return cls.UNKNOWN
        try:
            return cls(text)
        except ValueError:
            return cls.UNKNOWN


KNOWN_STATUSES = tuple(status for status in OrderStatus if status is not OrderStatus.UNKNOWN)

STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.ASSIGNED: "Assigned",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.PARTIAL: "Partial",
    OrderStatus.CANCELED: "Canceled",
    OrderStatus.HAND_TO_HAND: "Hand to Hand",
    OrderStatus.RETURN: "Returned",
    OrderStatus.RECEIVING_PART: "Receiving Part",
}


class CollectedBy(str, Enum):
    COURIER = "courier"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "CollectedBy":
        if value is not None and str(value).strip().lower() == cls.COURIER.value:
            return cls.COURIER
        return cls.OTHER


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------


def _decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    return parsed if parsed.is_finite() else ZERO


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    return _decimal(value)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if value is None:
        return False
    return str(value).strip().lower() in {"true", "1", "yes", "y", "t"}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    try:
        parsed = dateutil_parse(str(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render an instant as a fixed-width UTC string that sorts lexically."""

    if value is None:
        return None
    normalised = _parse_datetime(value)
    return normalised.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def status_label(status: OrderStatus, raw_status: Optional[str] = None) -> str:
    if status is OrderStatus.UNKNOWN:
        return raw_status or "Unknown"
    return STATUS_LABELS[status]


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderSnapshot:
    record_id: str
    order_number: str
    status: OrderStatus
    created_at: Optional[datetime]
    total_fees: Decimal = ZERO
    delivery_fee: Optional[Decimal] = None
    partial_paid_amount: Optional[Decimal] = None
    payment_method: str = ""
    payment_sub_type: Optional[str] = None
    collected_by: CollectedBy = CollectedBy.OTHER
    assigned_courier_id: Optional[str] = None
    original_courier_id: Optional[str] = None
    customer_name: Optional[str] = None
    assigned_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    archived: bool = False
    archived_at: Optional[datetime] = None
    raw_status: str = field(default="", compare=False)

    @property
    def effective_timestamp(self) -> Optional[datetime]:
        return self.updated_at or self.created_at

    @property
    def status_key(self) -> str:
        """Status identifier that keeps unrecognised source values distinct."""

        if self.status is OrderStatus.UNKNOWN:
            return self.raw_status or OrderStatus.UNKNOWN.value
        return self.status.value

    @property
    def label(self) -> str:
        return status_label(self.status, self.raw_status)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderSnapshot":
        """Decode a source row.

        Accepts both the store's column names and the older dashboard names
        (``id``/``order_id``/``total_order_fees``). Missing numerics decode to
        zero and malformed timestamps to ``None``.
        """

        data = dict(row)
        record_id = data.get("record_id", data.get("id"))
        if record_id in (None, ""):
            raise ValueError("Order snapshot is missing its record id")
        order_number = (
            _optional_text(data.get("order_number"))
            or _optional_text(data.get("order_id"))
            or str(record_id)
        )
        raw_status = _optional_text(data.get("status")) or ""
        total_fees = data.get("total_fees", data.get("total_order_fees"))
        return cls(
            record_id=str(record_id),
            order_number=order_number,
            status=OrderStatus.parse(raw_status),
            raw_status=raw_status.lower(),
            created_at=_parse_datetime(data.get("created_at")),
            total_fees=_decimal(total_fees),
            delivery_fee=_optional_decimal(data.get("delivery_fee")),
            partial_paid_amount=_optional_decimal(data.get("partial_paid_amount")),
            payment_method=_optional_text(data.get("payment_method")) or "",
            payment_sub_type=_optional_text(data.get("payment_sub_type")),
            collected_by=CollectedBy.parse(data.get("collected_by")),
            assigned_courier_id=_optional_text(data.get("assigned_courier_id")),
            original_courier_id=_optional_text(data.get("original_courier_id")),
            customer_name=_optional_text(data.get("customer_name")),
            assigned_at=_parse_datetime(data.get("assigned_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
            archived=_bool(data.get("archived")),
            archived_at=_parse_datetime(data.get("archived_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "order_number": self.order_number,
            "status": self.status_key,
            "total_fees": str(self.total_fees),
            "delivery_fee": None if self.delivery_fee is None else str(self.delivery_fee),
            "partial_paid_amount": (
                None if self.partial_paid_amount is None else str(self.partial_paid_amount)
            ),
            "payment_method": self.payment_method,
            "payment_sub_type": self.payment_sub_type,
            "collected_by": self.collected_by.value,
            "assigned_courier_id": self.assigned_courier_id,
            "original_courier_id": self.original_courier_id,
            "customer_name": self.customer_name,
            "created_at": format_timestamp(self.created_at),
            "assigned_at": format_timestamp(self.assigned_at),
            "updated_at": format_timestamp(self.updated_at),
            "archived": 1 if self.archived else 0,
            "archived_at": format_timestamp(self.archived_at),
        }


__all__ = [
    "CollectedBy",
    "KNOWN_STATUSES",
    "OrderSnapshot",
    "OrderStatus",
    "STATUS_LABELS",
    "ZERO",
    "format_timestamp",
    "status_label",
]
