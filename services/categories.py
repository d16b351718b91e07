"""Data-driven category table and the aggregator that evaluates it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .collection_policy import collected_amount, estimated_collected
from .order_snapshots import ZERO, OrderSnapshot, OrderStatus


LOGGER = logging.getLogger(__name__)

ORIGINAL_FIELDS = ("total_fees", "delivery_fee")


def _status_in(*statuses: OrderStatus) -> Callable[[OrderSnapshot], bool]:
    accepted = frozenset(statuses)
    return lambda snapshot: snapshot.status in accepted


def _raw_status_in(*values: str) -> Callable[[OrderSnapshot], bool]:
    accepted = frozenset(values)
    return lambda snapshot: snapshot.raw_status in accepted


def _always(snapshot: OrderSnapshot) -> bool:
    return True


@dataclass(frozen=True)
class CategoryDefinition:
    id: str
    label: str
    predicate: Callable[[OrderSnapshot], bool]
    original_field: str = "total_fees"
    estimate: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if self.original_field not in ORIGINAL_FIELDS:
            raise ValueError(
                f"Category '{self.id}' has unsupported original field '{self.original_field}'"
            )

    @property
    def collected_fn(self) -> Callable[[OrderSnapshot], Decimal]:
        return estimated_collected if self.estimate else collected_amount

    def original_value(self, snapshot: OrderSnapshot) -> Decimal:
        return getattr(snapshot, self.original_field) or ZERO

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "originalField": self.original_field,
            "estimate": self.estimate,
            "description": self.description,
        }


@dataclass(frozen=True)
class CategoryResult:
    id: str
    label: str
    count: int
    original_value: Decimal
    collected_value: Decimal
    estimate: bool = False
    record_ids: Tuple[str, ...] = field(default=(), repr=False)


class CategoryRegistry:
    def __init__(self) -> None:
        self._definitions: Dict[str, CategoryDefinition] = {}

    def register(self, definition: CategoryDefinition) -> None:
        if definition.id in self._definitions:
            LOGGER.info("Replacing category definition %s", definition.id)
        self._definitions[definition.id] = definition

    def get(self, category_id: str) -> CategoryDefinition:
        try:
            return self._definitions[category_id]
        except KeyError:
            raise KeyError(f"Unknown category '{category_id}'")

    def list_definitions(self) -> List[CategoryDefinition]:
        return list(self._definitions.values())

    def describe(self) -> List[Dict[str, Any]]:
        return [definition.describe() for definition in self._definitions.values()]

    def aggregate(self, snapshots: Iterable[OrderSnapshot]) -> List[CategoryResult]:
        return aggregate_categories(snapshots, self._definitions.values())


DEFAULT_CATEGORIES: Sequence[CategoryDefinition] = (
    CategoryDefinition("total", "Total Orders", _always, description="Every order in scope."),
    CategoryDefinition(
        "completed",
        "Completed",
        _status_in(OrderStatus.DELIVERED, OrderStatus.PARTIAL),
        description="Delivered and partially delivered orders.",
    ),
    CategoryDefinition("delivered", "Delivered", _status_in(OrderStatus.DELIVERED)),
    CategoryDefinition(
        "assigned",
        "Assigned",
        _status_in(OrderStatus.ASSIGNED),
        estimate=True,
        description="Outstanding orders, valued with the estimated collection.",
    ),
    CategoryDefinition(
        "canceled",
        "Canceled",
        _status_in(OrderStatus.CANCELED),
        description="Collected value is the delivery fee retained on cancellation.",
    ),
    CategoryDefinition("partial", "Partial", _status_in(OrderStatus.PARTIAL)),
    CategoryDefinition(
        "deferred",
        "Deferred",
        _raw_status_in("deferred", "postponed"),
        original_field="delivery_fee",
    ),
    CategoryDefinition("hand_to_hand", "Hand to Hand", _status_in(OrderStatus.HAND_TO_HAND)),
    CategoryDefinition("return", "Returned", _status_in(OrderStatus.RETURN)),
    CategoryDefinition(
        "receiving_part", "Receiving Part", _status_in(OrderStatus.RECEIVING_PART)
    ),
)


def aggregate_categories(
    snapshots: Iterable[OrderSnapshot],
    definitions: Optional[Iterable[CategoryDefinition]] = None,
) -> List[CategoryResult]:
    """Evaluate each category independently; categories overlap."""

    rows = list(snapshots)
    results: List[CategoryResult] = []
    for definition in definitions if definitions is not None else DEFAULT_CATEGORIES:
        matched = [snapshot for snapshot in rows if definition.predicate(snapshot)]
        collect = definition.collected_fn
        results.append(
            CategoryResult(
                id=definition.id,
                label=definition.label,
                count=len(matched),
                original_value=sum((definition.original_value(s) for s in matched), ZERO),
                collected_value=sum((collect(s) for s in matched), ZERO),
                estimate=definition.estimate,
                record_ids=tuple(snapshot.record_id for snapshot in matched),
            )
        )
    return results


def build_default_registry() -> CategoryRegistry:
    registry = CategoryRegistry()
    for definition in DEFAULT_CATEGORIES:
        registry.register(definition)
    return registry


_REGISTRY: Optional[CategoryRegistry] = None


def get_category_registry() -> CategoryRegistry:
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = build_default_registry()
    return _REGISTRY


__all__ = [
    "CategoryDefinition",
    "CategoryRegistry",
    "CategoryResult",
    "DEFAULT_CATEGORIES",
    "aggregate_categories",
    "build_default_registry",
    "get_category_registry",
]
