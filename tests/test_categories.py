from decimal import Decimal

import pytest

from services.categories import (
    CategoryDefinition,
    CategoryRegistry,
    aggregate_categories,
    build_default_registry,
)
from services.order_snapshots import OrderStatus


@pytest.fixture()
def mixed_snapshots(make_snapshot):
    return [
        make_snapshot("delivered", total_fees=150, payment_method="cash"),
        make_snapshot("delivered", total_fees=90, payment_method="card"),
        make_snapshot("partial", total_fees=200, partial_paid_amount=80),
        make_snapshot("canceled", total_fees=120, delivery_fee=20),
        make_snapshot("assigned", total_fees=75),
        make_snapshot("hand_to_hand", total_fees=60, payment_method="cod"),
        make_snapshot("return", total_fees=40),
        make_snapshot("receiving_part", total_fees=50, partial_paid_amount=10),
        make_snapshot("deferred", total_fees=30, delivery_fee=5),
    ]


def _by_id(results):
    return {result.id: result for result in results}


def test_default_categories_keep_their_fixed_order(mixed_snapshots):
    results = aggregate_categories(mixed_snapshots)
    assert [result.id for result in results] == [
        "total",
        "completed",
        "delivered",
        "assigned",
        "canceled",
        "partial",
        "deferred",
        "hand_to_hand",
        "return",
        "receiving_part",
    ]


def test_category_values_follow_collection_policy(mixed_snapshots):
    results = _by_id(aggregate_categories(mixed_snapshots))

    assert results["total"].count == 9
    assert results["delivered"].count == 2
    assert results["delivered"].original_value == Decimal("240")
    assert results["delivered"].collected_value == Decimal("150")

    assert results["partial"].original_value == Decimal("200")
    assert results["partial"].collected_value == Decimal("80")

    assert results["canceled"].original_value == Decimal("120")
    assert results["canceled"].collected_value == Decimal("20")

    assert results["assigned"].estimate
    assert results["assigned"].collected_value == Decimal("0")

    assert results["deferred"].count == 1
    assert results["deferred"].original_value == Decimal("5")

    assert results["hand_to_hand"].collected_value == Decimal("60")
    assert results["receiving_part"].collected_value == Decimal("10")
    assert results["return"].collected_value == Decimal("0")


def test_completed_is_exactly_delivered_plus_partial(mixed_snapshots):
    results = _by_id(aggregate_categories(mixed_snapshots))
    assert results["completed"].count == results["delivered"].count + results["partial"].count
    assert results["completed"].original_value == (
        results["delivered"].original_value + results["partial"].original_value
    )


def test_disjoint_categories_never_exceed_total(mixed_snapshots):
    results = _by_id(aggregate_categories(mixed_snapshots))
    disjoint = ["delivered", "partial", "canceled", "assigned", "hand_to_hand", "return"]
    assert sum(results[name].count for name in disjoint) <= results["total"].count


def test_aggregation_is_idempotent(mixed_snapshots):
    first = aggregate_categories(mixed_snapshots)
    second = aggregate_categories(mixed_snapshots)
    assert first == second


def test_empty_input_yields_zeroes():
    for result in aggregate_categories([]):
        assert result.count == 0
        assert result.original_value == Decimal("0")
        assert result.collected_value == Decimal("0")


def test_registry_accepts_new_categories_without_touching_aggregation(make_snapshot):
    registry = build_default_registry()
    registry.register(
        CategoryDefinition(
            "cash_delivered",
            "Cash Delivered",
            lambda snapshot: snapshot.status is OrderStatus.DELIVERED
            and "cash" in snapshot.payment_method,
        )
    )
    results = _by_id(
        registry.aggregate(
            [
                make_snapshot("delivered", total_fees=10, payment_method="cash"),
                make_snapshot("delivered", total_fees=10, payment_method="card"),
            ]
        )
    )
    assert results["cash_delivered"].count == 1
    assert list(results)[-1] == "cash_delivered"
    assert registry.describe()[-1]["label"] == "Cash Delivered"


def test_registry_lookup_and_validation():
    registry = CategoryRegistry()
    with pytest.raises(KeyError):
        registry.get("missing")
    with pytest.raises(ValueError):
        CategoryDefinition("bad", "Bad", lambda snapshot: True, original_field="customer_name")
