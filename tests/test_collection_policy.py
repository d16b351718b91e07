from decimal import Decimal

import pytest

from services.collection_policy import collected_amount, estimated_collected, is_cash_collected
from services.order_snapshots import KNOWN_STATUSES, OrderSnapshot, OrderStatus


def test_delivered_cash_order_collects_total_fees(make_snapshot):
    snapshot = make_snapshot("delivered", total_fees=150, payment_method="cash")
    assert collected_amount(snapshot) == Decimal("150")


def test_delivered_card_order_collects_nothing(make_snapshot):
    snapshot = make_snapshot("delivered", total_fees=150, payment_method="card")
    assert collected_amount(snapshot) == Decimal("0")


def test_partial_order_collects_partial_paid_amount(make_snapshot):
    snapshot = make_snapshot("partial", total_fees=200, partial_paid_amount=80)
    assert collected_amount(snapshot) == Decimal("80")


def test_canceled_order_collects_delivery_fee(make_snapshot):
    snapshot = make_snapshot("canceled", total_fees=300, delivery_fee=25, payment_method="cash")
    assert collected_amount(snapshot) == Decimal("25")
    assert collected_amount(make_snapshot("canceled", delivery_fee=None)) == Decimal("0")


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"payment_method": "Cash on hand"}, True),
        ({"payment_method": "CASH"}, True),
        ({"payment_method": "cod"}, True),
        ({"payment_method": "COD"}, False),
        ({"payment_method": "valu"}, False),
        ({"payment_method": "", "collected_by": "courier", "payment_sub_type": "on_hand"}, True),
        ({"payment_method": "card", "collected_by": "courier", "payment_sub_type": "wallet"}, False),
        ({"payment_method": "card", "collected_by": None, "payment_sub_type": "on_hand"}, False),
    ],
)
def test_cash_collection_heuristic(make_snapshot, overrides, expected):
    assert is_cash_collected(make_snapshot("delivered", **overrides)) is expected


@pytest.mark.parametrize("status", ["delivered", "hand_to_hand"])
@pytest.mark.parametrize("method", ["cash", "card", "cod", "instapay"])
def test_collected_never_exceeds_total_for_finalised_statuses(make_snapshot, status, method):
    snapshot = make_snapshot(status, total_fees="99.95", payment_method=method)
    amount = collected_amount(snapshot)
    assert amount <= snapshot.total_fees
    assert (amount == snapshot.total_fees) is is_cash_collected(snapshot)


def test_every_status_branch_is_reachable_and_unknown_defaults_to_zero(make_snapshot):
    expected = {
        OrderStatus.ASSIGNED: Decimal("0"),
        OrderStatus.DELIVERED: Decimal("100"),
        OrderStatus.PARTIAL: Decimal("40"),
        OrderStatus.CANCELED: Decimal("15"),
        OrderStatus.HAND_TO_HAND: Decimal("100"),
        OrderStatus.RETURN: Decimal("0"),
        OrderStatus.RECEIVING_PART: Decimal("40"),
    }
    assert set(expected) == set(KNOWN_STATUSES)
    for status in KNOWN_STATUSES:
        snapshot = make_snapshot(
            status.value,
            payment_method="cash",
            partial_paid_amount=40,
            delivery_fee=15,
        )
        assert snapshot.status is status
        assert collected_amount(snapshot) == expected[status]

    mystery = make_snapshot("lost_in_transit", payment_method="cash", partial_paid_amount=40)
    assert mystery.status is OrderStatus.UNKNOWN
    assert mystery.status_key == "lost_in_transit"
    assert collected_amount(mystery) == Decimal("0")
    assert estimated_collected(mystery) == Decimal("0")


def test_estimated_collection_is_optimistic_for_delivered_and_partial_only(make_snapshot):
    card_delivery = make_snapshot("delivered", total_fees=150, payment_method="card")
    partial = make_snapshot("partial", total_fees=200, partial_paid_amount=80)
    assigned = make_snapshot("assigned", total_fees=120)

    assert estimated_collected(card_delivery) == Decimal("150")
    assert collected_amount(card_delivery) == Decimal("0")
    assert estimated_collected(partial) == Decimal("200")
    assert estimated_collected(assigned) == Decimal("0")


def test_missing_numeric_fields_decode_to_zero():
    snapshot = OrderSnapshot.from_row(
        {
            "id": "r-1",
            "order_id": "A-100",
            "status": "Partial",
            "total_order_fees": None,
            "partial_paid_amount": "not-a-number",
            "created_at": "2024-03-10T10:00:00Z",
        }
    )
    assert snapshot.order_number == "A-100"
    assert snapshot.status is OrderStatus.PARTIAL
    assert snapshot.total_fees == Decimal("0")
    assert collected_amount(snapshot) == Decimal("0")
