from datetime import datetime, timezone
from decimal import Decimal

import pytest

from services.lifecycle import (
    FinalOutcome,
    analyze_returned_lifecycles,
    classify_outcome,
    lifecycle_in_scope,
    percentage,
    select_lifecycles,
)
from services.order_snapshots import KNOWN_STATUSES, OrderStatus
from services.snapshot_merge import group_lifecycles
from services.time_windows import day_window


def _at(day, hour=12):
    return datetime(2024, 3, day, hour, tzinfo=timezone.utc)


def _lifecycle(make_snapshot, order_number, statuses, start_day=10, **overrides):
    return [
        make_snapshot(status, order_number=order_number, updated_at=_at(start_day + index), **overrides)
        for index, status in enumerate(statuses)
    ]


def test_return_then_delivered_is_recovered(make_snapshot):
    lifecycles = group_lifecycles(_lifecycle(make_snapshot, "A", ["return", "return", "delivered"]))
    summary = analyze_returned_lifecycles(lifecycles)

    assert summary.stats.returned_then_delivered == 1
    assert summary.stats.total_returned_orders == 1
    assert summary.stats.delivered_percentage == Decimal("100")
    (detail,) = summary.details
    assert detail.final_outcome is FinalOutcome.RECOVERED_DELIVERED
    assert detail.current_status == "delivered"
    assert [entry.status for entry in detail.status_history] == ["return", "return", "delivered"]


@pytest.mark.parametrize(
    "final, outcome",
    [
        ("delivered", FinalOutcome.RECOVERED_DELIVERED),
        ("canceled", FinalOutcome.LOST_CANCELED),
        ("partial", FinalOutcome.PARTIALLY_RECOVERED),
        ("return", FinalOutcome.STILL_RETURNED),
        ("assigned", FinalOutcome.STILL_RETURNED),
        ("hand_to_hand", FinalOutcome.STILL_RETURNED),
        ("somewhere_else", FinalOutcome.STILL_RETURNED),
    ],
)
def test_outcome_flags_are_mutually_exclusive(make_snapshot, final, outcome):
    lifecycles = group_lifecycles(_lifecycle(make_snapshot, "B", ["assigned", "return", final]))
    (detail,) = analyze_returned_lifecycles(lifecycles).details

    flags = [detail.was_delivered, detail.was_canceled, detail.was_partial, detail.still_returned]
    assert detail.final_outcome is outcome
    assert flags.count(True) == 1


def test_classifier_covers_the_whole_vocabulary():
    outcomes = {status: classify_outcome(status) for status in KNOWN_STATUSES}
    assert outcomes[OrderStatus.DELIVERED] is FinalOutcome.RECOVERED_DELIVERED
    assert outcomes[OrderStatus.CANCELED] is FinalOutcome.LOST_CANCELED
    assert outcomes[OrderStatus.PARTIAL] is FinalOutcome.PARTIALLY_RECOVERED
    assert classify_outcome(OrderStatus.UNKNOWN) is FinalOutcome.STILL_RETURNED


def test_never_returned_orders_are_ignored_and_percentages_guard_zero(make_snapshot):
    lifecycles = group_lifecycles(_lifecycle(make_snapshot, "C", ["assigned", "delivered"]))
    summary = analyze_returned_lifecycles(lifecycles)

    assert summary.details == ()
    assert summary.stats.total_returned_orders == 0
    assert summary.stats.delivered_percentage == Decimal("0")
    assert percentage(3, 0) == Decimal("0")


def test_details_use_first_snapshot_fees_and_sort_newest_first(make_snapshot):
    snapshots = (
        _lifecycle(make_snapshot, "OLD", ["return", "canceled"], start_day=1, customer_name="Mona")
        + _lifecycle(make_snapshot, "NEW", ["return", "partial"], start_day=5)
    )
    snapshots[0] = make_snapshot(
        "return", order_number="OLD", updated_at=_at(1), total_fees=310, customer_name="Mona"
    )
    summary = analyze_returned_lifecycles(group_lifecycles(snapshots))

    assert [detail.order_number for detail in summary.details] == ["NEW", "OLD"]
    old = summary.details[1]
    assert old.total_fees == Decimal("310")
    assert old.customer_name == "Mona"
    assert summary.details[0].customer_name == "Unknown"
    assert summary.stats.returned_then_canceled == 1
    assert summary.stats.returned_then_partial == 1
    assert summary.stats.canceled_percentage == Decimal("50")


def test_inclusion_requires_activity_or_return_inside_window(make_snapshot):
    window = day_window("2024-03-12")
    recovered_later = group_lifecycles(
        _lifecycle(make_snapshot, "R", ["return", "delivered"], start_day=11)
    )[0]
    returned_long_ago = group_lifecycles(
        _lifecycle(make_snapshot, "Q", ["assigned", "return"], start_day=1)
    )[0]
    quiet = group_lifecycles(_lifecycle(make_snapshot, "S", ["assigned"], start_day=20))[0]

    assert lifecycle_in_scope(recovered_later, window)
    assert not lifecycle_in_scope(returned_long_ago, window)
    assert not lifecycle_in_scope(quiet, window)
    assert select_lifecycles([recovered_later, returned_long_ago, quiet], window) == [recovered_later]
