import itertools
import pathlib
import sys
from datetime import datetime, timezone
from decimal import Decimal

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.order_snapshots import CollectedBy, OrderSnapshot, OrderStatus


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture()
def make_snapshot():
    counter = itertools.count(1)

    def _factory(status="delivered", **overrides):
        raw = status.value if isinstance(status, OrderStatus) else status
        values = {
            "record_id": f"rec-{next(counter)}",
            "order_number": "ORD-1",
            "status": OrderStatus.parse(raw),
            "raw_status": str(raw).lower(),
            "created_at": utc(2024, 3, 10, 10, 0),
            "total_fees": Decimal("100"),
            "payment_method": "card",
        }
        for key in ("total_fees", "delivery_fee", "partial_paid_amount"):
            if key in overrides and overrides[key] is not None:
                overrides[key] = Decimal(str(overrides[key]))
        if "collected_by" in overrides and isinstance(overrides["collected_by"], str):
            overrides["collected_by"] = CollectedBy.parse(overrides["collected_by"])
        values.update(overrides)
        return OrderSnapshot(**values)

    return _factory
