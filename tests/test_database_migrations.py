import sqlite3
from datetime import datetime, timezone
from decimal import Decimal

from database import _ensure_orders_schema, insert_order_snapshots
from services.order_snapshots import OrderSnapshot, OrderStatus


def test_ensure_orders_schema_backfills_missing_columns():
    conn = sqlite3.connect(":memory:")
    cursor = conn.cursor()

    cursor.execute(
        """
        CREATE TABLE orders (
            record_id TEXT PRIMARY KEY NOT NULL,
            order_number TEXT NOT NULL,
            status TEXT NOT NULL,
            total_fees TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        """
    )
    cursor.execute(
        "INSERT INTO orders (record_id, order_number, status, total_fees, created_at) VALUES (?, ?, ?, ?, ?)",
        ("r-1", "A-1", "delivered", "150", "2024-03-10T10:00:00.000000Z"),
    )

    _ensure_orders_schema(cursor)

    cursor.execute("PRAGMA table_info(orders)")
    column_names = {row[1] for row in cursor.fetchall()}
    assert {"original_courier_id", "assigned_at", "archived", "partial_paid_amount"} <= column_names

    cursor.execute("SELECT archived, original_courier_id FROM orders")
    assert [tuple(row) for row in cursor.fetchall()] == [(0, None)]

    cursor.execute("PRAGMA index_list(orders)")
    index_names = {row[1] for row in cursor.fetchall()}
    assert "idx_orders_updated_at" in index_names
    assert "idx_orders_original_courier" in index_names

    conn.close()


def test_insert_order_snapshots_upserts_by_record_id():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    _ensure_orders_schema(conn.cursor())
    created = datetime(2024, 3, 10, 10, tzinfo=timezone.utc)

    first = OrderSnapshot("r-1", "A-1", OrderStatus.ASSIGNED, created, total_fees=Decimal("99.5"))
    second = OrderSnapshot(
        "r-1", "A-1", OrderStatus.DELIVERED, created, total_fees=Decimal("99.5"), payment_method="cash"
    )
    assert insert_order_snapshots(conn, [first]) == 1
    insert_order_snapshots(conn, [second])

    rows = conn.execute("SELECT * FROM orders").fetchall()
    assert len(rows) == 1
    restored = OrderSnapshot.from_row(rows[0])
    assert restored.status is OrderStatus.DELIVERED
    assert restored.total_fees == Decimal("99.5")
    assert restored.created_at == created
    assert restored.payment_method == "cash"
    conn.close()
