import sqlite3
import logging
from typing import Iterable, Optional

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import DATA_ROOT, ensure_data_root
from services.order_snapshots import OrderSnapshot

ensure_data_root()

DATA_DIR = DATA_ROOT
DATABASE_FILE = DATA_DIR / 'routeledger.db'

ORDER_COLUMNS = (
    ('record_id', 'TEXT PRIMARY KEY NOT NULL'),
    ('order_number', 'TEXT NOT NULL'),
    ('status', "TEXT NOT NULL DEFAULT 'assigned'"),
    ('total_fees', "TEXT NOT NULL DEFAULT '0'"),
    ('delivery_fee', 'TEXT'),
    ('partial_paid_amount', 'TEXT'),
    ('payment_method', "TEXT DEFAULT ''"),
    ('payment_sub_type', 'TEXT'),
    ('collected_by', 'TEXT'),
    ('assigned_courier_id', 'TEXT'),
    ('original_courier_id', 'TEXT'),
    ('customer_name', 'TEXT'),
    ('created_at', 'TEXT NOT NULL'),
    ('assigned_at', 'TEXT'),
    ('updated_at', 'TEXT'),
    ('archived', 'INTEGER NOT NULL DEFAULT 0'),
    ('archived_at', 'TEXT'),
)

ORDER_INDEXES = {
    'idx_orders_created_at': 'created_at',
    'idx_orders_assigned_at': 'assigned_at',
    'idx_orders_updated_at': 'updated_at',
    'idx_orders_assigned_courier': 'assigned_courier_id',
    'idx_orders_original_courier': 'original_courier_id',
    'idx_orders_order_number': 'order_number',
}


def get_db_connection(database_file=None):
    """Establishes a connection to the SQLite database."""
    ensure_data_root()
    conn = sqlite3.connect(str(database_file or DATABASE_FILE), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA cache_size=10000;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_orders_schema(cursor: sqlite3.Cursor) -> None:
    """Create the orders table, backfilling columns older stores lack."""
    column_sql = ",\n            ".join(f"{name} {definition}" for name, definition in ORDER_COLUMNS)
    cursor.execute(f"""
        CREATE TABLE IF NOT EXISTS orders (
            {column_sql}
        );
    """)

    cursor.execute("PRAGMA table_info(orders)")
    existing = {row[1] for row in cursor.fetchall()}
    for name, definition in ORDER_COLUMNS:
        if name in existing:
            continue
        # SQLite cannot add PRIMARY KEY / NOT NULL-without-default columns
        definition = definition.replace(' PRIMARY KEY', '').replace(' NOT NULL', '')
        cursor.execute(f"ALTER TABLE orders ADD COLUMN {name} {definition}")
        logger.info("Added missing orders column %s", name)

    for index_name, column in ORDER_INDEXES.items():
        cursor.execute(f"CREATE INDEX IF NOT EXISTS {index_name} ON orders ({column})")


def insert_order_snapshots(conn: sqlite3.Connection, snapshots: Iterable[OrderSnapshot]) -> int:
    """Upsert snapshots by record id; returns the number written."""
    columns = [name for name, _ in ORDER_COLUMNS]
    placeholders = ", ".join("?" for _ in columns)
    updates = ", ".join(f"{name} = excluded.{name}" for name in columns if name != 'record_id')
    sql = (
        f"INSERT INTO orders ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT(record_id) DO UPDATE SET {updates}"
    )
    written = 0
    for snapshot in snapshots:
        row = snapshot.to_row()
        conn.execute(sql, [row[name] for name in columns])
        written += 1
    conn.commit()
    return written


def init_db(conn: Optional[sqlite3.Connection] = None):
    """Initializes the database schema."""
    owns_connection = conn is None
    conn = conn or get_db_connection()
    try:
        _ensure_orders_schema(conn.cursor())
        conn.commit()
    finally:
        if owns_connection:
            conn.close()
    logger.info("Database initialized.")

if __name__ == '__main__':
    init_db()
