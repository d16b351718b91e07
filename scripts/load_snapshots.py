"""Load order snapshots from a JSON export into the local RouteLedger store."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import get_db_connection, init_db, insert_order_snapshots  # noqa: E402
from services.order_snapshots import OrderSnapshot  # noqa: E402


def _read_rows(path: Path) -> list:
    with open(path, "r") as f:
        blob = json.load(f)
    if isinstance(blob, dict):
        blob = blob.get("orders", [])
    if not isinstance(blob, list):
        raise ValueError(f"{path} must contain a list of orders or an object with an 'orders' list")
    return blob


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("source", type=Path, help="JSON file with order rows")
    args = parser.parse_args(argv)

    try:
        snapshots = [OrderSnapshot.from_row(row) for row in _read_rows(args.source)]
    except (OSError, ValueError) as exc:
        print(f"[RouteLedger] Could not read {args.source}: {exc}")
        return 1

    init_db()
    conn = get_db_connection()
    try:
        written = insert_order_snapshots(conn, snapshots)
    finally:
        conn.close()
    print(f"[RouteLedger] Loaded {written} order snapshots.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
