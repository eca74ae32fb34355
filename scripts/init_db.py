#!/usr/bin/env python3
"""Create or upgrade the activation database and report what it holds."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dealtrigger.db import LIVE_ACTIVATIONS_SOURCE, get_connection, init_db
from dealtrigger.store import ActivationStore

TABLES = ("activations", "activation_events", "activation_reviews", LIVE_ACTIVATIONS_SOURCE)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the deal trigger activation database")
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite file path (defaults to DEALTRIGGER_DB_PATH, then [runtime] db_path in conf/app.toml)",
    )
    parser.add_argument(
        "--show-stats",
        action="store_true",
        help="Also print activation counts per status",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output JSON instead of text",
    )
    return parser.parse_args()


def row_counts(db_path: Path) -> dict[str, int]:
    conn = get_connection(db_path)
    try:
        return {name: int(conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()[0]) for name in TABLES}
    finally:
        conn.close()


def main() -> int:
    args = parse_args()
    db_path = init_db(db_path=args.db_path)
    report: dict[str, object] = {"db_path": str(db_path), "rows": row_counts(db_path)}
    if args.show_stats:
        report["status"] = ActivationStore(db_path).stats()

    if args.json:
        print(json.dumps(report, ensure_ascii=False, indent=2))
        return 0

    print(f"[OK] schema ready at {db_path}")
    for name, count in report["rows"].items():
        print(f"  {name:<22} {count}")
    if "status" in report:
        print("  status: " + " ".join(f"{key}={value}" for key, value in report["status"].items()))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
