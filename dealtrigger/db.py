from __future__ import annotations

import sqlite3
from pathlib import Path

from .config import load_app_config
from .runtime_paths import resolve_db_file

SCHEMA_PATH = Path(__file__).with_name("sql").joinpath("schema_v1.sql")
LIVE_ACTIVATIONS_SOURCE = "v_activations_live"


def resolve_db_path(db_path: str | Path | None = None) -> Path:
    if db_path is not None:
        return Path(db_path)
    return resolve_db_file()


def get_connection(
    db_path: str | Path | None = None,
    *,
    busy_timeout_ms: int | None = None,
) -> sqlite3.Connection:
    path = resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if busy_timeout_ms is None:
        busy_timeout_ms = load_app_config().activation.busy_timeout_ms

    conn = sqlite3.connect(path, timeout=busy_timeout_ms / 1000.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
    return conn


def _refresh_views(conn: sqlite3.Connection) -> None:
    conn.execute(f"DROP VIEW IF EXISTS {LIVE_ACTIVATIONS_SOURCE}")
    conn.execute(
        f"""
        CREATE VIEW {LIVE_ACTIVATIONS_SOURCE} AS
        SELECT * FROM activations WHERE status = 'TRIGGERED'
        """
    )


def init_db(db_path: str | Path | None = None) -> Path:
    path = resolve_db_path(db_path)
    if not SCHEMA_PATH.exists():
        raise FileNotFoundError(f"schema file not found: {SCHEMA_PATH}")

    schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
    conn = get_connection(path)
    try:
        conn.executescript(schema_sql)
        conn.execute("BEGIN IMMEDIATE")
        _refresh_views(conn)
        conn.commit()
    finally:
        conn.close()
    return path
