from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from dealtrigger.db import LIVE_ACTIVATIONS_SOURCE, get_connection, init_db


def test_init_db_creates_core_tables(tmp_path: Path) -> None:
    db_path = tmp_path / "dealtrigger_test.sqlite3"
    init_db(db_path=db_path)

    conn = get_connection(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')").fetchall()
        names = {r[0] for r in rows}
    finally:
        conn.close()

    assert {"activations", "activation_events", "activation_reviews", LIVE_ACTIVATIONS_SOURCE}.issubset(names)


def test_init_db_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "dealtrigger_test.sqlite3"
    init_db(db_path=db_path)
    init_db(db_path=db_path)


def test_init_db_replaces_stale_live_view(tmp_path: Path) -> None:
    db_path = tmp_path / "stale_view.sqlite3"
    init_db(db_path=db_path)
    conn = get_connection(db_path)
    try:
        conn.execute(f"DROP VIEW {LIVE_ACTIVATIONS_SOURCE}")
        conn.execute(f"CREATE VIEW {LIVE_ACTIVATIONS_SOURCE} AS SELECT * FROM activations")
        _insert(conn)
        _insert(
            conn,
            activation_key="validation:" + "c" * 32,
            game_id="game-2",
            status="PENDING",
            triggered_at=None,
            expires_at=None,
        )
        conn.commit()
    finally:
        conn.close()

    init_db(db_path=db_path)
    conn = get_connection(db_path)
    try:
        rows = conn.execute(f"SELECT game_id, status FROM {LIVE_ACTIVATIONS_SOURCE}").fetchall()
    finally:
        conn.close()
    assert [(row["game_id"], row["status"]) for row in rows] == [("game-1", "TRIGGERED")]


def _insert(conn: sqlite3.Connection, **overrides: object) -> None:
    row: dict[str, object] = {
        "activation_key": "validation:" + "a" * 32,
        "deal_id": "deal-1",
        "game_id": "game-1",
        "status": "TRIGGERED",
        "ttl_seconds": 60,
        "triggered_at": "2026-05-01T22:00:00Z",
        "expires_at": "2026-05-01T22:01:00Z",
        "created_at": "2026-05-01T22:00:00Z",
        "updated_at": "2026-05-01T22:00:00Z",
    }
    row.update(overrides)
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    conn.execute(f"INSERT INTO activations ({columns}) VALUES ({placeholders})", tuple(row.values()))


def test_schema_rejects_inverted_window_and_duplicate_pair(tmp_path: Path) -> None:
    db_path = tmp_path / "constraints.sqlite3"
    init_db(db_path=db_path)
    conn = get_connection(db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            _insert(conn, expires_at="2026-05-01T21:59:00Z")
        with pytest.raises(sqlite3.IntegrityError):
            _insert(conn, status="TRIGGERED", triggered_at=None, expires_at=None)
        _insert(conn)
        with pytest.raises(sqlite3.IntegrityError):
            _insert(conn, activation_key="validation:" + "b" * 32)
        conn.rollback()
    finally:
        conn.close()
