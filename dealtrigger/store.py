from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from .authz import Permission, Principal, require_permission
from .config import MAX_ACTIVATION_TTL_SECONDS, load_app_config
from .db import LIVE_ACTIVATIONS_SOURCE, get_connection, init_db, resolve_db_path
from .errors import ActivationNotFoundError, InvalidTransitionError, StorageUnavailableError
from .keys import key_for
from .models import (
    Activation,
    ActivationAuditEvent,
    ActivationResult,
    ReviewOutcome,
    ReviewRecord,
)

ALLOWED_TRANSITIONS: set[tuple[str, str]] = {
    ("PENDING", "TRIGGERED"),
    ("TRIGGERED", "EXPIRED"),
    ("TRIGGERED", "REVERSED"),
    ("PENDING", "REVERSED"),
}
REVERSIBLE_STATUSES: tuple[str, ...] = ("PENDING", "TRIGGERED")
MANUAL_OVERRIDE_SIGNATURE = "manual-override"
SYSTEM_ACTOR = "system"

_TRANSITION_COLUMNS: set[str] = {
    "triggered_at",
    "expires_at",
    "reversed_at",
    "reversed_by",
    "reversal_reason",
    "triggered_by",
}
_TRANSIENT_ERROR_MARKERS: tuple[str, ...] = ("locked", "busy")
_LOGGER = logging.getLogger("dealtrigger.store")

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return _to_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_ERROR_MARKERS)


def _validate_ttl(ttl_seconds: int) -> int:
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int):
        raise ValueError(f"ttl_seconds must be an integer: {ttl_seconds!r}")
    if ttl_seconds < 0:
        raise ValueError(f"ttl_seconds must be >= 0: {ttl_seconds}")
    if ttl_seconds > MAX_ACTIVATION_TTL_SECONDS:
        raise ValueError(f"ttl_seconds must be <= {MAX_ACTIVATION_TTL_SECONDS}: {ttl_seconds}")
    return ttl_seconds


def _to_activation(row: sqlite3.Row) -> Activation:
    return Activation(
        activation_key=row["activation_key"],
        deal_id=row["deal_id"],
        game_id=row["game_id"],
        condition_signature=row["condition_signature"],
        status=row["status"],
        ttl_seconds=int(row["ttl_seconds"]),
        triggered_at=parse_iso(row["triggered_at"]),
        expires_at=parse_iso(row["expires_at"]),
        reversed_at=parse_iso(row["reversed_at"]),
        reversed_by=row["reversed_by"],
        reversal_reason=row["reversal_reason"],
        triggered_by=row["triggered_by"],
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
        version=int(row["version"]),
    )


class ActivationStore:
    """Durable activation records with an at-most-once trigger per (deal, game).

    Every public operation runs in its own ``BEGIN IMMEDIATE`` transaction on a
    fresh connection, so concurrent callers in different threads or processes
    are serialized by SQLite. Transient lock errors are retried with the same
    arguments; anything else surfaces as ``StorageUnavailableError``.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        busy_timeout_ms: int | None = None,
        default_ttl_seconds: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        cfg = load_app_config().activation
        self._db_path = resolve_db_path(db_path)
        self._max_retries = cfg.max_retries if max_retries is None else max(0, int(max_retries))
        self._retry_backoff_seconds = (
            cfg.retry_backoff_seconds if retry_backoff_seconds is None else max(0.0, float(retry_backoff_seconds))
        )
        self._busy_timeout_ms = cfg.busy_timeout_ms if busy_timeout_ms is None else int(busy_timeout_ms)
        self._default_ttl_seconds = (
            cfg.default_ttl_seconds if default_ttl_seconds is None else _validate_ttl(default_ttl_seconds)
        )
        self._clock = clock or utcnow
        init_db(self._db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def default_ttl_seconds(self) -> int:
        return self._default_ttl_seconds

    def _conn(self) -> sqlite3.Connection:
        return get_connection(self._db_path, busy_timeout_ms=self._busy_timeout_ms)

    def _now(self, now: datetime | None) -> datetime:
        return _to_utc(now or self._clock()).replace(microsecond=0)

    def _run(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        attempt = 0
        while True:
            conn: sqlite3.Connection | None = None
            try:
                conn = self._conn()
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except sqlite3.OperationalError as exc:
                if _is_transient(exc) and attempt < self._max_retries:
                    attempt += 1
                    _LOGGER.warning(
                        "store busy, retrying operation=%s attempt=%s max_retries=%s error=%s",
                        operation,
                        attempt,
                        self._max_retries,
                        exc,
                    )
                    time.sleep(self._retry_backoff_seconds * attempt)
                    continue
                _LOGGER.error("store operation failed operation=%s attempts=%s error=%s", operation, attempt + 1, exc)
                raise StorageUnavailableError(f"activation store unavailable during {operation}: {exc}") from exc
            except sqlite3.Error as exc:
                _LOGGER.error("store operation failed operation=%s error=%s", operation, exc)
                raise StorageUnavailableError(f"activation store unavailable during {operation}: {exc}") from exc
            finally:
                if conn is not None:
                    if conn.in_transaction:
                        conn.rollback()
                    conn.close()

    def _append_event(
        self,
        conn: sqlite3.Connection,
        activation_key: str,
        event_type: str,
        detail: str,
        ts: datetime,
        *,
        actor: str | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO activation_events (activation_key, timestamp, event_type, actor, detail)
            VALUES (?, ?, ?, ?, ?)
            """,
            (activation_key, to_iso(ts), event_type, actor, detail),
        )

    def _get_row(self, conn: sqlite3.Connection, activation_key: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM activations WHERE activation_key = ?",
            (activation_key,),
        ).fetchone()

    def _require_row(self, conn: sqlite3.Connection, activation_key: str) -> sqlite3.Row:
        row = self._get_row(conn, activation_key)
        if row is None:
            raise ActivationNotFoundError(activation_key)
        return row

    def _get_conflicting_row(
        self,
        conn: sqlite3.Connection,
        activation_key: str,
        deal_id: str,
        game_id: str,
    ) -> sqlite3.Row | None:
        return conn.execute(
            """
            SELECT * FROM activations
            WHERE activation_key = ? OR (deal_id = ? AND game_id = ?)
            ORDER BY CASE WHEN activation_key = ? THEN 0 ELSE 1 END
            LIMIT 1
            """,
            (activation_key, deal_id, game_id, activation_key),
        ).fetchone()

    def _transition(
        self,
        conn: sqlite3.Connection,
        activation_key: str,
        from_status: str,
        to_status: str,
        now: datetime,
        *,
        actor: str | None,
        detail: str,
        updates: dict[str, Any] | None = None,
    ) -> sqlite3.Row:
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            raise InvalidTransitionError(activation_key, from_status, to_status)
        updates = dict(updates or {})
        unknown = set(updates) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"unsupported transition columns: {sorted(unknown)}")

        assignments = ["status = ?", "updated_at = ?", "version = version + 1"]
        params: list[Any] = [to_status, to_iso(now)]
        for column, value in updates.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend([activation_key, from_status])
        cur = conn.execute(
            f"""
            UPDATE activations
            SET {", ".join(assignments)}
            WHERE activation_key = ? AND status = ?
            """,
            params,
        )
        if cur.rowcount != 1:
            current = self._require_row(conn, activation_key)
            raise InvalidTransitionError(activation_key, str(current["status"]), to_status)

        self._append_event(conn, activation_key, to_status, detail, now, actor=actor)
        _LOGGER.info(
            "activation transition key=%s from=%s to=%s actor=%s",
            activation_key,
            from_status,
            to_status,
            actor,
        )
        return self._require_row(conn, activation_key)

    def _expire_if_needed(self, conn: sqlite3.Connection, row: sqlite3.Row, now: datetime) -> sqlite3.Row:
        if row["status"] != "TRIGGERED":
            return row
        expires_at = parse_iso(row["expires_at"])
        if expires_at is None or now <= expires_at:
            return row
        return self._transition(
            conn,
            row["activation_key"],
            "TRIGGERED",
            "EXPIRED",
            now,
            actor=SYSTEM_ACTOR,
            detail=f"ttl elapsed expires_at={row['expires_at']}",
        )

    def _expire_due(self, conn: sqlite3.Connection, now: datetime, *, deal_id: str | None = None) -> int:
        query = "SELECT * FROM activations WHERE status = 'TRIGGERED' AND expires_at < ?"
        params: list[Any] = [to_iso(now)]
        if deal_id is not None:
            query += " AND deal_id = ?"
            params.append(deal_id)
        rows = conn.execute(query, params).fetchall()
        for row in rows:
            self._expire_if_needed(conn, row, now)
        return len(rows)

    def _insert_pending(
        self,
        conn: sqlite3.Connection,
        *,
        activation_key: str,
        deal_id: str,
        game_id: str,
        ttl_seconds: int,
        condition_signature: str | None,
        actor: str | None,
        now: datetime,
    ) -> bool:
        cur = conn.execute(
            """
            INSERT INTO activations (
              activation_key, deal_id, game_id, condition_signature, status,
              ttl_seconds, triggered_by, created_at, updated_at, version
            ) VALUES (?, ?, ?, ?, 'PENDING', ?, ?, ?, ?, 1)
            ON CONFLICT DO NOTHING
            """,
            (
                activation_key,
                deal_id,
                game_id,
                condition_signature,
                ttl_seconds,
                actor,
                to_iso(now),
                to_iso(now),
            ),
        )
        if cur.rowcount != 1:
            return False
        self._append_event(
            conn,
            activation_key,
            "PENDING",
            f"deal_id={deal_id} game_id={game_id} ttl_seconds={ttl_seconds}",
            now,
            actor=actor,
        )
        return True

    def _trigger(
        self,
        conn: sqlite3.Connection,
        activation_key: str,
        ttl_seconds: int,
        now: datetime,
        *,
        actor: str | None,
        detail: str,
    ) -> sqlite3.Row:
        return self._transition(
            conn,
            activation_key,
            "PENDING",
            "TRIGGERED",
            now,
            actor=actor,
            detail=detail,
            updates={
                "triggered_at": to_iso(now),
                "expires_at": to_iso(now + timedelta(seconds=ttl_seconds)),
            },
        )

    def _insert(
        self,
        activation_key: str,
        deal_id: str,
        game_id: str,
        ttl_seconds: int | None,
        *,
        condition_signature: str | None,
        actor: str | None,
        now: datetime | None,
        trigger: bool,
    ) -> ActivationResult:
        ttl = self._default_ttl_seconds if ttl_seconds is None else _validate_ttl(ttl_seconds)
        ts = self._now(now)

        def _op(conn: sqlite3.Connection) -> ActivationResult:
            created = self._insert_pending(
                conn,
                activation_key=activation_key,
                deal_id=deal_id,
                game_id=game_id,
                ttl_seconds=ttl,
                condition_signature=condition_signature,
                actor=actor,
                now=ts,
            )
            if not created:
                existing = self._get_conflicting_row(conn, activation_key, deal_id, game_id)
                if existing is None:
                    raise StorageUnavailableError(f"activation insert conflicted without a visible row: {activation_key}")
                existing = self._expire_if_needed(conn, existing, ts)
                _LOGGER.info(
                    "activation already handled key=%s deal_id=%s game_id=%s existing_key=%s status=%s",
                    activation_key,
                    deal_id,
                    game_id,
                    existing["activation_key"],
                    existing["status"],
                )
                return ActivationResult(created=False, activation=_to_activation(existing))

            row = self._get_row(conn, activation_key)
            if trigger:
                row = self._trigger(
                    conn,
                    activation_key,
                    ttl,
                    ts,
                    actor=actor,
                    detail=f"condition_signature={condition_signature or '-'}",
                )
            return ActivationResult(created=True, activation=_to_activation(row))

        return self._run("try_activate" if trigger else "reserve", _op)

    def try_activate(
        self,
        activation_key: str,
        deal_id: str,
        game_id: str,
        ttl_seconds: int | None = None,
        *,
        condition_signature: str | None = None,
        triggered_by: str | None = SYSTEM_ACTOR,
        now: datetime | None = None,
    ) -> ActivationResult:
        """Record and trigger an activation unless one already exists.

        ``created`` is true for exactly one caller per key and per
        ``(deal_id, game_id)``. Every other caller gets the existing record.
        """
        return self._insert(
            activation_key,
            deal_id,
            game_id,
            ttl_seconds,
            condition_signature=condition_signature,
            actor=triggered_by,
            now=now,
            trigger=True,
        )

    def reserve(
        self,
        activation_key: str,
        deal_id: str,
        game_id: str,
        ttl_seconds: int | None = None,
        *,
        condition_signature: str | None = None,
        reserved_by: str | None = SYSTEM_ACTOR,
        now: datetime | None = None,
    ) -> ActivationResult:
        return self._insert(
            activation_key,
            deal_id,
            game_id,
            ttl_seconds,
            condition_signature=condition_signature,
            actor=reserved_by,
            now=now,
            trigger=False,
        )

    def get(self, activation_key: str, *, now: datetime | None = None) -> Activation | None:
        ts = self._now(now)

        def _op(conn: sqlite3.Connection) -> Activation | None:
            row = self._get_row(conn, activation_key)
            if row is None:
                return None
            return _to_activation(self._expire_if_needed(conn, row, ts))

        return self._run("get", _op)

    def get_for_game(self, deal_id: str, game_id: str, *, now: datetime | None = None) -> Activation | None:
        ts = self._now(now)

        def _op(conn: sqlite3.Connection) -> Activation | None:
            row = conn.execute(
                "SELECT * FROM activations WHERE deal_id = ? AND game_id = ?",
                (deal_id, game_id),
            ).fetchone()
            if row is None:
                return None
            return _to_activation(self._expire_if_needed(conn, row, ts))

        return self._run("get_for_game", _op)

    def list_active(self, *, now: datetime | None = None) -> list[Activation]:
        ts = self._now(now)

        def _op(conn: sqlite3.Connection) -> list[Activation]:
            self._expire_due(conn, ts)
            rows = conn.execute(
                f"SELECT * FROM {LIVE_ACTIVATIONS_SOURCE} ORDER BY triggered_at DESC, activation_key ASC"
            ).fetchall()
            return [_to_activation(row) for row in rows]

        return self._run("list_active", _op)

    def list_for_deal(self, deal_id: str, *, now: datetime | None = None) -> list[Activation]:
        ts = self._now(now)

        def _op(conn: sqlite3.Connection) -> list[Activation]:
            self._expire_due(conn, ts, deal_id=deal_id)
            rows = conn.execute(
                "SELECT * FROM activations WHERE deal_id = ? ORDER BY created_at DESC, activation_key ASC",
                (deal_id,),
            ).fetchall()
            return [_to_activation(row) for row in rows]

        return self._run("list_for_deal", _op)

    def events(self, activation_key: str) -> list[ActivationAuditEvent]:
        def _op(conn: sqlite3.Connection) -> list[ActivationAuditEvent]:
            rows = conn.execute(
                """
                SELECT activation_key, timestamp, event_type, actor, detail
                FROM activation_events
                WHERE activation_key = ?
                ORDER BY id ASC
                """,
                (activation_key,),
            ).fetchall()
            return [
                ActivationAuditEvent(
                    activation_key=row["activation_key"],
                    timestamp=parse_iso(row["timestamp"]),
                    event_type=row["event_type"],
                    actor=row["actor"],
                    detail=row["detail"],
                )
                for row in rows
            ]

        return self._run("events", _op)

    def reviews(self, activation_key: str) -> list[ReviewRecord]:
        def _op(conn: sqlite3.Connection) -> list[ReviewRecord]:
            rows = conn.execute(
                """
                SELECT activation_key, reviewer_id, outcome, note, reviewed_at
                FROM activation_reviews
                WHERE activation_key = ?
                ORDER BY id ASC
                """,
                (activation_key,),
            ).fetchall()
            return [
                ReviewRecord(
                    activation_key=row["activation_key"],
                    reviewer_id=row["reviewer_id"],
                    outcome=row["outcome"],
                    note=row["note"],
                    reviewed_at=parse_iso(row["reviewed_at"]),
                )
                for row in rows
            ]

        return self._run("reviews", _op)

    def stats(self) -> dict[str, int]:
        def _op(conn: sqlite3.Connection) -> dict[str, int]:
            counts = {"PENDING": 0, "TRIGGERED": 0, "EXPIRED": 0, "REVERSED": 0}
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM activations GROUP BY status"):
                counts[str(row["status"])] = int(row["n"])
            counts["total"] = sum(counts.values())
            return counts

        return self._run("stats", _op)

    def sweep_expired(self, *, now: datetime | None = None) -> int:
        ts = self._now(now)
        expired = self._run("sweep_expired", lambda conn: self._expire_due(conn, ts))
        if expired:
            _LOGGER.info("expired activations swept count=%s now=%s", expired, to_iso(ts))
        return expired

    def reset(self) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM activation_reviews")
            conn.execute("DELETE FROM activation_events")
            conn.execute("DELETE FROM activations")

        self._run("reset", _op)

    def read_activation(self, principal: Principal, activation_key: str, *, now: datetime | None = None) -> Activation:
        require_permission(principal, Permission.PROMOTIONS_READ)
        activation = self.get(activation_key, now=now)
        if activation is None:
            raise ActivationNotFoundError(activation_key)
        return activation

    def read_events(self, principal: Principal, activation_key: str) -> list[ActivationAuditEvent]:
        require_permission(principal, Permission.EVIDENCE_READ)
        if self.get(activation_key) is None:
            raise ActivationNotFoundError(activation_key)
        return self.events(activation_key)

    def reverse(
        self,
        principal: Principal,
        activation_key: str,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> Activation:
        require_permission(principal, Permission.VALIDATION_OVERRIDE)
        reason_text = str(reason or "").strip()
        if not reason_text:
            raise ValueError("reversal reason cannot be empty")
        ts = self._now(now)

        def _op(conn: sqlite3.Connection) -> Activation:
            row = self._expire_if_needed(conn, self._require_row(conn, activation_key), ts)
            status = str(row["status"])
            if status not in REVERSIBLE_STATUSES:
                raise InvalidTransitionError(activation_key, status, "REVERSED")
            updated = self._transition(
                conn,
                activation_key,
                status,
                "REVERSED",
                ts,
                actor=principal.principal_id,
                detail=f"reason={reason_text}",
                updates={
                    "reversed_at": to_iso(ts),
                    "reversed_by": principal.principal_id,
                    "reversal_reason": reason_text,
                },
            )
            return _to_activation(updated)

        return self._run("reverse", _op)

    def force_trigger(
        self,
        principal: Principal,
        deal_id: str,
        game_id: str,
        ttl_seconds: int | None = None,
        *,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ActivationResult:
        """Trigger a (deal, game) pair by hand.

        A reserved ``PENDING`` row is completed in place. Without a row a new
        one is created under an override key. A row already triggered is
        returned unchanged, and a terminal one cannot be revived.
        """
        require_permission(principal, Permission.VALIDATION_OVERRIDE)
        ttl = None if ttl_seconds is None else _validate_ttl(ttl_seconds)
        ts = self._now(now)
        detail = f"manual override reason={(reason or '').strip() or '-'}"

        def _op(conn: sqlite3.Connection) -> ActivationResult:
            row = conn.execute(
                "SELECT * FROM activations WHERE deal_id = ? AND game_id = ?",
                (deal_id, game_id),
            ).fetchone()
            if row is None:
                activation_key = key_for(deal_id, game_id, MANUAL_OVERRIDE_SIGNATURE)
                effective_ttl = self._default_ttl_seconds if ttl is None else ttl
                self._insert_pending(
                    conn,
                    activation_key=activation_key,
                    deal_id=deal_id,
                    game_id=game_id,
                    ttl_seconds=effective_ttl,
                    condition_signature=MANUAL_OVERRIDE_SIGNATURE,
                    actor=principal.principal_id,
                    now=ts,
                )
                updated = self._trigger(
                    conn, activation_key, effective_ttl, ts, actor=principal.principal_id, detail=detail
                )
                return ActivationResult(created=True, activation=_to_activation(updated))

            row = self._expire_if_needed(conn, row, ts)
            status = str(row["status"])
            if status == "TRIGGERED":
                return ActivationResult(created=False, activation=_to_activation(row))
            if status != "PENDING":
                raise InvalidTransitionError(row["activation_key"], status, "TRIGGERED")
            effective_ttl = int(row["ttl_seconds"]) if ttl is None else ttl
            if effective_ttl != int(row["ttl_seconds"]):
                conn.execute(
                    "UPDATE activations SET ttl_seconds = ? WHERE activation_key = ?",
                    (effective_ttl, row["activation_key"]),
                )
            conn.execute(
                "UPDATE activations SET triggered_by = ? WHERE activation_key = ?",
                (principal.principal_id, row["activation_key"]),
            )
            updated = self._trigger(
                conn, row["activation_key"], effective_ttl, ts, actor=principal.principal_id, detail=detail
            )
            return ActivationResult(created=True, activation=_to_activation(updated))

        return self._run("force_trigger", _op)

    def record_review(
        self,
        principal: Principal,
        activation_key: str,
        outcome: ReviewOutcome,
        note: str | None = None,
        *,
        now: datetime | None = None,
    ) -> ReviewRecord:
        require_permission(principal, Permission.VALIDATION_REVIEW)
        ts = self._now(now)
        note_text = (note or "").strip() or None

        def _op(conn: sqlite3.Connection) -> ReviewRecord:
            self._require_row(conn, activation_key)
            conn.execute(
                """
                INSERT INTO activation_reviews (activation_key, reviewer_id, outcome, note, reviewed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (activation_key, principal.principal_id, outcome, note_text, to_iso(ts)),
            )
            self._append_event(
                conn,
                activation_key,
                f"REVIEW_{outcome}",
                note_text or "",
                ts,
                actor=principal.principal_id,
            )
            return ReviewRecord(
                activation_key=activation_key,
                reviewer_id=principal.principal_id,
                outcome=outcome,
                note=note_text,
                reviewed_at=ts,
            )

        return self._run("record_review", _op)
