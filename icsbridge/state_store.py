from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        # Stored as UTC so expiry comparisons can run on the text column.
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def _decode_json(raw: str | None, default: Any) -> Any:
    try:
        return json.loads(raw or "")
    except (TypeError, ValueError):
        return default


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            target_id TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            events_processed INTEGER NOT NULL,
            events_created INTEGER NOT NULL,
            events_updated INTEGER NOT NULL,
            events_skipped INTEGER NOT NULL,
            errors_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_mappings (
            calendar_id TEXT NOT NULL,
            source_uid TEXT NOT NULL,
            destination_id TEXT NOT NULL,
            event_key TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (calendar_id, source_uid)
        );

        CREATE TABLE IF NOT EXISTS duplicate_resolutions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            operation_id TEXT NOT NULL,
            group_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            primary_event_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            match_type TEXT NOT NULL,
            confidence INTEGER NOT NULL,
            status TEXT NOT NULL,
            message TEXT
        );

        CREATE TABLE IF NOT EXISTS backups (
            backup_id TEXT PRIMARY KEY,
            operation_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS backup_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            backup_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            reason TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_sync_run(
        self,
        *,
        target_id: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        events_processed: int = 0,
        events_created: int = 0,
        events_updated: int = 0,
        events_skipped: int = 0,
        errors: list[str] | None = None,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, target_id, trigger, status, message, duration_ms,
                        events_processed, events_created, events_updated, events_skipped, errors_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        target_id,
                        trigger,
                        status,
                        message,
                        int(duration_ms),
                        int(events_processed),
                        int(events_created),
                        int(events_updated),
                        int(events_skipped),
                        json.dumps(list(errors or []), ensure_ascii=False),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, target_id: str | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, run_at, target_id, trigger, status, message, duration_ms,
                   events_processed, events_created, events_updated, events_skipped, errors_json
            FROM sync_runs
        """
        params: tuple[Any, ...]
        if target_id is None:
            query += " ORDER BY id DESC LIMIT ?"
            params = (max(1, limit),)
        else:
            query += " WHERE target_id = ? ORDER BY id DESC LIMIT ?"
            params = (target_id, max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["errors"] = _decode_json(item.pop("errors_json"), [])
            output.append(item)
        return output

    def record_audit_event(
        self,
        *,
        calendar_id: str,
        uid: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, calendar_id, uid, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), calendar_id, uid, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, uid, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, uid, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = _decode_json(item.pop("details_json"), {})
            output.append(item)
        return output

    def save_mapping(self, *, calendar_id: str, source_uid: str, destination_id: str, event_key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO event_mappings(calendar_id, source_uid, destination_id, event_key, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(calendar_id, source_uid) DO UPDATE SET
                        destination_id = excluded.destination_id,
                        event_key = excluded.event_key,
                        updated_at = excluded.updated_at
                    """,
                    (calendar_id, source_uid, destination_id, event_key, _utc_now()),
                )
                conn.commit()

    def get_mapping(self, calendar_id: str, source_uid: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT destination_id
                    FROM event_mappings
                    WHERE calendar_id = ? AND source_uid = ?
                    """,
                    (calendar_id, source_uid),
                ).fetchone()
        if row is None:
            return None
        return str(row["destination_id"])

    def forget_destination(self, calendar_id: str, destination_id: str) -> int:
        """Drop mappings pointing at a destination event that no longer exists."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM event_mappings WHERE calendar_id = ? AND destination_id = ?",
                    (calendar_id, destination_id),
                )
                conn.commit()
                return int(cursor.rowcount)

    def record_resolution(
        self,
        *,
        operation_id: str,
        group_id: str,
        calendar_id: str,
        primary_event_id: str,
        event_id: str,
        match_type: str,
        confidence: int,
        status: str,
        message: str = "",
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO duplicate_resolutions(
                        created_at, operation_id, group_id, calendar_id, primary_event_id,
                        event_id, match_type, confidence, status, message
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        operation_id,
                        group_id,
                        calendar_id,
                        primary_event_id,
                        event_id,
                        match_type,
                        int(confidence),
                        status,
                        message,
                    ),
                )
                conn.commit()

    def resolutions_for_operation(self, operation_id: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, created_at, operation_id, group_id, calendar_id, primary_event_id,
                           event_id, match_type, confidence, status, message
                    FROM duplicate_resolutions
                    WHERE operation_id = ?
                    ORDER BY id ASC
                    """,
                    (operation_id,),
                ).fetchall()
        return [dict(row) for row in rows]

    def save_backup(
        self,
        *,
        backup_id: str,
        operation_id: str,
        expires_at: datetime,
        events: list[dict[str, Any]],
    ) -> None:
        """Store a backup header and its event payloads in one transaction.

        Each item of ``events`` carries ``event_id``, ``calendar_id``,
        ``payload`` and ``reason``.
        """
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO backups(backup_id, operation_id, created_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (backup_id, operation_id, _utc_now(), _iso(expires_at)),
                )
                conn.executemany(
                    """
                    INSERT INTO backup_events(backup_id, event_id, calendar_id, payload_json, reason)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            backup_id,
                            str(item["event_id"]),
                            str(item["calendar_id"]),
                            json.dumps(item.get("payload") or {}, ensure_ascii=False, default=str),
                            str(item.get("reason", "")),
                        )
                        for item in events
                    ],
                )
                conn.commit()

    def get_backup(self, backup_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                header = conn.execute(
                    """
                    SELECT backup_id, operation_id, created_at, expires_at
                    FROM backups
                    WHERE backup_id = ?
                    """,
                    (backup_id,),
                ).fetchone()
                if header is None:
                    return None
                rows = conn.execute(
                    """
                    SELECT event_id, calendar_id, payload_json, reason
                    FROM backup_events
                    WHERE backup_id = ?
                    ORDER BY id ASC
                    """,
                    (backup_id,),
                ).fetchall()
        backup = dict(header)
        events: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["payload"] = _decode_json(item.pop("payload_json"), {})
            events.append(item)
        backup["events"] = events
        return backup

    def list_backups(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT b.backup_id, b.operation_id, b.created_at, b.expires_at,
                           COUNT(e.id) AS event_count
                    FROM backups b
                    LEFT JOIN backup_events e ON e.backup_id = b.backup_id
                    GROUP BY b.backup_id
                    ORDER BY b.created_at DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def delete_expired_backups(self, now: datetime | None = None) -> list[str]:
        cutoff = _iso(now or datetime.now(timezone.utc))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT backup_id FROM backups WHERE expires_at <= ?",
                    (cutoff,),
                ).fetchall()
                expired = [str(row["backup_id"]) for row in rows]
                for backup_id in expired:
                    conn.execute("DELETE FROM backup_events WHERE backup_id = ?", (backup_id,))
                    conn.execute("DELETE FROM backups WHERE backup_id = ?", (backup_id,))
                conn.commit()
        return expired
