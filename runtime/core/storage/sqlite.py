"""SQLite storage driver (default persistence).

This module provides a SQLite implementation of the schedule store. SQLite is
used as a local, file-backed state store that survives process restarts.

Tables:
- schedule_entries: one row per work name (mutable, keyed by name)
- generation_seq: store-wide registration generation counter
- schedule_events: append-only audit log

Every operation runs under a process-local lock and a `BEGIN IMMEDIATE`
transaction, so concurrent callers (threads or processes) never lose updates.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator

from errors import NotFoundError, StorageError
from evaluator.constraints import ConstraintSet
from models import RunResult, ScheduleEntry, WorkDefinition
from storage.interfaces import EntryMutation, ScheduleStore, StoredEvent
from utils import format_storage_ts, json_dumps, parse_storage_ts, seconds, utcnow

_SCHEMA_VERSION = 1

_ENTRY_COLUMNS = (
    "name",
    "interval_seconds",
    "constraints_json",
    "task_ref",
    "timeout_seconds",
    "next_eligible_at",
    "generation",
    "last_result",
    "running",
    "running_owner",
    "consecutive_failures",
    "run_attempt_count",
    "last_run_at",
    "last_error",
    "created_at",
    "updated_at",
)


def _opt_ts(dt: datetime | None) -> str | None:
    return format_storage_ts(dt) if dt is not None else None


def _entry_to_row(entry: ScheduleEntry) -> tuple[Any, ...]:
    d = entry.definition
    return (
        d.name,
        seconds(d.interval),
        json_dumps(d.constraints.to_dict()),
        d.task_ref,
        seconds(d.timeout) if d.timeout is not None else None,
        format_storage_ts(entry.next_eligible_at),
        int(entry.generation),
        entry.last_result.value,
        1 if entry.running else 0,
        entry.running_owner,
        int(entry.consecutive_failures),
        int(entry.run_attempt_count),
        _opt_ts(entry.last_run_at),
        entry.last_error,
        _opt_ts(entry.created_at),
        _opt_ts(entry.updated_at),
    )


def _row_to_entry(row: sqlite3.Row) -> ScheduleEntry:
    timeout = row["timeout_seconds"]
    definition = WorkDefinition(
        name=str(row["name"]),
        interval=timedelta(seconds=float(row["interval_seconds"])),
        constraints=ConstraintSet.from_dict(json.loads(row["constraints_json"])),
        task_ref=str(row["task_ref"] or ""),
        timeout=timedelta(seconds=float(timeout)) if timeout is not None else None,
    )
    return ScheduleEntry(
        definition=definition,
        next_eligible_at=parse_storage_ts(row["next_eligible_at"]),
        generation=int(row["generation"]),
        last_result=RunResult(row["last_result"]),
        running=bool(row["running"]),
        running_owner=row["running_owner"],
        consecutive_failures=int(row["consecutive_failures"]),
        run_attempt_count=int(row["run_attempt_count"]),
        last_run_at=parse_storage_ts(row["last_run_at"]) if row["last_run_at"] else None,
        last_error=row["last_error"],
        created_at=parse_storage_ts(row["created_at"]) if row["created_at"] else None,
        updated_at=parse_storage_ts(row["updated_at"]) if row["updated_at"] else None,
    )


class SQLiteDatabase:
    def __init__(self, path: Path):
        self.path = path.resolve()
        self._lock = threading.RLock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._migrate()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Failed to open schedule database {self.path}: {e}") from e

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; sqlite errors surface as StorageError."""
        with self._lock:
            try:
                with self.connect() as conn:
                    conn.execute("BEGIN IMMEDIATE;")
                    try:
                        yield conn
                    except BaseException:
                        conn.execute("ROLLBACK;")
                        raise
                    conn.execute("COMMIT;")
            except sqlite3.Error as e:
                raise StorageError(f"Schedule store operation failed: {e}") from e

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (_SCHEMA_VERSION,))
                version = _SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != _SCHEMA_VERSION:
                raise StorageError(f"Unsupported SQLite schema_version: {version}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schedule_entries (
                  name TEXT PRIMARY KEY,
                  interval_seconds REAL NOT NULL,
                  constraints_json TEXT NOT NULL,
                  task_ref TEXT NOT NULL,
                  timeout_seconds REAL,
                  next_eligible_at TEXT NOT NULL,
                  generation INTEGER NOT NULL,
                  last_result TEXT NOT NULL,
                  running INTEGER NOT NULL DEFAULT 0,
                  running_owner TEXT,
                  consecutive_failures INTEGER NOT NULL DEFAULT 0,
                  run_attempt_count INTEGER NOT NULL DEFAULT 0,
                  last_run_at TEXT,
                  last_error TEXT,
                  created_at TEXT,
                  updated_at TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_due ON schedule_entries(running, next_eligible_at, name);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS generation_seq (
                  value INTEGER NOT NULL
                );
                """
            )
            if conn.execute("SELECT value FROM generation_seq LIMIT 1;").fetchone() is None:
                conn.execute("INSERT INTO generation_seq(value) VALUES (0);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schedule_events (
                  event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  name TEXT NOT NULL,
                  generation INTEGER,
                  event_type TEXT NOT NULL,
                  details_json TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_schedule_events_name ON schedule_events(name, event_id);")


class SQLiteScheduleStore(ScheduleStore):
    def __init__(self, db: SQLiteDatabase, *, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._clock = clock

    @classmethod
    def open(cls, sqlite_path: Path, *, clock: Callable[[], datetime] = utcnow) -> "SQLiteScheduleStore":
        return cls(SQLiteDatabase(sqlite_path), clock=clock)

    @property
    def path(self) -> Path:
        return self._db.path

    # Reads

    def find(self, name: str) -> ScheduleEntry | None:
        with self._db.transaction() as conn:
            return self._select(conn, name)

    def get(self, name: str) -> ScheduleEntry:
        entry = self.find(name)
        if entry is None:
            raise NotFoundError("ScheduleEntry", name)
        return entry

    def list_all(self) -> list[ScheduleEntry]:
        with self._db.transaction() as conn:
            rows = conn.execute("SELECT * FROM schedule_entries ORDER BY name ASC;").fetchall()
            return [_row_to_entry(r) for r in rows]

    def list_due(self, now: datetime) -> list[ScheduleEntry]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM schedule_entries
                WHERE running = 0 AND next_eligible_at <= ?
                ORDER BY next_eligible_at ASC, name ASC;
                """,
                (format_storage_ts(now),),
            ).fetchall()
            return [_row_to_entry(r) for r in rows]

    # Writes

    def upsert(self, entry: ScheduleEntry) -> None:
        with self._db.transaction() as conn:
            self._write(conn, entry)

    def delete(self, name: str) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM schedule_entries WHERE name = ?;", (name,))
            return cur.rowcount == 1

    def delete_all(self) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM schedule_entries;")
            return int(cur.rowcount)

    def mutate(self, name: str, fn: EntryMutation) -> ScheduleEntry | None:
        with self._db.transaction() as conn:
            existing = self._select(conn, name)

            def allocate_generation() -> int:
                conn.execute("UPDATE generation_seq SET value = value + 1;")
                return int(conn.execute("SELECT value FROM generation_seq LIMIT 1;").fetchone()["value"])

            updated = fn(existing, allocate_generation)
            if updated is None or updated is existing:
                return existing
            if updated.name != name:
                raise StorageError(f"Mutation for {name} returned entry for {updated.name}")
            self._write(conn, updated)
            return updated

    def mark_running(self, name: str, *, generation: int, owner: str) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE schedule_entries SET running = 1, running_owner = ?, updated_at = ?
                WHERE name = ? AND generation = ? AND running = 0;
                """,
                (owner, format_storage_ts(self._clock()), name, int(generation)),
            )
            return cur.rowcount == 1

    def mark_idle(self, name: str, *, generation: int | None = None) -> bool:
        sql = "UPDATE schedule_entries SET running = 0, running_owner = NULL, updated_at = ? WHERE name = ?"
        params: list[Any] = [format_storage_ts(self._clock()), name]
        if generation is not None:
            sql += " AND generation = ?"
            params.append(int(generation))
        with self._db.transaction() as conn:
            cur = conn.execute(sql + ";", params)
            return cur.rowcount == 1

    def record_result(
        self,
        name: str,
        *,
        generation: int,
        result: RunResult,
        next_eligible_at: datetime,
        consecutive_failures: int,
        error: str | None,
        now: datetime,
    ) -> bool:
        with self._db.transaction() as conn:
            current = self._select(conn, name)
            if current is None or current.generation != int(generation):
                return False

            # Never schedule an entry into the past once advanced.
            next_at = max(next_eligible_at, current.next_eligible_at)
            updated = current.evolve(
                next_eligible_at=next_at,
                last_result=result,
                running=False,
                running_owner=None,
                consecutive_failures=max(0, int(consecutive_failures)),
                run_attempt_count=current.run_attempt_count + 1,
                last_run_at=now,
                last_error=error,
                updated_at=now,
            )
            self._write(conn, updated)
            return True

    def recover_stale_running(self, *, owner: str) -> list[str]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT name FROM schedule_entries
                WHERE running = 1 AND (running_owner IS NULL OR running_owner != ?)
                ORDER BY name ASC;
                """,
                (owner,),
            ).fetchall()
            names = [str(r["name"]) for r in rows]
            if names:
                conn.executemany(
                    "UPDATE schedule_entries SET running = 0, running_owner = NULL, updated_at = ? WHERE name = ?;",
                    [(format_storage_ts(self._clock()), n) for n in names],
                )
            return names

    # Audit log

    def record_event(
        self,
        *,
        name: str,
        event_type: str,
        generation: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO schedule_events(ts, name, generation, event_type, details_json) VALUES (?, ?, ?, ?, ?);",
                (format_storage_ts(self._clock()), name, generation, event_type, json_dumps(details or {})),
            )

    def list_events(self, name: str, *, limit: int = 100) -> list[StoredEvent]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM schedule_events WHERE name = ? ORDER BY event_id DESC LIMIT ?;",
                (name, int(limit)),
            ).fetchall()
            return [
                StoredEvent(
                    id=int(r["event_id"]),
                    ts=parse_storage_ts(r["ts"]),
                    name=str(r["name"]),
                    generation=int(r["generation"]) if r["generation"] is not None else None,
                    event_type=str(r["event_type"]),
                    details=json.loads(r["details_json"] or "{}"),
                )
                for r in rows
            ]

    # Internal helpers

    def _select(self, conn: sqlite3.Connection, name: str) -> ScheduleEntry | None:
        row = conn.execute("SELECT * FROM schedule_entries WHERE name = ?;", (name,)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def _write(self, conn: sqlite3.Connection, entry: ScheduleEntry) -> None:
        placeholders = ", ".join("?" for _ in _ENTRY_COLUMNS)
        conn.execute(
            f"INSERT OR REPLACE INTO schedule_entries({', '.join(_ENTRY_COLUMNS)}) VALUES ({placeholders});",
            _entry_to_row(entry),
        )
