from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from calbridge.errors import RecordNotFoundError


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TableSpec:
    name: str
    key_columns: tuple[str, ...]
    indexed_columns: tuple[str, ...] = ()
    indexes: tuple[tuple[str, tuple[str, ...]], ...] = ()

    @property
    def columns(self) -> tuple[str, ...]:
        return self.key_columns + self.indexed_columns


TABLES: dict[str, TableSpec] = {
    "calendars": TableSpec(name="calendars", key_columns=("calendar_id",)),
    "appointments": TableSpec(
        name="appointments",
        key_columns=("calendar_id", "appointment_id"),
        indexed_columns=("master_appointment_id",),
        indexes=(("calendar_id-master_appointment_id-index", ("calendar_id", "master_appointment_id")),),
    ),
    "calendar_tokens": TableSpec(name="calendar_tokens", key_columns=("calendar_id",)),
}


def _index_sql_name(index_name: str) -> str:
    return "idx_" + index_name.replace("-", "_")


class StateStore:
    """SQLite-backed key/value tables with the get/put/batch/query contract the sync engine relies on."""

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
        statements: list[str] = []
        for spec in TABLES.values():
            column_defs = [f"{column} TEXT NOT NULL" for column in spec.key_columns]
            column_defs += [f"{column} TEXT" for column in spec.indexed_columns]
            column_defs += ["payload_json TEXT NOT NULL", "updated_at TEXT NOT NULL"]
            statements.append(
                f"CREATE TABLE IF NOT EXISTS {spec.name} ("
                + ", ".join(column_defs)
                + f", PRIMARY KEY ({', '.join(spec.key_columns)}));"
            )
            for index_name, index_columns in spec.indexes:
                statements.append(
                    f"CREATE INDEX IF NOT EXISTS {_index_sql_name(index_name)} "
                    f"ON {spec.name} ({', '.join(index_columns)});"
                )
        statements.append(
            """
            CREATE TABLE IF NOT EXISTS sync_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_at TEXT NOT NULL,
                trigger TEXT NOT NULL,
                calendar_id TEXT NOT NULL,
                status TEXT NOT NULL,
                message TEXT,
                pages INTEGER NOT NULL,
                duration_ms INTEGER NOT NULL
            );
            """
        )
        with self._lock:
            with self._connect() as conn:
                conn.executescript("\n".join(statements))

    @staticmethod
    def _spec(table: str) -> TableSpec:
        spec = TABLES.get(table)
        if spec is None:
            raise ValueError(f"Unknown table: {table}")
        return spec

    @staticmethod
    def _key_values(spec: TableSpec, key: dict[str, Any]) -> tuple[str, ...]:
        values: list[str] = []
        for column in spec.key_columns:
            value = key.get(column)
            if value is None or str(value) == "":
                raise ValueError(f"Missing key attribute {column} for table {spec.name}")
            values.append(str(value))
        return tuple(values)

    def _row_values(self, spec: TableSpec, record: dict[str, Any]) -> tuple[Any, ...]:
        values: list[Any] = list(self._key_values(spec, record))
        for column in spec.indexed_columns:
            value = record.get(column)
            values.append(str(value) if value not in (None, "") else None)
        values.append(json.dumps(record, ensure_ascii=False))
        values.append(_utc_now())
        return tuple(values)

    def _upsert_sql(self, spec: TableSpec) -> str:
        columns = spec.columns + ("payload_json", "updated_at")
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(
            f"{column} = excluded.{column}" for column in spec.indexed_columns + ("payload_json", "updated_at")
        )
        return (
            f"INSERT INTO {spec.name}({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT({', '.join(spec.key_columns)}) DO UPDATE SET {updates}"
        )

    def _where_key(self, spec: TableSpec) -> str:
        return " AND ".join(f"{column} = ?" for column in spec.key_columns)

    def get(self, table: str, key: dict[str, Any]) -> dict[str, Any]:
        spec = self._spec(table)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT payload_json FROM {spec.name} WHERE {self._where_key(spec)}",
                    self._key_values(spec, key),
                ).fetchone()
        if row is None:
            raise RecordNotFoundError(table, key)
        return json.loads(row["payload_json"])

    def put(self, table: str, record: dict[str, Any]) -> None:
        spec = self._spec(table)
        with self._lock:
            with self._connect() as conn:
                conn.execute(self._upsert_sql(spec), self._row_values(spec, record))
                conn.commit()

    def batch_put(self, table: str, records: Iterable[dict[str, Any]]) -> None:
        spec = self._spec(table)
        rows = [self._row_values(spec, record) for record in records]
        if not rows:
            return
        with self._lock:
            with self._connect() as conn:
                conn.executemany(self._upsert_sql(spec), rows)
                conn.commit()

    def batch_delete(self, table: str, keys: Iterable[dict[str, Any]]) -> None:
        spec = self._spec(table)
        rows = [self._key_values(spec, key) for key in keys]
        if not rows:
            return
        with self._lock:
            with self._connect() as conn:
                conn.executemany(f"DELETE FROM {spec.name} WHERE {self._where_key(spec)}", rows)
                conn.commit()

    def query(self, table: str, index: str, key_condition: dict[str, Any]) -> list[dict[str, Any]]:
        spec = self._spec(table)
        index_columns = dict(spec.indexes).get(index)
        if index_columns is None:
            raise ValueError(f"Unknown index {index} for table {table}")
        missing = [column for column in index_columns if key_condition.get(column) in (None, "")]
        if missing:
            raise ValueError(f"Missing key condition for {', '.join(missing)}")
        where = " AND ".join(f"{column} = ?" for column in index_columns)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT payload_json FROM {spec.name} WHERE {where} ORDER BY {', '.join(spec.key_columns)}",
                    tuple(str(key_condition[column]) for column in index_columns),
                ).fetchall()
        return [json.loads(row["payload_json"]) for row in rows]

    def scan(self, table: str, limit: int | None = None, **conditions: Any) -> list[dict[str, Any]]:
        spec = self._spec(table)
        unknown = [column for column in conditions if column not in spec.columns]
        if unknown:
            raise ValueError(f"Cannot filter {table} on {', '.join(unknown)}")
        sql = f"SELECT payload_json FROM {spec.name}"
        params: tuple[str, ...] = ()
        if conditions:
            sql += " WHERE " + " AND ".join(f"{column} = ?" for column in conditions)
            params = tuple(str(value) for value in conditions.values())
        sql += f" ORDER BY {', '.join(spec.key_columns)}"
        if limit is not None:
            sql += f" LIMIT {max(0, int(limit))}"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [json.loads(row["payload_json"]) for row in rows]

    def record_sync_run(
        self,
        *,
        trigger: str,
        calendar_id: str,
        status: str,
        message: str,
        pages: int,
        duration_ms: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, calendar_id, status, message, pages, duration_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, calendar_id, status, message, int(pages), int(duration_ms)),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, calendar_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, trigger, calendar_id, status, message, pages, duration_ms
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, trigger, calendar_id, status, message, pages, duration_ms
                        FROM sync_runs
                        WHERE calendar_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(calendar_id), max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]
