"""SQLite-backed persistence for the MES ledger."""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from typing import Any, Dict, List, Mapping, Optional

from .errors import (
    DuplicateRecordError,
    PersistenceUnavailable,
    RecordNotFoundError,
    StaleRecordError,
)
from .repository import RepositorySet, apply_patch, prepare_insert

_TABLE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


class SQLiteRecordStore:
    """Record store keeping each collection in its own SQLite table.

    Records are stored as JSON payloads next to their ``version`` so that
    optimistic updates can be expressed as a single conditional ``UPDATE``.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = threading.RLock()
        self._known_tables: set[str] = set()

    def _table(self, collection: str) -> str:
        if not _TABLE_NAME.match(collection):
            raise ValueError(f"Invalid collection name {collection!r}")
        if collection not in self._known_tables:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {collection} ("  # nosec - validated table names
                "id TEXT PRIMARY KEY, version INTEGER NOT NULL, payload TEXT NOT NULL)"
            )
            self._connection.commit()
            self._known_tables.add(collection)
        return collection

    def _abandon(self, exc: sqlite3.Error) -> PersistenceUnavailable:
        # A failed commit leaves the write pending; a later commit must not flush it.
        self._connection.rollback()
        return PersistenceUnavailable(str(exc))

    def _fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._connection.execute(
            f"SELECT payload, version FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            return None
        record = json.loads(row[0])
        record["version"] = row[1]
        return record

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def list(self, collection: str) -> List[Dict[str, Any]]:
        try:
            with self._lock:
                table = self._table(collection)
                rows = self._connection.execute(
                    f"SELECT payload, version FROM {table} ORDER BY rowid DESC"
                ).fetchall()
        except sqlite3.OperationalError as exc:
            raise PersistenceUnavailable(str(exc)) from exc
        records = []
        for payload, version in rows:
            record = json.loads(payload)
            record["version"] = version
            records.append(record)
        return records

    def get(self, collection: str, record_id: str) -> Dict[str, Any]:
        try:
            with self._lock:
                record = self._fetch(self._table(collection), record_id)
        except sqlite3.OperationalError as exc:
            raise PersistenceUnavailable(str(exc)) from exc
        if record is None:
            raise RecordNotFoundError(f"{collection} record with id {record_id!r} not found")
        return record

    def insert(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        prepared = prepare_insert(record)
        with self._lock:
            try:
                table = self._table(collection)
                self._connection.execute(
                    f"INSERT INTO {table} (id, version, payload) VALUES (?, ?, ?)",
                    (prepared["id"], prepared["version"], json.dumps(prepared)),
                )
                self._connection.commit()
            except sqlite3.IntegrityError as exc:
                self._connection.rollback()
                raise DuplicateRecordError(
                    f"{collection} record with id {prepared['id']!r} already exists"
                ) from exc
            except sqlite3.OperationalError as exc:
                raise self._abandon(exc) from exc
        return prepared

    def update_by_id(
        self,
        collection: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            try:
                table = self._table(collection)
                current = self._fetch(table, record_id)
                if current is None:
                    raise RecordNotFoundError(
                        f"{collection} record with id {record_id!r} not found"
                    )
                read_version = current["version"]
                if expected_version is not None and read_version != expected_version:
                    raise StaleRecordError(
                        f"{collection} record {record_id!r} changed since it was read "
                        f"(expected version {expected_version}, found {read_version})"
                    )
                apply_patch(current, patch)
                cursor = self._connection.execute(
                    f"UPDATE {table} SET version = ?, payload = ? WHERE id = ? AND version = ?",
                    (current["version"], json.dumps(current), record_id, read_version),
                )
                if cursor.rowcount == 0:
                    self._connection.rollback()
                    raise StaleRecordError(
                        f"{collection} record {record_id!r} changed during update"
                    )
                self._connection.commit()
            except sqlite3.OperationalError as exc:
                raise self._abandon(exc) from exc
        return current

    def delete_by_id(self, collection: str, record_id: str) -> None:
        with self._lock:
            try:
                table = self._table(collection)
                cursor = self._connection.execute(
                    f"DELETE FROM {table} WHERE id = ?", (record_id,)
                )
                if cursor.rowcount == 0:
                    raise RecordNotFoundError(
                        f"{collection} record with id {record_id!r} not found"
                    )
                self._connection.commit()
            except sqlite3.OperationalError as exc:
                raise self._abandon(exc) from exc


class MESDatabase:
    """Convenience facade bundling the SQLite store and its repositories."""

    def __init__(
        self,
        path: str,
        *,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
    ) -> None:
        try:
            connection = sqlite3.connect(path, check_same_thread=False)
        except sqlite3.OperationalError as exc:
            raise PersistenceUnavailable(f"Cannot open database {path!r}: {exc}") from exc
        self._connection = connection
        self.store = SQLiteRecordStore(connection)
        self.repositories = RepositorySet(
            self.store, retry_attempts=retry_attempts, retry_delay=retry_delay
        )

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "MESDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["SQLiteRecordStore", "MESDatabase"]
