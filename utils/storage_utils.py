from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from base_classes import StorageError


@dataclass
class TableSchema:
    name: str
    columns: List[Dict[str, str]]  # List of {name: str, type: str} dicts
    indexes: Optional[List[str]] = None
    constraints: Optional[List[str]] = None


class SQLiteProvider:
    """
    Thin wrapper around the embedded sqlite3 database.

    Every call opens its own connection; failures are logged and re-raised
    as StorageError so callers can report them.
    """

    def __init__(self, db_path: str, logger: Optional[Any] = None, enable_wal: bool = False):
        self.db_path = os.path.expanduser(db_path)
        self.logger = logger
        self.enable_wal = enable_wal
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if self.enable_wal:
            self.execute("PRAGMA journal_mode = WAL")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _fail(self, what: str, exc: sqlite3.Error) -> StorageError:
        if self.logger:
            self.logger.error(f'storage.{what}', exc)
        return StorageError(f"Database error {what}: {exc}", debug_info={'db_path': self.db_path})

    def init_tables(self, schemas: List[TableSchema]) -> None:
        with self.transaction() as cursor:
            for schema in schemas:
                cols = [f"{col['name']} {col['type']}" for col in schema.columns]
                cols.extend(schema.constraints or [])
                cursor.execute(f"CREATE TABLE IF NOT EXISTS {schema.name} ({', '.join(cols)})")

                if schema.indexes:
                    for idx in schema.indexes:
                        cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{schema.name}_{idx} ON {schema.name}({idx})")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Yield a cursor; commit on success, roll back and raise StorageError on failure."""
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise self._fail('connecting', e) from e
        try:
            cursor = conn.cursor()
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise self._fail('in transaction', e) from e
        finally:
            conn.close()

    def execute(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self.transaction() as cursor:
            cursor.execute(query, params)
            return cursor.fetchall()

    def execute_insert(self, query: str, params: tuple = ()) -> int:
        """
        Execute an INSERT and return the database-assigned row id.
        """
        with self.transaction() as cursor:
            cursor.execute(query, params)
            return cursor.lastrowid
