"""SQLite-backed catalog store.

The UNIQUE constraint on ``original_path`` is the only cross-process guard
against duplicate entries: a racing second insert becomes a rejected write.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union
from vidcat.domain.errors import ConstraintViolation, NotFound, StoreIOError
from vidcat.domain.models import CatalogEntry, EntryStatus

SCHEMA = """
CREATE TABLE IF NOT EXISTS catalog_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    original_path TEXT NOT NULL UNIQUE,
    transcoded_path TEXT NOT NULL DEFAULT '',
    filename TEXT NOT NULL,
    file_type TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    file_date_time TEXT NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT
)
"""

_COLUMNS = (
    "id, original_path, transcoded_path, filename, file_type, file_size, "
    "file_date_time, status, error_message"
)


class SQLiteCatalogStore:
    """Keyed record store for CatalogEntry rows.

    One connection shared across handler threads, serialized by a lock.
    Use ``":memory:"`` for a throwaway store.
    """

    def __init__(self, database: Union[str, Path]):
        self.database = str(database)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        if self.database != ":memory:":
            Path(self.database).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self.database, check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.execute(SCHEMA)
        except sqlite3.Error as e:
            raise StoreIOError(f"Cannot open catalog database {self.database}: {e}") from e

    @staticmethod
    def _to_entry(row: sqlite3.Row) -> CatalogEntry:
        return CatalogEntry(
            id=row["id"],
            original_path=row["original_path"],
            transcoded_path=row["transcoded_path"] or "",
            filename=row["filename"],
            file_type=row["file_type"],
            file_size=row["file_size"],
            file_date_time=datetime.fromisoformat(row["file_date_time"]),
            status=EntryStatus(row["status"]),
            error_message=row["error_message"],
        )

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, params)
            except sqlite3.IntegrityError as e:
                raise ConstraintViolation(str(e)) from e
            except sqlite3.Error as e:
                raise StoreIOError(str(e)) from e

    def _fetch(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreIOError(str(e)) from e

    def find_by_path(self, original_path: str) -> Optional[CatalogEntry]:
        rows = self._fetch(f"SELECT {_COLUMNS} FROM catalog_entries WHERE original_path = ?", (original_path,))
        return self._to_entry(rows[0]) if rows else None

    def find_by_id(self, entry_id: int) -> Optional[CatalogEntry]:
        rows = self._fetch(f"SELECT {_COLUMNS} FROM catalog_entries WHERE id = ?", (entry_id,))
        return self._to_entry(rows[0]) if rows else None

    def list_all(self, status: Optional[EntryStatus] = None) -> List[CatalogEntry]:
        if status is None:
            rows = self._fetch(f"SELECT {_COLUMNS} FROM catalog_entries ORDER BY id")
        else:
            rows = self._fetch(
                f"SELECT {_COLUMNS} FROM catalog_entries WHERE status = ? ORDER BY id",
                (EntryStatus(status).value,),
            )
        return [self._to_entry(row) for row in rows]

    def insert(self, entry: CatalogEntry) -> CatalogEntry:
        """Persists a new entry and returns a copy carrying the assigned id.

        Raises ConstraintViolation if the original path is already cataloged.
        """
        cursor = self._execute(
            "INSERT INTO catalog_entries (original_path, transcoded_path, filename, file_type, "
            "file_size, file_date_time, status, error_message) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.original_path,
                entry.transcoded_path,
                entry.filename,
                entry.file_type,
                entry.file_size,
                entry.file_date_time.isoformat(),
                entry.status.value,
                entry.error_message,
            ),
        )
        return entry.model_copy(update={"id": cursor.lastrowid})

    def update(self, entry: CatalogEntry) -> CatalogEntry:
        """Writes the mutable fields (status, transcoded path, error). Scan metadata is immutable."""
        if entry.id is None:
            raise NotFound("Cannot update an entry without id")
        cursor = self._execute(
            "UPDATE catalog_entries SET status = ?, transcoded_path = ?, error_message = ? WHERE id = ?",
            (entry.status.value, entry.transcoded_path, entry.error_message, entry.id),
        )
        if cursor.rowcount == 0:
            raise NotFound(f"No catalog entry with id {entry.id}")
        return entry

    def count(self) -> int:
        return self._fetch("SELECT COUNT(*) AS n FROM catalog_entries")[0]["n"]

    def close(self):
        with self._lock:
            self._conn.close()
