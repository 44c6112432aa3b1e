"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Transactions are serialised: ``atomic()`` holds the backend lock for the whole
unit of work and rolls every write back if the block raises. Records that are
mutated concurrently carry a ``version`` and are written with
``save_versioned`` (compare-and-set).
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import sqlite3
import threading

from .errors import ConcurrencyConflict
from .logging_config import get_logger


logger = get_logger("lendme.storage")


def to_storable(value: Any) -> Any:
    """Convert a value to its JSON-serialisable storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    return value


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def parse_date(value: Optional[str]) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(value)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: to_storable(getattr(self, f.name)) for f in fields(self)}


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._txn_depth = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Find records matching filters.

        A filter value that is a list, tuple or set matches any of its members;
        any other value must be equal.
        """
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def load_latest(self, table: str, field: str) -> Optional[Dict[str, Any]]:
        """Record with the highest numeric ``field``, or None for an empty table"""
        return max(self.load_all(table), key=lambda record: record.get(field, 0), default=None)

    def transaction_lock(self):
        """Lock held for the whole duration of ``atomic()``"""
        return nullcontext()

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._txn_depth > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested blocks join the outermost transaction; only the outermost block
        commits or rolls back.
        """
        with self.transaction_lock():
            outermost = self._txn_depth == 0
            if outermost:
                self.begin_transaction()
            self._txn_depth += 1
            try:
                yield self
            except Exception:
                if outermost:
                    self.rollback()
                raise
            else:
                if outermost:
                    self.commit()
            finally:
                self._txn_depth -= 1

    def save_versioned(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> int:
        """
        Compare-and-set save.

        ``expected_version`` 0 means the record must not exist yet. Otherwise
        the stored ``version`` must equal ``expected_version``.

        Returns:
            The new version written with the record

        Raises:
            ConcurrencyConflict: If the stored version differs
        """
        with self.atomic():
            current = self.load(table, record_id)
            actual = current.get('version', 0) if current is not None else None
            if expected_version == 0:
                if current is not None:
                    raise ConcurrencyConflict(table, record_id, expected_version, actual)
            elif actual != expected_version:
                raise ConcurrencyConflict(table, record_id, expected_version, actual)

            new_version = expected_version + 1
            self.save(table, record_id, dict(data, version=new_version))
            return new_version


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record:
            return False
        if isinstance(value, (list, tuple, set, frozenset)):
            if record[key] not in value:
                return False
        elif record[key] != value:
            return False
    return True


_MISSING = object()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    A transaction journals the previous value of every row it writes, and the
    whole table the first time it deletes from it, so rollback cost follows
    the size of the transaction rather than the size of the store.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._saved_rows: Optional[Dict[str, Dict[str, Any]]] = None
        self._saved_tables: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember_row(self, table: str, record_id: str) -> None:
        if self._saved_rows is None or table in self._saved_tables:
            return
        rows = self._saved_rows.setdefault(table, {})
        if record_id not in rows:
            # Stored rows are replaced, never mutated, so keeping the reference is enough
            rows[record_id] = self._data[table].get(record_id, _MISSING)

    def _remember_table(self, table: str) -> None:
        if self._saved_tables is None or table in self._saved_tables:
            return
        # Undo this transaction's row writes so the copy is the table as it was
        rows = self._saved_rows.pop(table, {})
        self._saved_tables[table] = {
            record_id: rows.get(record_id, record)
            for record_id, record in self._data[table].items()
            if rows.get(record_id) is not _MISSING
        }

    def transaction_lock(self):
        return self._lock

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember_row(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def load_latest(self, table: str, field: str) -> Optional[Dict[str, Any]]:
        """Scan without copying; only the winning record is copied out"""
        with self._lock:
            self._ensure_table(table)
            latest = max(self._data[table].values(),
                         key=lambda record: record.get(field, 0), default=None)
            if latest is not None:
                return json.loads(json.dumps(latest))
            return None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember_table(table)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._remember_table(table)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        self._saved_rows = {}
        self._saved_tables = {}

    def commit(self) -> None:
        self._saved_rows = None
        self._saved_tables = None

    def rollback(self) -> None:
        if self._saved_rows is None:
            return
        for table, records in self._saved_tables.items():
            self._data[table] = records
        # Reassigning an existing key keeps its place in insertion order
        for table, rows in self._saved_rows.items():
            for record_id, previous in rows.items():
                if previous is _MISSING:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
        self._saved_rows = None
        self._saved_tables = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables = set()
        self._indexes = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def transaction_lock(self):
        return self._lock

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps the original rowid, so insertion order is stable
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def save_versioned(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> int:
        """Compare-and-set save evaluated by SQLite itself"""
        with self.atomic():
            self._ensure_table(table)
            new_version = expected_version + 1
            data_json = json.dumps(dict(data, version=new_version), default=str)
            now = datetime.now(timezone.utc).isoformat()

            if expected_version == 0:
                try:
                    self._connection.execute(f"""
                        INSERT INTO {table} (id, data, created_at, updated_at)
                        VALUES (?, ?, ?, ?)
                    """, (record_id, data_json, now, now))
                except sqlite3.IntegrityError:
                    raise ConcurrencyConflict(
                        table, record_id, expected_version, self._stored_version(table, record_id)
                    )
            else:
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, updated_at = ?
                    WHERE id = ? AND json_extract(data, '$.version') = ?
                """, (data_json, now, record_id, expected_version))
                if cursor.rowcount == 0:
                    raise ConcurrencyConflict(
                        table, record_id, expected_version, self._stored_version(table, record_id)
                    )
            return new_version

    def _stored_version(self, table: str, record_id: str) -> Optional[int]:
        record = self.load(table, record_id)
        return record.get('version', 0) if record is not None else None

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def _ensure_field_index(self, table: str, field: str) -> str:
        """Expression index on a JSON field; returns the indexed expression"""
        expression = f"json_extract(data, '$.{field}')"
        if (table, field) not in self._indexes:
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{field}
                ON {table}({expression})
            """)
            self._indexes.add((table, field))
        return expression

    def load_latest(self, table: str, field: str) -> Optional[Dict[str, Any]]:
        """Record with the highest ``field``, read through its index"""
        with self._lock:
            self._ensure_table(table)
            expression = self._ensure_field_index(table, field)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY {expression} DESC LIMIT 1
            """)
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock up front"""
        self._connection.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        """Commit current transaction"""
        self._connection.execute("COMMIT")

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._connection.execute("ROLLBACK")
        # Tables created inside the rolled back transaction are gone again
        self._tables.clear()
        self._indexes.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://`` and ``sqlite:///path/to.db``
    (``sqlite://`` alone is an in-memory SQLite database).
    """
    if database_url in ("memory://", "memory", ""):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        storage = SQLiteStorage(path or ":memory:")
        logger.info(f"Using SQLite storage at {storage.db_path}")
        return storage
    raise ValueError(f"Unsupported database URL: {database_url}")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)
