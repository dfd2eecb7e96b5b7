"""
Storage Backend Module

Provides the unit-of-work storage interface used by every manager, with an
in-memory implementation (testing) and SQLite (persistence). Records are JSON
documents; all monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, fields, is_dataclass
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .currency import Currency, Money, money_from_storage
from .errors import PersistenceError


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Enum):
        return value.value
    return str(value)


def to_storage_value(value: Any) -> Any:
    """Convert a field value to its JSON storage form"""
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return {f.name: to_storage_value(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: to_storage_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storage_value(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage; Money fields become decimal strings"""
        return {f.name: to_storage_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def restore_fields(
    data: Dict[str, Any],
    currency: Optional[Currency] = None,
    money: Tuple[str, ...] = (),
    dates: Tuple[str, ...] = (),
    datetimes: Tuple[str, ...] = (),
    decimals: Tuple[str, ...] = (),
    enums: Optional[Dict[str, type]] = None
) -> Dict[str, Any]:
    """Rebuild typed field values from a stored record dictionary"""
    data = dict(data)
    for key in ('created_at', 'updated_at') + tuple(datetimes):
        if key in data:
            data[key] = parse_datetime(data[key])
    for key in dates:
        if key in data:
            data[key] = parse_date(data[key])
    for key in decimals:
        if key in data and data[key] is not None:
            data[key] = Decimal(str(data[key]))
    for key in money:
        if key in data:
            data[key] = money_from_storage(data[key], currency)
    for key, enum_cls in (enums or {}).items():
        if key in data and data[key] is not None:
            data[key] = enum_cls(data[key])
    return data


def parse_date(value: Any) -> Optional[date]:
    """Parse an ISO date (or datetime) string from storage"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string from storage"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

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
        """Load all records from a table"""
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
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
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

    def find_page(
        self,
        table: str,
        filters: Dict[str, Any],
        offset: int = 0,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Find one page of records matching filters, in insertion order"""
        return self.find(table, filters)[offset:offset + limit]

    def iter_pages(
        self,
        table: str,
        filters: Dict[str, Any],
        page_size: int = 1000
    ) -> Iterator[List[Dict[str, Any]]]:
        """Yield pages of matching records until the table is exhausted"""
        offset = 0
        while True:
            page = self.find_page(table, filters, offset=offset, limit=page_size)
            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            offset += page_size

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested blocks join the outermost unit of work: only the outermost
        commit is durable and any failure rolls back everything.
        """
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record:
            return False
        if isinstance(value, (list, tuple, set)):
            if record[key] not in value:
                return False
        elif record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions keep a per-thread undo journal so that a rollback restores
    only the writes made by that thread's unit of work.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        return json.loads(json.dumps(data, default=_json_default))

    def _journal(self) -> Optional[List[Tuple[str, str, Optional[Dict[str, Any]]]]]:
        if getattr(self._local, 'depth', 0) > 0:
            return self._local.journal
        return None

    def _record_undo(self, table: str, record_id: str) -> None:
        journal = self._journal()
        if journal is not None:
            previous = self._data[table].get(record_id)
            journal.append((table, record_id, self._copy(previous) if previous is not None else None))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._record_undo(table, record_id)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._record_undo(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record)
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table].keys()):
                self._record_undo(table, record_id)
            self._data[table] = {}

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            self._local.journal = []
        self._local.depth = depth + 1

    def commit(self) -> None:
        depth = getattr(self._local, 'depth', 0)
        if depth <= 0:
            return
        self._local.depth = depth - 1
        if self._local.depth == 0:
            self._local.journal = []

    def rollback(self) -> None:
        depth = getattr(self._local, 'depth', 0)
        if depth <= 0:
            return
        self._local.depth = depth - 1
        if self._local.depth > 0:
            # The outermost unit of work undoes everything
            return

        journal = self._local.journal
        self._local.journal = []
        with self._lock:
            for table, record_id, previous in reversed(journal):
                self._ensure_table(table)
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A transaction holds the connection lock until commit or rollback, so units
    of work on a shared connection are serialized.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _ensure_table(self, table: str) -> None:
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
            if not self._in_transaction:
                self._connection.commit()
            self._tables.add(table)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=_json_default)

            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

            if not self._in_transaction:
                self._connection.commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            if not self._in_transaction:
                self._connection.commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
                    results.append(record)
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) as count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")
            if not self._in_transaction:
                self._connection.commit()

    def begin_transaction(self) -> None:
        """Start (or join) a database transaction"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction once the outermost unit completes"""
        if self._depth <= 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction once the outermost unit unwinds"""
        if self._depth <= 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.rollback()
                # Tables created inside the transaction are gone too
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
