"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL persistence. Records are JSON documents keyed by id; all
monetary values stored as Decimal strings.

Every backend supports unique indexes on document fields and versioned
(compare-and-swap) updates, so that two writers working from the same read
can never both succeed. A transaction holds the backend lock until it
commits or rolls back, so one storage object can be shared across threads.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StorageError(Exception):
    """Base class for storage backend failures"""


class UniqueConstraintViolation(StorageError):
    """A write would duplicate a value under a unique index"""

    def __init__(self, table: str, field: str, value: Any = None):
        super().__init__(f"Duplicate value for {table}.{field}: {value!r}")
        self.table = table
        self.field = field
        self.value = value


class VersionConflict(StorageError):
    """The stored record is not at the version the writer read"""

    def __init__(self, table: str, record_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"Version conflict on {table}/{record_id}: expected {expected}, found {actual}"
        )
        self.table = table
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class LockTimeout(StorageError):
    """The backend could not acquire a lock in time"""


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table or field name: {name!r}")
    return name


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def create_unique_index(self, table: str, field: str) -> None:
        """Enforce uniqueness of a document field across a table"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; fails with UniqueConstraintViolation on duplicates"""
        pass

    @abstractmethod
    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> None:
        """Replace a record only if its stored 'version' equals expected_version"""
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
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal all filter values"""
        pass

    @abstractmethod
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table, optionally matching filters"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

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
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def _copy(data: Any) -> Any:
    # Deep copy through JSON to prevent external mutation
    return json.loads(json.dumps(data, default=str))


class _TransactionScope:
    """
    Transaction bookkeeping for the connection-backed storages

    A transaction holds the backend lock from begin_transaction until
    commit or rollback, so callers sharing one connection cannot commit or
    roll back each other's pending writes. Nested atomic blocks join the
    outermost transaction.
    """

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        self._lock.acquire()
        self._depth += 1
        if self._depth == 1:
            self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            if self._depth == 1 and self._in_transaction:
                try:
                    self._connection.commit()
                except Exception:
                    self._connection.rollback()
                    raise
        finally:
            self._end_scope()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            if self._depth == 1 and self._in_transaction:
                self._connection.rollback()
        finally:
            self._end_scope()

    def _end_scope(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._in_transaction = False
        self._lock.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for field in self._unique.get(table, ()):
            if field not in data:
                continue
            value = data[field]
            for other_id, other in self._data[table].items():
                if other_id != record_id and other.get(field) == value:
                    raise UniqueConstraintViolation(table, field, value)

    def create_unique_index(self, table: str, field: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._unique.setdefault(table, set()).add(field)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise UniqueConstraintViolation(table, "id", record_id)
            self._check_unique(table, record_id, data)
            self._data[table][record_id] = _copy(data)

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> None:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            actual = current.get("version") if current else None
            if actual != expected_version:
                raise VersionConflict(table, record_id, expected_version, actual)
            self._check_unique(table, record_id, data)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                _copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return len(self._data[table])
            return sum(1 for record in self._data[table].values() if _matches(record, filters))

    def begin_transaction(self) -> None:
        """Hold the storage lock; writes still apply immediately"""
        self._lock.acquire()

    def commit(self) -> None:
        self._lock.release()

    def rollback(self) -> None:
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(_TransactionScope, StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level='DEFERRED'
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._depth = 0
        self._tables: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            self._end_implicit_transaction()
            if "locked" in str(e) or "busy" in str(e):
                raise LockTimeout(str(e)) from e
            raise
        except sqlite3.IntegrityError:
            self._end_implicit_transaction()
            raise

    def _end_implicit_transaction(self) -> None:
        # sqlite3 opens a transaction before DML; release its lock after a failure
        if not self._in_transaction and self._connection.in_transaction:
            self._connection.rollback()

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_identifier(table)
        with self._lock:
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Create index on timestamps for better query performance
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._maybe_commit()
            self._tables.add(table)

    def create_unique_index(self, table: str, field: str) -> None:
        _check_identifier(field)
        with self._lock:
            self._ensure_table(table)
            self._execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{field}
                ON {table}(json_extract(data, '$.{field}'))
            """)
            self._maybe_commit()

    def _integrity_error(self, table: str, record_id: str, data: Dict[str, Any],
                         error: sqlite3.IntegrityError) -> UniqueConstraintViolation:
        match = re.search(rf"uq_{table}_(\w+)", str(error))
        if match:
            field = match.group(1)
            return UniqueConstraintViolation(table, field, data.get(field))
        return UniqueConstraintViolation(table, "id", record_id)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), data.get("created_at", now), now))
            except sqlite3.IntegrityError as e:
                raise self._integrity_error(table, record_id, data, e) from e
            self._maybe_commit()

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                cursor = self._execute(f"""
                    UPDATE {table} SET data = ?, updated_at = ?
                    WHERE id = ? AND json_extract(data, '$.version') = ?
                """, (json.dumps(data, default=str), now, record_id, expected_version))
            except sqlite3.IntegrityError as e:
                raise self._integrity_error(table, record_id, data, e) from e

            if cursor.rowcount == 0:
                self._end_implicit_transaction()
                current = self.load(table, record_id)
                actual = current.get("version") if current else None
                raise VersionConflict(table, record_id, expected_version, actual)
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def _where(self, filters: Dict[str, Any]) -> tuple:
        if not filters:
            return "", ()
        conditions = [f"json_extract(data, '$.{_check_identifier(key)}') = ?" for key in filters]
        return "WHERE " + " AND ".join(conditions), tuple(filters.values())

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON field extraction"""
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            cursor = self._execute(f"""
                SELECT data FROM {table} {where} ORDER BY created_at, id
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters or {})
            cursor = self._execute(f"""
                SELECT COUNT(*) as count FROM {table} {where}
            """, params)
            return cursor.fetchone()['count']

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(_TransactionScope, StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str, lock_timeout_ms: int = 5000):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError(
                "psycopg2 is required for PostgreSQL storage. "
                "Install with: pip install 'account-ledger[postgres]'"
            )

        self.connection_string = connection_string
        self.lock_timeout_ms = int(lock_timeout_ms)
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._depth = 0
        self._tables: Set[str] = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually
            with self._connection.cursor() as cursor:
                cursor.execute(f"SET lock_timeout = {self.lock_timeout_ms}")
            self._connection.commit()

    @contextmanager
    def _cursor(self):
        """Cursor that maps driver errors onto storage errors"""
        errors = self.psycopg2.errors
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self._in_transaction:
                self._connection.commit()
        except (errors.LockNotAvailable, errors.SerializationFailure,
                errors.DeadlockDetected) as e:
            self._abort()
            raise LockTimeout(str(e)) from e
        except Exception:
            self._abort()
            raise
        finally:
            cursor.close()

    def _abort(self) -> None:
        # A failed statement poisons the whole PostgreSQL transaction
        self._connection.rollback()
        self._in_transaction = False

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_identifier(table)
        with self._lock, self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
        self._tables.add(table)

    def create_unique_index(self, table: str, field: str) -> None:
        _check_identifier(field)
        self._ensure_table(table)
        with self._lock, self._cursor() as cursor:
            cursor.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{field}
                ON {table} ((data ->> '{field}'))
            """)

    def _unique_violation(self, table: str, record_id: str, data: Dict[str, Any],
                          error: Exception) -> UniqueConstraintViolation:
        constraint = getattr(getattr(error, "diag", None), "constraint_name", None) or ""
        prefix = f"uq_{table}_"
        if constraint.startswith(prefix):
            field = constraint[len(prefix):]
            return UniqueConstraintViolation(table, field, data.get(field))
        return UniqueConstraintViolation(table, "id", record_id)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        with self._lock:
            now = datetime.now(timezone.utc)
            try:
                with self._cursor() as cursor:
                    cursor.execute(f"""
                        INSERT INTO {table} (id, data, created_at, updated_at)
                        VALUES (%s, %s, %s, %s)
                    """, (record_id, json.dumps(data, default=str),
                          data.get("created_at", now), now))
            except self.psycopg2.errors.UniqueViolation as e:
                raise self._unique_violation(table, record_id, data, e) from e

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> None:
        self._ensure_table(table)
        with self._lock:
            now = datetime.now(timezone.utc)
            try:
                with self._cursor() as cursor:
                    cursor.execute(f"""
                        UPDATE {table} SET data = %s, updated_at = %s
                        WHERE id = %s AND (data ->> 'version')::int = %s
                    """, (json.dumps(data, default=str), now, record_id, expected_version))
                    updated = cursor.rowcount
            except self.psycopg2.errors.UniqueViolation as e:
                raise self._unique_violation(table, record_id, data, e) from e

            if updated == 0:
                current = self.load(table, record_id)
                actual = current.get("version") if current else None
                raise VersionConflict(table, record_id, expected_version, actual)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        self._ensure_table(table)
        with self._lock, self._cursor() as cursor:
            cursor.execute(f"""
                SELECT data FROM {table} WHERE id = %s
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def _where(self, filters: Dict[str, Any]) -> tuple:
        # Build WHERE clause using JSONB operators
        if not filters:
            return "", []
        conditions = []
        params = []
        for key, value in filters.items():
            conditions.append("data ->> %s = %s")
            params.extend([_check_identifier(key), str(value)])
        return "WHERE " + " AND ".join(conditions), params

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        self._ensure_table(table)
        where, params = self._where(filters)
        with self._lock, self._cursor() as cursor:
            cursor.execute(f"""
                SELECT data FROM {table} {where}
                ORDER BY created_at, id
            """, params)
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        self._ensure_table(table)
        where, params = self._where(filters or {})
        with self._lock, self._cursor() as cursor:
            cursor.execute(f"""
                SELECT COUNT(*) as count FROM {table} {where}
            """, params)
            return cursor.fetchone()['count']

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
