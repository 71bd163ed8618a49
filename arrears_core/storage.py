"""
Storage Backend Module

Abstract document-table storage with compare-and-swap writes, plus in-memory
(testing), SQLite and PostgreSQL implementations. Records are JSON documents;
monetary values are stored as Decimal strings and every versioned record
carries an integer "version" that only compare_and_swap advances.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import json
import threading

from .errors import ConflictError


def _copy(data: Any) -> Any:
    """Deep copy through JSON so stored documents never alias caller objects"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    _lock: threading.RLock
    _in_transaction: bool = False

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record unconditionally (append-only and unversioned records)"""
        pass

    @abstractmethod
    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: Optional[int],
        data: Dict[str, Any]
    ) -> int:
        """
        Write a record only if its stored version equals expected_version.

        expected_version=None means the record must not exist yet. Returns the
        new version (1 on insert). Raises ConflictError and writes nothing on
        mismatch.
        """
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
        """Find records whose top-level keys equal the filter values"""
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
        Group several writes into one all-or-nothing unit.

        The backend lock is held for the whole block so other threads cannot
        interleave writes. Nested blocks join the outermost one.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._in_transaction = False
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)[record_id] = _copy(data)

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: Optional[int],
        data: Dict[str, Any]
    ) -> int:
        with self._lock:
            rows = self._ensure_table(table)
            current = rows.get(record_id)
            actual_version = current.get("version", 0) if current is not None else None

            if expected_version is None:
                if current is not None:
                    raise ConflictError(table, record_id, None, actual_version)
                new_version = 1
            else:
                if current is None or actual_version != expected_version:
                    raise ConflictError(table, record_id, expected_version, actual_version)
                new_version = expected_version + 1

            record = _copy(data)
            record["version"] = new_version
            rows[record_id] = record
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            if record is not None:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._ensure_table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            rows = self._ensure_table(table)
            if record_id in rows:
                del rows[record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._ensure_table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            results = []
            for record in self._ensure_table(table).values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._ensure_table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        self._snapshot = _copy(self._data)
        self._in_transaction = True

    def commit(self) -> None:
        self._snapshot = None
        self._in_transaction = False

    def rollback(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
        self._snapshot = None
        self._in_transaction = False


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation lets commit/rollback bracket grouped writes
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
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

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _current_version(self, table: str, record_id: str) -> Optional[int]:
        row = self._connection.execute(
            f"SELECT version FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return row['version'] if row else None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), data.get("version", 0),
                  record_id, now, now))
            self._autocommit()

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: Optional[int],
        data: Dict[str, Any]
    ) -> int:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            new_version = 1 if expected_version is None else expected_version + 1
            record = dict(data)
            record["version"] = new_version
            data_json = json.dumps(record, default=str)

            if expected_version is None:
                try:
                    self._connection.execute(f"""
                        INSERT INTO {table} (id, data, version, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                    """, (record_id, data_json, new_version, now, now))
                except sqlite3.IntegrityError:
                    raise ConflictError(table, record_id, None, self._current_version(table, record_id))
            else:
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (data_json, new_version, now, record_id, expected_version))
                if cursor.rowcount == 0:
                    raise ConflictError(
                        table, record_id, expected_version, self._current_version(table, record_id)
                    )

            self._autocommit()
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            results = []
            for record in self.load_all(table):
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(record)
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        # sqlite3 opens the transaction lazily on the first write
        self._in_transaction = True

    def commit(self) -> None:
        if self._in_transaction:
            self._connection.commit()
            self._in_transaction = False

    def rollback(self) -> None:
        if self._in_transaction:
            self._connection.rollback()
            self._in_transaction = False
            # Tables created inside the rolled back block are gone again
            self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: Set[str] = set()
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._connection.cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
        if not self._in_transaction:
            self._connection.commit()
        self._tables.add(table)

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _current_version(self, table: str, record_id: str) -> Optional[int]:
        with self._connection.cursor() as cursor:
            cursor.execute(f"SELECT version FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return row['version'] if row else None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._connection.cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        version = EXCLUDED.version,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), data.get("version", 0), now, now))
            self._autocommit()

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: Optional[int],
        data: Dict[str, Any]
    ) -> int:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            new_version = 1 if expected_version is None else expected_version + 1
            record = dict(data)
            record["version"] = new_version
            data_json = json.dumps(record, default=str)

            with self._connection.cursor() as cursor:
                if expected_version is None:
                    cursor.execute(f"""
                        INSERT INTO {table} (id, data, version, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO NOTHING
                    """, (record_id, data_json, new_version, now, now))
                else:
                    cursor.execute(f"""
                        UPDATE {table} SET data = %s, version = %s, updated_at = %s
                        WHERE id = %s AND version = %s
                    """, (data_json, new_version, now, record_id, expected_version))
                written = cursor.rowcount

            if written == 0:
                actual_version = self._current_version(table, record_id)
                if not self._in_transaction:
                    self._connection.rollback()
                raise ConflictError(table, record_id, expected_version, actual_version)

            self._autocommit()
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                deleted = cursor.rowcount > 0
            self._autocommit()
            return deleted

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                # ->> yields text: strings raw, other scalars in JSON form
                conditions.append("data ->> %s = %s")
                params.extend([key, value if isinstance(value, str) else json.dumps(value)])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} {where_clause} ORDER BY created_at", params)
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            with self._connection.cursor() as cursor:
                cursor.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        self._in_transaction = True

    def commit(self) -> None:
        if self._in_transaction:
            self._connection.commit()
            self._in_transaction = False

    def rollback(self) -> None:
        if self._in_transaction:
            self._connection.rollback()
            self._in_transaction = False
            self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str, sqlite_path: str = "arrears.db", database_url: str = "") -> StorageInterface:
    """Build the storage backend named in the process settings"""
    backend = backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(sqlite_path)
    if backend == "postgresql":
        if not database_url:
            raise ValueError("database_url is required for the postgresql storage backend")
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unknown storage backend: {backend}")
