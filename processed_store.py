"""SQLite record of source files that were already imported.

Every database operation goes through :class:`ProcessedFileStore`, which pairs
a :class:`ConnectionPool` with a store-owned :class:`ReadWriteLock`. SQLite
does not cope well with concurrent writers on independent connections, so
writes are serialized against every other operation while lookups may run
side by side. The gate is always taken before a connection is checked out.
"""

from __future__ import annotations

import logging
import os
import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence, Tuple, Union

logger = logging.getLogger("shoko-importer.store")

PathLike = Union[str, os.PathLike]

DB_FILENAME = "db.sqlite3"

# (version, description, statements); versions must be strictly increasing.
MIGRATIONS: Tuple[Tuple[int, str, Tuple[str, ...]], ...] = (
    (
        1,
        "create processed_files",
        (
            """
            CREATE TABLE processed_files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_path TEXT NOT NULL
            )
            """,
        ),
    ),
    (
        2,
        "index processed_files.file_path",
        (
            "CREATE INDEX idx_processed_files_file_path ON processed_files(file_path)",
        ),
    ),
)


class StoreError(RuntimeError):
    """Raised when a lookup or insert against the store fails."""

    def __init__(self, message: str, path: Optional[PathLike] = None) -> None:
        super().__init__(message)
        self.path = None if path is None else str(path)


class StoreConsistencyError(StoreError):
    """Raised when an insert affects an unexpected number of rows."""


class MigrationError(StoreError):
    """Raised when the schema cannot be brought up to date."""


def normalize_path(path: PathLike) -> str:
    return str(Path(path))


class ReadWriteLock:
    """Many readers or a single writer.

    A writer waiting for the lock blocks new readers, so a steady stream of
    lookups cannot starve inserts.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError("release_read() called without a matching acquire_read()")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write() called without a matching acquire_write()")
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class ConnectionPool:
    """Bounded pool of SQLite connections shared between worker threads."""

    def __init__(
        self,
        database: PathLike,
        max_size: int = 30,
        min_idle: int = 5,
        test_on_checkout: bool = True,
        timeout: float = 30.0,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.database = str(database)
        self.max_size = max_size
        self.test_on_checkout = test_on_checkout
        self.timeout = timeout
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(max_size)
        self._lock = threading.Lock()
        self._opened = 0
        self._closed = False
        for _ in range(min(min_idle, max_size)):
            self._idle.put(self._open())

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database,
            timeout=self.timeout,
            check_same_thread=False,
        )
        conn.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")
        conn.execute("PRAGMA journal_mode=WAL")
        with self._lock:
            self._opened += 1
        logger.debug("Opened SQLite connection to %s", self.database)
        return conn

    def _discard(self, conn: sqlite3.Connection) -> None:
        with self._lock:
            self._opened -= 1
        try:
            conn.close()
        except sqlite3.Error as exc:
            logger.debug("Error closing discarded connection: %s", exc)

    @staticmethod
    def _is_usable(conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    @property
    def size(self) -> int:
        """Number of connections currently open (idle or checked out)."""

        with self._lock:
            return self._opened

    def _checkout(self) -> sqlite3.Connection:
        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            return self._open()
        if self.test_on_checkout and not self._is_usable(conn):
            logger.warning("Discarding broken SQLite connection to %s", self.database)
            self._discard(conn)
            return self._open()
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Check out one connection exclusively; blocks while the pool is exhausted."""

        if self._closed:
            raise StoreError(f"Connection pool for {self.database} is closed")
        self._slots.acquire()
        try:
            conn = self._checkout()
        except BaseException:
            self._slots.release()
            raise
        try:
            yield conn
        finally:
            if self._closed:
                self._discard(conn)
            else:
                self._idle.put(conn)
            self._slots.release()

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            self._discard(conn)


class ProcessedFileStore:
    """Persistent set of source paths that were already imported."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool
        self._gate = ReadWriteLock()

    @classmethod
    def from_file(cls, database: PathLike, max_size: int = 30, min_idle: int = 5) -> "ProcessedFileStore":
        try:
            pool = ConnectionPool(database, max_size=max_size, min_idle=min_idle)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {database}: {exc}") from exc
        logger.debug("Opened processed file store %s (pool max %d)", database, max_size)
        return cls(pool)

    def close(self) -> None:
        with self._gate.write_locked():
            self._pool.close()

    @contextmanager
    def _read_connection(self) -> Iterator[sqlite3.Connection]:
        with self._gate.read_locked(), self._pool.connection() as conn:
            yield conn

    @contextmanager
    def _write_connection(self) -> Iterator[sqlite3.Connection]:
        with self._gate.write_locked(), self._pool.connection() as conn:
            yield conn

    def schema_version(self) -> int:
        with self._read_connection() as conn:
            return conn.execute("PRAGMA user_version").fetchone()[0]

    def run_migrations(self, migrations: Sequence[Tuple[int, str, Tuple[str, ...]]] = MIGRATIONS) -> list[int]:
        """Apply pending migrations and return the versions that were applied."""

        applied: list[int] = []
        try:
            with self._write_connection() as conn:
                current = conn.execute("PRAGMA user_version").fetchone()[0]
                for version, description, statements in migrations:
                    if version <= current:
                        continue
                    logger.info("Applying database migration %d: %s", version, description)
                    try:
                        conn.execute("BEGIN")
                        for statement in statements:
                            conn.execute(statement)
                        conn.execute(f"PRAGMA user_version = {int(version)}")
                        conn.commit()
                    except sqlite3.Error:
                        conn.rollback()
                        raise
                    current = version
                    applied.append(version)
        except sqlite3.Error as exc:
            raise MigrationError(f"Failed to run database migrations: {exc}") from exc
        if not applied:
            logger.debug("Database schema already up to date")
        return applied

    def is_path_processed(self, path: PathLike) -> bool:
        file_path = normalize_path(path)
        try:
            with self._read_connection() as conn:
                cursor = conn.execute(
                    "SELECT 1 FROM processed_files WHERE file_path = ? LIMIT 1",
                    (file_path,),
                )
                try:
                    row = cursor.fetchone()
                finally:
                    cursor.close()
        except sqlite3.Error as exc:
            raise StoreError(
                f"Error checking file entry exists: {file_path}: {exc}", file_path
            ) from exc
        return row is not None

    def add_processed_file(self, path: PathLike) -> None:
        file_path = normalize_path(path)
        try:
            with self._write_connection() as conn:
                try:
                    cursor = conn.execute(
                        "INSERT INTO processed_files (file_path) VALUES (?)",
                        (file_path,),
                    )
                    if cursor.rowcount != 1:
                        raise StoreConsistencyError(
                            f"Failed to add processed entry to db: {file_path}: "
                            f"insert reported {cursor.rowcount} rows instead of 1",
                            file_path,
                        )
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
        except sqlite3.Error as exc:
            raise StoreError(
                f"Failed to add processed entry to db: {file_path}: {exc}", file_path
            ) from exc
