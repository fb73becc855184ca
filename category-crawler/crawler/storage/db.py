"""
Database connection handling for the embedded (SQLite) backend, plus the
lock-retry helper shared by every relational store.
"""

import sqlite3
import threading
import time
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

from crawler.core import StorageUnavailable, setup_logger

logger = setup_logger("crawler.db")

LOCK_RETRY_ATTEMPTS = 5
LOCK_RETRY_BASE_DELAY_MS = 100

TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_ts(value):
    """Fixed-width UTC text so timestamps compare correctly as strings."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_db_ts(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


def is_sqlite_lock_error(exc: Exception) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "database is locked" in message or "database locked" in message or "database is busy" in message


def retry_on_lock(operation, is_lock_error, max_attempts=LOCK_RETRY_ATTEMPTS,
                  base_delay_ms=LOCK_RETRY_BASE_DELAY_MS, sleep=time.sleep):
    """
    Run operation() and retry it with exponential backoff (100ms, 200ms, 400ms, ...)
    while it fails with a lock-contention error. Other errors propagate at once;
    the last lock error propagates once attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_lock_error(e):
                raise
            if attempt >= max_attempts:
                logger.error(f"[DB] Operation failed after {max_attempts} attempts: {e}")
                raise
            delay_ms = base_delay_ms * (2 ** (attempt - 1))
            logger.warning(f"[DB] Database locked, retrying attempt={attempt} max_attempts={max_attempts} delay_ms={delay_ms} error={e}")
            sleep(delay_ms / 1000.0)
            attempt += 1


class SQLiteDatabase:
    """
    One connection per thread, write transactions opened with BEGIN IMMEDIATE so
    read-modify-write sequences are atomic across threads and processes.
    """

    is_lock_error = staticmethod(is_sqlite_lock_error)

    def __init__(self, path, timeout: float = 5.0, sleep=time.sleep):
        self.path = Path(path)
        self._timeout = timeout
        self._sleep = sleep
        self._local = threading.local()
        self._connections = {}  # thread -> connection
        self._connections_lock = threading.Lock()

    def connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.path), timeout=self._timeout,
                                       isolation_level=None, check_same_thread=False)
            except (sqlite3.Error, OSError) as e:
                raise StorageUnavailable(f"Cannot open SQLite database {self.path}: {e}") from e
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            conn.execute("PRAGMA journal_mode = WAL;")
            self._local.conn = conn
            with self._connections_lock:
                self._close_dead_threads()
                self._connections[threading.current_thread()] = conn
        return conn

    def _transaction(self, work):
        conn = self.connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            with closing(conn.cursor()) as cursor:
                result = work(cursor)
            conn.execute("COMMIT")
            return result
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def run(self, work):
        """Execute work(cursor) inside a retried write transaction and return its result."""
        return retry_on_lock(lambda: self._transaction(work), self.is_lock_error, sleep=self._sleep)

    def query(self, sql, params=()):
        """Read-only helper returning all rows."""
        def _read():
            with closing(self.connection().execute(sql, params)) as cursor:
                return cursor.fetchall()
        return retry_on_lock(_read, self.is_lock_error, sleep=self._sleep)

    def executescript(self, script: str) -> None:
        retry_on_lock(lambda: self.connection().executescript(script), self.is_lock_error, sleep=self._sleep)

    def _close_dead_threads(self):
        for thread in [t for t in self._connections if not t.is_alive()]:
            self._connections.pop(thread).close()

    def open_connections(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    def close_thread(self):
        """Close the calling thread's connection; the next use opens a fresh one."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        with self._connections_lock:
            self._connections.pop(threading.current_thread(), None)
        conn.close()
        self._local.conn = None

    def close(self):
        with self._connections_lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
        self._local = threading.local()
