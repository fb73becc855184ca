import threading
import time

import pymysql
from pymysql.cursors import DictCursor
from pymysql.err import OperationalError

from crawler.core import DB_CONFIG, StorageUnavailable
from crawler.storage.db import retry_on_lock


# ER_LOCK_WAIT_TIMEOUT, ER_LOCK_DEADLOCK
MYSQL_LOCK_ERRORS = (1205, 1213)


def is_mysql_lock_error(exc: Exception) -> bool:
    return isinstance(exc, OperationalError) and bool(exc.args) and exc.args[0] in MYSQL_LOCK_ERRORS


class MySQLDatabase:
    """
    Thread-local pymysql connections (InnoDB).
    run(work) executes work(cursor) inside begin/commit, rolling back on error and
    retrying lock-wait timeouts and deadlocks.
    """

    is_lock_error = staticmethod(is_mysql_lock_error)

    def __init__(self, connect=None, sleep=time.sleep, **config):
        self._config = dict(DB_CONFIG, cursorclass=DictCursor, **config)
        self._connect = connect or (lambda: pymysql.connect(**self._config))
        self._sleep = sleep
        self._local = threading.local()

    def connection(self):
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = self._connect()
            except pymysql.MySQLError as e:
                raise StorageUnavailable(f"Cannot connect to MySQL at {self._config.get('host')}: {e}") from e
            self._local.conn = conn
        return conn

    def _transaction(self, work):
        conn = self.connection()
        try:
            conn.begin()
            with conn.cursor() as cursor:
                result = work(cursor)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise

    def run(self, work):
        return retry_on_lock(lambda: self._transaction(work), self.is_lock_error, sleep=self._sleep)

    def query(self, sql, params=()):
        def _read(cursor):
            cursor.execute(sql, params)
            return cursor.fetchall()
        return self.run(_read)

    def executescript(self, script: str) -> None:
        statements = [s.strip() for s in script.split(";") if s.strip()]

        def _apply(cursor):
            for statement in statements:
                cursor.execute(statement)
        self.run(_apply)

    def close_thread(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def close(self):
        self.close_thread()
