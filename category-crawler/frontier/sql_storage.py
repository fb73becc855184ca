"""
Relational implementation of the frontier repositories, shared by the SQLite and
MySQL backends. Statements are written with '?' placeholders; the backend's
Dialect adapts placeholders, INSERT-IGNORE, upsert and row-locking syntax.
Rows are read by column name (sqlite3.Row / pymysql DictCursor).
"""

import dataclasses
import json
import time
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

from crawler.core import setup_logger
from crawler.models import HostRecord, RobotsRule
from crawler.storage.cache import KeyValueStore
from frontier.models import (
    ACTIVE_JOB_STATUSES, CrawlJob, JobStatus, Link, QueueEntry, UrlRecord, UrlStatus,
)
from frontier.storage import CrawlJobStore, HostStore, LinkStore, QueueStore, UrlStore

logger = setup_logger("crawler.db")


class Dialect:
    """SQL differences between backends."""
    name = "generic"
    placeholder = "?"
    insert_ignore = "INSERT OR IGNORE"
    for_update = ""
    skip_locked = ""

    def prepare(self, sql: str) -> str:
        if self.placeholder == "?":
            return sql
        return sql.replace("?", self.placeholder)

    def upsert(self, table: str, columns: Sequence[str], keys: Sequence[str]) -> str:
        raise NotImplementedError

    def to_db(self, value: Optional[datetime]):
        raise NotImplementedError

    def from_db(self, value) -> Optional[datetime]:
        raise NotImplementedError


def _placeholders(n: int) -> str:
    return ", ".join(["?"] * n)


class _SqlRepository:

    def __init__(self, db, dialect: Dialect):
        self._db = db
        self._dialect = dialect

    def _q(self, sql: str) -> str:
        return self._dialect.prepare(sql)

    def _execute(self, sql: str, params=()) -> int:
        def _work(cursor):
            cursor.execute(self._q(sql), params)
            return cursor.rowcount
        return self._db.run(_work)

    def _rows(self, sql: str, params=()):
        return list(self._db.query(self._q(sql), params))

    def _row(self, sql: str, params=()):
        rows = self._rows(sql, params)
        return rows[0] if rows else None

    def _ts(self, value):
        return self._dialect.to_db(value)

    def _dt(self, value):
        return self._dialect.from_db(value)


class SqlUrlStore(_SqlRepository, UrlStore):

    COLUMNS = (
        "url_hash", "normalized_url", "original_url", "host", "path", "category",
        "depth", "priority", "status", "last_crawled_at", "next_crawl_at",
        "http_status", "retry_count", "content_hash", "created_at",
    )

    def _params(self, r: UrlRecord):
        return (
            r.url_hash, r.normalized_url, r.original_url, r.host, r.path, r.category,
            r.depth, r.priority, r.status.value, self._ts(r.last_crawled_at), self._ts(r.next_crawl_at),
            r.http_status, r.retry_count, r.content_hash, self._ts(r.created_at),
        )

    def _to_record(self, row) -> UrlRecord:
        return UrlRecord(
            url_hash=row["url_hash"],
            normalized_url=row["normalized_url"],
            original_url=row["original_url"],
            host=row["host"],
            path=row["path"],
            category=row["category"],
            depth=row["depth"],
            priority=row["priority"],
            status=UrlStatus(row["status"]),
            last_crawled_at=self._dt(row["last_crawled_at"]),
            next_crawl_at=self._dt(row["next_crawl_at"]),
            http_status=row["http_status"],
            retry_count=row["retry_count"],
            content_hash=row["content_hash"],
            created_at=self._dt(row["created_at"]),
        )

    def create_if_absent(self, record):
        sql = f"""
            {self._dialect.insert_ignore} INTO urls ({", ".join(self.COLUMNS)})
            VALUES ({_placeholders(len(self.COLUMNS))})
        """
        return self._execute(sql, self._params(record)) > 0

    def get(self, url_hash):
        row = self._row("SELECT * FROM urls WHERE url_hash = ?", (url_hash,))
        return self._to_record(row) if row else None

    def record_fetch(self, url_hash, status, http_status, crawled_at, retry_count):
        sql = """
            UPDATE urls
            SET status = ?, http_status = ?, last_crawled_at = COALESCE(?, last_crawled_at), retry_count = ?
            WHERE url_hash = ?
        """
        return self._execute(sql, (status.value, http_status, self._ts(crawled_at), retry_count, url_hash)) > 0

    def update_schedule(self, url_hash, priority, next_crawl_at):
        sql = "UPDATE urls SET priority = ?, next_crawl_at = ? WHERE url_hash = ?"
        return self._execute(sql, (priority, self._ts(next_crawl_at), url_hash)) > 0

    def set_content_hash(self, url_hash, content_hash):
        return self._execute("UPDATE urls SET content_hash = ? WHERE url_hash = ?", (content_hash, url_hash)) > 0

    def due(self, now, limit):
        sql = """
            SELECT * FROM urls
            WHERE status != ? AND (next_crawl_at IS NULL OR next_crawl_at <= ?)
            ORDER BY priority DESC, next_crawl_at ASC
            LIMIT ?
        """
        rows = self._rows(sql, (UrlStatus.SKIPPED.value, self._ts(now), limit))
        return [self._to_record(row) for row in rows]

    def iter_chunks(self, chunk_size) -> Iterator[List[UrlRecord]]:
        last_hash = ""
        while True:
            rows = self._rows(
                "SELECT * FROM urls WHERE url_hash > ? ORDER BY url_hash ASC LIMIT ?",
                (last_hash, chunk_size),
            )
            if not rows:
                return
            chunk = [self._to_record(row) for row in rows]
            yield chunk
            last_hash = chunk[-1].url_hash

    def count_by_status(self):
        rows = self._rows("SELECT status, COUNT(*) AS n FROM urls GROUP BY status")
        return {row["status"]: int(row["n"]) for row in rows}


class SqlCrawlJobStore(_SqlRepository, CrawlJobStore):

    COLUMNS = (
        "url", "url_hash", "category", "status", "depth", "attempts", "http_status",
        "robots_txt_allowed", "crawled_at", "failed_reason", "available_at",
        "queue_entry_id", "created_at",
    )

    def _to_job(self, row) -> CrawlJob:
        robots = row["robots_txt_allowed"]
        return CrawlJob(
            id=row["id"],
            url=row["url"],
            url_hash=row["url_hash"],
            category=row["category"],
            status=JobStatus(row["status"]),
            depth=row["depth"],
            attempts=row["attempts"],
            http_status=row["http_status"],
            robots_txt_allowed=None if robots is None else bool(robots),
            crawled_at=self._dt(row["crawled_at"]),
            failed_reason=row["failed_reason"],
            available_at=self._dt(row["available_at"]),
            queue_entry_id=row["queue_entry_id"],
            created_at=self._dt(row["created_at"]),
        )

    def _params(self, j: CrawlJob):
        robots = None if j.robots_txt_allowed is None else int(j.robots_txt_allowed)
        return (
            j.url, j.url_hash, j.category, j.status.value, j.depth, j.attempts, j.http_status,
            robots, self._ts(j.crawled_at), j.failed_reason, self._ts(j.available_at),
            j.queue_entry_id, self._ts(j.created_at),
        )

    def _existing_sql(self, active_only):
        sql = "SELECT id FROM crawl_jobs WHERE url_hash = ? AND category = ?"
        if active_only:
            sql += " AND status IN (?, ?)"
        return sql + " LIMIT 1"

    def _existing_params(self, url_hash, category, active_only):
        params = (url_hash, category)
        if active_only:
            params += tuple(s.value for s in ACTIVE_JOB_STATUSES)
        return params

    def create_if_absent(self, job, active_only=False):
        select_sql = self._q(self._existing_sql(active_only) + self._dialect.for_update)
        insert_sql = self._q(f"""
            INSERT INTO crawl_jobs ({", ".join(self.COLUMNS)})
            VALUES ({_placeholders(len(self.COLUMNS))})
        """)

        def _work(cursor):
            # INVARIANT: existence check and insert share one transaction.
            cursor.execute(select_sql, self._existing_params(job.url_hash, job.category, active_only))
            if cursor.fetchone():
                return None
            cursor.execute(insert_sql, self._params(job))
            return dataclasses.replace(job, id=cursor.lastrowid)

        return self._db.run(_work)

    def claim_next(self, now):
        select_sql = self._q(f"""
            SELECT * FROM crawl_jobs
            WHERE status = ? AND (available_at IS NULL OR available_at <= ?)
            ORDER BY depth ASC, id ASC
            LIMIT 1{self._dialect.skip_locked}
        """)
        update_sql = self._q("""
            UPDATE crawl_jobs SET status = ?, attempts = attempts + 1
            WHERE id = ? AND status = ?
        """)

        def _work(cursor):
            cursor.execute(select_sql, (JobStatus.PENDING.value, self._ts(now)))
            row = cursor.fetchone()
            if not row:
                return None
            job = self._to_job(row)
            cursor.execute(update_sql, (JobStatus.PROCESSING.value, job.id, JobStatus.PENDING.value))
            if cursor.rowcount == 0:
                return None
            return dataclasses.replace(job, status=JobStatus.PROCESSING, attempts=job.attempts + 1)

        return self._db.run(_work)

    def transition(self, job_id, from_status, to_job):
        sql = """
            UPDATE crawl_jobs
            SET status = ?, attempts = ?, http_status = ?, robots_txt_allowed = ?, crawled_at = ?,
                failed_reason = ?, available_at = ?, queue_entry_id = ?
            WHERE id = ? AND status = ?
        """
        robots = None if to_job.robots_txt_allowed is None else int(to_job.robots_txt_allowed)
        affected = self._execute(sql, (
            to_job.status.value, to_job.attempts, to_job.http_status, robots,
            self._ts(to_job.crawled_at), to_job.failed_reason, self._ts(to_job.available_at),
            to_job.queue_entry_id, job_id, from_status.value,
        ))
        return affected > 0

    def get(self, job_id):
        row = self._row("SELECT * FROM crawl_jobs WHERE id = ?", (job_id,))
        return self._to_job(row) if row else None

    def exists(self, url_hash, category, active_only=False):
        sql = self._existing_sql(active_only)
        return self._row(sql, self._existing_params(url_hash, category, active_only)) is not None

    def delete_for_categories(self, categories):
        categories = list(categories)
        if not categories:
            return 0
        sql = f"DELETE FROM crawl_jobs WHERE category IN ({_placeholders(len(categories))})"
        return self._execute(sql, tuple(categories))

    def count_by_category(self):
        rows = self._rows("SELECT category, status, COUNT(*) AS n FROM crawl_jobs GROUP BY category, status")
        counts: Dict[str, Dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["category"], {})[row["status"]] = int(row["n"])
        return counts


class SqlHostStore(_SqlRepository, HostStore):

    COLUMNS = (
        "host", "robots_fetched_at", "robots_txt_exists", "crawl_delay",
        "allow_rules", "disallow_rules", "robots_txt_raw",
    )

    @staticmethod
    def _dump_rules(rules):
        return json.dumps([[rule.user_agent, rule.pattern] for rule in rules])

    @staticmethod
    def _load_rules(raw):
        return [RobotsRule(agent, pattern) for agent, pattern in json.loads(raw or "[]")]

    def get(self, host):
        row = self._row("SELECT * FROM hosts WHERE host = ?", (host,))
        if not row:
            return None
        return HostRecord(
            host=row["host"],
            robots_fetched_at=self._dt(row["robots_fetched_at"]),
            robots_txt_exists=bool(row["robots_txt_exists"]),
            crawl_delay=json.loads(row["crawl_delay"] or "{}"),
            allow_rules=self._load_rules(row["allow_rules"]),
            disallow_rules=self._load_rules(row["disallow_rules"]),
            robots_txt_raw=row["robots_txt_raw"],
        )

    def upsert(self, record):
        sql = self._dialect.upsert("hosts", self.COLUMNS, ("host",))
        self._execute(sql, (
            record.host,
            self._ts(record.robots_fetched_at),
            int(record.robots_txt_exists),
            json.dumps(record.crawl_delay),
            self._dump_rules(record.allow_rules),
            self._dump_rules(record.disallow_rules),
            record.robots_txt_raw,
        ))


class SqlQueueStore(_SqlRepository, QueueStore):

    def _to_entry(self, row) -> QueueEntry:
        return QueueEntry(
            id=row["id"],
            url_hash=row["url_hash"],
            scheduled_at=self._dt(row["scheduled_at"]),
            locked_at=self._dt(row["locked_at"]),
            worker_id=row["worker_id"],
        )

    def enqueue(self, url_hash, scheduled_at):
        sql = f"{self._dialect.insert_ignore} INTO crawl_queue (url_hash, scheduled_at) VALUES (?, ?)"
        return self._execute(sql, (url_hash, self._ts(scheduled_at))) > 0

    def get(self, entry_id):
        row = self._row("SELECT * FROM crawl_queue WHERE id = ?", (entry_id,))
        return self._to_entry(row) if row else None

    def lock(self, entry_id, worker_id, now):
        sql = "UPDATE crawl_queue SET locked_at = ?, worker_id = ? WHERE id = ? AND locked_at IS NULL"
        return self._execute(sql, (self._ts(now), worker_id, entry_id)) == 1

    def unlock(self, entry_id):
        sql = "UPDATE crawl_queue SET locked_at = NULL, worker_id = NULL WHERE id = ?"
        return self._execute(sql, (entry_id,)) > 0

    def claim(self, worker_id, now):
        select_sql = self._q(f"""
            SELECT * FROM crawl_queue
            WHERE locked_at IS NULL
            ORDER BY scheduled_at ASC, id ASC
            LIMIT 1{self._dialect.skip_locked}
        """)
        lock_sql = self._q("UPDATE crawl_queue SET locked_at = ?, worker_id = ? WHERE id = ? AND locked_at IS NULL")

        def _work(cursor):
            cursor.execute(select_sql, ())
            row = cursor.fetchone()
            if not row:
                return None
            entry = self._to_entry(row)
            cursor.execute(lock_sql, (self._ts(now), worker_id, entry.id))
            if cursor.rowcount != 1:
                return None
            return dataclasses.replace(entry, locked_at=now, worker_id=worker_id)

        return self._db.run(_work)

    def delete(self, entry_id):
        return self._execute("DELETE FROM crawl_queue WHERE id = ?", (entry_id,)) > 0

    def delete_stale(self, locked_before):
        sql = "DELETE FROM crawl_queue WHERE locked_at IS NOT NULL AND locked_at < ?"
        return self._execute(sql, (self._ts(locked_before),))

    def counts(self):
        row = self._row("""
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN locked_at IS NOT NULL THEN 1 ELSE 0 END) AS locked
            FROM crawl_queue
        """)
        if not row:
            return {"total": 0, "locked": 0}
        return {"total": int(row["total"] or 0), "locked": int(row["locked"] or 0)}


class SqlLinkStore(_SqlRepository, LinkStore):

    def add(self, link):
        sql = f"""
            {self._dialect.insert_ignore} INTO links (source_hash, target_hash, anchor_text, nofollow, discovered_at)
            VALUES (?, ?, ?, ?, ?)
        """
        return self._execute(sql, (
            link.source_hash, link.target_hash, link.anchor_text,
            int(link.nofollow), self._ts(link.discovered_at),
        )) > 0

    def inbound_count(self, target_hash):
        row = self._row("SELECT COUNT(*) AS n FROM links WHERE target_hash = ?", (target_hash,))
        return int(row["n"]) if row else 0


class SqlKeyValueStore(_SqlRepository, KeyValueStore):
    """
    KeyValueStore over the kv_cache table, shared by every worker on the database.
    Values are JSON; expires_at is epoch seconds from `clock`.
    """

    def __init__(self, db, dialect, clock=time.time):
        super().__init__(db, dialect)
        self._clock = clock

    def _live_value(self, row):
        if not row:
            return None
        expires_at = row["expires_at"]
        if expires_at is not None and float(expires_at) <= self._clock():
            return None
        return json.loads(row["cache_value"])

    def _expiry(self, ttl_seconds):
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    def get(self, key, default=None):
        value = self._live_value(self._row("SELECT cache_value, expires_at FROM kv_cache WHERE cache_key = ?", (key,)))
        return default if value is None else value

    def put(self, key, value, ttl_seconds=None):
        sql = self._dialect.upsert("kv_cache", ("cache_key", "cache_value", "expires_at"), ("cache_key",))
        self._execute(sql, (key, json.dumps(value), self._expiry(ttl_seconds)))

    def increment(self, key, amount=1, ttl_seconds=None):
        select_sql = self._q("SELECT cache_value, expires_at FROM kv_cache WHERE cache_key = ?" + self._dialect.for_update)
        upsert_sql = self._q(self._dialect.upsert("kv_cache", ("cache_key", "cache_value", "expires_at"), ("cache_key",)))

        def _work(cursor):
            # INVARIANT: read and write happen under one write lock.
            cursor.execute(select_sql, (key,))
            row = cursor.fetchone()
            current = self._live_value(row)
            if current is None:
                value, expires_at = amount, self._expiry(ttl_seconds)
            else:
                value, expires_at = int(current) + amount, row["expires_at"]
            cursor.execute(upsert_sql, (key, json.dumps(value), expires_at))
            return value

        return self._db.run(_work)

    def reserve_slot(self, key, interval, ttl_seconds=None):
        select_sql = self._q("SELECT cache_value, expires_at FROM kv_cache WHERE cache_key = ?" + self._dialect.for_update)
        upsert_sql = self._q(self._dialect.upsert("kv_cache", ("cache_key", "cache_value", "expires_at"), ("cache_key",)))

        def _work(cursor):
            cursor.execute(select_sql, (key,))
            last = self._live_value(cursor.fetchone())
            now = self._clock()
            slot = now if last is None else max(now, float(last) + interval)
            expires_at = None if ttl_seconds is None else slot + ttl_seconds
            cursor.execute(upsert_sql, (key, json.dumps(slot), expires_at))
            return slot - now

        return self._db.run(_work)

    def delete(self, key):
        self._execute("DELETE FROM kv_cache WHERE cache_key = ?", (key,))

    def purge_expired(self) -> int:
        return self._execute("DELETE FROM kv_cache WHERE expires_at IS NOT NULL AND expires_at <= ?", (self._clock(),))


class SqlStorage:
    """
    Bundle of repositories over one database.
    initialize() is idempotent; reset() is the operator fresh start (the only hard delete of URLs).
    """

    TABLES = ("links", "crawl_queue", "crawl_jobs", "hosts", "kv_cache", "urls")

    def __init__(self, db, dialect: Dialect, schema: str, clock=time.time):
        self.db = db
        self.dialect = dialect
        self._schema = schema
        self.urls = SqlUrlStore(db, dialect)
        self.jobs = SqlCrawlJobStore(db, dialect)
        self.hosts = SqlHostStore(db, dialect)
        self.queue = SqlQueueStore(db, dialect)
        self.links = SqlLinkStore(db, dialect)
        self.cache = SqlKeyValueStore(db, dialect, clock=clock)

    def initialize(self) -> None:
        self.db.executescript(self._schema)
        logger.info(f"[DB] Schema ready backend={self.dialect.name}")

    def reset(self) -> None:
        def _wipe(cursor):
            for table in self.TABLES:
                cursor.execute(f"DELETE FROM {table}")
        self.db.run(_wipe)
        logger.warning(f"[DB] All crawl state wiped backend={self.dialect.name}")

    def close_thread(self) -> None:
        self.db.close_thread()

    def close(self) -> None:
        self.db.close()
