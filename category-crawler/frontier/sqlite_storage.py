"""
Embedded SQLite backend (default). Single writer; every write runs in a
BEGIN IMMEDIATE transaction with lock retries (see crawler.storage.db).
"""

import time

from crawler.core import SQLITE_PATH
from crawler.storage.db import SQLiteDatabase, to_db_ts, from_db_ts
from frontier.sql_storage import Dialect, SqlStorage

SCHEMA = """
CREATE TABLE IF NOT EXISTS urls (
    url_hash TEXT PRIMARY KEY,
    normalized_url TEXT NOT NULL,
    original_url TEXT NOT NULL,
    host TEXT NOT NULL,
    path TEXT NOT NULL,
    category TEXT NOT NULL,
    depth INTEGER NOT NULL DEFAULT 0,
    priority INTEGER NOT NULL DEFAULT 50,
    status TEXT NOT NULL DEFAULT 'pending',
    last_crawled_at TEXT,
    next_crawl_at TEXT,
    http_status INTEGER,
    retry_count INTEGER NOT NULL DEFAULT 0,
    content_hash TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_urls_due ON urls (status, next_crawl_at);
CREATE INDEX IF NOT EXISTS idx_urls_priority ON urls (priority);

CREATE TABLE IF NOT EXISTS crawl_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    url_hash TEXT NOT NULL,
    category TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    depth INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    http_status INTEGER,
    robots_txt_allowed INTEGER,
    crawled_at TEXT,
    failed_reason TEXT,
    available_at TEXT,
    queue_entry_id INTEGER,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_url_category ON crawl_jobs (url_hash, category);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON crawl_jobs (status, available_at);

CREATE TABLE IF NOT EXISTS hosts (
    host TEXT PRIMARY KEY,
    robots_fetched_at TEXT,
    robots_txt_exists INTEGER NOT NULL DEFAULT 0,
    crawl_delay TEXT,
    allow_rules TEXT,
    disallow_rules TEXT,
    robots_txt_raw TEXT
);

CREATE TABLE IF NOT EXISTS crawl_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url_hash TEXT NOT NULL UNIQUE REFERENCES urls (url_hash) ON DELETE CASCADE,
    scheduled_at TEXT NOT NULL,
    locked_at TEXT,
    worker_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_queue_locked ON crawl_queue (locked_at);

CREATE TABLE IF NOT EXISTS links (
    source_hash TEXT NOT NULL,
    target_hash TEXT NOT NULL,
    anchor_text TEXT,
    nofollow INTEGER NOT NULL DEFAULT 0,
    discovered_at TEXT NOT NULL,
    PRIMARY KEY (source_hash, target_hash)
);
CREATE INDEX IF NOT EXISTS idx_links_target ON links (target_hash);

CREATE TABLE IF NOT EXISTS kv_cache (
    cache_key TEXT PRIMARY KEY,
    cache_value TEXT NOT NULL,
    expires_at REAL
);
"""


class SQLiteDialect(Dialect):
    name = "sqlite"

    def upsert(self, table, columns, keys):
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in keys)
        return (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(['?'] * len(columns))}) "
            f"ON CONFLICT ({', '.join(keys)}) DO UPDATE SET {updates}"
        )

    def to_db(self, value):
        return to_db_ts(value)

    def from_db(self, value):
        return from_db_ts(value)


class SQLiteStorage(SqlStorage):

    def __init__(self, path=SQLITE_PATH, clock=time.time, sleep=time.sleep):
        super().__init__(SQLiteDatabase(path, sleep=sleep), SQLiteDialect(), SCHEMA, clock=clock)
