"""
MySQL backend (InnoDB) via pymysql, for deployments where several worker
processes share one job store. Claims use SELECT ... FOR UPDATE SKIP LOCKED
inside a transaction; timestamps are stored as naive UTC DATETIME(6).
"""

import time
from datetime import timezone

from crawler.storage.db import from_db_ts
from crawler.storage.mysql import MySQLDatabase
from frontier.sql_storage import Dialect, SqlStorage

SCHEMA = """
CREATE TABLE IF NOT EXISTS urls (
    url_hash CHAR(64) NOT NULL PRIMARY KEY,
    normalized_url TEXT NOT NULL,
    original_url TEXT NOT NULL,
    host VARCHAR(255) NOT NULL,
    path TEXT NOT NULL,
    category VARCHAR(64) NOT NULL,
    depth INT NOT NULL DEFAULT 0,
    priority INT NOT NULL DEFAULT 50,
    status VARCHAR(16) NOT NULL DEFAULT 'pending',
    last_crawled_at DATETIME(6) NULL,
    next_crawl_at DATETIME(6) NULL,
    http_status INT NULL,
    retry_count INT NOT NULL DEFAULT 0,
    content_hash CHAR(64) NULL,
    created_at DATETIME(6) NOT NULL,
    INDEX idx_urls_due (status, next_crawl_at),
    INDEX idx_urls_priority (priority)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

CREATE TABLE IF NOT EXISTS crawl_jobs (
    id BIGINT NOT NULL AUTO_INCREMENT PRIMARY KEY,
    url TEXT NOT NULL,
    url_hash CHAR(64) NOT NULL,
    category VARCHAR(64) NOT NULL,
    status VARCHAR(16) NOT NULL DEFAULT 'pending',
    depth INT NOT NULL DEFAULT 0,
    attempts INT NOT NULL DEFAULT 0,
    http_status INT NULL,
    robots_txt_allowed TINYINT(1) NULL,
    crawled_at DATETIME(6) NULL,
    failed_reason TEXT NULL,
    available_at DATETIME(6) NULL,
    queue_entry_id BIGINT NULL,
    created_at DATETIME(6) NOT NULL,
    INDEX idx_jobs_url_category (url_hash, category),
    INDEX idx_jobs_status (status, available_at)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

CREATE TABLE IF NOT EXISTS hosts (
    host VARCHAR(255) NOT NULL PRIMARY KEY,
    robots_fetched_at DATETIME(6) NULL,
    robots_txt_exists TINYINT(1) NOT NULL DEFAULT 0,
    crawl_delay TEXT NULL,
    allow_rules MEDIUMTEXT NULL,
    disallow_rules MEDIUMTEXT NULL,
    robots_txt_raw MEDIUMTEXT NULL
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

CREATE TABLE IF NOT EXISTS crawl_queue (
    id BIGINT NOT NULL AUTO_INCREMENT PRIMARY KEY,
    url_hash CHAR(64) NOT NULL,
    scheduled_at DATETIME(6) NOT NULL,
    locked_at DATETIME(6) NULL,
    worker_id VARCHAR(128) NULL,
    UNIQUE KEY uniq_queue_url (url_hash),
    INDEX idx_queue_locked (locked_at),
    CONSTRAINT fk_queue_url FOREIGN KEY (url_hash) REFERENCES urls (url_hash) ON DELETE CASCADE
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

CREATE TABLE IF NOT EXISTS links (
    source_hash CHAR(64) NOT NULL,
    target_hash CHAR(64) NOT NULL,
    anchor_text TEXT NULL,
    nofollow TINYINT(1) NOT NULL DEFAULT 0,
    discovered_at DATETIME(6) NOT NULL,
    PRIMARY KEY (source_hash, target_hash),
    INDEX idx_links_target (target_hash)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

CREATE TABLE IF NOT EXISTS kv_cache (
    cache_key VARCHAR(255) NOT NULL PRIMARY KEY,
    cache_value TEXT NOT NULL,
    expires_at DOUBLE NULL
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
"""


class MySQLDialect(Dialect):
    name = "mysql"
    placeholder = "%s"
    insert_ignore = "INSERT IGNORE"
    for_update = " FOR UPDATE"
    skip_locked = " FOR UPDATE SKIP LOCKED"

    def upsert(self, table, columns, keys):
        updates = ", ".join(f"{c} = VALUES({c})" for c in columns if c not in keys)
        return (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(['?'] * len(columns))}) "
            f"ON DUPLICATE KEY UPDATE {updates}"
        )

    def to_db(self, value):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def from_db(self, value):
        return from_db_ts(value)


class MySQLStorage(SqlStorage):

    def __init__(self, connect=None, clock=time.time, sleep=time.sleep, **config):
        super().__init__(MySQLDatabase(connect=connect, sleep=sleep, **config), MySQLDialect(), SCHEMA, clock=clock)
