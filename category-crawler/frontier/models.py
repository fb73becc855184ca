from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from crawler.core import RETRY_BACKOFF, MAX_ATTEMPTS


def _now():
    return datetime.now(timezone.utc)


class UrlStatus(Enum):
    PENDING = "pending"
    CRAWLED = "crawled"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


@dataclass(frozen=True)
class UrlRecord:
    """
    Durable frontier entry.
    Invariants: url_hash is the Primary Key (SHA-256 of normalized_url).
    """
    url_hash: str
    normalized_url: str
    original_url: str
    host: str
    path: str
    category: str
    depth: int = 0
    priority: int = 50
    status: UrlStatus = UrlStatus.PENDING
    last_crawled_at: Optional[datetime] = None
    next_crawl_at: Optional[datetime] = None
    http_status: Optional[int] = None
    retry_count: int = 0
    content_hash: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def from_normalized(cls, normalized, category: str, depth: int = 0, now=None):
        return cls(
            url_hash=normalized.url_hash,
            normalized_url=normalized.normalized,
            original_url=normalized.original,
            host=normalized.host,
            path=normalized.path,
            category=category,
            depth=depth,
            created_at=now or _now(),
        )


@dataclass(frozen=True)
class CrawlJob:
    """
    One attempt to process a URL within the current cycle.
    Invariants: at most one active (pending/processing) job per (url_hash, category).
    url_hash is the identity digest of `url`, so unnormalizable URLs still get one.
    """
    url: str
    url_hash: str
    category: str
    status: JobStatus = JobStatus.PENDING
    depth: int = 0
    attempts: int = 0
    http_status: Optional[int] = None
    robots_txt_allowed: Optional[bool] = None
    crawled_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    available_at: Optional[datetime] = None
    queue_entry_id: Optional[int] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class QueueEntry:
    """Lockable claim on a due URL. locked_at/worker_id are set together."""
    id: int
    url_hash: str
    scheduled_at: datetime
    locked_at: Optional[datetime] = None
    worker_id: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None


@dataclass(frozen=True)
class Link:
    """Directed discovery edge, keyed by URL digests."""
    source_hash: str
    target_hash: str
    anchor_text: Optional[str] = None
    nofollow: bool = False
    discovered_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RetryPolicy:
    backoff: Tuple[int, ...] = RETRY_BACKOFF
    max_attempts: int = MAX_ATTEMPTS

    def delay_for(self, attempt: int) -> timedelta:
        """Delay after the given (1-based) attempt; the last table value repeats."""
        index = min(max(attempt, 1) - 1, len(self.backoff) - 1)
        return timedelta(seconds=self.backoff[index])
