from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

from crawler.models import HostRecord
from frontier.models import CrawlJob, JobStatus, Link, QueueEntry, UrlRecord, UrlStatus


class UrlStore(ABC):
    """
    Durable frontier of known URLs keyed by url_hash.
    The fetch-owned fields (status, http_status, last_crawled_at, retry_count) and the
    schedule-owned fields (priority, next_crawl_at) are written by separate methods.
    """

    @abstractmethod
    def create_if_absent(self, record: UrlRecord) -> bool:
        """
        Atomically create the record ONLY if url_hash does not exist.
        Returns True if created, False if already exists.
        """
        pass

    @abstractmethod
    def get(self, url_hash: str) -> Optional[UrlRecord]:
        pass

    @abstractmethod
    def record_fetch(self, url_hash: str, status: UrlStatus, http_status: Optional[int],
                     crawled_at: Optional[datetime], retry_count: int) -> bool:
        pass

    @abstractmethod
    def update_schedule(self, url_hash: str, priority: int, next_crawl_at: datetime) -> bool:
        pass

    @abstractmethod
    def set_content_hash(self, url_hash: str, content_hash: str) -> bool:
        pass

    @abstractmethod
    def due(self, now: datetime, limit: int) -> List[UrlRecord]:
        """
        Non-skipped records whose next_crawl_at is null or <= now,
        ordered by priority DESC then next_crawl_at ASC.
        """
        pass

    @abstractmethod
    def iter_chunks(self, chunk_size: int) -> Iterator[List[UrlRecord]]:
        """Walk every record in url_hash order, chunk_size rows at a time."""
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        pass


class CrawlJobStore(ABC):
    """
    Per-cycle audit log of crawl jobs with CAS (Compare-And-Swap) transitions.
    """

    @abstractmethod
    def create_if_absent(self, job: CrawlJob, active_only: bool = False) -> Optional[CrawlJob]:
        """
        Atomically insert job unless a job for (url_hash, category) exists
        (only pending/processing ones count when active_only).
        Returns the stored job (with id) or None.
        """
        pass

    @abstractmethod
    def claim_next(self, now: datetime) -> Optional[CrawlJob]:
        """
        Atomically move the oldest due PENDING job to PROCESSING, incrementing attempts.
        """
        pass

    @abstractmethod
    def transition(self, job_id: int, from_status: JobStatus, to_job: CrawlJob) -> bool:
        """
        Replace the job's mutable fields ONLY if its current status == from_status.
        Returns True if transition succeeded, False otherwise.
        """
        pass

    @abstractmethod
    def get(self, job_id: int) -> Optional[CrawlJob]:
        pass

    @abstractmethod
    def exists(self, url_hash: str, category: str, active_only: bool = False) -> bool:
        pass

    @abstractmethod
    def delete_for_categories(self, categories: Sequence[str]) -> int:
        pass

    @abstractmethod
    def count_by_category(self) -> Dict[str, Dict[str, int]]:
        """{category: {status: count}}"""
        pass


class HostStore(ABC):

    @abstractmethod
    def get(self, host: str) -> Optional[HostRecord]:
        pass

    @abstractmethod
    def upsert(self, record: HostRecord) -> None:
        pass


class QueueStore(ABC):
    """
    Lockable scheduling overlay on the URL table. At most one entry per URL.
    """

    @abstractmethod
    def enqueue(self, url_hash: str, scheduled_at: datetime) -> bool:
        """Insert an entry unless one exists for url_hash. Returns True if inserted."""
        pass

    @abstractmethod
    def get(self, entry_id: int) -> Optional[QueueEntry]:
        pass

    @abstractmethod
    def lock(self, entry_id: int, worker_id: str, now: datetime) -> bool:
        """CAS: lock ONLY if currently unlocked. Exactly one concurrent caller wins."""
        pass

    @abstractmethod
    def unlock(self, entry_id: int) -> bool:
        pass

    @abstractmethod
    def claim(self, worker_id: str, now: datetime) -> Optional[QueueEntry]:
        """Lock and return the oldest unlocked entry."""
        pass

    @abstractmethod
    def delete(self, entry_id: int) -> bool:
        pass

    @abstractmethod
    def delete_stale(self, locked_before: datetime) -> int:
        pass

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """{'total': n, 'locked': n}"""
        pass


class LinkStore(ABC):

    @abstractmethod
    def add(self, link: Link) -> bool:
        """Record the edge unless (source_hash, target_hash) exists."""
        pass

    @abstractmethod
    def inbound_count(self, target_hash: str) -> int:
        pass
