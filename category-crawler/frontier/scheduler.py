"""
Frontier scheduler: priority, revisit time and the lockable crawl queue.
It is the only writer of urls.priority and urls.next_crawl_at.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from crawler.core import FETCH_BATCH_SIZE, STALE_QUEUE_SECONDS, setup_logger
from frontier.models import QueueEntry, UrlRecord

logger = setup_logger("crawler.frontier.scheduler")

BASE_PRIORITY = 50
MIN_PRIORITY = 1
MAX_PRIORITY = 100

# depth -> revisit interval in days; deeper pages use DEFAULT_INTERVAL_DAYS
DEPTH_INTERVAL_DAYS = {0: 1, 1: 2, 2: 3, 3: 7, 4: 14}
DEFAULT_INTERVAL_DAYS = 30
POPULAR_INBOUND_LINKS = 5

REPRIORITIZE_CHUNK = 1000


class FrontierScheduler:
    """
    FLOW: schedule() moves due URLs (priority DESC, next_crawl_at ASC) into the queue ->
    workers claim/lock entries -> complete() deletes them -> refresh() recomputes
    priority and next_crawl_at after each crawl -> cleanup_stale_queue() drops claims
    held by crashed workers so the URL can be scheduled again.
    """

    def __init__(self, urls, queue, links, batch_size=FETCH_BATCH_SIZE,
                 stale_seconds=STALE_QUEUE_SECONDS, clock=lambda: datetime.now(timezone.utc)):
        self._urls = urls
        self._queue = queue
        self._links = links
        self._batch_size = batch_size
        self._stale_seconds = stale_seconds
        self._clock = clock

    def schedule(self) -> int:
        now = self._clock()
        inserted = 0
        for record in self._urls.due(now, self._batch_size):
            # INVARIANT: the UNIQUE(url_hash) constraint makes the existence check and insert atomic.
            if self._queue.enqueue(record.url_hash, now):
                inserted += 1
        logger.info(f"[SCHEDULER] Scheduled URLs inserted={inserted} batch_size={self._batch_size}")
        return inserted

    def calculate_priority(self, record: UrlRecord, inbound_links: Optional[int] = None) -> int:
        if inbound_links is None:
            inbound_links = self._links.inbound_count(record.url_hash)
        now = self._clock()

        priority = BASE_PRIORITY
        priority += max(0, 50 - record.depth * 10)
        priority += min(30, max(0, inbound_links) * 5)

        if record.last_crawled_at is None:
            priority += 20
        elif now - record.last_crawled_at < timedelta(days=1):
            priority -= 20
        elif now - record.last_crawled_at > timedelta(days=7):
            priority += 10

        return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))

    def calculate_next_crawl(self, record: UrlRecord, inbound_links: Optional[int] = None) -> datetime:
        if inbound_links is None:
            inbound_links = self._links.inbound_count(record.url_hash)
        days = DEPTH_INTERVAL_DAYS.get(record.depth, DEFAULT_INTERVAL_DAYS)
        if inbound_links > POPULAR_INBOUND_LINKS:
            days -= 1
        return self._clock() + timedelta(days=max(1, days))

    def refresh(self, url_hash: str) -> bool:
        record = self._urls.get(url_hash)
        if record is None:
            return False
        inbound = self._links.inbound_count(url_hash)
        return self._urls.update_schedule(
            url_hash,
            self.calculate_priority(record, inbound),
            self.calculate_next_crawl(record, inbound),
        )

    def reprioritize_all(self, chunk_size=REPRIORITIZE_CHUNK) -> int:
        updated = 0
        for chunk in self._urls.iter_chunks(chunk_size):
            for record in chunk:
                inbound = self._links.inbound_count(record.url_hash)
                self._urls.update_schedule(
                    record.url_hash,
                    self.calculate_priority(record, inbound),
                    self.calculate_next_crawl(record, inbound),
                )
                updated += 1
        logger.info(f"[SCHEDULER] Reprioritized URLs count={updated}")
        return updated

    def cleanup_stale_queue(self) -> int:
        cutoff = self._clock() - timedelta(seconds=self._stale_seconds)
        deleted = self._queue.delete_stale(cutoff)
        if deleted:
            logger.warning(f"[SCHEDULER] Removed stale queue entries count={deleted} stale_seconds={self._stale_seconds}")
        return deleted

    def lock(self, entry: QueueEntry, worker_id: str) -> bool:
        return self._queue.lock(entry.id, worker_id, self._clock())

    def unlock(self, entry: QueueEntry) -> bool:
        return self._queue.unlock(entry.id)

    def claim(self, worker_id: str) -> Optional[QueueEntry]:
        return self._queue.claim(worker_id, self._clock())

    def complete(self, entry_id: int) -> bool:
        return self._queue.delete(entry_id)
