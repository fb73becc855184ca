"""
Worker-side execution of crawl jobs.
A worker claims a due pending job (or turns a claimed queue entry into a recrawl
job), runs it through normalize -> fetch -> advance(), and persists the result
with CAS transitions so a stale worker can never overwrite a newer state.
"""

import dataclasses
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from crawler.core import MIN_WORKERS, WORKER_IDLE_SLEEP, setup_logger
from crawler.models import NormalizationError
from crawler.normalizer import normalize
from frontier.models import CrawlJob, JobStatus, RetryPolicy, UrlRecord
from frontier.state import advance

logger = setup_logger("crawler.frontier")


class CrawlOrchestrator:

    def __init__(self, urls, jobs, scheduler, fetcher, processor, failures,
                 retry_policy: RetryPolicy = RetryPolicy(),
                 clock=lambda: datetime.now(timezone.utc)):
        self._urls = urls
        self._jobs = jobs
        self._scheduler = scheduler
        self._fetcher = fetcher
        self._processor = processor
        self._failures = failures
        self._policy = retry_policy
        self._clock = clock

    def run_once(self, worker_id: str) -> bool:
        """Claim and process at most one job. Returns False when there was nothing to do."""
        job = self._jobs.claim_next(self._clock())
        if job is None:
            job = self._claim_from_queue(worker_id)
        if job is None:
            return False
        self.process(job, worker_id)
        return True

    def _claim_from_queue(self, worker_id: str) -> Optional[CrawlJob]:
        entry = self._scheduler.claim(worker_id)
        if entry is None:
            return None

        record = self._urls.get(entry.url_hash)
        if record is None or self._failures.contains(entry.url_hash):
            self._scheduler.complete(entry.id)
            return None

        job = self._jobs.create_if_absent(CrawlJob(
            url=record.normalized_url,
            url_hash=record.url_hash,
            category=record.category,
            status=JobStatus.PROCESSING,
            depth=record.depth,
            attempts=1,
            queue_entry_id=entry.id,
            created_at=self._clock(),
        ), active_only=True)

        if job is None:
            # An active job already covers this URL.
            self._scheduler.complete(entry.id)
            return None
        logger.info(f"[WORKER] Recrawl job created from queue url={record.normalized_url} category={record.category}", extra={"context": worker_id})
        return job

    def process(self, job: CrawlJob, worker_id: str) -> None:
        log_extra = {"context": worker_id}
        normalized = None
        try:
            normalized = normalize(job.url)
            if isinstance(normalized, NormalizationError):
                outcome = normalized
            else:
                self._urls.create_if_absent(
                    UrlRecord.from_normalized(normalized, job.category, depth=job.depth, now=self._clock())
                )
                outcome = self._fetcher.fetch(normalized.normalized, job.category)
            transition = advance(job, outcome, self._clock(), self._policy)
        except Exception as e:
            logger.error(f"[CRAWL] Job processing failed url={job.url} category={job.category} attempt={job.attempts} error={e}",
                         exc_info=True, extra=log_extra)
            self._fail(job, f"Internal error: {e}")
            return

        new_job = transition.job
        if not self._jobs.transition(job.id, JobStatus.PROCESSING, new_job):
            logger.warning(f"[CRAWL] Job changed under us, dropping result url={job.url} job_id={job.id}", extra=log_extra)
            return

        if transition.cache_failure:
            self._failures.mark(job.url_hash, new_job.failed_reason or "")

        if normalized and transition.url_status is not None:
            self._urls.record_fetch(
                normalized.url_hash, transition.url_status, new_job.http_status,
                new_job.crawled_at, max(0, new_job.attempts - 1),
            )

        if new_job.status is JobStatus.PENDING:
            logger.warning(f"[CRAWL] Retry scheduled url={job.url} category={job.category} attempt={job.attempts} "
                           f"retry_in_seconds={transition.retry_delay:.0f} error={new_job.failed_reason}", extra=log_extra)
            return

        if new_job.queue_entry_id is not None:
            self._scheduler.complete(new_job.queue_entry_id)

        if normalized and transition.url_status is not None:
            # Every terminal outcome sets the next revisit time, failures included.
            self._scheduler.refresh(normalized.url_hash)

        if new_job.status is JobStatus.FAILED:
            logger.error(f"[CRAWL] Crawl failed url={job.url} category={job.category} attempt={job.attempts} error={new_job.failed_reason}", extra=log_extra)
            return

        logger.info(f"[CRAWL] Crawled url={job.url} category={job.category} http_status={new_job.http_status} attempt={job.attempts}", extra=log_extra)
        if transition.parse_key:
            record = self._urls.get(normalized.url_hash)
            try:
                self._processor.process(new_job, record, transition.parse_key)
            except Exception as e:
                logger.error(f"[PARSE] Page processing failed url={job.url} category={job.category} error={e}", exc_info=True, extra=log_extra)

    def _fail(self, job: CrawlJob, reason: str) -> None:
        try:
            failed = dataclasses.replace(job, status=JobStatus.FAILED, failed_reason=reason, crawled_at=self._clock())
            self._jobs.transition(job.id, JobStatus.PROCESSING, failed)
            self._scheduler.refresh(job.url_hash)
            if job.queue_entry_id is not None:
                self._scheduler.complete(job.queue_entry_id)
        except Exception as e:
            logger.error(f"[CRAWL] Could not record failure url={job.url} job_id={job.id} error={e}")


class Worker(threading.Thread):
    """
    Crawler worker thread.
    Runs in a loop: run_once(), sleeping briefly whenever there is no due work.
    A job's exception never ends the loop.
    """

    def __init__(self, orchestrator: CrawlOrchestrator, name="Worker", idle_sleep=WORKER_IDLE_SLEEP,
                 stop_event: Optional[threading.Event] = None):
        super().__init__(name=name, daemon=True)
        self.orchestrator = orchestrator
        self.idle_sleep = idle_sleep
        self.stop_event = stop_event or threading.Event()
        self.processed = 0
        self.errors = 0

    def run(self):
        logger.info("[WORKER] started", extra={"context": self.name})
        while not self.stop_event.is_set():
            try:
                did_work = self.orchestrator.run_once(self.name)
            except Exception as e:
                self.errors += 1
                logger.error(f"[WORKER] Unexpected error: {e}", exc_info=True, extra={"context": self.name})
                did_work = False
            if did_work:
                self.processed += 1
            else:
                self.stop_event.wait(self.idle_sleep)
        logger.info(f"[WORKER] stopped processed={self.processed} errors={self.errors}", extra={"context": self.name})

    def stop(self):
        self.stop_event.set()


class WorkerPool:
    """
    Starts N workers sharing one stop event. With max_seconds, dispatching stops once
    the budget is spent; in-flight jobs finish before the workers exit.
    """

    def __init__(self, orchestrator, size=MIN_WORKERS, idle_sleep=WORKER_IDLE_SLEEP):
        self._stop = threading.Event()
        self.workers = [
            Worker(orchestrator, name=f"worker-{i + 1}", idle_sleep=idle_sleep, stop_event=self._stop)
            for i in range(size)
        ]

    def start(self):
        for worker in self.workers:
            worker.start()

    def stop(self):
        self._stop.set()

    def join(self, timeout=None):
        for worker in self.workers:
            worker.join(timeout)

    def run(self, max_seconds=None):
        self.start()
        start = time.monotonic()
        try:
            while not self._stop.is_set():
                if max_seconds is not None and time.monotonic() - start >= max_seconds:
                    logger.info(f"[WORKER] Time budget reached, stopping dispatch max_seconds={max_seconds}")
                    break
                self._stop.wait(0.5)
        except KeyboardInterrupt:
            logger.info("[WORKER] Interrupted, stopping workers")
        finally:
            self.stop()
            self.join()
        return self.stats()

    def stats(self):
        return {w.name: {"processed": w.processed, "errors": w.errors} for w in self.workers}
