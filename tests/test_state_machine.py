"""
Crawl job transitions: retries, terminal failures and the permanent-failure cache.
"""

import dataclasses
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from crawler.models import FetchOutcome, FetchResult, NormalizationError
from crawler.normalizer import identity_digest, normalize
from crawler.storage.cache import MemoryKeyValueStore
from frontier.models import CrawlJob, JobStatus, RetryPolicy, UrlRecord, UrlStatus
from frontier.orchestrator import CrawlOrchestrator, Worker, WorkerPool
from frontier.scheduler import FrontierScheduler
from frontier.sqlite_storage import SQLiteStorage
from frontier.state import FailureCache, advance

URL = "https://example.com/news/story"


def processing_job(attempts=1):
    return CrawlJob(id=1, url=URL, url_hash=normalize(URL).url_hash, category="technology",
                    status=JobStatus.PROCESSING, attempts=attempts)


def result(outcome, **kwargs):
    return FetchResult(url=URL, outcome=outcome, **kwargs)


class TestAdvance(unittest.TestCase):

    def setUp(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.policy = RetryPolicy(backoff=(10, 30, 120, 600), max_attempts=5)

    def test_success_completes_and_hands_off_storage_key(self):
        t = advance(processing_job(), result(FetchOutcome.SUCCESS, http_status=200, storage_key="crawl/x.html"),
                    self.now, self.policy)
        self.assertEqual(t.job.status, JobStatus.COMPLETED)
        self.assertEqual(t.url_status, UrlStatus.CRAWLED)
        self.assertEqual(t.parse_key, "crawl/x.html")
        self.assertEqual(t.job.crawled_at, self.now)
        self.assertFalse(t.cache_failure)

    def test_retryable_goes_back_to_pending_with_backoff(self):
        for attempt, delay in [(1, 10), (2, 30), (3, 120), (4, 600)]:
            t = advance(processing_job(attempt), result(FetchOutcome.RETRYABLE, error="Server error (503)"),
                        self.now, self.policy)
            self.assertEqual(t.job.status, JobStatus.PENDING)
            self.assertEqual(t.job.available_at, self.now + timedelta(seconds=delay))
            self.assertEqual(t.retry_delay, delay)
            self.assertIsNone(t.url_status)

    def test_last_backoff_value_repeats(self):
        policy = RetryPolicy(backoff=(10, 30, 120, 600), max_attempts=8)
        t = advance(processing_job(6), result(FetchOutcome.RETRYABLE, error="timeout"), self.now, policy)
        self.assertEqual(t.retry_delay, 600)

    def test_exceeding_max_attempts_is_terminal_and_cached(self):
        t = advance(processing_job(5), result(FetchOutcome.RETRYABLE, error="Server error (503)"), self.now, self.policy)
        self.assertEqual(t.job.status, JobStatus.FAILED)
        self.assertTrue(t.job.failed_reason.startswith("Exceeded max attempts (5)"))
        self.assertIn("Server error (503)", t.job.failed_reason)
        self.assertTrue(t.cache_failure)
        self.assertEqual(t.url_status, UrlStatus.FAILED)

    def test_429_is_terminal_on_first_attempt(self):
        t = advance(processing_job(1), result(FetchOutcome.RATE_LIMITED, http_status=429, error="Rate limited by server (429)"),
                    self.now, self.policy)
        self.assertEqual(t.job.status, JobStatus.FAILED)
        self.assertTrue(t.cache_failure)
        self.assertEqual(t.job.http_status, 429)

    def test_permanent_failure_not_cached(self):
        t = advance(processing_job(), result(FetchOutcome.PERMANENT, http_status=404, error="HTTP error (404)"),
                    self.now, self.policy)
        self.assertEqual(t.job.status, JobStatus.FAILED)
        self.assertFalse(t.cache_failure)
        self.assertEqual(t.url_status, UrlStatus.FAILED)

    def test_robots_disallow_skips_url(self):
        t = advance(processing_job(), result(FetchOutcome.PERMANENT, robots_allowed=False, error="Disallowed by robots.txt"),
                    self.now, self.policy)
        self.assertEqual(t.url_status, UrlStatus.SKIPPED)
        self.assertFalse(t.job.robots_txt_allowed)

    def test_normalization_failure_is_terminal_and_cached(self):
        t = advance(processing_job(), NormalizationError(url="ftp://x", reason="unsupported scheme: ftp"),
                    self.now, self.policy)
        self.assertEqual(t.job.status, JobStatus.FAILED)
        self.assertTrue(t.cache_failure)
        self.assertIn("unsupported scheme", t.job.failed_reason)

    def test_only_processing_jobs_advance(self):
        job = dataclasses.replace(processing_job(), status=JobStatus.PENDING)
        with self.assertRaises(ValueError):
            advance(job, result(FetchOutcome.SUCCESS), self.now, self.policy)


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class TestOrchestrator(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage = SQLiteStorage(os.path.join(self.tmp.name, "crawler.db"))
        self.storage.initialize()
        self.clock = Clock()
        self.cache = MemoryKeyValueStore()
        self.failures = FailureCache(self.cache)
        self.fetcher = MagicMock()
        self.processor = MagicMock()
        self.scheduler = FrontierScheduler(self.storage.urls, self.storage.queue, self.storage.links, clock=self.clock)
        self.orchestrator = CrawlOrchestrator(
            self.storage.urls, self.storage.jobs, self.scheduler, self.fetcher, self.processor, self.failures,
            retry_policy=RetryPolicy(backoff=(10, 30, 120, 600), max_attempts=5), clock=self.clock,
        )

    def tearDown(self):
        self.storage.close()
        self.tmp.cleanup()

    def _admit(self, url=URL):
        return self.storage.jobs.create_if_absent(CrawlJob(
            url=url, url_hash=identity_digest(url), category="technology", created_at=self.clock.now,
        ))

    def test_always_retryable_job_runs_max_attempts_with_backoff(self):
        job = self._admit()
        self.fetcher.fetch.return_value = result(FetchOutcome.RETRYABLE, error="Server error (500)")

        attempt_times = []
        for expected_gap in (10, 30, 120, 600, None):
            self.assertTrue(self.orchestrator.run_once("w1"))
            attempt_times.append(self.clock.now)
            # Not due before the backoff elapses
            self.assertFalse(self.orchestrator.run_once("w1"))
            if expected_gap is not None:
                self.clock.now += timedelta(seconds=expected_gap)

        gaps = [(b - a).total_seconds() for a, b in zip(attempt_times, attempt_times[1:])]
        self.assertEqual(gaps, [10, 30, 120, 600])
        self.assertEqual(self.fetcher.fetch.call_count, 5)

        stored = self.storage.jobs.get(job.id)
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertEqual(stored.attempts, 5)
        self.assertTrue(self.failures.contains(job.url_hash))
        self.assertEqual(self.storage.urls.get(job.url_hash).status, UrlStatus.FAILED)

    def test_429_never_retried(self):
        job = self._admit()
        self.fetcher.fetch.return_value = result(FetchOutcome.RATE_LIMITED, http_status=429, error="Rate limited by server (429)")

        self.assertTrue(self.orchestrator.run_once("w1"))
        self.clock.now += timedelta(days=1)
        self.assertFalse(self.orchestrator.run_once("w1"))

        self.assertEqual(self.fetcher.fetch.call_count, 1)
        self.assertEqual(self.storage.jobs.get(job.id).status, JobStatus.FAILED)
        self.assertTrue(self.failures.contains(job.url_hash))

    def test_unnormalizable_url_fails_without_fetch(self):
        job = self._admit("ftp://example.com/file")
        self.assertTrue(self.orchestrator.run_once("w1"))
        self.fetcher.fetch.assert_not_called()
        stored = self.storage.jobs.get(job.id)
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertTrue(self.failures.contains(identity_digest("ftp://example.com/file")))

    def test_success_updates_url_schedules_and_hands_off(self):
        job = self._admit()
        self.fetcher.fetch.return_value = result(FetchOutcome.SUCCESS, http_status=200, storage_key="crawl/technology/k.html")

        self.assertTrue(self.orchestrator.run_once("w1"))

        record = self.storage.urls.get(job.url_hash)
        self.assertEqual(record.status, UrlStatus.CRAWLED)
        self.assertEqual(record.http_status, 200)
        self.assertEqual(record.last_crawled_at, self.clock.now)
        self.assertEqual(record.next_crawl_at, self.clock.now + timedelta(days=1))
        self.processor.process.assert_called_once()
        _, _, key = self.processor.process.call_args[0]
        self.assertEqual(key, "crawl/technology/k.html")

    def test_failed_url_waits_for_its_revisit_time(self):
        """Scenario: A seed returns 404. Later schedule passes must not refetch it before it is due."""
        job = self._admit()
        self.fetcher.fetch.return_value = result(FetchOutcome.PERMANENT, http_status=404, error="HTTP error (404)")
        self.assertTrue(self.orchestrator.run_once("w1"))

        record = self.storage.urls.get(job.url_hash)
        self.assertEqual(record.status, UrlStatus.FAILED)
        self.assertEqual(record.next_crawl_at, self.clock.now + timedelta(days=1))

        for _ in range(3):
            self.assertEqual(self.scheduler.schedule(), 0)
            self.assertFalse(self.orchestrator.run_once("w1"))
        self.assertEqual(self.fetcher.fetch.call_count, 1)

        self.clock.now += timedelta(days=1)
        self.assertEqual(self.scheduler.schedule(), 1)
        self.assertTrue(self.orchestrator.run_once("w1"))
        self.assertEqual(self.fetcher.fetch.call_count, 2)

    def test_processing_error_does_not_escape(self):
        job = self._admit()
        self.fetcher.fetch.side_effect = RuntimeError("database is on fire")
        self.assertTrue(self.orchestrator.run_once("w1"))
        stored = self.storage.jobs.get(job.id)
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertIn("Internal error", stored.failed_reason)

    def test_parse_error_leaves_job_completed(self):
        job = self._admit()
        self.fetcher.fetch.return_value = result(FetchOutcome.SUCCESS, http_status=200, storage_key="k")
        self.processor.process.side_effect = ValueError("bad html")
        self.assertTrue(self.orchestrator.run_once("w1"))
        self.assertEqual(self.storage.jobs.get(job.id).status, JobStatus.COMPLETED)

    def test_queue_entry_becomes_recrawl_job(self):
        record = UrlRecord.from_normalized(normalize(URL), "technology", depth=0, now=self.clock.now)
        self.storage.urls.create_if_absent(record)
        self.scheduler.schedule()
        self.fetcher.fetch.return_value = result(FetchOutcome.SUCCESS, http_status=200, storage_key="k")

        self.assertTrue(self.orchestrator.run_once("w1"))

        self.assertEqual(self.storage.queue.counts(), {"total": 0, "locked": 0})
        self.assertEqual(self.storage.jobs.count_by_category(), {"technology": {"completed": 1}})
        self.fetcher.fetch.assert_called_once_with(record.normalized_url, "technology")


class TestWorkers(unittest.TestCase):

    def test_worker_survives_exceptions(self):
        orchestrator = MagicMock()
        worker = Worker(orchestrator, name="worker-1", idle_sleep=0.01)

        def run_once(worker_id):
            if orchestrator.run_once.call_count >= 3:
                worker.stop()
            if orchestrator.run_once.call_count == 1:
                raise RuntimeError("boom")
            return True

        orchestrator.run_once.side_effect = run_once
        worker.start()
        worker.join(timeout=5)

        self.assertFalse(worker.is_alive())
        self.assertEqual(worker.errors, 1)
        self.assertEqual(worker.processed, 2)

    def test_pool_stops_after_time_budget(self):
        orchestrator = MagicMock()
        orchestrator.run_once.return_value = False
        pool = WorkerPool(orchestrator, size=2, idle_sleep=0.01)

        stats = pool.run(max_seconds=0.2)

        self.assertEqual(set(stats), {"worker-1", "worker-2"})
        self.assertTrue(all(not w.is_alive() for w in pool.workers))
        orchestrator.run_once.assert_any_call("worker-1")


if __name__ == "__main__":
    unittest.main()
