"""
Frontier scheduler: priorities, revisit intervals and the lockable queue.
"""

import dataclasses
import os
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone

from crawler.normalizer import normalize
from frontier.models import Link, UrlRecord, UrlStatus
from frontier.scheduler import FrontierScheduler
from frontier.sqlite_storage import SQLiteStorage

NOW = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


def record(url, depth=0, last_crawled_at=None, **kwargs):
    base = UrlRecord.from_normalized(normalize(url), "technology", depth=depth, now=NOW)
    if last_crawled_at is not None or kwargs:
        base = dataclasses.replace(base, last_crawled_at=last_crawled_at, **kwargs)
    return base


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class SchedulerTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage = SQLiteStorage(os.path.join(self.tmp.name, "crawler.db"))
        self.storage.initialize()
        self.clock = Clock()
        self.scheduler = FrontierScheduler(self.storage.urls, self.storage.queue, self.storage.links,
                                           batch_size=100, stale_seconds=600, clock=self.clock)

    def tearDown(self):
        self.storage.close()
        self.tmp.cleanup()

    def _add(self, url, **kwargs):
        r = record(url, **kwargs)
        self.storage.urls.create_if_absent(r)
        return r


class TestPriority(SchedulerTestCase):

    def test_never_crawled_seed(self):
        # 50 base + 50 depth + 0 links + 20 never crawled
        self.assertEqual(self.scheduler.calculate_priority(record("https://a.example/"), 0), 100)

    def test_deep_recently_crawled(self):
        r = record("https://a.example/x", depth=6, last_crawled_at=NOW - timedelta(hours=2))
        # 50 + 0 + 0 - 20
        self.assertEqual(self.scheduler.calculate_priority(r, 0), 30)

    def test_stale_page_with_links(self):
        r = record("https://a.example/x", depth=3, last_crawled_at=NOW - timedelta(days=10))
        # 50 + 20 + 15 + 10
        self.assertEqual(self.scheduler.calculate_priority(r, 3), 95)

    def test_inbound_bonus_is_capped(self):
        r = record("https://a.example/x", depth=5, last_crawled_at=NOW - timedelta(days=3))
        self.assertEqual(self.scheduler.calculate_priority(r, 100), 80)

    def test_always_within_bounds(self):
        for depth in range(0, 12):
            for inbound in (0, 1, 7, 50):
                for last in (None, NOW - timedelta(hours=1), NOW - timedelta(days=30)):
                    p = self.scheduler.calculate_priority(record("https://a.example/x", depth=depth, last_crawled_at=last), inbound)
                    self.assertGreaterEqual(p, 1)
                    self.assertLessEqual(p, 100)

    def test_inbound_links_read_from_storage(self):
        target = self._add("https://a.example/target")
        for i in range(2):
            source = self._add(f"https://a.example/source-{i}")
            self.storage.links.add(Link(source.url_hash, target.url_hash, discovered_at=NOW))
        # 50 + 50 + 10 + 20
        self.assertEqual(self.scheduler.calculate_priority(target), 100)
        self.assertEqual(self.storage.links.inbound_count(target.url_hash), 2)


class TestNextCrawl(SchedulerTestCase):

    def test_depth_intervals(self):
        expected = {0: 1, 1: 2, 2: 3, 3: 7, 4: 14, 5: 30, 9: 30}
        for depth, days in expected.items():
            r = record("https://a.example/x", depth=depth)
            self.assertEqual(self.scheduler.calculate_next_crawl(r, 0), NOW + timedelta(days=days), depth)

    def test_popular_pages_come_back_sooner(self):
        r = record("https://a.example/x", depth=3)
        self.assertEqual(self.scheduler.calculate_next_crawl(r, 6), NOW + timedelta(days=6))

    def test_interval_never_below_one_day(self):
        r = record("https://a.example/x", depth=0)
        self.assertEqual(self.scheduler.calculate_next_crawl(r, 20), NOW + timedelta(days=1))


class TestQueue(SchedulerTestCase):

    def test_schedule_enqueues_due_urls_once(self):
        self._add("https://a.example/due")
        self._add("https://a.example/later", next_crawl_at=NOW + timedelta(days=2))
        self._add("https://a.example/blocked", status=UrlStatus.SKIPPED)

        self.assertEqual(self.scheduler.schedule(), 1)
        self.assertEqual(self.scheduler.schedule(), 0)
        self.assertEqual(self.storage.queue.counts(), {"total": 1, "locked": 0})

    def test_schedule_respects_batch_size(self):
        for i in range(5):
            self._add(f"https://a.example/page-{i}")
        scheduler = FrontierScheduler(self.storage.urls, self.storage.queue, self.storage.links,
                                      batch_size=3, clock=self.clock)
        self.assertEqual(scheduler.schedule(), 3)
        self.assertEqual(scheduler.schedule(), 2)

    def test_only_one_worker_wins_a_lock(self):
        self._add("https://a.example/contended")
        self.scheduler.schedule()
        entry = self.scheduler.claim("setup")
        self.scheduler.unlock(entry)

        barrier = threading.Barrier(2)
        results = []

        def contend(worker_id):
            barrier.wait()
            results.append(self.scheduler.lock(entry, worker_id))

        threads = [threading.Thread(target=contend, args=(f"w{i}",)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(results), [False, True])
        stored = self.storage.queue.get(entry.id)
        self.assertIn(stored.worker_id, ("w0", "w1"))

    def test_claim_skips_locked_entries(self):
        self._add("https://a.example/one")
        self._add("https://a.example/two")
        self.scheduler.schedule()

        first = self.scheduler.claim("w1")
        second = self.scheduler.claim("w2")
        self.assertNotEqual(first.id, second.id)
        self.assertIsNone(self.scheduler.claim("w3"))
        self.assertEqual(self.storage.queue.counts(), {"total": 2, "locked": 2})

    def test_stale_claims_are_released_for_rescheduling(self):
        r = self._add("https://a.example/crashed")
        self.scheduler.schedule()
        self.assertIsNotNone(self.scheduler.claim("dead-worker"))

        self.clock.now = NOW + timedelta(seconds=300)
        self.assertEqual(self.scheduler.cleanup_stale_queue(), 0)

        self.clock.now = NOW + timedelta(seconds=601)
        self.assertEqual(self.scheduler.cleanup_stale_queue(), 1)
        self.assertEqual(self.scheduler.schedule(), 1)
        self.assertEqual(self.scheduler.claim("w2").url_hash, r.url_hash)

    def test_complete_deletes_entry(self):
        self._add("https://a.example/done")
        self.scheduler.schedule()
        entry = self.scheduler.claim("w1")
        self.assertTrue(self.scheduler.complete(entry.id))
        self.assertEqual(self.storage.queue.counts(), {"total": 0, "locked": 0})


class TestRefresh(SchedulerTestCase):

    def test_refresh_writes_priority_and_next_crawl(self):
        r = self._add("https://a.example/x", depth=2)
        self.storage.urls.record_fetch(r.url_hash, UrlStatus.CRAWLED, 200, NOW, 0)

        self.assertTrue(self.scheduler.refresh(r.url_hash))
        stored = self.storage.urls.get(r.url_hash)
        # 50 + 30 + 0 - 20 (just crawled)
        self.assertEqual(stored.priority, 60)
        self.assertEqual(stored.next_crawl_at, NOW + timedelta(days=3))

    def test_refresh_unknown_url(self):
        self.assertFalse(self.scheduler.refresh("0" * 64))

    def test_reprioritize_all_walks_every_url(self):
        for i in range(7):
            self._add(f"https://a.example/p{i}", depth=i)
        self.assertEqual(self.scheduler.reprioritize_all(chunk_size=3), 7)
        deep = self.storage.urls.get(normalize("https://a.example/p6").url_hash)
        self.assertEqual(deep.priority, 70)
        self.assertEqual(deep.next_crawl_at, NOW + timedelta(days=30))


if __name__ == "__main__":
    unittest.main()
