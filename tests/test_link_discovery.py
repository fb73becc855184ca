"""
Link admission: policy, dedup, failure cache, relevance and the daily budget.
"""

import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from crawler.categories import load_categories
from crawler.normalizer import normalize
from crawler.policy import URLPolicy
from crawler.storage.cache import MemoryKeyValueStore
from discovery.interfaces import ExtractedLink
from discovery.links import LinkDiscovery, budget_key
from discovery.relevance import RelevanceScorer
from frontier.models import JobStatus, UrlRecord
from frontier.sqlite_storage import SQLiteStorage
from frontier.state import FailureCache

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class TestLinkDiscovery(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage = SQLiteStorage(os.path.join(self.tmp.name, "crawler.db"))
        self.storage.initialize()
        self.cache = MemoryKeyValueStore()
        self.failures = FailureCache(self.cache)
        self.scorer = RelevanceScorer(load_categories(path=None), allowed_external_domains=[])
        self.discovery = self._discovery(self.scorer, max_per_category=10)

        self.source = UrlRecord.from_normalized(normalize("https://www.theverge.com/"), "technology", depth=0, now=NOW)
        self.storage.urls.create_if_absent(self.source)
        URLPolicy.reset_stats()

    def tearDown(self):
        self.storage.close()
        self.tmp.cleanup()

    def _discovery(self, scorer, max_per_category):
        return LinkDiscovery(self.storage.urls, self.storage.jobs, self.storage.links, self.cache,
                             scorer, self.failures, max_per_category=max_per_category, clock=lambda: NOW)

    def _url_count(self):
        return sum(self.storage.urls.count_by_status().values())

    def _jobs(self):
        return self.storage.jobs.count_by_category().get("technology", {})

    def test_relevant_link_creates_url_edge_and_job(self):
        target = "https://www.theverge.com/tech/123/new-phone-review"
        admitted = self.discovery.discover(self.source, "technology", [ExtractedLink(target, "Phone review")])

        self.assertEqual(admitted, 1)
        record = self.storage.urls.get(normalize(target).url_hash)
        self.assertEqual(record.depth, 1)
        self.assertEqual(record.category, "technology")
        self.assertEqual(self.storage.links.inbound_count(record.url_hash), 1)
        self.assertEqual(self._jobs(), {JobStatus.PENDING.value: 1})
        self.assertEqual(self.cache.get(budget_key("technology", NOW)), 1)

    def test_spellings_of_one_url_collapse(self):
        links = [
            ExtractedLink("https://www.theverge.com/tech/review?utm_source=x"),
            ExtractedLink("https://WWW.theverge.com/tech/review/"),
            ExtractedLink("https://www.theverge.com/tech/review#top"),
        ]
        admitted = self.discovery.discover(self.source, "technology", links)
        self.assertEqual(admitted, 1)
        self.assertEqual(self._url_count(), 2)
        self.assertEqual(self._jobs(), {"pending": 1})

    def test_policy_rejects_assets_and_system_paths(self):
        links = [
            ExtractedLink("https://www.theverge.com/tech/logo.png"),
            ExtractedLink("https://www.theverge.com/wp-admin/"),
            ExtractedLink("https://www.theverge.com/search?q=tech"),
        ]
        self.assertEqual(self.discovery.discover(self.source, "technology", links), 0)
        stats = URLPolicy.get_stats()
        self.assertEqual(stats["blocked_asset"], 1)
        self.assertEqual(stats["blocked_path_system"], 2)

    def test_failed_url_is_not_readmitted(self):
        target = "https://www.theverge.com/tech/broken"
        self.failures.mark(normalize(target).url_hash, "Rate limited (429)")
        self.assertEqual(self.discovery.discover(self.source, "technology", [ExtractedLink(target)]), 0)
        self.assertEqual(self._jobs(), {})

    def test_existing_job_blocks_readmission(self):
        target = "https://www.theverge.com/tech/once"
        self.assertEqual(self.discovery.discover(self.source, "technology", [ExtractedLink(target)]), 1)
        self.assertEqual(self.discovery.discover(self.source, "technology", [ExtractedLink(target)]), 0)
        self.assertEqual(self._jobs(), {"pending": 1})

    def test_edge_to_known_url_recorded_even_when_rejected(self):
        # off-domain and outside the discovery vocabulary, so never followed
        known = UrlRecord.from_normalized(normalize("https://cooking.example.org/recipes"), "technology", depth=1, now=NOW)
        self.storage.urls.create_if_absent(known)
        self.discovery.discover(self.source, "technology", [ExtractedLink(known.normalized_url)])
        self.assertEqual(self.storage.links.inbound_count(known.url_hash), 1)
        self.assertEqual(self._jobs(), {})

    def test_budget_caps_admissions(self):
        discovery = self._discovery(self.scorer, max_per_category=2)
        links = [ExtractedLink(f"https://www.theverge.com/tech/story-{i}") for i in range(5)]
        self.assertEqual(discovery.discover(self.source, "technology", links), 2)
        self.assertEqual(self.cache.get(budget_key("technology", NOW)), 2)

    def test_exhausted_budget_short_circuits_scoring(self):
        scorer = MagicMock()
        scorer.should_follow.return_value = True
        discovery = self._discovery(scorer, max_per_category=3)
        self.cache.put(budget_key("technology", NOW), 3)

        links = [ExtractedLink(f"https://www.theverge.com/tech/story-{i}") for i in range(3)]
        self.assertEqual(discovery.discover(self.source, "technology", links), 0)
        scorer.should_follow.assert_not_called()

    def test_budget_is_per_category(self):
        discovery = self._discovery(self.scorer, max_per_category=1)
        self.cache.put(budget_key("business", NOW), 1)
        links = [ExtractedLink("https://www.theverge.com/tech/story")]
        self.assertEqual(discovery.discover(self.source, "technology", links), 1)


if __name__ == "__main__":
    unittest.main()
