"""
Fetch classification, politeness ordering and blob staging.
"""

import tempfile
import unittest
from unittest.mock import MagicMock

import requests

from crawler.fetcher import PageFetcher, is_transient_error
from crawler.models import FetchOutcome
from crawler.storage.blob import FileBlobStore

HTML = b"<html><head><title>Hello</title></head><body>hi</body></html>"


def make_response(status=200, content_type="text/html; charset=utf-8", body=HTML, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = {"Content-Type": content_type, **(headers or {})}
    resp.iter_content.return_value = [body[i:i + 16] for i in range(0, len(body), 16)]
    return resp


class TestPageFetcher(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.blobs = FileBlobStore(self.tmp.name)
        self.robots = MagicMock()
        self.robots.is_allowed.return_value = True
        self.robots.get_crawl_delay.return_value = None
        self.limiter = MagicMock()
        self.limiter.interval_for.return_value = 1.0
        self.session = MagicMock()
        self.fetcher = PageFetcher(self.robots, self.limiter, self.blobs, session=self.session,
                                   max_page_size=1024, clock=lambda: 1700000000.0)

    def tearDown(self):
        self.tmp.cleanup()

    def test_success_stages_body(self):
        self.session.get.return_value = make_response()
        result = self.fetcher.fetch("https://example.com/a", "technology")

        self.assertTrue(result.success)
        self.assertEqual(result.http_status, 200)
        self.assertEqual(result.size, len(HTML))
        self.assertTrue(result.storage_key.startswith("crawl/technology/"))
        self.assertEqual(self.blobs.get(result.storage_key), HTML)
        self.limiter.wait.assert_called_once_with("example.com", 1.0)
        self.limiter.record_request.assert_called_once_with("example.com", 1.0)

    def test_request_uses_user_agent_timeout_and_manual_redirects(self):
        self.session.get.return_value = make_response()
        self.fetcher.fetch("https://example.com/a", "technology")
        _, kwargs = self.session.get.call_args
        self.assertIn("User-Agent", kwargs["headers"])
        self.assertIn("timeout", kwargs)
        self.assertFalse(kwargs["allow_redirects"])

    def test_crawl_delay_sets_interval(self):
        self.robots.get_crawl_delay.return_value = 3
        self.session.get.return_value = make_response()
        self.fetcher.fetch("https://example.com/a", "technology")
        self.limiter.interval_for.assert_called_once_with(3)

    def test_robots_rejection_short_circuits(self):
        self.robots.is_allowed.return_value = False
        result = self.fetcher.fetch("https://example.com/private", "technology")

        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.assertFalse(result.robots_allowed)
        self.session.get.assert_not_called()
        self.limiter.wait.assert_not_called()
        self.limiter.record_request.assert_not_called()

    def test_invalid_url_short_circuits(self):
        result = self.fetcher.fetch("not a url", "technology")
        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.robots.is_allowed.assert_not_called()

    def test_429_is_rate_limited(self):
        self.session.get.return_value = make_response(status=429)
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.RATE_LIMITED)
        self.assertFalse(result.should_retry)
        self.limiter.record_request.assert_called_once()

    def test_5xx_is_retryable(self):
        self.session.get.return_value = make_response(status=503)
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.RETRYABLE)
        self.assertEqual(result.http_status, 503)

    def test_404_is_permanent(self):
        self.session.get.return_value = make_response(status=404)
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.limiter.record_request.assert_called_once()

    def test_wrong_content_type_is_permanent(self):
        self.session.get.return_value = make_response(content_type="application/json")
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.assertIn("content type", result.error)

    def test_oversized_body_is_permanent(self):
        self.session.get.return_value = make_response(body=b"x" * 2048)
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.assertIn("too large", result.error)

    def test_declared_length_over_limit_is_permanent(self):
        self.session.get.return_value = make_response(headers={"Content-Length": "999999"})
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.session.get.return_value.iter_content.assert_not_called()

    def test_timeout_is_retryable_and_still_recorded(self):
        self.session.get.side_effect = requests.Timeout("read timed out")
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.RETRYABLE)
        self.limiter.record_request.assert_called_once_with("example.com", 1.0)

    def test_redirect_to_other_host_is_throttled_per_host(self):
        """Scenario: example.com redirects to www.example.org. Each host gets its own politeness checks."""
        self.session.get.side_effect = [
            make_response(status=301, headers={"Location": "https://www.example.org/a"}),
            make_response(),
        ]
        result = self.fetcher.fetch("https://example.com/a", "technology")

        self.assertTrue(result.success)
        self.assertEqual(result.url, "https://example.com/a")
        self.assertEqual([c.args[0] for c in self.session.get.call_args_list],
                         ["https://example.com/a", "https://www.example.org/a"])
        self.assertEqual([c.args[0] for c in self.robots.is_allowed.call_args_list],
                         ["https://example.com/a", "https://www.example.org/a"])
        self.assertEqual([c.args[0] for c in self.limiter.wait.call_args_list], ["example.com", "www.example.org"])
        self.assertEqual([c.args[0] for c in self.limiter.record_request.call_args_list],
                         ["example.com", "www.example.org"])

    def test_relative_redirect_stays_on_host(self):
        self.session.get.side_effect = [
            make_response(status=302, headers={"Location": "/b"}),
            make_response(),
        ]
        self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(self.session.get.call_args_list[1].args[0], "https://example.com/b")

    def test_redirect_into_disallowed_path_is_not_fetched(self):
        self.robots.is_allowed.side_effect = [True, False]
        self.session.get.return_value = make_response(status=301, headers={"Location": "https://other.example/private"})
        result = self.fetcher.fetch("https://example.com/a", "technology")

        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.assertFalse(result.robots_allowed)
        self.assertEqual(self.session.get.call_count, 1)
        self.assertEqual(self.limiter.wait.call_count, 1)

    def test_too_many_redirects_is_permanent(self):
        self.session.get.return_value = make_response(status=302, headers={"Location": "/loop"})
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)
        self.assertIn("Too many redirects", result.error)
        # the first request plus five redirect hops
        self.assertEqual(self.session.get.call_count, 6)

    def test_other_request_errors_are_permanent(self):
        self.session.get.side_effect = requests.exceptions.InvalidSchema("No connection adapters")
        result = self.fetcher.fetch("https://example.com/a", "technology")
        self.assertEqual(result.outcome, FetchOutcome.PERMANENT)


class TestTransientSignatures(unittest.TestCase):

    def test_signatures(self):
        self.assertTrue(is_transient_error(requests.ConnectionError("x")))
        self.assertTrue(is_transient_error(requests.RequestException("Service temporarily unavailable")))
        self.assertFalse(is_transient_error(requests.RequestException("Invalid URL")))


if __name__ == "__main__":
    unittest.main()
