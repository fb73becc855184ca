"""
HTTP fetching module for the crawler.
Fetches one URL under politeness rules, validates the response, stages the raw
HTML in blob storage and classifies the outcome. Never raises for network or
HTTP problems.
"""

import dataclasses
import time

import requests

from crawler.core import (
    USER_AGENT, REQUEST_TIMEOUT, MAX_PAGE_SIZE, MAX_REDIRECTS,
    VALID_CONTENT_TYPES, RESPECT_ROBOTS_TXT, setup_logger,
)
from crawler.models import FetchOutcome, FetchResult
from crawler.normalizer import extract_host, make_absolute
from crawler.storage.blob import crawl_key

logger = setup_logger("crawler.fetcher")

TRANSIENT_SIGNATURES = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection reset",
    "connection aborted",
    "name resolution",
    "remote end closed",
)

CHUNK_SIZE = 64 * 1024
REDIRECT_STATUSES = (301, 302, 303, 307, 308)


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, requests.exceptions.ChunkedEncodingError)):
        return True
    message = str(exc).lower()
    return any(signature in message for signature in TRANSIENT_SIGNATURES)


def is_valid_content_type(content_type, valid_types=VALID_CONTENT_TYPES) -> bool:
    if not content_type:
        return False
    content_type = content_type.lower()
    return any(valid in content_type for valid in valid_types)


class PageFetcher:
    """
    FLOW: Extract host -> robots.txt check (no network, no throttle update on rejection) ->
    wait out the host's rate limit -> one GET without following redirects -> record the
    request with the limiter -> on a redirect, repeat for the Location (at most max_redirects hops) ->
    classify: 429 rate-limited, 5xx retryable, other non-2xx / bad content-type / oversized permanent,
    connection errors retryable -> on success persist the body and return its storage key.
    """

    def __init__(self, robots, rate_limiter, blob_store, session=None,
                 user_agent=USER_AGENT, timeout=REQUEST_TIMEOUT,
                 max_page_size=MAX_PAGE_SIZE, max_redirects=MAX_REDIRECTS,
                 valid_content_types=VALID_CONTENT_TYPES,
                 respect_robots=RESPECT_ROBOTS_TXT, clock=time.time):
        self._robots = robots
        self._limiter = rate_limiter
        self._blobs = blob_store
        self._session = session or requests.Session()
        self._max_redirects = max_redirects
        self._headers = {
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.1",
            "Accept-Language": "en-US,en;q=0.9",
        }
        self._timeout = timeout
        self._max_page_size = max_page_size
        self._valid_content_types = valid_content_types
        self._respect_robots = respect_robots
        self._clock = clock

    def fetch(self, url: str, category: str) -> FetchResult:
        start_time = self._clock()
        current = url

        for hop in range(self._max_redirects + 1):
            host = extract_host(current)
            if not host:
                return FetchResult(url=url, outcome=FetchOutcome.PERMANENT,
                                   error="Invalid URL: could not extract domain")

            crawl_delay = None
            if self._respect_robots:
                if not self._robots.is_allowed(current):
                    logger.info(f"[FETCH] Disallowed by robots.txt url={current} category={category}")
                    return FetchResult(url=url, outcome=FetchOutcome.PERMANENT,
                                       error="Disallowed by robots.txt", robots_allowed=False)
                crawl_delay = self._robots.get_crawl_delay(host)

            interval = self._limiter.interval_for(crawl_delay)
            self._limiter.wait(host, interval)

            try:
                response = self._get(current, category, start_time)
                if isinstance(response, FetchResult):
                    return dataclasses.replace(response, url=url)
                location = self._redirect_location(response)
                if location is None:
                    try:
                        return self._classify(response, url, category, start_time)
                    finally:
                        response.close()
                response.close()
            finally:
                self._limiter.record_request(host, interval)

            target = make_absolute(location, current)
            logger.debug(f"[FETCH] Redirect url={current} location={target} hop={hop + 1}")
            current = target

        return FetchResult(url=url, outcome=FetchOutcome.PERMANENT,
                           error=f"Too many redirects: more than {self._max_redirects}",
                           fetch_time_ms=self._elapsed_ms(start_time))

    def _elapsed_ms(self, start_time):
        return int((self._clock() - start_time) * 1000)

    @staticmethod
    def _redirect_location(response):
        if response.status_code in REDIRECT_STATUSES:
            return response.headers.get("Location") or None
        return None

    def _get(self, url, category, start_time):
        """One hop, redirects not followed. Returns the response, or a FetchResult on a network error."""
        try:
            return self._session.get(
                url,
                timeout=self._timeout,
                headers=self._headers,
                allow_redirects=False,
                stream=True,
            )
        except requests.RequestException as e:
            outcome = FetchOutcome.RETRYABLE if is_transient_error(e) else FetchOutcome.PERMANENT
            logger.warning(f"[FETCH] Request failed url={url} category={category} retryable={outcome is FetchOutcome.RETRYABLE} error={e}")
            return FetchResult(url=url, outcome=outcome, error=f"Connection timeout or network error: {e}",
                               fetch_time_ms=self._elapsed_ms(start_time))

    def _classify(self, response, url, category, start_time) -> FetchResult:
        status = response.status_code
        content_type = response.headers.get("Content-Type", "")

        def failure(outcome, error):
            return FetchResult(url=url, outcome=outcome, http_status=status, content_type=content_type,
                               error=error, fetch_time_ms=self._elapsed_ms(start_time))

        if status == 429:
            return failure(FetchOutcome.RATE_LIMITED, "Rate limited by server (429)")
        if status >= 500:
            return failure(FetchOutcome.RETRYABLE, f"Server error ({status})")
        if not 200 <= status < 300:
            return failure(FetchOutcome.PERMANENT, f"HTTP error ({status})")
        if not is_valid_content_type(content_type, self._valid_content_types):
            return failure(FetchOutcome.PERMANENT, f"Invalid content type: {content_type or 'missing'}")

        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > self._max_page_size:
            return failure(FetchOutcome.PERMANENT, f"Page too large: {declared} bytes")

        try:
            body = self._read_body(response)
        except requests.RequestException as e:
            outcome = FetchOutcome.RETRYABLE if is_transient_error(e) else FetchOutcome.PERMANENT
            return failure(outcome, f"Body read failed: {e}")

        if body is None:
            return failure(FetchOutcome.PERMANENT, f"Page too large: more than {self._max_page_size} bytes")

        key = crawl_key(url, category, clock=self._clock)
        try:
            self._blobs.put(key, body)
        except OSError as e:
            logger.error(f"[FETCH] Storing page failed url={url} key={key} error={e}")
            return failure(FetchOutcome.RETRYABLE, f"Storage error: {e}")

        return FetchResult(
            url=url,
            outcome=FetchOutcome.SUCCESS,
            http_status=status,
            content_type=content_type,
            size=len(body),
            storage_key=key,
            fetch_time_ms=self._elapsed_ms(start_time),
        )

    def _read_body(self, response):
        """Returns the body, or None once it grows past max_page_size."""
        chunks, total = [], 0
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if not chunk:
                continue
            total += len(chunk)
            if total > self._max_page_size:
                return None
            chunks.append(chunk)
        return b"".join(chunks)
