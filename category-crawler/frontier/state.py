"""
Crawl job state machine.

    pending -> processing -> completed
                          -> failed (terminal)
                          -> pending (retryable, after a backoff delay)

advance() is pure: given a claimed job and the outcome of its attempt it returns
the next job state plus the side effects the worker must persist. Nothing here
touches storage.
"""

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from crawler.core import FAILED_URL_TTL
from crawler.models import FetchOutcome, FetchResult, NormalizationError
from frontier.models import CrawlJob, JobStatus, RetryPolicy, UrlStatus

FAILED_URL_PREFIX = "failed_url:"


@dataclass(frozen=True)
class Transition:
    job: CrawlJob
    url_status: Optional[UrlStatus] = None
    cache_failure: bool = False
    parse_key: Optional[str] = None
    retry_delay: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.job.status.is_terminal


def advance(job: CrawlJob, outcome: Union[FetchResult, NormalizationError], now: datetime,
            policy: RetryPolicy = RetryPolicy()) -> Transition:
    if job.status is not JobStatus.PROCESSING:
        raise ValueError(f"Job {job.id} is {job.status.value}, expected processing")

    if isinstance(outcome, NormalizationError):
        # A malformed URL never normalizes differently on retry.
        failed = dataclasses.replace(
            job, status=JobStatus.FAILED, crawled_at=now,
            failed_reason=f"URL normalization failed: {outcome.reason}",
        )
        return Transition(job=failed, cache_failure=True)

    result = outcome
    fetched = dataclasses.replace(
        job, http_status=result.http_status, robots_txt_allowed=result.robots_allowed,
    )

    if result.outcome is FetchOutcome.SUCCESS:
        completed = dataclasses.replace(fetched, status=JobStatus.COMPLETED, crawled_at=now,
                                        failed_reason=None, available_at=None)
        return Transition(job=completed, url_status=UrlStatus.CRAWLED, parse_key=result.storage_key)

    if result.outcome is FetchOutcome.RATE_LIMITED:
        failed = dataclasses.replace(fetched, status=JobStatus.FAILED, crawled_at=now,
                                     failed_reason=result.error or "Rate limited (429)")
        return Transition(job=failed, url_status=UrlStatus.FAILED, cache_failure=True)

    if result.outcome is FetchOutcome.PERMANENT:
        failed = dataclasses.replace(fetched, status=JobStatus.FAILED, crawled_at=now,
                                     failed_reason=result.error)
        url_status = UrlStatus.FAILED if result.robots_allowed else UrlStatus.SKIPPED
        return Transition(job=failed, url_status=url_status)

    # RETRYABLE
    if job.attempts < policy.max_attempts:
        delay = policy.delay_for(job.attempts)
        retried = dataclasses.replace(fetched, status=JobStatus.PENDING, available_at=now + delay,
                                      failed_reason=result.error)
        return Transition(job=retried, retry_delay=delay.total_seconds())

    failed = dataclasses.replace(
        fetched, status=JobStatus.FAILED, crawled_at=now,
        failed_reason=f"Exceeded max attempts ({policy.max_attempts}): {result.error}",
    )
    return Transition(job=failed, url_status=UrlStatus.FAILED, cache_failure=True)


class FailureCache:
    """
    Permanent-failure markers keyed by URL identity digest, consulted by job
    admission and link discovery until the TTL lapses.
    """

    def __init__(self, cache, ttl_seconds=FAILED_URL_TTL):
        self._cache = cache
        self._ttl = ttl_seconds

    @staticmethod
    def key(digest: str) -> str:
        return FAILED_URL_PREFIX + digest

    def mark(self, digest: str, reason: str = "") -> None:
        self._cache.put(self.key(digest), reason or "failed", ttl_seconds=self._ttl)

    def contains(self, digest: str) -> bool:
        return self._cache.has(self.key(digest))
