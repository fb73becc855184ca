"""
Link discovery: decides which outbound links of a crawled page enter the frontier.
"""

from datetime import datetime, timezone

from crawler.core import MAX_CRAWLS_PER_CATEGORY, setup_logger
from crawler.normalizer import normalize
from crawler.policy import URLPolicy
from frontier.models import CrawlJob, JobStatus, Link, UrlRecord

logger = setup_logger("crawler.discovery")

BUDGET_PREFIX = "crawl_count:"
BUDGET_TTL_SECONDS = 2 * 24 * 3600


def budget_key(category: str, day) -> str:
    return f"{BUDGET_PREFIX}{category}:{day.strftime('%Y-%m-%d')}"


class LinkDiscovery:
    """
    FLOW (per link, in page order):
    daily budget exhausted? -> stop (remaining links are not scored) ->
    URLPolicy -> normalize -> record edge if the target is already known ->
    failure cache -> existing job for (url, category) -> relevance threshold for depth ->
    atomic budget increment -> create URL record, edge and pending job.
    """

    def __init__(self, urls, jobs, links, cache, scorer, failures,
                 max_per_category=MAX_CRAWLS_PER_CATEGORY,
                 clock=lambda: datetime.now(timezone.utc)):
        self._urls = urls
        self._jobs = jobs
        self._links = links
        self._cache = cache
        self._scorer = scorer
        self._failures = failures
        self._max_per_category = max_per_category
        self._clock = clock

    def discover(self, source: UrlRecord, category: str, extracted_links) -> int:
        now = self._clock()
        key = budget_key(category, now)
        depth = source.depth + 1
        admitted = 0

        for link in extracted_links:
            if int(self._cache.get(key, 0)) >= self._max_per_category:
                logger.info(f"[DISCOVERY] Daily budget reached, skipping remaining links category={category} source={source.normalized_url}")
                break
            try:
                result = self._consider(source, category, link, depth, key, now)
            except Exception as e:
                logger.error(f"[DISCOVERY] Link admission failed url={link.url} category={category} error={e}", exc_info=True)
                continue
            if result is None:
                break
            admitted += result

        if admitted:
            logger.info(f"[DISCOVERY] Links admitted source={source.normalized_url} category={category} admitted={admitted} depth={depth}")
        return admitted

    def _consider(self, source, category, link, depth, key, now):
        """Returns 1 if admitted, 0 if rejected, None when the budget ran out."""
        allowed, reason = URLPolicy.eval(link.url)
        if not allowed:
            return 0

        target = normalize(link.url)
        if not target or target.url_hash == source.url_hash:
            return 0

        edge = Link(source_hash=source.url_hash, target_hash=target.url_hash,
                    anchor_text=link.anchor_text, nofollow=link.nofollow, discovered_at=now)

        if self._urls.get(target.url_hash) is not None:
            self._links.add(edge)

        if self._failures.contains(target.url_hash):
            return 0
        if self._jobs.exists(target.url_hash, category):
            return 0
        if not self._scorer.should_follow(source.normalized_url, category, target.normalized, depth):
            return 0

        # INVARIANT: the increment is the admission ticket; concurrent workers can't overshoot.
        if self._cache.increment(key, 1, ttl_seconds=BUDGET_TTL_SECONDS) > self._max_per_category:
            return None

        self._urls.create_if_absent(UrlRecord.from_normalized(target, category, depth=depth, now=now))
        self._links.add(edge)
        job = self._jobs.create_if_absent(CrawlJob(
            url=target.normalized,
            url_hash=target.url_hash,
            category=category,
            status=JobStatus.PENDING,
            depth=depth,
            created_at=now,
        ))
        return 1 if job is not None else 0
