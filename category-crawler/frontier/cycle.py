from datetime import datetime, timezone
from typing import Dict, Iterable

from crawler.core import setup_logger
from crawler.normalizer import identity_digest, normalize
from discovery.links import budget_key
from frontier.models import CrawlJob, JobStatus, UrlRecord

logger = setup_logger("crawler.frontier.cycle")


class CrawlCycle:
    """
    Operator entry point for a crawl pass over one or more categories.

    fresh:  wipe the categories' crawl jobs and today's discovery counters, then admit every seed.
    resume: admit only seeds that have no crawl job for (url, category) yet.
    """

    def __init__(self, urls, jobs, cache, failures, clock=lambda: datetime.now(timezone.utc)):
        self._urls = urls
        self._jobs = jobs
        self._cache = cache
        self._failures = failures
        self._clock = clock

    def trigger(self, categories: Iterable, fresh: bool = False) -> Dict[str, int]:
        categories = list(categories)
        now = self._clock()

        if fresh:
            deleted = self._jobs.delete_for_categories([c.id for c in categories])
            for category in categories:
                self._cache.delete(budget_key(category.id, now))
            logger.warning(f"[CYCLE] Fresh start: cleared crawl jobs deleted={deleted} categories={[c.id for c in categories]}")

        admitted = {}
        for category in categories:
            admitted[category.id] = self._admit_seeds(category, now, check_failures=not fresh)
            logger.info(f"[CYCLE] Seeds admitted category={category.id} admitted={admitted[category.id]} fresh={fresh}")
        return admitted

    def _admit_seeds(self, category, now, check_failures=True) -> int:
        count = 0
        for seed in category.seed_urls:
            normalized = normalize(seed)
            if normalized:
                url, digest = normalized.normalized, normalized.url_hash
            else:
                # Admitted raw so the normalization failure shows up on the job.
                url, digest = seed.strip(), identity_digest(seed)

            if check_failures and self._failures.contains(digest):
                logger.info(f"[CYCLE] Seed skipped, recently failed url={url} category={category.id}")
                continue

            try:
                if normalized:
                    self._urls.create_if_absent(UrlRecord.from_normalized(normalized, category.id, depth=0, now=now))
                job = self._jobs.create_if_absent(CrawlJob(
                    url=url, url_hash=digest, category=category.id,
                    status=JobStatus.PENDING, depth=0, created_at=now,
                ))
            except Exception as e:
                logger.error(f"[CYCLE] Seed admission failed url={url} category={category.id} error={e}", exc_info=True)
                continue

            if job is not None:
                count += 1
        return count
