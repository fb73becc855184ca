"""
Wiring: builds every collaborator once and injects it explicitly.
"""

from dataclasses import dataclass
from typing import Dict

import requests

from crawler.categories import Category, load_categories
from crawler.core import DB_BACKEND, SQLITE_PATH, STORAGE_DIR, CrawlerError, setup_logger
from crawler.fetcher import PageFetcher
from crawler.parser import SoupParser
from crawler.robots import RobotsGuard
from crawler.storage.blob import FileBlobStore
from crawler.throttle import RateLimiter
from discovery.interfaces import LogIndexer
from discovery.links import LinkDiscovery
from discovery.pipeline import PageProcessor
from discovery.relevance import RelevanceScorer
from frontier.cycle import CrawlCycle
from frontier.orchestrator import CrawlOrchestrator
from frontier.scheduler import FrontierScheduler
from frontier.state import FailureCache

logger = setup_logger("crawler.bootstrap")


@dataclass
class Runtime:
    storage: object
    categories: Dict[str, Category]
    scheduler: FrontierScheduler
    orchestrator: CrawlOrchestrator
    cycle: CrawlCycle
    failures: FailureCache

    def close(self):
        self.storage.close()


def open_storage(backend=DB_BACKEND, sqlite_path=SQLITE_PATH):
    if backend == "sqlite":
        from frontier.sqlite_storage import SQLiteStorage
        return SQLiteStorage(sqlite_path)
    if backend == "mysql":
        from frontier.mysql_storage import MySQLStorage
        return MySQLStorage()
    raise CrawlerError(f"Unknown storage backend: {backend} (expected 'sqlite' or 'mysql')")


def build_runtime(storage=None, categories=None, session=None, blob_store=None,
                  parser=None, indexer=None) -> Runtime:
    """
    FLOW: storage -> politeness (robots cache + rate limiter over the shared cache) ->
    fetcher -> relevance/discovery -> page processor -> scheduler -> orchestrator -> cycle.
    """
    storage = storage or open_storage()
    storage.initialize()
    categories = categories or load_categories()
    session = session or requests.Session()

    failures = FailureCache(storage.cache)
    robots = RobotsGuard(storage.hosts, session=session)
    limiter = RateLimiter(storage.cache)
    blob_store = blob_store or FileBlobStore(STORAGE_DIR)
    fetcher = PageFetcher(robots, limiter, blob_store, session=session)

    scorer = RelevanceScorer(categories)
    discovery = LinkDiscovery(storage.urls, storage.jobs, storage.links, storage.cache, scorer, failures)
    processor = PageProcessor(blob_store, parser or SoupParser(), indexer or LogIndexer(),
                              storage.urls, discovery)

    scheduler = FrontierScheduler(storage.urls, storage.queue, storage.links)
    orchestrator = CrawlOrchestrator(storage.urls, storage.jobs, scheduler, fetcher, processor, failures)
    cycle = CrawlCycle(storage.urls, storage.jobs, storage.cache, failures)

    logger.info(f"[SYSTEM] Runtime ready backend={storage.dialect.name} categories={len(categories)}")
    return Runtime(
        storage=storage,
        categories=categories,
        scheduler=scheduler,
        orchestrator=orchestrator,
        cycle=cycle,
        failures=failures,
    )
