import math
import time

from crawler.core import RATE_LIMIT_PER_DOMAIN, setup_logger

logger = setup_logger("crawler.throttle")

CACHE_PREFIX = "rate_limit:"


class RateLimiter:
    """
    FLOW: Atomically reserve the host's next request slot in the shared KeyValueStore ->
    block until that slot -> after the request, stamp the finish time (never moving the
    stamp back past a slot another worker already reserved). Stamps expire after twice
    the interval.

    The interval defaults to RATE_LIMIT_PER_DOMAIN and is replaced by the host's
    robots.txt Crawl-delay (rounded up) when one is given.
    """

    def __init__(self, cache, default_interval=RATE_LIMIT_PER_DOMAIN,
                 clock=time.time, sleep=time.sleep):
        self._cache = cache
        self._default_interval = default_interval
        self._clock = clock
        self._sleep = sleep

    def interval_for(self, crawl_delay=None) -> float:
        if crawl_delay is not None and crawl_delay > 0:
            return float(math.ceil(crawl_delay))
        return float(self._default_interval)

    def wait(self, host: str, interval: float) -> float:
        """Block until host may be contacted again. Returns the seconds slept."""
        # INVARIANT: read, compute and write of the slot happen in one atomic step.
        wait_time = self._cache.reserve_slot(CACHE_PREFIX + host, interval, ttl_seconds=interval * 2)
        if wait_time > 0:
            logger.debug(f"[THROTTLE] Rate limiting host={host} wait_seconds={wait_time:.2f}")
            self._sleep(wait_time)
        return wait_time

    def record_request(self, host: str, interval: float) -> None:
        self._cache.reserve_slot(CACHE_PREFIX + host, 0.0, ttl_seconds=interval * 2)
