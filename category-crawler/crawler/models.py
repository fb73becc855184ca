from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Union


@dataclass(frozen=True)
class NormalizedURL:
    """
    Canonical identity of a fetchable resource.
    INVARIANT: url_hash is the SHA-256 hex digest of `normalized`.
    """
    original: str
    normalized: str
    url_hash: str
    scheme: str
    host: str
    path: str
    query_hash: Optional[str] = None


@dataclass(frozen=True)
class NormalizationError:
    """Explicit failure result of URL normalization. Never raised."""
    url: str
    reason: str

    def __bool__(self):
        return False


NormalizationResult = Union[NormalizedURL, NormalizationError]


class FetchOutcome(Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE = "RETRYABLE"
    PERMANENT = "PERMANENT"
    RATE_LIMITED = "RATE_LIMITED"


@dataclass(frozen=True)
class FetchResult:
    """
    Classified outcome of one fetch attempt.
    On SUCCESS, `storage_key` points at the raw HTML in blob storage.
    """
    url: str
    outcome: FetchOutcome
    http_status: Optional[int] = None
    content_type: Optional[str] = None
    size: int = 0
    storage_key: Optional[str] = None
    error: Optional[str] = None
    robots_allowed: bool = True
    fetch_time_ms: int = 0

    @property
    def success(self) -> bool:
        return self.outcome is FetchOutcome.SUCCESS

    @property
    def should_retry(self) -> bool:
        return self.outcome is FetchOutcome.RETRYABLE


@dataclass(frozen=True)
class RobotsRule:
    user_agent: str
    pattern: str


@dataclass
class HostRecord:
    """Per-host robots.txt cache entry."""
    host: str
    robots_fetched_at: Optional[datetime] = None
    robots_txt_exists: bool = False
    crawl_delay: Dict[str, float] = field(default_factory=dict)
    allow_rules: List[RobotsRule] = field(default_factory=list)
    disallow_rules: List[RobotsRule] = field(default_factory=list)
    robots_txt_raw: Optional[str] = None

    def is_cache_expired(self, now: datetime, ttl_hours: int = 24) -> bool:
        if not self.robots_fetched_at:
            return True
        return now - self.robots_fetched_at >= timedelta(hours=ttl_hours)

    def get_crawl_delay(self, user_agent: str = "*") -> Optional[float]:
        user_agent = user_agent.lower()
        if user_agent in self.crawl_delay:
            return float(self.crawl_delay[user_agent])
        if "*" in self.crawl_delay:
            return float(self.crawl_delay["*"])
        return None
