"""
Contracts for the collaborators around the crawl pipeline: the HTML parser and
the search indexer. The crawl core only depends on these interfaces.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from crawler.core import setup_logger

logger = setup_logger("crawler.discovery.indexer")


@dataclass(frozen=True)
class ParsedPage:
    title: str
    description: Optional[str]
    canonical_url: str
    published_at: Optional[str]
    content_hash: str


@dataclass(frozen=True)
class ExtractedLink:
    url: str
    anchor_text: Optional[str] = None
    nofollow: bool = False


class Parser(ABC):

    @abstractmethod
    def parse(self, content: bytes, url: str) -> Optional[ParsedPage]:
        """Returns None when no title can be found."""
        pass

    @abstractmethod
    def extract_links(self, content: bytes, base_url: str) -> List[ExtractedLink]:
        """Absolute, normalized, de-duplicated links."""
        pass


class Indexer(ABC):

    @abstractmethod
    def index(self, url_record, title: str, description: Optional[str], content: Optional[bytes]) -> None:
        pass


class LogIndexer(Indexer):
    """Stand-in indexer that only records the hand-off."""

    def index(self, url_record, title, description, content):
        logger.info(f"[INDEX] Page handed to indexer url={url_record.normalized_url} category={url_record.category} title={title!r}")
