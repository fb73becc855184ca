"""
Category relevance scoring and the depth-dependent follow decision.

score = path keywords (max 40) + seed-domain authority (max 30) + URL patterns (max 30), capped at 100.
A link is followed when its score reaches the threshold for its depth; thresholds
never decrease with depth, so the frontier narrows as the crawl moves away from seeds.
"""

import re
from typing import Dict, Iterable, Optional
from urllib.parse import urlsplit

from crawler.core import ALLOWED_EXTERNAL_DOMAINS, setup_logger
from crawler.normalizer import registrable_domain

logger = setup_logger("crawler.discovery.relevance")

DEPTH_THRESHOLDS = {0: 15, 1: 15, 2: 25, 3: 40, 4: 50}
DEFAULT_THRESHOLD = 80

PATH_KEYWORD_CAP = 40
SEGMENT_KEYWORD_SCORE = 20
SUBSTRING_KEYWORD_SCORE = 10
AUTHORITY_SCORE = 30
ARTICLE_PATTERN_SCORE = 10
CATEGORY_PATTERN_SCORE = 15
PATTERN_CAP = 30
MAX_SCORE = 100

ARTICLE_PATTERN = re.compile(r"/(article|news|story|post|blog)/|/\d{4}/\d{2}/")

# Cross-domain links need one of these words when no external allow-list is configured
DISCOVERY_VOCABULARY = ("tech", "ai", "sport", "business", "news", "politics", "science")


def threshold_for(depth: int, thresholds: Optional[Dict[int, int]] = None) -> int:
    table = DEPTH_THRESHOLDS if thresholds is None else thresholds
    return table.get(depth, DEFAULT_THRESHOLD)


class RelevanceScorer:

    def __init__(self, categories, allowed_external_domains: Iterable[str] = ALLOWED_EXTERNAL_DOMAINS,
                 thresholds: Optional[Dict[int, int]] = None, vocabulary=DISCOVERY_VOCABULARY):
        self._categories = categories
        self._allowed_external = {d.lower().lstrip(".") for d in allowed_external_domains}
        self._thresholds = dict(DEPTH_THRESHOLDS if thresholds is None else thresholds)
        self._vocabulary = tuple(vocabulary)
        self._authority = {
            category_id: {registrable_domain(seed) for seed in category.seed_urls} - {""}
            for category_id, category in categories.items()
        }

    def authority_domains(self, category: str):
        return set(self._authority.get(category, ()))

    def score(self, url: str, category: str) -> int:
        config = self._categories.get(category)
        if config is None:
            return 0

        url_lower = url.lower()
        path = (urlsplit(url_lower).path or "")

        path_score = 0
        for keyword in config.keywords:
            if f"/{keyword}/" in url_lower or f"/{keyword}-" in url_lower:
                path_score += SEGMENT_KEYWORD_SCORE
                break
            if keyword in path:
                path_score += SUBSTRING_KEYWORD_SCORE
        score = min(PATH_KEYWORD_CAP, path_score)

        if registrable_domain(url) in self._authority.get(category, ()):
            score += AUTHORITY_SCORE

        pattern_score = 0
        if ARTICLE_PATTERN.search(url_lower):
            pattern_score += ARTICLE_PATTERN_SCORE
        if config.matches_pattern(url_lower):
            pattern_score += CATEGORY_PATTERN_SCORE
        score += min(PATTERN_CAP, pattern_score)

        return min(MAX_SCORE, score)

    def threshold(self, depth: int) -> int:
        return threshold_for(depth, self._thresholds)

    def allows_cross_domain(self, source_url: str, target_url: str) -> bool:
        source_domain = registrable_domain(source_url)
        target_domain = registrable_domain(target_url)
        if source_domain == target_domain:
            return True
        if self._allowed_external:
            return any(target_domain == d or target_domain.endswith("." + d) for d in self._allowed_external)
        target_lower = target_url.lower()
        return any(word in target_lower for word in self._vocabulary)

    def should_follow(self, source_url: str, category: str, target_url: str, depth: int) -> bool:
        if not self.allows_cross_domain(source_url, target_url):
            logger.debug(f"[DISCOVERY] External domain not allowed target={target_url} category={category}")
            return False

        score = self.score(target_url, category)
        threshold = self.threshold(depth)
        if score >= threshold:
            logger.debug(f"[DISCOVERY] Link approved target={target_url} category={category} depth={depth} score={score} threshold={threshold}")
            return True
        return False
