"""
Static category configuration: seeds, keywords and URL pattern per category.
CRAWLER_CATEGORIES_FILE may point at a JSON file of the same shape
({"<id>": {"name", "description", "seed_urls", "keywords", "pattern"}}) that
replaces the built-in table.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from crawler.core import CATEGORIES_FILE, CrawlerError


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    description: str = ""
    seed_urls: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    pattern: Optional[str] = None

    def matches_pattern(self, url_lower: str) -> bool:
        return bool(self.pattern) and re.search(self.pattern, url_lower) is not None


DEFAULT_CATEGORIES = {
    "technology": {
        "name": "Technology",
        "description": "Software, hardware, programming, tech industry news",
        "seed_urls": [
            "https://cnet.com/news",
            "https://techspot.com",
            "https://theverge.com",
            "https://wired.com/category/science",
            "https://zdnet.com",
        ],
        "keywords": ["tech", "technology", "software", "hardware", "programming",
                     "developer", "gadget", "computing", "cloud", "security"],
        "pattern": r"(tech|software|hardware|app|device|gadget|review)",
    },
    "business": {
        "name": "Business",
        "description": "Finance, markets, entrepreneurship, corporate news",
        "seed_urls": [
            "https://businessinsider.com",
            "https://cnbc.com/id/10001147",
            "https://economist.com",
            "https://forbes.com/business",
            "https://entrepreneur.com",
        ],
        "keywords": ["business", "finance", "markets", "economy", "startup",
                     "investing", "stocks", "entrepreneur", "earnings", "company"],
        "pattern": r"(market|stock|finance|invest|economy|company|startup)",
    },
    "ai": {
        "name": "AI",
        "description": "Artificial intelligence, machine learning, AI research and applications",
        "seed_urls": [
            "https://venturebeat.com/ai",
            "https://technologyreview.com/topic/artificial-intelligence",
            "https://aitrends.com",
            "https://syncedreview.com",
            "https://towardsdatascience.com",
        ],
        "keywords": ["ai", "artificial-intelligence", "machine-learning", "deep-learning",
                     "neural", "llm", "chatbot", "data-science", "robotics", "research"],
        "pattern": r"(ai|ml|machine-learning|neural|deep-learning|chatbot|llm)",
    },
    "sports": {
        "name": "Sports",
        "description": "All sports news, events, and analysis",
        "seed_urls": [
            "https://espn.com",
            "https://bbc.com/sport",
            "https://theguardian.com/sport",
            "https://si.com",
            "https://nbcsports.com",
        ],
        "keywords": ["sport", "sports", "football", "soccer", "basketball",
                     "baseball", "tennis", "olympics", "nfl", "nba"],
        "pattern": r"(sport|game|match|player|team|league|nfl|nba|mlb|nhl|soccer)",
    },
    "politics": {
        "name": "Politics",
        "description": "Political news, policy, elections, government",
        "seed_urls": [
            "https://politico.com",
            "https://thehill.com",
            "https://bbc.com/news/politics",
            "https://apnews.com/politics",
            "https://vox.com/politics",
        ],
        "keywords": ["politics", "election", "government", "congress", "senate",
                     "policy", "white-house", "campaign", "vote", "parliament"],
        "pattern": r"(politic|election|congress|senate|government|policy|vote|campaign)",
    },
}


def _build(table) -> Dict[str, Category]:
    categories = {}
    for category_id, raw in table.items():
        if not raw.get("name"):
            raise CrawlerError(f"Category {category_id!r} has no name")
        categories[category_id] = Category(
            id=category_id,
            name=raw["name"],
            description=raw.get("description", ""),
            seed_urls=list(raw.get("seed_urls", [])),
            keywords=[k.lower() for k in raw.get("keywords", [])],
            pattern=raw.get("pattern"),
        )
    return categories


def load_categories(path=CATEGORIES_FILE) -> Dict[str, Category]:
    if not path:
        return _build(DEFAULT_CATEGORIES)
    try:
        with open(path, encoding="utf-8") as f:
            table = json.load(f)
    except (OSError, ValueError) as e:
        raise CrawlerError(f"Cannot load categories from {path}: {e}") from e
    return _build(table)


def resolve(categories: Dict[str, Category], selection: str) -> List[Category]:
    """'all' -> every category; otherwise exactly the named one."""
    if selection == "all":
        return list(categories.values())
    if selection not in categories:
        valid = ", ".join(sorted(categories))
        raise CrawlerError(f"Invalid category: {selection}. Valid categories: {valid}")
    return [categories[selection]]
