"""
HTML parsing for the crawler.
Extracts page metadata and outbound links with BeautifulSoup.
"""

import hashlib
from typing import List, Optional

from bs4 import BeautifulSoup

from crawler.normalizer import make_absolute, normalize
from discovery.interfaces import ExtractedLink, ParsedPage, Parser

SKIPPED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")


def _meta(soup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content", "").strip():
        return tag["content"].strip()
    return None


def _text(tag) -> Optional[str]:
    if tag is None:
        return None
    text = tag.get_text(" ", strip=True)
    return text or None


def content_hash(title: str, description: Optional[str]) -> str:
    return hashlib.sha256((title + (description or "")).encode("utf-8")).hexdigest()


class SoupParser(Parser):
    """
    Title:       og:title -> twitter:title -> <title> -> first <h1>
    Description: og:description -> meta description -> twitter:description
    Canonical:   link[rel=canonical] -> og:url -> original URL (normalized when possible)
    Published:   article:published_time -> datePublished -> time[datetime]
    """

    def __init__(self, features="html.parser"):
        self._features = features

    def _soup(self, content):
        return BeautifulSoup(content, self._features)

    def parse(self, content, url):
        soup = self._soup(content)

        title = (
            _meta(soup, property="og:title")
            or _meta(soup, name="twitter:title")
            or _text(soup.title)
            or _text(soup.find("h1"))
        )
        if not title:
            return None

        description = (
            _meta(soup, property="og:description")
            or _meta(soup, name="description")
            or _meta(soup, name="twitter:description")
        )

        canonical = None
        link = soup.find("link", rel="canonical", href=True)
        if link and link["href"].strip():
            canonical = make_absolute(link["href"], url)
        canonical = canonical or _meta(soup, property="og:url") or url
        normalized = normalize(canonical)
        if normalized:
            canonical = normalized.normalized

        published_at = _meta(soup, property="article:published_time") or _meta(soup, property="datePublished")
        if not published_at:
            time_tag = soup.find("time", datetime=True)
            published_at = time_tag["datetime"].strip() if time_tag else None

        return ParsedPage(
            title=title,
            description=description,
            canonical_url=canonical,
            published_at=published_at,
            content_hash=content_hash(title, description),
        )

    def extract_links(self, content, base_url) -> List[ExtractedLink]:
        soup = self._soup(content)
        links, seen = [], set()

        for a in soup.find_all("a", href=True):
            href = a["href"].strip()
            if not href or href.lower().startswith(SKIPPED_HREF_PREFIXES):
                continue
            absolute = make_absolute(href, base_url)
            if not absolute:
                continue
            normalized = normalize(absolute)
            if not normalized or normalized.url_hash in seen:
                continue
            seen.add(normalized.url_hash)

            rel = a.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            links.append(ExtractedLink(
                url=normalized.normalized,
                anchor_text=_text(a),
                nofollow="nofollow" in (r.lower() for r in rel),
            ))
        return links
