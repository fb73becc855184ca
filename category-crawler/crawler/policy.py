"""
Centralized URL policy for rejecting links that are never worth a fetch.

Extension and system-path rules live here. Link discovery asks URLPolicy.eval()
before any relevance scoring happens.
"""

from urllib.parse import urlsplit
import re
from typing import Dict, Iterable
from threading import Lock


class URLPolicy:
    """
    Central policy for URL filtering.

    Methods:
    - is_http(url): True for http/https
    - is_asset(url): True for asset/doc/media/script/style/font extensions
    - is_blocked_path(url): True for feeds, CMS internals, login and search-result URLs
    - eval(url): (allowed, reason), updating the rejection counters
    """

    ASSET_EXTENSIONS = {
        # Images
        ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp", ".tiff",
        # Video/Audio
        ".mp4", ".mp3", ".avi", ".mov", ".mkv", ".webm",
        # Archives
        ".zip", ".rar", ".tar", ".gz", ".7z",
        # Documents
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        # Styles/Scripts
        ".css", ".js",
        # Fonts
        ".woff", ".woff2", ".ttf", ".eot",
        # Executables/Installers
        ".exe", ".msi",
    }

    _SYSTEM_PATTERNS: Iterable[str] = (
        r"/(feed|rss|atom)(/|$)",       # feeds
        r"/(wp-json)(/|$)",             # WP API
        r"/(wp-admin|wp-login)(/|$)",   # WP admin/login
        r"/(login|logout|signin|signup|register)(/|$)",
        r"[?&](s|q|search)=[^&#]+",     # search query params
    )
    _SYSTEM_REGEX = re.compile("(" + ")|(".join(_SYSTEM_PATTERNS) + ")", re.IGNORECASE)

    _lock: Lock = Lock()
    _stats: Dict[str, int] = {
        "evaluations": 0,
        "allowed": 0,
        "blocked_non_http": 0,
        "blocked_asset": 0,
        "blocked_path_system": 0,
    }

    @staticmethod
    def is_http(url: str) -> bool:
        try:
            return urlsplit(url).scheme in ("http", "https")
        except ValueError:
            return False

    @classmethod
    def is_asset(cls, url: str) -> bool:
        try:
            path = urlsplit(url).path.lower()
        except ValueError:
            return False
        return any(path.endswith(ext) for ext in cls.ASSET_EXTENSIONS)

    @classmethod
    def is_blocked_path(cls, url: str) -> bool:
        try:
            parsed = urlsplit(url)
        except ValueError:
            return False
        path_and_query = (parsed.path or "") + ("?" + parsed.query if parsed.query else "")
        return bool(cls._SYSTEM_REGEX.search(path_and_query))

    @classmethod
    def eval(cls, url: str):
        """
        Evaluate a URL and return (allowed: bool, reason: str).
        Always updates counters exactly once per call.
        """
        if not cls.is_http(url):
            reason = "blocked_non_http"
        elif cls.is_asset(url):
            reason = "blocked_asset"
        elif cls.is_blocked_path(url):
            reason = "blocked_path_system"
        else:
            reason = "allowed"

        with cls._lock:
            cls._stats["evaluations"] += 1
            cls._stats[reason] += 1
        return reason == "allowed", reason

    @classmethod
    def get_stats(cls) -> Dict[str, int]:
        with cls._lock:
            return dict(cls._stats)

    @classmethod
    def reset_stats(cls) -> None:
        with cls._lock:
            for k in cls._stats:
                cls._stats[k] = 0
