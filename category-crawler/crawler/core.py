"""
FILE DESCRIPTION: Foundational module for global configuration and logging.
KEY FUNCTIONS/CLASSES: setup_logger, CompanyFormatter, CrawlerError, StorageUnavailable
"""

import logging
import sys
import os
from datetime import datetime, timezone
from pathlib import Path
from dotenv import load_dotenv

# === CONFIGURATION SECTION ===

# Load .env from the repository root
load_dotenv(Path(__file__).resolve().parents[2] / '.env')


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default=""):
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Network
REQUEST_TIMEOUT = float(os.getenv("CRAWLER_REQUEST_TIMEOUT", 15))
USER_AGENT = os.getenv("CRAWLER_USER_AGENT", "CategoryCrawler/1.0 (+https://example.invalid/bot)")
MAX_PAGE_SIZE = int(os.getenv("CRAWLER_MAX_PAGE_SIZE", 5 * 1024 * 1024))
MAX_REDIRECTS = int(os.getenv("CRAWLER_MAX_REDIRECTS", 5))
VALID_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

# Politeness
RATE_LIMIT_PER_DOMAIN = float(os.getenv("CRAWLER_RATE_LIMIT_PER_DOMAIN", 1))
RESPECT_ROBOTS_TXT = _env_bool("CRAWLER_RESPECT_ROBOTS_TXT", True)
ROBOTS_TIMEOUT = float(os.getenv("CRAWLER_ROBOTS_TIMEOUT", 10))
ROBOTS_CACHE_HOURS = int(os.getenv("CRAWLER_ROBOTS_CACHE_HOURS", 24))

# Retries and failure suppression
RETRY_BACKOFF = tuple(int(v) for v in _env_list("CRAWLER_RETRY_BACKOFF", "10,30,120,600"))
MAX_ATTEMPTS = int(os.getenv("CRAWLER_MAX_ATTEMPTS", 5))
FAILED_URL_TTL = int(os.getenv("CRAWLER_FAILED_URL_TTL", 86400))

# Discovery
MAX_CRAWLS_PER_CATEGORY = int(os.getenv("CRAWLER_MAX_CRAWLS_PER_CATEGORY", 10))
ALLOWED_EXTERNAL_DOMAINS = _env_list("CRAWLER_ALLOWED_EXTERNAL_DOMAINS")
CATEGORIES_FILE = os.getenv("CRAWLER_CATEGORIES_FILE")

# Scheduling
FETCH_BATCH_SIZE = int(os.getenv("CRAWLER_FETCH_BATCH_SIZE", 100))
STALE_QUEUE_SECONDS = int(os.getenv("CRAWLER_STALE_QUEUE_SECONDS", 3600))

# canonical data directory for the crawler
DATA_DIR = Path(os.getenv("CRAWLER_DATA_DIR", Path(__file__).resolve().parents[1] / 'data'))
STORAGE_DIR = Path(os.getenv("CRAWLER_STORAGE_DIR", DATA_DIR / 'storage'))

# Storage backend: "sqlite" (embedded, default) or "mysql"
DB_BACKEND = os.getenv("CRAWLER_DB_BACKEND", "sqlite").lower()
SQLITE_PATH = Path(os.getenv("CRAWLER_SQLITE_PATH", DATA_DIR / 'crawler.db'))
DB_CONFIG = {
    "host": os.getenv("MYSQL_HOST", "localhost"),
    "port": int(os.getenv("MYSQL_PORT", 3306)),
    "user": os.getenv("MYSQL_USER", "root"),
    "password": os.getenv("MYSQL_PASSWORD", ""),
    "database": os.getenv("MYSQL_DATABASE", "crawlerdb"),
    "charset": "utf8mb4",
}

# Worker scaling parameters
MIN_WORKERS = int(os.getenv("MIN_WORKERS", 5))
MAX_WORKERS = int(os.getenv("MAX_WORKERS", 50))
WORKER_IDLE_SLEEP = float(os.getenv("CRAWLER_WORKER_IDLE_SLEEP", 1.0))

LOG_FILE = os.getenv("CRAWLER_LOG_FILE")


# === ERRORS ===

class CrawlerError(Exception):
    """Base class for errors raised by the crawler packages."""


class StorageUnavailable(CrawlerError):
    """The configured store could not be opened. Fatal at startup."""


# === LOGGING SECTION ===

class CompanyFormatter(logging.Formatter):
    """
    FLOW: Receives a log record -> Extracts timestamp -> Formats according to company standard
    (e.g., [ Tue Jan 06 05:32:41 AM UTC 2026 ]) -> Prepends level and context -> Returns final string.
    """
    def format(self, record):
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, 'context', 'root')
        message = f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logger(name="crawler", log_file=None, level=logging.INFO):
    """
    FLOW: Initializes/Retrieves logger -> Checks for existing handlers to prevent duplicates ->
    Sets propagation for child loggers -> Attaches Console and optional File handlers with CompanyFormatter.
    """
    logger = logging.getLogger(name)

    if name != "crawler":
        logger.propagate = True
        setup_logger("crawler", log_file=log_file, level=level)
        return logger

    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = CompanyFormatter()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (optional)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


# Global logger instance
logger = setup_logger(log_file=LOG_FILE)

# --- Environment Checks ---
try:
    import brotli  # noqa: F401
    logger.info("[SYSTEM] Brotli library found. Decompression enabled.")
except ImportError:
    logger.warning("[SYSTEM] Brotli library NOT found. Brotli-encoded responses will fail to decompress.")
