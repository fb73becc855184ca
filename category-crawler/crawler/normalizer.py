"""
URL canonicalization and identity.

normalize() turns a raw URL string into a NormalizedURL (or a NormalizationError).
Two spellings of the same resource collapse to the same url_hash, which is the
dedup key used by the rest of the pipeline.
"""

import hashlib
import posixpath
import re
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

import idna
import tldextract

from crawler.models import NormalizedURL, NormalizationError

SUPPORTED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}

TRACKING_PARAMS = {
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "fbclid", "gclid", "msclkid", "mc_cid", "mc_eid",
    "_ga", "_gl", "ref", "referrer", "source",
}

# "example.com", "www.example.co.uk/path" - a bare domain without a scheme
_BARE_DOMAIN = re.compile(r"^[a-z0-9][a-z0-9\-]*(\.[a-z0-9\-]+)*\.[a-z]{2,}(:\d+)?([/?#]|$)", re.IGNORECASE)

# Offline suffix list; never reaches out to the network
_tld_extract = tldextract.TLDExtract(suffix_list_urls=())


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _is_tracking(key: str) -> bool:
    key = key.lower()
    return key in TRACKING_PARAMS or key.startswith("utm_")


def normalize_path(path: str) -> str:
    """Collapse '.', '..' and empty segments; no trailing slash except root."""
    if not path:
        return "/"
    stack = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if stack:
                stack.pop()
        else:
            stack.append(segment)
    return "/" + "/".join(stack)


def normalize_query(query: str) -> str:
    """Drop tracking parameters and sort the rest by key (stable for repeated keys)."""
    if not query:
        return ""
    params = [(k, v) for k, v in parse_qsl(query, keep_blank_values=True) if not _is_tracking(k)]
    if not params:
        return ""
    params.sort(key=lambda kv: kv[0])
    return urlencode(params)


def _ascii_host(host: str) -> str:
    host = host.lower().rstrip(".")
    if host.isascii():
        return host
    return idna.encode(host, uts46=True).decode("ascii")


def normalize(url: str):
    """
    Canonicalize a raw URL.
    Returns NormalizedURL on success, NormalizationError otherwise. Never raises.
    """
    if url is None or not str(url).strip():
        return NormalizationError(url=url or "", reason="empty url")

    raw = str(url).strip()
    candidate = raw
    if "://" not in candidate and _BARE_DOMAIN.match(candidate):
        candidate = "https://" + candidate

    try:
        parts = urlsplit(candidate)
        scheme = parts.scheme.lower()
        if not scheme:
            return NormalizationError(url=raw, reason="missing scheme")
        if scheme not in SUPPORTED_SCHEMES:
            return NormalizationError(url=raw, reason=f"unsupported scheme: {scheme}")
        if not parts.hostname:
            return NormalizationError(url=raw, reason="missing host")

        host = _ascii_host(parts.hostname)
        port = parts.port
    except (ValueError, UnicodeError, idna.IDNAError) as e:
        return NormalizationError(url=raw, reason=f"unparseable url: {e}")

    if port == DEFAULT_PORTS[scheme]:
        port = None
    bracketed = f"[{host}]" if ":" in host else host
    netloc = f"{bracketed}:{port}" if port else bracketed

    path = normalize_path(parts.path)
    query = normalize_query(parts.query)

    # Fragment is never part of identity
    normalized = urlunsplit((scheme, netloc, path, query, ""))

    return NormalizedURL(
        original=raw,
        normalized=normalized,
        url_hash=_sha256(normalized),
        scheme=scheme,
        host=host,
        path=path,
        query_hash=_sha256(query) if query else None,
    )


def identity_digest(url: str) -> str:
    """
    Digest used for failure caching: the url_hash when the URL normalizes,
    otherwise the SHA-256 of the stripped raw string.
    """
    result = normalize(url)
    if result:
        return result.url_hash
    return _sha256((url or "").strip())


def make_absolute(relative_url: str, base_url: str):
    """
    Resolve a link found on `base_url`.
    Handles absolute, protocol-relative (//), absolute-path (/) and relative-path forms.
    Returns None when the base is unusable.
    """
    relative_url = (relative_url or "").strip()
    base_url = (base_url or "").strip()

    if urlsplit(relative_url).scheme:
        return relative_url

    base = urlsplit(base_url)
    if not base.scheme or not base.netloc:
        return None

    if relative_url.startswith("//"):
        return f"{base.scheme}:{relative_url}"

    if relative_url.startswith("/"):
        return f"{base.scheme}://{base.netloc}{relative_url}"

    if relative_url.startswith(("?", "#")) or not relative_url:
        return urlunsplit((base.scheme, base.netloc, base.path or "/", "", "")) + relative_url

    base_dir = posixpath.dirname(base.path) if not base.path.endswith("/") else base.path.rstrip("/")
    joined = f"{base_dir}/{relative_url}"
    return f"{base.scheme}://{base.netloc}{joined}"


def extract_host(url: str):
    try:
        host = urlsplit((url or "").strip()).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def registrable_domain(url_or_host: str) -> str:
    """'www.bbc.co.uk' -> 'bbc.co.uk'. Falls back to the bare host when no suffix is known."""
    host = extract_host(url_or_host) if "://" in url_or_host else url_or_host.lower()
    if not host:
        return ""
    ext = _tld_extract(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host

