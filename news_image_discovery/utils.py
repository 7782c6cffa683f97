from __future__ import annotations

import hashlib
import html
import re
from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlsplit, urlunsplit


TRACKING_PREFIXES = ("utm_",)
TRACKING_PARAMS = {"ref", "fbclid", "gclid", "mc_cid", "mc_eid", "igshid"}
SIZE_PARAMS = {"w", "h", "width", "height", "resize"}
DEFAULT_PORTS = {"http": "80", "https": "443"}
SIZE_SUFFIX_RE = re.compile(r"(?:-\d{2,4}x\d{2,4})+(?=\.[A-Za-z0-9]+$)")
SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
STOPWORDS = {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().replace(microsecond=0).isoformat()


def parse_iso_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def strip_html(value: str) -> str:
    text = re.sub(r"<[^>]+>", " ", value or "")
    text = html.unescape(text)
    return normalize_whitespace(text)


def stable_id(*parts: str) -> str:
    payload = "|".join(part for part in parts if part)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def article_hash(url: str) -> str:
    return stable_id(canonicalize_url(url) or url)[:12]


def slugify(value: str, fallback: str = "item") -> str:
    normalized = value.encode("ascii", "ignore").decode("ascii").lower()
    normalized = SLUG_PATTERN.sub("-", normalized).strip("-")
    return normalized or fallback


def _is_dropped_param(key: str) -> bool:
    lowered = key.lower()
    if any(lowered.startswith(prefix) for prefix in TRACKING_PREFIXES):
        return True
    return lowered in TRACKING_PARAMS or lowered in SIZE_PARAMS


def canonicalize_url(url: str) -> str:
    """Normalize an image or article URL so equivalent variants share one identity.

    Scheme and host are lowercased, default ports and fragments dropped, tracking
    and size-only query parameters removed, ``-WxH`` size suffixes stripped from
    the file name and the trailing slash removed. Path parameters after ``;`` are
    kept and the value is not HTML-unescaped. Applying it twice is a no-op.
    """
    value = (url or "").strip()
    if not value:
        return ""
    if value.startswith("//"):
        value = "https:" + value
    parsed = urlsplit(value)
    if not parsed.scheme or not parsed.netloc:
        return ""
    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    host, _, port = netloc.rpartition(":")
    if host and port == DEFAULT_PORTS.get(scheme):
        netloc = host
    path = parsed.path.rstrip("/")
    path = SIZE_SUFFIX_RE.sub("", path)
    query_pairs = sorted(
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=False)
        if not _is_dropped_param(key)
    )
    return urlunsplit((scheme, netloc, path, urlencode(query_pairs), ""))


def absolutize(url: str | None, base: str) -> str:
    if not url:
        return ""
    value = html.unescape(url.strip())
    if not value or value.startswith("data:"):
        return ""
    if value.startswith("//"):
        return "https:" + value
    parsed = urlparse(value)
    if parsed.scheme and parsed.scheme not in {"http", "https"}:
        return ""
    if not parsed.scheme:
        return urljoin(base, value)
    return value


def extract_host(url: str) -> str:
    try:
        netloc = urlparse(url or "").netloc.lower()
    except ValueError:
        netloc = ""
    return netloc.rsplit("@", 1)[-1]


def extract_keywords(title: str, limit: int = 5) -> list[str]:
    words = re.findall(r"[\w'-]+", (title or "").lower())
    return [word for word in words if len(word) > 3 and word not in STOPWORDS][:limit]
