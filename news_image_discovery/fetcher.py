##########################################################################################
#
# Script name: fetcher.py
#
# Description: Retrieves article HTML or feed payloads with retry, backoff and
#              mobile/AMP fallback variants.
#
##########################################################################################

import logging
import re
import time
from typing import Callable
from urllib.parse import urlparse, urlunparse

import requests

from .config import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    USER_AGENT,
)
from .errors import DeadlineExceeded, FetchError
from .models import ArticleDescriptor, FetchResult
from .ratelimit import HostRateLimiter
from .utils import utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

FEED_CONTENT_TYPES = ('rss', 'atom', 'xml')
FEED_ROOT_RE = re.compile(r'^\s*(?:<\?xml[^>]*>\s*)?(?:<!--.*?-->\s*)*<(rss|feed|rdf:RDF)\b', re.S | re.I)


# ****************************************************************************************
# Functions
# ****************************************************************************************


def build_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            'User-Agent': USER_AGENT,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        }
    )
    return session


def mobile_variant(url: str) -> str:
    parsed = urlparse(url)
    host = parsed.netloc
    if not host or host.lower().startswith('m.'):
        return ''
    if host.lower().startswith('www.'):
        host = 'm.' + host[4:]
    else:
        host = 'm.' + host
    return urlunparse(parsed._replace(netloc=host))


def amp_variant(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.netloc:
        return ''
    path = parsed.path.rstrip('/')
    if path.lower().endswith('/amp'):
        return ''
    return urlunparse(parsed._replace(path=f'{path}/amp'))


def alternate_variants(url: str) -> list[str]:
    variants = []
    for builder in (mobile_variant, amp_variant):
        variant = builder(url)
        if variant and variant != url and variant not in variants:
            variants.append(variant)
    return variants


def looks_like_feed(content_type: str, body: str) -> bool:
    lowered = (content_type or '').lower()
    if 'html' in lowered:
        return False
    if any(marker in lowered for marker in FEED_CONTENT_TYPES):
        return True
    return bool(FEED_ROOT_RE.match(body[:2048] if body else ''))


class Fetcher:
    def __init__(
        self,
        session: requests.Session | None = None,
        rate_limiter: HostRateLimiter | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or build_session()
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self._clock = clock
        self._sleep = sleep

    def _remaining(self, deadline_at: float | None) -> float | None:
        if deadline_at is None:
            return None
        remaining = deadline_at - self._clock()
        if remaining <= 0:
            raise DeadlineExceeded('fetching')
        return remaining

    def _request(self, url: str, deadline_at: float | None) -> FetchResult:
        self._remaining(deadline_at)
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(url, deadline_at=deadline_at)
        remaining = self._remaining(deadline_at)
        timeout = self.timeout if remaining is None else min(self.timeout, remaining)
        try:
            response = self.session.get(url, timeout=timeout, allow_redirects=True)
        except requests.Timeout as exc:
            raise FetchError(FetchError.TIMEOUT, url, detail=str(exc)) from exc
        except requests.RequestException as exc:
            raise FetchError(FetchError.HTTP_ERROR, url, detail=str(exc)) from exc
        if response.status_code >= 400:
            raise FetchError(FetchError.HTTP_ERROR, url, status=response.status_code)

        body = response.text or ''
        content_type = response.headers.get('Content-Type', '')
        final_url = response.url or url
        result = FetchResult(final_url=final_url, http_status=response.status_code, fetched_at=utc_now())
        if looks_like_feed(content_type, body):
            result.feed_payload = body
        else:
            result.html = body
        return result

    def _backoff(self, attempt: int, deadline_at: float | None) -> None:
        delay = self.backoff_base * (self.backoff_factor ** attempt)
        remaining = self._remaining(deadline_at)
        if remaining is not None and delay >= remaining:
            raise DeadlineExceeded('fetching')
        self._sleep(delay)

    def fetch(self, descriptor: ArticleDescriptor, deadline_at: float | None = None) -> FetchResult:
        url = descriptor.url
        last_error: FetchError | None = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                self._backoff(attempt - 1, deadline_at)
            try:
                return self._request(url, deadline_at)
            except FetchError as exc:
                last_error = exc
                log.debug('Fetch attempt %d for %s failed: %s', attempt + 1, url, exc)

        variants = alternate_variants(url)
        for variant in variants:
            try:
                result = self._request(variant, deadline_at)
            except FetchError as exc:
                log.debug('Fallback variant %s failed: %s', variant, exc)
                last_error = exc
                continue
            result.used_fallback_variant = True
            log.info('Fetched %s via fallback variant %s', url, variant)
            return result

        if variants:
            status = last_error.status if last_error else None
            raise FetchError(FetchError.ALL_VARIANTS_EXHAUSTED, url, status=status)
        if last_error is None:
            raise FetchError(FetchError.HTTP_ERROR, url)
        raise last_error
