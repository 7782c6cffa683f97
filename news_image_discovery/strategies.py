##########################################################################################
#
# Script name: strategies.py
#
# Description: Image extraction strategies and the prioritized chain that runs them.
#
##########################################################################################

import logging
import os
import re
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

import feedparser
import requests
from bs4 import BeautifulSoup

from .config import (
    BACKGROUND_IMAGE,
    DEFAULT_REQUEST_TIMEOUT,
    EXTERNAL_API,
    FEED_EMBEDDED,
    GOOGLE_SEARCH_ENDPOINT,
    META_TAG,
    SEMANTIC_SELECTOR,
    STRATEGY_ORDER,
    STRATEGY_PRIORS,
    TEXT_PATTERN,
    PipelineConfig,
)
from .errors import DeadlineExceeded, ExtractionError
from .models import ArticleDescriptor, FetchResult, ImageCandidate
from .ratelimit import HostRateLimiter
from .utils import absolutize, canonicalize_url, extract_keywords, utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

META_IMAGE_KEYS = (
    'og:image',
    'og:image:url',
    'og:image:secure_url',
    'twitter:image',
    'twitter:image:src',
)

SEMANTIC_SELECTORS = (
    'article img',
    'figure img',
    'picture source[srcset]',
    'img.wp-post-image',
    '.featured-image img',
    '.post-thumbnail img',
    '.entry-content img',
    '.story-body img',
    '.hero-image img',
    '.article-image img',
    'main img',
    '[class*="image"] img',
    '[class*="photo"] img',
)

LAZY_SRC_ATTRS = ('src', 'data-src', 'data-lazy-src', 'data-original')

BACKGROUND_RE = re.compile(
    r'background(?:-image)?\s*:[^;{}]*?url\(\s*["\']?([^"\')]+?)["\']?\s*\)',
    re.I,
)
TEXT_PATTERNS = (
    re.compile(r'<img[^>]+\bsrc=["\']([^"\']+)["\']', re.I),
    re.compile(r'\bdata-(?:lazy-)?src=["\']([^"\']+)["\']', re.I),
    BACKGROUND_RE,
)
BARE_IMAGE_URL_RE = re.compile(
    r'(?:https?:)?//[^\s"\'<>()]+?\.(?:jpe?g|png|gif|webp|avif)(?:\?[^\s"\'<>()]*)?(?=[\s"\'<>()]|$)',
    re.I,
)
IMAGE_EXTENSION_RE = re.compile(r'\.(?:jpe?g|png|gif|webp|avif|bmp)(?:$|\?)', re.I)

# Placeholders, chrome and tracking pixels are never representative images.
BAD_IMAGE_PATTERNS = re.compile(
    r'(?:sprite|favicon|logo[-_.]|/logo|watermark|placeholder|spacer|pixel\.gif|'
    r'default[-_]?og|default[-_]?share|social[-_]?share|avatar|gravatar\.com|\.svg(?:$|\?))',
    re.I,
)

TEXT_FIELDS = ('summary', 'description', 'content')


# ****************************************************************************************
# Functions
# ****************************************************************************************


def page_soup(fetch_result: FetchResult | None) -> BeautifulSoup | None:
    if fetch_result is None:
        return None
    return fetch_result.soup


def _dimension(value) -> int | None:
    if value is None:
        return None
    match = re.match(r'\s*(\d+)', str(value))
    if not match:
        return None
    return int(match.group(1))


def is_plausible_image(url: str, attributes: Mapping[str, str] | None = None) -> bool:
    if not url or not canonicalize_url(url):
        return False
    if BAD_IMAGE_PATTERNS.search(url):
        return False
    attributes = attributes or {}
    for key in ('width', 'height'):
        size = _dimension(attributes.get(key))
        if size is not None and size <= 2:
            return False
    return True


def best_srcset_url(srcset: str) -> str:
    best_url = ''
    best_size = -1.0
    for part in (srcset or '').split(','):
        pieces = part.strip().split()
        if not pieces:
            continue
        size = 0.0
        if len(pieces) > 1:
            descriptor = pieces[1].lower()
            try:
                size = float(descriptor[:-1]) if descriptor[-1] in 'wx' else 0.0
            except (ValueError, IndexError):
                size = 0.0
        if size > best_size:
            best_url, best_size = pieces[0], size
    return best_url


def _element_attributes(element) -> dict[str, str]:
    attributes: dict[str, str] = {}
    alt = (element.get('alt') or element.get('title') or '').strip()
    if alt:
        attributes['alt'] = alt
    for key in ('width', 'height'):
        value = element.get(key)
        if value:
            attributes[key] = str(value).strip()
    classes = element.get('class') or []
    if isinstance(classes, str):
        classes = classes.split()
    if classes:
        attributes['css_class'] = ' '.join(classes)
    return attributes


class ExtractionStrategy:
    name = ''

    def __init__(self, prior: float | None = None) -> None:
        self.prior = STRATEGY_PRIORS[self.name] if prior is None else prior

    def extract(
        self,
        fetch_result: FetchResult | None,
        descriptor: ArticleDescriptor,
        deadline_at: float | None = None,
    ) -> list[ImageCandidate]:
        raise NotImplementedError

    def _collect(self, found: Iterable[tuple[str, dict[str, str]]], base_url: str) -> list[ImageCandidate]:
        candidates: list[ImageCandidate] = []
        seen: set[str] = set()
        for raw_url, attributes in found:
            url = absolutize(raw_url, base_url)
            if not is_plausible_image(url, attributes):
                continue
            key = canonicalize_url(url)
            if key in seen:
                continue
            seen.add(key)
            candidates.append(
                ImageCandidate(
                    source_url=url,
                    strategy_name=self.name,
                    confidence_score=self.prior,
                    discovered_at=utc_now(),
                    raw_attributes=dict(attributes),
                )
            )
        return candidates


class FeedEmbeddedStrategy(ExtractionStrategy):
    name = FEED_EMBEDDED

    def _entry_images(self, entry) -> Iterable[tuple[str, dict[str, str]]]:
        title = (entry.get('title') or '').strip()
        for media in entry.get('media_content') or []:
            medium = (media.get('medium') or '').lower()
            media_type = (media.get('type') or '').lower()
            if medium and medium != 'image':
                continue
            if media_type and not media_type.startswith('image/'):
                continue
            attributes = {'alt': title} if title else {}
            for key in ('width', 'height'):
                if media.get(key):
                    attributes[key] = str(media[key])
            yield media.get('url', ''), attributes
        for thumb in entry.get('media_thumbnail') or []:
            attributes = {'alt': title} if title else {}
            for key in ('width', 'height'):
                if thumb.get(key):
                    attributes[key] = str(thumb[key])
            yield thumb.get('url', ''), attributes
        for enclosure in entry.get('enclosures') or []:
            enclosure_type = (enclosure.get('type') or '').lower()
            href = enclosure.get('href') or enclosure.get('url') or ''
            if enclosure_type.startswith('image/') or (not enclosure_type and IMAGE_EXTENSION_RE.search(href)):
                yield href, ({'alt': title} if title else {})

    def _feed_images(self, fetch_result: FetchResult, descriptor: ArticleDescriptor):
        parsed = feedparser.parse(fetch_result.feed_payload)
        entries = list(parsed.entries or [])
        if not entries:
            if getattr(parsed, 'bozo', False):
                raise ExtractionError(self.name, f'unparseable feed payload from {fetch_result.final_url}')
            return
        target = canonicalize_url(descriptor.url)
        matching = [entry for entry in entries if canonicalize_url(entry.get('link', '')) == target]
        if not matching and len(entries) == 1:
            matching = entries
        for entry in matching:
            yield from self._entry_images(entry)

    def extract(self, fetch_result, descriptor, deadline_at=None):
        found: list[tuple[str, dict[str, str]]] = []
        for key in ('enclosure_url', 'thumbnail_url'):
            value = descriptor.field_value(key)
            if value:
                found.append((value, {'alt': descriptor.title} if descriptor.title else {}))
        base_url = descriptor.url
        if fetch_result is not None and fetch_result.is_feed:
            found.extend(self._feed_images(fetch_result, descriptor))
            base_url = fetch_result.final_url
        return self._collect(found, base_url)


class MetaTagStrategy(ExtractionStrategy):
    name = META_TAG

    def extract(self, fetch_result, descriptor, deadline_at=None):
        soup = page_soup(fetch_result)
        if soup is None:
            return []
        found: list[tuple[str, dict[str, str]]] = []
        alt = ''
        for tag in soup.find_all('meta'):
            key = (tag.get('property') or tag.get('name') or '').strip().lower()
            if key in ('og:image:alt', 'twitter:image:alt') and not alt:
                alt = (tag.get('content') or '').strip()
        for tag in soup.find_all('meta'):
            key = (tag.get('property') or tag.get('name') or '').strip().lower()
            if key not in META_IMAGE_KEYS:
                continue
            content = (tag.get('content') or '').strip()
            if content:
                found.append((content, {'alt': alt} if alt else {}))
        for link in soup.find_all('link'):
            rel = link.get('rel') or []
            if isinstance(rel, str):
                rel = rel.split()
            if 'image_src' in [value.lower() for value in rel] and link.get('href'):
                found.append((link['href'], {}))
        return self._collect(found, fetch_result.final_url)


class SemanticSelectorStrategy(ExtractionStrategy):
    name = SEMANTIC_SELECTOR

    def __init__(self, prior: float | None = None, selectors: Iterable[str] = SEMANTIC_SELECTORS) -> None:
        super().__init__(prior)
        self.selectors = tuple(selectors)

    def _element_url(self, element) -> str:
        if element.name == 'source':
            return best_srcset_url(element.get('srcset', ''))
        for attr in LAZY_SRC_ATTRS:
            value = (element.get(attr) or '').strip()
            if value and not value.startswith('data:'):
                return value
        return best_srcset_url(element.get('srcset') or element.get('data-srcset') or '')

    def extract(self, fetch_result, descriptor, deadline_at=None):
        soup = page_soup(fetch_result)
        if soup is None:
            return []
        found: list[tuple[str, dict[str, str]]] = []
        for selector in self.selectors:
            try:
                elements = soup.select(selector)
            except ValueError as exc:
                raise ExtractionError(self.name, f'bad selector {selector!r}: {exc}') from exc
            for element in elements:
                url = self._element_url(element)
                if url:
                    found.append((url, _element_attributes(element)))
        return self._collect(found, fetch_result.final_url)


class BackgroundImageStrategy(ExtractionStrategy):
    name = BACKGROUND_IMAGE

    def extract(self, fetch_result, descriptor, deadline_at=None):
        soup = page_soup(fetch_result)
        if soup is None:
            return []
        found: list[tuple[str, dict[str, str]]] = []
        for element in soup.find_all(style=True):
            style = element.get('style') or ''
            attributes = _element_attributes(element)
            for match in BACKGROUND_RE.finditer(style):
                found.append((match.group(1), attributes))
        for block in soup.find_all('style'):
            css = block.string or block.get_text() or ''
            for match in BACKGROUND_RE.finditer(css):
                found.append((match.group(1), {}))
        return self._collect(found, fetch_result.final_url)


class TextPatternStrategy(ExtractionStrategy):
    name = TEXT_PATTERN

    def extract(self, fetch_result, descriptor, deadline_at=None):
        found: list[tuple[str, dict[str, str]]] = []
        for field_name in TEXT_FIELDS:
            text = descriptor.field_value(field_name)
            if not text:
                continue
            for pattern in TEXT_PATTERNS:
                for match in pattern.finditer(text):
                    found.append((match.group(1), {}))
            for match in BARE_IMAGE_URL_RE.finditer(text):
                found.append((match.group(0), {}))
        base_url = fetch_result.final_url if fetch_result is not None else descriptor.url
        return self._collect(found, base_url)


class ExternalSearchStrategy(ExtractionStrategy):
    '''
    Google Custom Search image lookup built from the headline keywords.

    Only constructed when the caller asks for it and credentials are present.
    '''

    name = EXTERNAL_API

    def __init__(
        self,
        api_key: str,
        cse_id: str,
        session: requests.Session,
        rate_limiter: HostRateLimiter | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_results: int = 5,
        prior: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(prior)
        self.api_key = api_key
        self.cse_id = cse_id
        self.session = session
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.max_results = max_results
        self._clock = clock

    def extract(self, fetch_result, descriptor, deadline_at=None):
        keywords = extract_keywords(descriptor.title)
        if not keywords:
            return []
        params = {
            'key': self.api_key,
            'cx': self.cse_id,
            'q': ' '.join(keywords),
            'searchType': 'image',
            'num': self.max_results,
            'safe': 'active',
        }
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(GOOGLE_SEARCH_ENDPOINT, deadline_at=deadline_at)
        timeout = self.timeout
        if deadline_at is not None:
            remaining = deadline_at - self._clock()
            if remaining <= 0:
                raise DeadlineExceeded('extracting')
            timeout = min(timeout, remaining)
        try:
            response = self.session.get(GOOGLE_SEARCH_ENDPOINT, params=params, timeout=timeout)
            response.raise_for_status()
            payload = response.json() or {}
        except (requests.RequestException, ValueError) as exc:
            raise ExtractionError(self.name, f'image search failed: {exc}') from exc
        found: list[tuple[str, dict[str, str]]] = []
        for item in payload.get('items') or []:
            image = item.get('image') or {}
            attributes = {'alt': (item.get('title') or '').strip()}
            for key in ('width', 'height'):
                if image.get(key):
                    attributes[key] = str(image[key])
            found.append((item.get('link') or '', attributes))
        return self._collect(found, descriptor.url)


class StrategyBudget:
    '''
    Per-batch invocation limits shared by all article jobs.
    '''

    def __init__(self, limits: Mapping[str, int] | None = None) -> None:
        self.limits = dict(limits or {})
        self.used: Counter = Counter()
        self._lock = threading.Lock()

    def try_consume(self, strategy_name: str) -> bool:
        limit = self.limits.get(strategy_name)
        with self._lock:
            if limit is not None and self.used[strategy_name] >= limit:
                return False
            self.used[strategy_name] += 1
            return True


@dataclass
class ChainResult:
    candidates: list[ImageCandidate] = field(default_factory=list)
    strategy_counts: dict[str, int] = field(default_factory=dict)
    strategies_run: list[str] = field(default_factory=list)


class StrategyChain:
    def __init__(
        self,
        strategies: list[ExtractionStrategy],
        target_count: int,
        budget: StrategyBudget | None = None,
    ) -> None:
        order = {name: idx for idx, name in enumerate(STRATEGY_ORDER)}
        self.strategies = sorted(strategies, key=lambda item: order.get(item.name, len(order)))
        self.target_count = target_count
        self.budget = budget or StrategyBudget()

    @property
    def names(self) -> list[str]:
        return [strategy.name for strategy in self.strategies]

    def _invoke(self, strategy: ExtractionStrategy, fetch_result, descriptor, deadline_at) -> list[ImageCandidate]:
        if not self.budget.try_consume(strategy.name):
            log.info('Strategy budget exhausted for %s; skipping %s', strategy.name, descriptor.url)
            return []
        try:
            return strategy.extract(fetch_result, descriptor, deadline_at=deadline_at)
        except DeadlineExceeded:
            raise
        except ExtractionError as exc:
            log.warning('Extraction failed for %s: %s', descriptor.url, exc)
        except Exception as exc:  # noqa: BLE001
            log.exception('Strategy %s crashed on %s: %s', strategy.name, descriptor.url, exc)
        return []

    def run(
        self,
        fetch_result: FetchResult | None,
        descriptor: ArticleDescriptor,
        checkpoint: Callable[[], None] | None = None,
        deadline_at: float | None = None,
    ) -> ChainResult:
        result = ChainResult()
        distinct: set[str] = set()
        for strategy in self.strategies:
            is_external = strategy.name == EXTERNAL_API
            if not is_external and len(distinct) >= self.target_count:
                log.debug('Target of %d images reached for %s; skipping %s', self.target_count, descriptor.url, strategy.name)
                continue
            if checkpoint is not None:
                checkpoint()
            found = self._invoke(strategy, fetch_result, descriptor, deadline_at)
            result.strategies_run.append(strategy.name)
            result.strategy_counts[strategy.name] = len(found)
            result.candidates.extend(found)
            distinct.update(candidate.canonical_url for candidate in found)
            log.debug('%s yielded %d candidate(s) for %s', strategy.name, len(found), descriptor.url)
        return result


def build_strategies(
    config: PipelineConfig,
    session: requests.Session | None = None,
    rate_limiter: HostRateLimiter | None = None,
    environ: Mapping[str, str] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> list[ExtractionStrategy]:
    environ = os.environ if environ is None else environ
    registry = {
        FEED_EMBEDDED: FeedEmbeddedStrategy,
        META_TAG: MetaTagStrategy,
        SEMANTIC_SELECTOR: SemanticSelectorStrategy,
        BACKGROUND_IMAGE: BackgroundImageStrategy,
        TEXT_PATTERN: TextPatternStrategy,
    }
    strategies: list[ExtractionStrategy] = [
        registry[name]() for name in STRATEGY_ORDER if name in registry and name in config.enabled_strategies
    ]
    if config.use_external_api and EXTERNAL_API in config.enabled_strategies:
        api_key = (environ.get('GOOGLE_API_KEY') or '').strip()
        cse_id = (environ.get('GOOGLE_CSE_ID') or '').strip()
        if api_key and cse_id and session is not None:
            strategies.append(
                ExternalSearchStrategy(
                    api_key=api_key,
                    cse_id=cse_id,
                    session=session,
                    rate_limiter=rate_limiter,
                    timeout=config.request_timeout,
                    clock=clock,
                )
            )
        else:
            log.warning('External image search requested but GOOGLE_API_KEY/GOOGLE_CSE_ID are not configured.')
    return strategies
