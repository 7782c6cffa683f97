##########################################################################################
#
# Script name: loaders.py
#
# Description: Loads pipeline configuration overrides and article descriptor batches.
#
##########################################################################################

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from dateutil import parser as date_parser

from .config import STRATEGY_ORDER, PipelineConfig
from .models import ArticleDescriptor
from .utils import normalize_whitespace, strip_html


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

FEED_FIELD_ALIASES = {
    'summary': 'summary',
    'contentsnippet': 'summary',
    'description': 'description',
    'content': 'content',
    'enclosureurl': 'enclosure_url',
    'enclosure': 'enclosure_url',
    'thumbnailurl': 'thumbnail_url',
    'thumbnail': 'thumbnail_url',
}

CONFIG_ALIASES = {
    'targetimagesperarticle': 'target_images_per_article',
    'ratelimitperhost': 'rate_limit_per_host',
    'minconfidence': 'min_confidence',
    'enabledstrategies': 'enabled_strategies',
    'regiontaxonomy': 'region_taxonomy',
}


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _read_structured(path: str) -> Any:
    with open(path, 'r', encoding='utf-8') as handle:
        if path.lower().endswith('.json'):
            return json.load(handle)
        return yaml.safe_load(handle)


def parse_published(value: Any) -> datetime | None:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, TypeError, OverflowError):
            log.debug('Unparseable published date: %r', value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _enclosure_value(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get('url') or value.get('href') or '')
    return str(value or '')


def descriptor_from_mapping(item: dict) -> ArticleDescriptor | None:
    url = str(item.get('url') or item.get('link') or '').strip()
    if not url:
        return None
    title = normalize_whitespace(strip_html(str(item.get('title') or '')))
    raw_fields = dict(item.get('feed_fields') or item.get('feedFields') or {})
    for key in ('summary', 'contentSnippet', 'description', 'content', 'enclosure', 'thumbnail'):
        if key in item and key not in raw_fields:
            raw_fields[key] = item[key]

    feed_fields: dict[str, str] = {}
    for key, value in raw_fields.items():
        normalized = FEED_FIELD_ALIASES.get(key.replace('_', '').lower())
        if not normalized or normalized in feed_fields:
            continue
        text = _enclosure_value(value) if normalized in ('enclosure_url', 'thumbnail_url') else str(value or '')
        if text.strip():
            feed_fields[normalized] = text.strip()

    published = item.get('published_at') or item.get('publishedAt') or item.get('pubDate') or item.get('isoDate')
    return ArticleDescriptor(
        url=url,
        title=title,
        published_at=parse_published(published),
        feed_fields=feed_fields,
    )


def load_descriptors(path: str) -> list[ArticleDescriptor]:
    payload = _read_structured(path) or []
    if isinstance(payload, dict):
        payload = payload.get('articles') or payload.get('items') or []
    if not isinstance(payload, list):
        raise ValueError('descriptor file must contain a list of articles')
    descriptors: list[ArticleDescriptor] = []
    for idx, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            log.warning('Skipping descriptor #%d: expected a mapping, got %s', idx, type(item).__name__)
            continue
        descriptor = descriptor_from_mapping(item)
        if descriptor is None:
            log.warning('Skipping descriptor #%d: missing url', idx)
            continue
        descriptors.append(descriptor)
    log.info('Loaded %d article descriptor(s) from %s', len(descriptors), path)
    return descriptors


def _normalize_taxonomy(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        raise ValueError('region_taxonomy must be a mapping of region id to keywords')
    taxonomy: dict[str, list[str]] = {}
    for region_id, keywords in raw.items():
        if isinstance(keywords, str):
            keywords = [keywords]
        taxonomy[str(region_id)] = [str(keyword).strip().lower() for keyword in keywords or [] if str(keyword).strip()]
    return taxonomy


def apply_overrides(config: PipelineConfig, overrides: dict) -> PipelineConfig:
    for raw_key, value in (overrides or {}).items():
        key = CONFIG_ALIASES.get(str(raw_key).replace('_', '').lower(), str(raw_key))
        if key == 'region_taxonomy':
            config.region_taxonomy = _normalize_taxonomy(value)
        elif key == 'enabled_strategies':
            config.enabled_strategies = {str(name) for name in value or []}
        elif key == 'strategy_budgets':
            config.strategy_budgets = {str(name): int(limit) for name, limit in (value or {}).items()}
        elif key == 'output_root':
            config.output_root = Path(value)
        elif key == 'deadline':
            config.deadline = None if value is None else float(value)
        elif key in ('target_images_per_article', 'concurrency', 'max_retries'):
            setattr(config, key, int(value))
        elif key in ('rate_limit_per_host', 'min_confidence', 'request_timeout', 'backoff_base', 'backoff_factor'):
            setattr(config, key, float(value))
        elif key in ('download_images', 'use_external_api'):
            setattr(config, key, bool(value))
        else:
            log.warning('Ignoring unknown pipeline option: %s', raw_key)
    config.validate()
    return config


def load_pipeline_config(path: str | None, base: PipelineConfig | None = None) -> PipelineConfig:
    config = base or PipelineConfig()
    if not path:
        config.validate()
        return config
    payload = _read_structured(path) or {}
    if not isinstance(payload, dict):
        raise ValueError('pipeline config must be a mapping')
    overrides = payload.get('pipeline', payload)
    config = apply_overrides(config, overrides)
    enabled = [name for name in STRATEGY_ORDER if name in config.enabled_strategies]
    log.debug('Pipeline config loaded from %s; strategies: %s', path, ', '.join(enabled))
    return config
