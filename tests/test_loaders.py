##########################################################################################
#
# Script name: test_loaders.py
#
# Description: Descriptor and pipeline config loading tests.
#
##########################################################################################

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from news_image_discovery.config import STRATEGY_ORDER, PipelineConfig
from news_image_discovery.loaders import (
    apply_overrides,
    descriptor_from_mapping,
    load_descriptors,
    load_pipeline_config,
    parse_published,
)

DESCRIPTORS_YAML = '''
articles:
  - url: https://news.example.com/a
    title: "Nigeria <b>election</b> results"
    pubDate: "Sun, 01 Mar 2026 10:00:00 +0100"
    enclosure:
      url: https://cdn.example.com/a.jpg
      type: image/jpeg
    contentSnippet: Polling stations opened early.
  - title: Missing url
  - link: https://news.example.com/b
    title: Second
    feed_fields:
      thumbnailURL: https://cdn.example.com/b-thumb.jpg
      description: Results from Accra
'''


def test_load_descriptors_from_yaml(tmp_path) -> None:
    path = tmp_path / 'articles.yaml'
    path.write_text(DESCRIPTORS_YAML, encoding='utf-8')
    descriptors = load_descriptors(str(path))

    assert [descriptor.url for descriptor in descriptors] == [
        'https://news.example.com/a',
        'https://news.example.com/b',
    ]
    first, second = descriptors
    assert first.title == 'Nigeria election results'
    assert first.published_at == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert first.field_value('enclosure_url') == 'https://cdn.example.com/a.jpg'
    assert first.field_value('summary') == 'Polling stations opened early.'
    assert second.field_value('thumbnail_url') == 'https://cdn.example.com/b-thumb.jpg'
    assert second.field_value('description') == 'Results from Accra'
    assert second.published_at is None


def test_load_descriptors_from_json_list(tmp_path) -> None:
    path = tmp_path / 'articles.json'
    path.write_text(json.dumps([{'url': 'https://news.example.com/c', 'title': 'Third'}]), encoding='utf-8')
    descriptors = load_descriptors(str(path))
    assert descriptors[0].title == 'Third'
    assert descriptors[0].feed_fields == {}


def test_descriptor_requires_url() -> None:
    assert descriptor_from_mapping({'title': 'No link'}) is None


def test_parse_published_handles_bad_values() -> None:
    assert parse_published('') is None
    assert parse_published('not a date at all') is None
    assert parse_published('2026-03-01T12:00:00') == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_load_pipeline_config_applies_overrides(tmp_path) -> None:
    path = tmp_path / 'pipeline.yaml'
    path.write_text(
        '\n'.join(
            [
                'pipeline:',
                '  targetImagesPerArticle: 3',
                '  concurrency: 2',
                '  min_confidence: 0.5',
                '  enabled_strategies: [meta-tag, feed-embedded]',
                '  region_taxonomy:',
                '    caribbean: [Jamaica, Haiti]',
                '  output_root: out',
                '  deadline: 120',
                '  unknown_option: true',
            ]
        ),
        encoding='utf-8',
    )
    config = load_pipeline_config(str(path))
    assert config.target_images_per_article == 3
    assert config.concurrency == 2
    assert config.min_confidence == 0.5
    assert config.enabled_strategies == {'meta-tag', 'feed-embedded'}
    assert config.region_taxonomy == {'caribbean': ['jamaica', 'haiti']}
    assert config.output_root == Path('out')
    assert config.deadline == 120.0


def test_default_config_enables_every_strategy() -> None:
    config = load_pipeline_config(None)
    assert config.enabled_strategies == set(STRATEGY_ORDER)
    assert not config.use_external_api


def test_invalid_overrides_are_rejected() -> None:
    with pytest.raises(ValueError):
        apply_overrides(PipelineConfig(), {'enabled_strategies': ['made-up']})
    with pytest.raises(ValueError):
        apply_overrides(PipelineConfig(), {'min_confidence': 1.5})
    with pytest.raises(ValueError):
        apply_overrides(PipelineConfig(), {'region_taxonomy': ['africa']})
