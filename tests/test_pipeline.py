##########################################################################################
#
# Script name: test_pipeline.py
#
# Description: End-to-end batch runs against a fake session and temp output directory.
#
##########################################################################################

from conftest import FakeClock, FakeResponse, FakeSession, html_response
from news_image_discovery.config import GOOGLE_SEARCH_ENDPOINT, PipelineConfig
from news_image_discovery.models import ArticleDescriptor, Stage
from news_image_discovery.pipeline import ImagePipeline, PipelineContext, run_batch
from news_image_discovery.store import MetadataStore
from news_image_discovery.utils import article_hash, utc_now

PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 1024

CORROBORATED_HTML = '''
<meta property="og:image" content="https://cdn.example.com/hero.jpg" />
<article><img src="https://cdn.example.com/hero-800x600.jpg?w=800" alt="Ballot boxes" /></article>
'''


def _config(tmp_path, **overrides) -> PipelineConfig:
    options = {
        'output_root': tmp_path,
        'rate_limit_per_host': 0.0,
        'backoff_base': 0.0,
        'download_images': False,
        'region_taxonomy': {'african': ['nigeria', 'africa'], 'caribbean': ['jamaica']},
    }
    options.update(overrides)
    return PipelineConfig(**options)


def _pipeline(config, session, clock=None) -> ImagePipeline:
    clock = clock or FakeClock()
    context = PipelineContext.create(config, session=session, clock=clock.now, sleep=clock.sleep)
    return ImagePipeline(config, context=context, sleep=clock.sleep)


def _today() -> str:
    return utc_now().date().isoformat()


def test_enclosure_only_article_is_persisted(tmp_path) -> None:
    url = 'https://news.example.com/a'
    session = FakeSession({url: html_response('<p>No pictures here.</p>')})
    descriptor = ArticleDescriptor(
        url=url,
        title='Nigeria election results',
        feed_fields={'enclosure_url': 'https://cdn.example.com/a.jpg?utm_source=x'},
    )
    report = _pipeline(_config(tmp_path), session).run_batch([descriptor])

    assert report.attempted == 1
    assert report.succeeded == 1
    assert report.per_strategy_success_counts == {'feed-embedded': 1}
    outcome = report.outcomes[0]
    assert outcome.stage == Stage.PERSISTED
    assert outcome.image_count == 1

    record = MetadataStore(tmp_path).load_partition(_today())[0]
    assert record.article_url == url
    image = record.images[0]
    assert image.canonical_url == 'https://cdn.example.com/a.jpg'
    assert image.best_strategy_name == 'feed-embedded'
    assert image.merged_confidence == 0.9
    assert record.region_tags[0].region_id == 'african'
    assert record.region_tags[0].matched_keywords == ('nigeria',)
    assert record.strategy_success_counts['feed-embedded'] == 1


def test_corroborated_image_is_boosted(tmp_path) -> None:
    url = 'https://news.example.com/b'
    session = FakeSession({url: html_response(CORROBORATED_HTML)})
    report = _pipeline(_config(tmp_path), session).run_batch([ArticleDescriptor(url=url, title='Vote count')])

    assert report.succeeded == 1
    record = MetadataStore(tmp_path).load_partition(_today())[0]
    assert len(record.images) == 1
    assert record.images[0].merged_confidence == 0.95
    assert record.images[0].contributing_strategies == {'meta-tag', 'semantic-selector'}
    assert record.region_tags[0].region_id == 'unclassified'


def test_failing_article_does_not_stop_the_batch(tmp_path) -> None:
    good = 'https://news.example.com/good'
    bad = 'https://www.broken.example.com/story'
    session = FakeSession(
        {
            good: html_response('<meta property="og:image" content="https://cdn.example.com/g.jpg" />'),
            bad: FakeResponse(status_code=500),
            'https://m.broken.example.com/story': FakeResponse(status_code=500),
            'https://www.broken.example.com/story/amp': FakeResponse(status_code=500),
        }
    )
    descriptors = [
        ArticleDescriptor(url=bad, title='Broken'),
        ArticleDescriptor(url=good, title='Jamaica budget'),
    ]
    report = _pipeline(_config(tmp_path, concurrency=2), session).run_batch(descriptors)

    assert report.attempted == 2
    assert report.succeeded == 1
    assert report.failed == 1
    assert report.success_rate == 50.0
    failed = report.outcomes[0]
    assert failed.status == 'failed'
    assert failed.stage == Stage.FETCHING
    assert failed.reason == 'all_variants_exhausted'
    assert report.outcomes[1].succeeded

    records = MetadataStore(tmp_path).load_partition(_today())
    assert [record.article_url for record in records] == [good]


def test_rerunning_a_batch_is_idempotent(tmp_path) -> None:
    url = 'https://news.example.com/c'
    session = FakeSession({url: html_response('<meta property="og:image" content="https://cdn.example.com/c.jpg" />')})
    descriptor = ArticleDescriptor(url=url, title='Repeat')
    config = _config(tmp_path)
    _pipeline(config, session).run_batch([descriptor])
    _pipeline(config, session).run_batch([descriptor])
    assert len(MetadataStore(tmp_path).load_partition(_today())) == 1


def test_deadline_aborts_in_flight_and_pending_articles(tmp_path) -> None:
    clock = FakeClock()
    fast = 'https://news.example.com/fast'
    slow = 'https://news.example.com/slow'
    late = 'https://news.example.com/late'

    def slow_response(url):
        clock.advance(30.0)
        return html_response('<meta property="og:image" content="https://cdn.example.com/s.jpg" />', url=url)

    session = FakeSession(
        {
            fast: html_response('<meta property="og:image" content="https://cdn.example.com/f.jpg" />'),
            slow: slow_response,
            late: html_response('<p>never fetched</p>'),
        }
    )
    config = _config(tmp_path, concurrency=1, deadline=10.0)
    descriptors = [
        ArticleDescriptor(url=fast, title='Fast'),
        ArticleDescriptor(url=slow, title='Slow'),
        ArticleDescriptor(url=late, title='Late'),
    ]
    report = _pipeline(config, session, clock=clock).run_batch(descriptors)

    outcomes = {outcome.url: outcome for outcome in report.outcomes}
    assert outcomes[fast].succeeded
    assert outcomes[slow].stage == Stage.EXTRACTING
    assert outcomes[slow].reason == 'deadline_exceeded'
    assert outcomes[late].stage == Stage.PENDING
    assert outcomes[late].reason == 'deadline_exceeded'
    assert late not in session.calls
    assert report.succeeded == 1
    assert report.failed == 2

    records = MetadataStore(tmp_path).load_partition(_today())
    assert [record.article_url for record in records] == [fast]


def test_images_are_downloaded_into_region_folders(tmp_path) -> None:
    url = 'https://news.example.com/d'
    image_url = 'https://cdn.example.com/d.png'
    session = FakeSession(
        {
            url: html_response(f'<meta property="og:image" content="{image_url}" />'),
            image_url: FakeResponse(content=PNG_BYTES, headers={'Content-Type': 'image/png'}),
        }
    )
    config = _config(tmp_path, download_images=True)
    report = _pipeline(config, session).run_batch([ArticleDescriptor(url=url, title='Nigeria floods')])

    assert report.succeeded == 1
    record = MetadataStore(tmp_path).load_partition(_today())[0]
    expected = f'images/african/{article_hash(url)}-1.png'
    assert record.images[0].local_path == expected
    assert (tmp_path / expected).read_bytes() == PNG_BYTES


def test_failed_image_download_keeps_metadata(tmp_path) -> None:
    url = 'https://news.example.com/e'
    session = FakeSession({url: html_response('<meta property="og:image" content="https://cdn.example.com/e.jpg" />')})
    config = _config(tmp_path, download_images=True)
    report = _pipeline(config, session).run_batch([ArticleDescriptor(url=url, title='Story')])

    assert report.succeeded == 1
    record = MetadataStore(tmp_path).load_partition(_today())[0]
    assert record.images[0].canonical_url == 'https://cdn.example.com/e.jpg'
    assert record.images[0].local_path is None


def test_store_failure_marks_article_failed(tmp_path) -> None:
    blocker = tmp_path / 'blocker'
    blocker.write_text('not a directory', encoding='utf-8')
    url = 'https://news.example.com/f'
    session = FakeSession({url: html_response('<p>text</p>')})
    report = _pipeline(_config(blocker), session).run_batch([ArticleDescriptor(url=url, title='Story')])

    assert report.failed == 1
    assert report.outcomes[0].reason == 'io_failure'


def test_empty_batch_reports_nothing(tmp_path) -> None:
    report = _pipeline(_config(tmp_path), FakeSession()).run_batch([])
    assert report.attempted == 0
    assert report.success_rate == 0.0


def test_module_run_batch_uses_given_session(tmp_path) -> None:
    url = 'https://news.example.com/g'
    session = FakeSession({url: html_response('<meta property="og:image" content="https://cdn.example.com/g.jpg" />')})
    report = run_batch([ArticleDescriptor(url=url, title='Story')], config=_config(tmp_path), session=session)
    assert report.succeeded == 1
    assert session.calls == [url]


def test_slow_external_search_is_bounded_by_the_deadline(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv('GOOGLE_API_KEY', 'key')
    monkeypatch.setenv('GOOGLE_CSE_ID', 'cx')
    clock = FakeClock()
    url = 'https://news.example.com/search'

    def slow_search(endpoint):
        clock.advance(60.0)
        return FakeResponse(payload={'items': [{'link': 'https://img.example.org/market.jpg', 'title': 'Market'}]})

    session = FakeSession(
        {
            url: html_response('<meta property="og:image" content="https://cdn.example.com/h.jpg" />'),
            GOOGLE_SEARCH_ENDPOINT: slow_search,
        }
    )
    config = _config(tmp_path, use_external_api=True, deadline=10.0)
    report = _pipeline(config, session, clock=clock).run_batch(
        [ArticleDescriptor(url=url, title='Ghana markets reopen')]
    )

    outcome = report.outcomes[0]
    assert GOOGLE_SEARCH_ENDPOINT in session.calls
    assert outcome.status == 'failed'
    assert outcome.stage == Stage.EXTRACTING
    assert outcome.reason == 'deadline_exceeded'
    assert MetadataStore(tmp_path).load_partition(_today()) == []


def test_images_are_downloaded_from_the_discovered_url(tmp_path) -> None:
    url = 'https://news.example.com/h'
    sized = 'https://cdn.example.com/photo-1200x630.jpg'
    session = FakeSession(
        {
            url: html_response(f'<meta property="og:image" content="{sized}" />'),
            sized: FakeResponse(content=PNG_BYTES, headers={'Content-Type': 'image/png'}),
        }
    )
    config = _config(tmp_path, download_images=True)
    report = _pipeline(config, session).run_batch([ArticleDescriptor(url=url, title='Jamaica harbour')])

    assert report.succeeded == 1
    assert sized in session.calls
    assert 'https://cdn.example.com/photo.jpg' not in session.calls
    image = MetadataStore(tmp_path).load_partition(_today())[0].images[0]
    assert image.canonical_url == 'https://cdn.example.com/photo.jpg'
    assert image.source_url == sized
    assert image.local_path == f'images/caribbean/{article_hash(url)}-1.png'
