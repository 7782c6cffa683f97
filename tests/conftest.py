##########################################################################################
#
# Script name: conftest.py
#
# Description: Shared offline fakes for HTTP sessions and clocks.
#
##########################################################################################

from datetime import datetime, timezone

import pytest
import requests

from news_image_discovery.models import ArticleDescriptor, FetchResult


class FakeResponse:
    def __init__(self, status_code=200, text='', content=None, headers=None, url='', payload=None):
        self.status_code = status_code
        self.text = text
        self.content = content if content is not None else text.encode('utf-8')
        self.headers = headers or {'Content-Type': 'text/html; charset=utf-8'}
        self.url = url
        self._payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'HTTP {self.status_code}', response=self)

    def json(self):
        if self._payload is None:
            raise ValueError('no JSON payload')
        return self._payload


class FakeSession:
    '''
    Routes URLs to canned responses. A route may be a FakeResponse, an exception
    to raise, a list consumed one item per call, or a callable taking the URL.
    '''

    def __init__(self, routes=None, default_status=404):
        self.routes = dict(routes or {})
        self.default_status = default_status
        self.calls = []

    def get(self, url, timeout=None, params=None, allow_redirects=True, **kwargs):
        self.calls.append(url)
        route = self.routes.get(url)
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if callable(route) and not isinstance(route, FakeResponse):
            route = route(url)
        if route is None:
            return FakeResponse(status_code=self.default_status, url=url)
        if isinstance(route, BaseException):
            raise route
        if not route.url:
            route.url = url
        return route


class FakeClock:
    def __init__(self, start=0.0):
        self.current = start
        self.sleeps = []

    def now(self):
        return self.current

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.current += seconds

    def advance(self, seconds):
        self.current += seconds


def html_response(body: str, url: str = '') -> FakeResponse:
    return FakeResponse(text=f'<html><head></head><body>{body}</body></html>', url=url)


def make_fetch_result(html: str, url: str = 'https://news.example.com/story') -> FetchResult:
    return FetchResult(
        final_url=url,
        http_status=200,
        fetched_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        html=html,
    )


def make_descriptor(url='https://news.example.com/story', title='Story', **feed_fields) -> ArticleDescriptor:
    return ArticleDescriptor(url=url, title=title, feed_fields=dict(feed_fields))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
