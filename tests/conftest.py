"""
Pytest configuration and shared fixtures
"""
import pytest
import os
from datetime import date, timedelta
from unittest.mock import AsyncMock

# Add project root to path
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from config import AnalyzerConfig
from errors import ProviderBlocked, ProviderError
from models import ArticleContent, Heading, KeywordMetric, SearchResult, TimeSeriesPoint
from search_providers import SearchProvider

TODAY = date(2024, 6, 30)


@pytest.fixture
def test_config():
    """Test configuration with no delays and no real credentials"""
    config = AnalyzerConfig()
    config.headless = True
    config.timeout = 5
    config.min_delay = 0.0
    config.max_delay = 0.0
    config.browser_search_min_delay = 0.0
    config.browser_search_max_delay = 0.0
    config.retry_base_delay = 0.0
    config.retry_max_delay = 0.0
    config.scrape_retries = 2
    config.scrape_retry_delay = 0.0
    config.serper_api_key = "test-key"
    config.groq_api_key = "test-key"
    config.log_dir = None
    return config


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement that records requested delays"""
    return AsyncMock(return_value=None)


def make_points(positions, end=None, impressions=100):
    """Daily points ending at ``end`` (inclusive), one per position"""
    end = end or TODAY - timedelta(days=2)
    start = end - timedelta(days=len(positions) - 1)
    return [
        TimeSeriesPoint(
            date=(start + timedelta(days=offset)).strftime("%Y-%m-%d"),
            position=position,
            impressions=impressions,
            clicks=5,
        )
        for offset, position in enumerate(positions)
    ]


class FakeRankClient:
    """In-memory stand-in for SearchConsoleClient.

    ``metric_responses`` are returned by successive ``get_keyword_metrics``
    calls; once exhausted ``default_metrics`` is returned.
    """

    def __init__(self, points=None, metric_responses=None, default_metrics=None,
                 keyword_series=None, error=None, metrics_error=None):
        self.points = points or []
        self.metric_responses = list(metric_responses or [])
        self.default_metrics = default_metrics or []
        self.keyword_series = keyword_series or {}
        self.error = error
        self.metrics_error = metrics_error
        self.metric_calls = []

    async def get_page_time_series(self, site_url, page_url, start_date, end_date):
        if self.error:
            raise self.error
        return [p for p in self.points if start_date <= p.date <= end_date]

    async def get_keyword_metrics(self, site_url, page_url, start_date, end_date):
        self.metric_calls.append((start_date, end_date))
        if self.metrics_error:
            raise self.metrics_error
        if self.metric_responses:
            return self.metric_responses.pop(0)
        return self.default_metrics

    async def get_keyword_time_series(self, site_url, page_url, start_date, end_date, keywords):
        return {keyword: self.keyword_series.get(keyword, []) for keyword in keywords}


class FakeSearchProvider(SearchProvider):
    """Provider returning canned results or failing in a scripted way"""

    def __init__(self, name, results=None, failures=None, available=True):
        self.name = name
        self.results = results or []
        self.failures = list(failures or [])
        self.available = available
        self.calls = []

    def is_available(self):
        return self.available

    async def search(self, keyword, num_results=10, locale="en"):
        self.calls.append(keyword)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        if callable(self.results):
            return self.results(keyword)
        return list(self.results)


@pytest.fixture
def fake_rank_client():
    return FakeRankClient


@pytest.fixture
def fake_provider():
    return FakeSearchProvider


@pytest.fixture
def blocked():
    return ProviderBlocked("captcha", stage="search")


@pytest.fixture
def transient():
    return ProviderError("HTTP 503", stage="search")


def make_article(url, title="Article", headings=None, paragraphs=None, main_text=None, **signals):
    headings = [Heading(level, text) for level, text in (headings or [])]
    paragraphs = paragraphs or ["This paragraph explains the basic topic in plain words."]
    text = main_text if main_text is not None else " ".join([title] + [h.text for h in headings] + paragraphs)
    return ArticleContent(
        url=url,
        title=title,
        main_text=text,
        headings=headings,
        paragraphs=paragraphs,
        word_count=len(text.split()),
        **signals,
    )


@pytest.fixture
def own_article():
    return make_article(
        "https://example.com/guide",
        title="Coffee brewing guide",
        headings=[(2, "Choosing beans"), (2, "Grinding")],
        paragraphs=["Fresh beans make better coffee and grinding just before brewing keeps flavour."],
    )


@pytest.fixture
def competitor_articles():
    return [
        make_article(
            "https://rival-one.com/coffee",
            title="The complete coffee guide",
            headings=[(2, "Choosing beans"), (2, "Water temperature"), (2, "Brewing ratio")],
            paragraphs=["Water temperature between ninety and ninety six degrees extracts balanced flavour."],
            has_tables=True,
        ),
        make_article(
            "https://rival-two.com/brew",
            title="Brew better coffee",
            headings=[(2, "Water temperature"), (2, "Pour over technique")],
            paragraphs=["Pour over technique rewards patience and a steady kettle with thermometer."],
            has_tables=True,
        ),
    ]


def search_results(*urls):
    return [SearchResult(url=url, title=url, position=index) for index, url in enumerate(urls, 1)]


def keyword_metric(keyword, impressions, position, clicks=0):
    return KeywordMetric(keyword=keyword, position=position, impressions=impressions, clicks=clicks)
