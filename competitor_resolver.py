"""
Competitor discovery for prioritized keywords
"""
import asyncio
import random
import logging
from typing import Awaitable, Callable, List, Optional

from competitor_filter import CompetitorFilter
from config import config
from errors import SearchUnavailable
from models import CompetitorResultSet, SearchResult
from search_providers import RetryPolicy, SearchProvider, SearchStrategy
from utils import normalize_url, urls_match

logger = logging.getLogger(__name__)


def find_own_position(results: List[SearchResult], own_url: str) -> Optional[int]:
    """Rank of the monitored page among results, or None when absent"""
    for result in results:
        if urls_match(result.url, own_url):
            return result.position
    return None


def dedupe_competitor_urls(result_sets: List[CompetitorResultSet]) -> List[str]:
    """Competitor URLs across keywords, unique by normalized form, first seen first"""
    seen = set()
    unique = []
    for result_set in result_sets:
        for competitor in result_set.competitors:
            key = normalize_url(competitor.url)
            if key in seen:
                continue
            seen.add(key)
            unique.append(competitor.url)
    return unique


class CompetitorResolver:
    """Finds the pages ranking for a keyword and where the monitored page sits.

    The fast API provider is tried first when preferred and configured; the
    browser provider is the fallback. Total provider failure yields an empty
    result set for that keyword instead of an exception.
    """

    def __init__(self, api_provider: Optional[SearchProvider] = None,
                 browser_provider: Optional[SearchProvider] = None,
                 analyzer_config=None,
                 sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.api_provider = api_provider
        self.browser_provider = browser_provider
        self.config = analyzer_config or config
        self.sleep_fn = sleep_fn

    def build_strategy(self, prefer_fast_provider: bool = True, retry_count: int = 3) -> SearchStrategy:
        api_ready = self.api_provider is not None and self.api_provider.is_available()
        if prefer_fast_provider and api_ready:
            ordered = [self.api_provider, self.browser_provider]
        else:
            ordered = [self.browser_provider, self.api_provider]
        providers = [provider for provider in ordered if provider is not None]
        policy = RetryPolicy(
            max_attempts=retry_count,
            base_delay_seconds=self.config.retry_base_delay,
            max_delay_seconds=self.config.retry_max_delay,
            sleep_fn=self.sleep_fn,
        )
        return SearchStrategy(providers, policy)

    async def resolve_competitors(self, keyword: str, own_url: str,
                                  max_competitors: Optional[int] = None,
                                  retry_count: Optional[int] = None,
                                  prefer_fast_provider: Optional[bool] = None,
                                  locale: str = "en",
                                  competitor_filter: Optional[CompetitorFilter] = None) -> CompetitorResultSet:
        max_competitors = max_competitors or self.config.max_competitors
        if prefer_fast_provider is None:
            prefer_fast_provider = self.config.prefer_serper_api
        strategy = self.build_strategy(prefer_fast_provider, retry_count or self.config.search_retry_count)
        try:
            provider_name, results = await strategy.search(keyword, max_competitors, locale)
        except SearchUnavailable as e:
            logger.error(f"Competitor lookup failed for '{keyword}': {e}")
            return CompetitorResultSet(keyword=keyword, error=e.message)

        window = sorted(results, key=lambda result: result.position)[:max_competitors]
        own_position = find_own_position(window, own_url)
        competitors = [result for result in window if not urls_match(result.url, own_url)]

        competitor_filter = competitor_filter or CompetitorFilter(own_site_url=own_url)
        kept_urls, _ = competitor_filter.filter_urls([result.url for result in competitors])
        kept = set(kept_urls)
        competitors = [result for result in competitors if result.url in kept]

        logger.info(
            f"'{keyword}': own position {own_position}, {len(competitors)} competitors via {provider_name}"
        )
        return CompetitorResultSet(
            keyword=keyword,
            competitors=competitors,
            own_position=own_position,
            total_results=len(window),
            provider=provider_name,
        )

    async def resolve_many(self, keywords: List[str], own_url: str,
                           max_competitors: Optional[int] = None,
                           retry_count: Optional[int] = None,
                           prefer_fast_provider: Optional[bool] = None,
                           locale: str = "en",
                           competitor_filter: Optional[CompetitorFilter] = None,
                           before_each: Optional[Callable[[str], None]] = None) -> List[CompetitorResultSet]:
        """Resolve keywords one after another, pausing between provider calls.

        ``before_each`` is called with the keyword before each lookup so the
        caller can abort (for example on an approaching deadline).
        """
        result_sets = []
        for index, keyword in enumerate(keywords):
            if before_each is not None:
                before_each(keyword)
            result_set = await self.resolve_competitors(
                keyword, own_url, max_competitors, retry_count,
                prefer_fast_provider, locale, competitor_filter,
            )
            result_sets.append(result_set)
            if index < len(keywords) - 1:
                await self.sleep_fn(self._delay_after(result_set.provider))
        return result_sets

    def _delay_after(self, provider_name: Optional[str]) -> float:
        if provider_name == "browser":
            return random.uniform(self.config.browser_search_min_delay, self.config.browser_search_max_delay)
        return random.uniform(self.config.min_delay, self.config.max_delay)
