"""
Search result providers and the retry/fallback strategy that drives them
"""
import asyncio
import random
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from config import config
from errors import ProviderBlocked, ProviderError, SearchUnavailable
from models import SearchResult
from utils import clean_text, normalize_domain, safe_extract_text

logger = logging.getLogger(__name__)

SERPER_URL = "https://google.serper.dev/search"
GOOGLE_SEARCH_URL = "https://www.google.com/search"

CAPTCHA_SELECTORS = "#captcha-form, .g-recaptcha, #recaptcha, iframe[src*='recaptcha']"

LOCALE_REGIONS = {
    "ja": ("ja", "jp"),
    "en": ("en", "us"),
}


def locale_params(locale: str) -> Tuple[str, str]:
    """Map a locale such as ``ja`` or ``en-GB`` to (language, country)"""
    locale = (locale or "en").replace("_", "-")
    language, _, region = locale.partition("-")
    language = language.lower()
    if region:
        return language, region.lower()
    return LOCALE_REGIONS.get(language, (language, "us"))


def is_captcha_page(html: str, title: str = "", url: str = "") -> bool:
    """Heuristic check for Google's anti-bot interstitial"""
    if "/sorry/" in (url or ""):
        return True
    lowered_title = (title or "").lower()
    if "captcha" in lowered_title or "robot" in lowered_title:
        return True
    soup = BeautifulSoup(html or "", 'html.parser')
    return soup.select_one(CAPTCHA_SELECTORS) is not None


def parse_google_results(html: str, limit: int = 10) -> List[SearchResult]:
    """Extract organic results from a Google results page"""
    soup = BeautifulSoup(html or "", 'html.parser')
    results: List[SearchResult] = []
    seen = set()

    for block in soup.select("div.g, div[data-ved]"):
        link = block.select_one("a[href^='http']")
        heading = block.find("h3")
        if link is None or heading is None:
            continue
        url = link.get("href", "")
        if not url or url in seen or "google." in normalize_domain(url):
            continue
        seen.add(url)
        results.append(SearchResult(
            url=url,
            title=clean_text(safe_extract_text(heading)),
            position=len(results) + 1,
        ))
        if len(results) >= limit:
            break

    return results


def parse_serper_results(data: dict, limit: int) -> List[SearchResult]:
    results = []
    for index, item in enumerate(data.get("organic", [])[:limit]):
        link = item.get("link")
        if not link:
            continue
        results.append(SearchResult(
            url=link,
            title=item.get("title", ""),
            position=int(item.get("position") or index + 1),
        ))
    return results


class SearchProvider(ABC):
    """Returns ordered organic results for a keyword"""

    name = "provider"

    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def search(self, keyword: str, num_results: int = 10, locale: str = "en") -> List[SearchResult]:
        """Return results in rank order or raise ProviderError/ProviderBlocked"""


class SerperSearchProvider(SearchProvider):
    """Paid search API; fast and free of CAPTCHAs"""

    name = "serper"

    def __init__(self, api_key: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 analyzer_config=None):
        self.config = analyzer_config or config
        self.api_key = api_key or self.config.serper_api_key
        self._session = session
        self._owns_session = session is None

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def search(self, keyword: str, num_results: int = 10, locale: str = "en") -> List[SearchResult]:
        if not self.api_key:
            raise ProviderBlocked("Serper API key is not configured", stage="search", context={"keyword": keyword})

        language, country = locale_params(locale)
        payload = {"q": keyword, "gl": country, "hl": language, "num": num_results}
        headers = {"X-API-KEY": self.api_key, "Content-Type": "application/json"}
        context = {"keyword": keyword, "provider": self.name}

        try:
            async with self._get_session().post(SERPER_URL, json=payload, headers=headers) as response:
                if response.status == 429 or response.status >= 500:
                    raise ProviderError(f"Serper returned HTTP {response.status}", stage="search", context=context)
                if response.status != 200:
                    # Bad key or exhausted quota will not recover on retry
                    raise ProviderBlocked(f"Serper rejected request with HTTP {response.status}",
                                          stage="search", context=context)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Serper request failed: {e}", stage="search", context=context) from e
        except ValueError as e:
            raise ProviderError(f"Serper returned invalid JSON: {e}", stage="search", context=context) from e

        try:
            results = parse_serper_results(data, num_results)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Unexpected Serper response: {e!r}", stage="search", context=context) from e
        logger.info(f"Serper returned {len(results)} results for '{keyword}'")
        return results


class BrowserSearchProvider(SearchProvider):
    """Scrapes the Google results page with the shared headless browser"""

    name = "browser"

    def __init__(self, browser_manager, analyzer_config=None):
        self.browser_manager = browser_manager
        self.config = analyzer_config or config

    async def search(self, keyword: str, num_results: int = 10, locale: str = "en") -> List[SearchResult]:
        language, country = locale_params(locale)
        query = urlencode({"q": keyword, "hl": language, "gl": country, "num": num_results})
        url = f"{GOOGLE_SEARCH_URL}?{query}"
        context = {"keyword": keyword, "provider": self.name}

        try:
            async with self.browser_manager.page(locale=f"{language}-{country.upper()}") as page:
                await page.goto(url, wait_until="domcontentloaded", timeout=self.config.timeout * 1000)
                html = await page.content()
                title = await page.title()
                current_url = page.url
        except PlaywrightError as e:
            raise ProviderError(f"Browser search failed: {e}", stage="search", context=context) from e

        if is_captcha_page(html, title, current_url):
            logger.warning(f"CAPTCHA detected while searching '{keyword}'")
            raise ProviderBlocked("Search page returned a CAPTCHA", stage="search", context=context)

        results = parse_google_results(html, num_results)
        logger.info(f"Browser search returned {len(results)} results for '{keyword}'")
        return results


class RetryPolicy:
    """Exponential backoff with jitter for transient provider errors.

    ``ProviderBlocked`` is never retried. ``sleep_fn`` and ``random_fn`` can be
    replaced in tests.
    """

    def __init__(self, max_attempts: int = 3, base_delay_seconds: float = 1.0,
                 max_delay_seconds: float = 10.0, jitter_ratio: float = 0.1,
                 sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 random_fn: Callable[[float, float], float] = random.uniform):
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_ratio = jitter_ratio
        self.sleep_fn = sleep_fn
        self.random_fn = random_fn

    def delay_for_attempt(self, attempt_number: int) -> float:
        base = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt_number - 1)))
        if self.jitter_ratio <= 0:
            return base
        jitter_multiplier = 1.0 + self.random_fn(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, min(self.max_delay_seconds, base * jitter_multiplier))

    async def execute(self, operation: Callable[[], Awaitable]):
        attempt = 1
        while True:
            try:
                return await operation()
            except ProviderError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for_attempt(attempt)
                logger.warning(f"Attempt {attempt} failed: {e}. Retrying in {delay:.2f}s")
                await self.sleep_fn(delay)
                attempt += 1


class SearchStrategy:
    """Ordered providers plus a retry policy.

    Each provider is retried on transient errors; a blocked signal or
    exhausted retries moves on to the next provider. When every provider
    fails, ``SearchUnavailable`` is raised.
    """

    def __init__(self, providers: List[SearchProvider], retry_policy: Optional[RetryPolicy] = None):
        self.providers = providers
        self.retry_policy = retry_policy or RetryPolicy()

    async def search(self, keyword: str, num_results: int = 10,
                     locale: str = "en") -> Tuple[str, List[SearchResult]]:
        failures = []
        for provider in self.providers:
            if not provider.is_available():
                failures.append(f"{provider.name}: not configured")
                continue
            try:
                results = await self.retry_policy.execute(
                    lambda provider=provider: provider.search(keyword, num_results, locale)
                )
                return provider.name, results
            except ProviderBlocked as e:
                logger.warning(f"{provider.name} blocked for '{keyword}', switching provider: {e}")
                failures.append(f"{provider.name}: {e}")
            except ProviderError as e:
                logger.warning(f"{provider.name} failed for '{keyword}' after retries: {e}")
                failures.append(f"{provider.name}: {e}")

        raise SearchUnavailable(
            f"All search providers failed for '{keyword}'",
            stage="search",
            context={"keyword": keyword, "failures": failures},
        )
