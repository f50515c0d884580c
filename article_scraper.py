"""
Single article fetching and content extraction
"""
import asyncio
import random
import logging
from typing import Dict, List, Optional, Tuple

import aiohttp
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from ai_seo_analyzer import AISEOAnalyzer
from browser_utils import BrowserManager
from config import config
from errors import ScrapeFailed
from models import ArticleContent, Heading
from utils import clean_text, count_words, retry_on_failure, safe_extract_attribute, safe_extract_text

logger = logging.getLogger(__name__)

NOISE_TAGS = ["script", "style", "noscript", "nav", "header", "footer", "aside", "form", "iframe"]
NOISE_SELECTORS = ".ad, .ads, .advertisement, .sidebar, .menu, .navigation, .breadcrumb, #sidebar, #menu"
UPDATE_DATE_SELECTORS = (
    "time, meta[property='article:modified_time'], meta[property='article:published_time'], "
    "[itemprop='dateModified'], [itemprop='datePublished']"
)
AUTHOR_SELECTORS = "meta[name='author'], a[rel='author'], [itemprop='author'], .author, .byline"
MIN_PARAGRAPH_LENGTH = 20


class _RetryableStatus(Exception):
    """Server-side HTTP status worth another attempt"""

    def __init__(self, status: int):
        super().__init__(f"HTTP {status}")
        self.status = status


def _largest_text_block(soup):
    """Container whose direct paragraphs hold the most text"""
    best, best_score = None, 0
    for element in soup.find_all(["div", "section"]):
        score = sum(len(p.get_text(strip=True)) for p in element.find_all("p", recursive=False))
        if score > best_score:
            best, best_score = element, score
    return best


class ArticleScraper:
    """Fetches one article page and extracts its content and signals.

    Fast mode uses a plain HTTP GET; render mode loads the page in the shared
    headless browser. Both raise ``ScrapeFailed`` for network errors, non-2xx
    responses and pages without extractable text.
    """

    def __init__(self, browser_manager: Optional[BrowserManager] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 analyzer_config=None,
                 aiseo_analyzer: Optional[AISEOAnalyzer] = None):
        self.config = analyzer_config or config
        self.browser_manager = browser_manager
        self._owns_browser = browser_manager is None
        self._session = session
        self._owns_session = session is None
        self.aiseo_analyzer = aiseo_analyzer or AISEOAnalyzer()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={
                    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
                    'Accept-Language': 'ja,en-US;q=0.9,en;q=0.8',
                },
            )
        return self._session

    async def close(self):
        """Release the HTTP session and any browser this scraper launched"""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        if self._owns_browser and self.browser_manager is not None:
            await self.browser_manager.close()
            self.browser_manager = None

    async def scrape_article(self, url: str, use_browser_render: bool = False) -> ArticleContent:
        logger.info(f"Scraping {url} ({'browser' if use_browser_render else 'http'})")
        if use_browser_render:
            html = await self._render(url)
        else:
            html = await self._fetch(url)

        article = self.parse_html(url, html)
        if not article.main_text:
            raise ScrapeFailed(url, "no main content found")
        logger.info(f"Scraped {url}: {article.word_count} words, {len(article.headings)} headings")
        return article

    async def scrape_many(self, urls: List[str],
                          use_browser_render: bool = False) -> Tuple[List[ArticleContent], Dict[str, str]]:
        """Scrape concurrently; failures are collected instead of raised"""
        tasks = [self.scrape_article(url, use_browser_render) for url in urls]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        articles, failures = [], {}
        for url, outcome in zip(urls, outcomes):
            if isinstance(outcome, ScrapeFailed):
                logger.warning(f"Skipping {url}: {outcome.reason}")
                failures[url] = outcome.reason
            elif isinstance(outcome, Exception):
                logger.error(f"Unexpected error scraping {url}: {outcome}")
                failures[url] = str(outcome)
            else:
                articles.append(outcome)
        return articles, failures

    async def _fetch_once(self, url: str) -> str:
        headers = {'User-Agent': random.choice(self.config.user_agents)}
        async with self._get_session().get(url, headers=headers, allow_redirects=True) as response:
            if response.status >= 500:
                raise _RetryableStatus(response.status)
            if response.status < 200 or response.status >= 300:
                raise ScrapeFailed(url, f"HTTP {response.status}")
            return await response.text(errors="replace")

    async def _fetch(self, url: str) -> str:
        fetch = retry_on_failure(
            max_retries=max(0, self.config.scrape_retries - 1),
            delay=self.config.scrape_retry_delay,
            backoff=1.0,
            exceptions=(aiohttp.ClientError, asyncio.TimeoutError, _RetryableStatus),
        )(self._fetch_once)
        try:
            return await fetch(url)
        except _RetryableStatus as e:
            raise ScrapeFailed(url, f"HTTP {e.status}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ScrapeFailed(url, f"network error: {e}") from e

    async def _render(self, url: str) -> str:
        if self.browser_manager is None:
            self.browser_manager = BrowserManager(self.config)
        try:
            async with self.browser_manager.page() as page:
                response = await page.goto(url, wait_until="networkidle", timeout=self.config.timeout * 1000)
                if response is not None and not response.ok:
                    raise ScrapeFailed(url, f"HTTP {response.status}")
                await page.wait_for_timeout(2000)
                return await page.content()
        except PlaywrightError as e:
            raise ScrapeFailed(url, f"browser error: {e}") from e

    def parse_html(self, url: str, html: str) -> ArticleContent:
        """Extract title, main content and structural signals from HTML"""
        soup = BeautifulSoup(html or "", 'html.parser')

        title = safe_extract_text(soup.find('title'))
        if not title:
            title = safe_extract_text(soup.find('h1'))
        if not title:
            title = safe_extract_attribute(soup.find('meta', attrs={'property': 'og:title'}), 'content')

        # Page-level facts that live outside the main block
        has_structured_data = any(
            (script.string or "").strip()
            for script in soup.find_all('script', attrs={'type': 'application/ld+json'})
        )
        has_update_date = soup.select_one(UPDATE_DATE_SELECTORS) is not None
        has_author_info = soup.select_one(AUTHOR_SELECTORS) is not None

        for element in soup(NOISE_TAGS):
            element.decompose()
        for element in soup.select(NOISE_SELECTORS):
            element.decompose()

        main = (
            soup.find('article')
            or soup.find('main')
            or soup.find(attrs={'role': 'main'})
            or _largest_text_block(soup)
            or soup.body
            or soup
        )

        headings = []
        for element in main.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
            text = clean_text(element.get_text(" "))
            if text:
                headings.append(Heading(level=int(element.name[1]), text=text))

        paragraphs = [
            text for text in (clean_text(p.get_text(" ")) for p in main.find_all('p'))
            if len(text) > MIN_PARAGRAPH_LENGTH
        ]

        lists = []
        for list_element in main.find_all(['ul', 'ol']):
            items = [clean_text(li.get_text(" ")) for li in list_element.find_all('li', recursive=False)]
            items = [item for item in items if item]
            if items:
                lists.append(items)

        main_text = clean_text(main.get_text(" "))

        article = ArticleContent(
            url=url,
            title=clean_text(title),
            main_text=main_text,
            headings=headings,
            paragraphs=paragraphs,
            lists=lists,
            word_count=count_words(main_text),
            has_tables=main.find('table') is not None,
            has_update_date=has_update_date,
            has_author_info=has_author_info,
            has_structured_data=has_structured_data,
            has_bullet_points=bool(lists),
        )

        signals = self.aiseo_analyzer.check_aiseo(article)
        for name, value in signals.__dict__.items():
            setattr(article, name, value)
        return article
