"""
Search Console client for page and keyword performance series
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from cache import TTLCache, generate_cache_key
from config import config
from errors import DataUnavailable
from models import KeywordMetric, TimeSeriesPoint
from utils import resolve_page_url

logger = logging.getLogger(__name__)

GSC_API_BASE = "https://www.googleapis.com/webmasters/v3"


def normalize_site_url(site_url: str) -> str:
    """Domain properties are used verbatim, URL-prefix properties need a trailing slash"""
    site_url = site_url.strip()
    if site_url.startswith("sc-domain:"):
        return site_url.rstrip("/")
    return site_url if site_url.endswith("/") else site_url + "/"


def _point(row: dict, day: str) -> TimeSeriesPoint:
    return TimeSeriesPoint(
        date=day,
        position=float(row.get("position", 0.0)),
        impressions=int(row.get("impressions", 0)),
        clicks=int(row.get("clicks", 0)),
    )


def _keyword_metric(row: dict) -> KeywordMetric:
    return KeywordMetric(
        keyword=row["keys"][0],
        position=float(row.get("position", 0.0)),
        impressions=int(row.get("impressions", 0)),
        clicks=int(row.get("clicks", 0)),
        ctr=float(row.get("ctr", 0.0)),
    )


def parse_rows(rows: List[dict], parse: Callable[[dict], Any], stage: str, site_url: str) -> list:
    """Apply ``parse`` to every row; a malformed row fails the whole request"""
    try:
        return [parse(row) for row in rows]
    except (KeyError, IndexError, TypeError, ValueError) as e:
        logger.error(f"Malformed Search Console row for {site_url}: {e!r}")
        raise DataUnavailable(f"Malformed Search Console row: {e!r}", stage=stage,
                              context={"site": site_url}) from e


class SearchConsoleClient:
    """Fetches search analytics rows for a single page.

    The client owns an aiohttp session unless one is injected. Responses are
    cached in the optional ``cache`` keyed by request body.
    """

    def __init__(self, access_token: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 cache: Optional[TTLCache] = None,
                 analyzer_config=None):
        self.config = analyzer_config or config
        self.access_token = access_token or self.config.gsc_access_token
        self.cache = cache
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
        return self._session

    def _page_filter(self, site_url: str, page_url: str) -> dict:
        return {
            "filters": [{
                "dimension": "page",
                "operator": "equals",
                "expression": resolve_page_url(site_url, page_url),
            }]
        }

    async def query(self, site_url: str, body: dict, stage: str = "rank_series") -> List[dict]:
        """POST a searchAnalytics query and return its rows"""
        site = normalize_site_url(site_url)
        cache_key = None
        if self.cache is not None:
            cache_key = generate_cache_key("gsc", site, sorted(body.items(), key=lambda kv: kv[0]))
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Search Console cache hit for {site}")
                return cached

        url = f"{GSC_API_BASE}/sites/{quote(site, safe='')}/searchAnalytics/query"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        context = {"site": site_url, "start_date": body.get("startDate"), "end_date": body.get("endDate")}

        try:
            async with self._get_session().post(url, json=body, headers=headers) as response:
                if response.status != 200:
                    text = await response.text()
                    logger.error(f"Search Console returned HTTP {response.status} for {site}: {text[:200]}")
                    raise DataUnavailable(
                        f"Search Console request failed with HTTP {response.status}",
                        stage=stage, context=context,
                    )
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Search Console request error for {site}: {e}")
            raise DataUnavailable(f"Search Console request error: {e}", stage=stage, context=context) from e
        except ValueError as e:
            logger.error(f"Search Console returned invalid JSON for {site}: {e}")
            raise DataUnavailable("Search Console returned an invalid response body",
                                  stage=stage, context=context) from e

        rows = (payload.get("rows") or []) if isinstance(payload, dict) else None
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            raise DataUnavailable("Search Console response has no usable rows", stage=stage, context=context)
        if cache_key is not None:
            self.cache.set(cache_key, rows)
        return rows

    async def get_page_time_series(self, site_url: str, page_url: str,
                                   start_date: str, end_date: str) -> List[TimeSeriesPoint]:
        """Daily position, impressions and clicks for one page, sorted by date"""
        body = {
            "startDate": start_date,
            "endDate": end_date,
            "dimensions": ["date"],
            "dimensionFilterGroups": [self._page_filter(site_url, page_url)],
            "rowLimit": self.config.gsc_row_limit,
        }
        rows = await self.query(site_url, body)
        points = parse_rows(rows, lambda row: _point(row, row["keys"][0]), "rank_series", site_url)
        points.sort(key=lambda point: point.date)
        logger.info(f"Fetched {len(points)} daily points for {page_url} ({start_date} to {end_date})")
        return points

    async def get_keyword_metrics(self, site_url: str, page_url: str,
                                  start_date: str, end_date: str) -> List[KeywordMetric]:
        """Aggregated per-query metrics for one page over a window"""
        body = {
            "startDate": start_date,
            "endDate": end_date,
            "dimensions": ["query"],
            "dimensionFilterGroups": [self._page_filter(site_url, page_url)],
            "rowLimit": self.config.gsc_row_limit,
        }
        rows = await self.query(site_url, body, stage="keyword_metrics")
        metrics = parse_rows(rows, _keyword_metric, "keyword_metrics", site_url)
        logger.info(f"Fetched {len(metrics)} keyword metrics for {page_url}")
        return metrics

    async def get_keyword_time_series(self, site_url: str, page_url: str,
                                      start_date: str, end_date: str,
                                      keywords: List[str]) -> Dict[str, List[TimeSeriesPoint]]:
        """Daily series for each requested keyword; keywords without rows map to []"""
        series: Dict[str, List[TimeSeriesPoint]] = {keyword: [] for keyword in keywords}
        if not keywords:
            return series

        body = {
            "startDate": start_date,
            "endDate": end_date,
            "dimensions": ["date", "query"],
            "dimensionFilterGroups": [self._page_filter(site_url, page_url)],
            "rowLimit": self.config.gsc_row_limit,
        }
        rows = await self.query(site_url, body, stage="keyword_time_series")
        parsed = parse_rows(rows, lambda row: (row["keys"][1], _point(row, row["keys"][0])),
                            "keyword_time_series", site_url)
        for keyword, point in parsed:
            if keyword in series:
                series[keyword].append(point)
        for points in series.values():
            points.sort(key=lambda point: point.date)
        return series
