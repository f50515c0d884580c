"""
Utility functions for retries, URL handling and common operations
"""
import re
import time
import random
import asyncio
import logging
import functools
import itertools
from typing import Callable, Optional
from datetime import date, datetime, timedelta
from urllib.parse import urlparse

logger = logging.getLogger(__name__)
perf_logger = logging.getLogger('performance')

DATE_FORMAT = "%Y-%m-%d"


def retry_on_failure(max_retries: int = 3, delay: float = 1.0, backoff: float = 2.0,
                     exceptions: tuple = (Exception,)):
    """
    Decorator for retrying coroutines on failure with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts
        delay: Initial delay between retries in seconds
        backoff: Multiplier for delay after each retry
        exceptions: Tuple of exceptions to catch and retry on
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"Function {func.__name__} failed after {max_retries} retries: {e}")
                        raise

                    logger.warning(f"Attempt {attempt + 1} failed for {func.__name__}: {e}. Retrying in {current_delay:.2f}s")
                    await asyncio.sleep(current_delay + random.uniform(0, current_delay * 0.1))  # Add jitter
                    current_delay *= backoff
        return wrapper
    return decorator


def validate_url(url: str) -> bool:
    """Validate if a URL is properly formatted"""
    if not url:
        return False
    result = urlparse(url)
    return result.scheme in ("http", "https") and bool(result.netloc)


def normalize_url(url: str) -> str:
    """
    Normalize a URL for identity comparison.

    The scheme is unified to https, the host is lowercased with ``www.`` and
    default ports removed, and query string, fragment and trailing slashes are
    dropped. Applying it twice gives the same result as applying it once.
    """
    if not url:
        return ""
    url = url.strip()
    if "://" not in url:
        url = "https://" + url.lstrip("/")

    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    port = parsed.port
    if port and port not in (80, 443):
        host = f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parsed.path or "").rstrip("/")
    return f"https://{host}{path}"


def urls_match(first: str, second: str) -> bool:
    """True when both URLs denote the same resource after normalization"""
    return normalize_url(first) == normalize_url(second)


def normalize_domain(url: str) -> str:
    """Extract and normalize domain from URL"""
    if not url:
        return ""
    if "://" not in url:
        url = "https://" + url
    domain = (urlparse(url).hostname or "").lower()
    # Remove www prefix
    if domain.startswith('www.'):
        domain = domain[4:]
    return domain


def resolve_page_url(site_url: str, page_url: str) -> str:
    """Build an absolute page URL from a Search Console property and a page path"""
    if page_url.startswith(("http://", "https://")):
        return page_url
    if site_url.startswith("sc-domain:"):
        base = "https://" + site_url[len("sc-domain:"):]
    else:
        base = site_url
    return base.rstrip("/") + "/" + page_url.lstrip("/")


def safe_extract_text(element, default: str = "") -> str:
    """Safely extract text from BeautifulSoup element"""
    if element is None:
        return default
    return element.get_text(" ", strip=True) or default


def safe_extract_attribute(element, attribute: str, default: str = "") -> str:
    """Safely extract attribute from BeautifulSoup element"""
    if element is None:
        return default
    value = element.get(attribute, default)
    if isinstance(value, list):
        value = " ".join(value)
    return value or default


def clean_text(text: str) -> str:
    """Collapse whitespace in text content"""
    if not text:
        return ""
    return ' '.join(text.split())


def count_words(text: str) -> int:
    """Count words, treating each CJK character as one word"""
    if not text:
        return 0
    cjk = len(re.findall(r'[\u3040-\u30ff\u3400-\u9fff]', text))
    latin = len(re.findall(r'[A-Za-z0-9]+', text))
    return cjk + latin


def format_date(value: date) -> str:
    return value.strftime(DATE_FORMAT)


def parse_date(value: str) -> date:
    return datetime.strptime(value, DATE_FORMAT).date()


def data_end_date(lag_days: int = 2, today: Optional[date] = None) -> date:
    """Most recent date the search data provider can be trusted to have"""
    today = today or date.today()
    return today - timedelta(days=lag_days)


def days_between(start: str, end: date) -> int:
    return (end - parse_date(start)).days


class PerformanceMonitor:
    """Monitor and log performance metrics.

    ``start_timer`` hands back a handle unique to that call, so overlapping
    runs of the same operation are timed independently. ``get_metrics``
    reports the latest finished duration per operation.
    """

    def __init__(self):
        self.metrics = {}
        self._running = {}
        self._ids = itertools.count(1)

    def start_timer(self, operation: str) -> str:
        """Start timing an operation"""
        timer_id = f"{operation}#{next(self._ids)}"
        self._running[timer_id] = (operation, time.monotonic())
        return timer_id

    def end_timer(self, timer_id: str) -> float:
        """End timing and log results"""
        entry = self._running.pop(timer_id, None)
        if entry is None:
            return 0.0
        operation, started = entry
        duration = time.monotonic() - started
        self.metrics[operation] = duration
        perf_logger.info(f"Operation '{operation}' completed in {duration:.2f} seconds")
        return duration

    def get_metrics(self) -> dict:
        """Get the latest recorded duration per operation"""
        return dict(self.metrics)
