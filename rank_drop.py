"""
Rank drop detection over Search Console time series
"""
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from config import config
from models import KeywordMetric, RankDropResult, TimeSeriesPoint
from utils import data_end_date, format_date

logger = logging.getLogger(__name__)

ANALYSIS_TARGET_COUNT = 3


def average_position(points: List[TimeSeriesPoint]) -> float:
    """Unweighted mean of daily positions"""
    if not points:
        return 0.0
    return sum(point.position for point in points) / len(points)


def partition_windows(points: List[TimeSeriesPoint],
                      comparison_days: int) -> Tuple[List[TimeSeriesPoint], List[TimeSeriesPoint]]:
    """Split daily points into (base, current) windows.

    Days without impressions are not data. The current window holds the most
    recent ``comparison_days`` days with data and the base window the
    ``comparison_days`` data days immediately before it.
    """
    with_data = sorted((p for p in points if p.impressions > 0), key=lambda p: p.date)
    current = with_data[-comparison_days:] if with_data else []
    if not current:
        return [], []
    earlier = [p for p in with_data if p.date < current[0].date]
    base = earlier[-comparison_days:]
    return base, current


def find_dropped_keywords(current: List[KeywordMetric], base: List[KeywordMetric],
                          keyword_drop_threshold: int) -> List[KeywordMetric]:
    """Keywords now ranked at or beyond the threshold that were above it before"""
    previous: Dict[str, float] = {metric.keyword: metric.position for metric in base}
    dropped = []
    for metric in current:
        prior = previous.get(metric.keyword)
        if prior is None:
            continue
        if metric.position >= keyword_drop_threshold and prior < keyword_drop_threshold:
            dropped.append(KeywordMetric(
                keyword=metric.keyword,
                position=metric.position,
                impressions=metric.impressions,
                clicks=metric.clicks,
                ctr=metric.ctr,
                previous_position=prior,
            ))
    dropped.sort(key=lambda metric: metric.impressions, reverse=True)
    return dropped


class RankDropDetector:
    """Compares a baseline window with the current window for one page"""

    def __init__(self, rank_client, analyzer_config=None, today: Optional[date] = None):
        self.client = rank_client
        self.config = analyzer_config or config
        self.today = today

    def _end_date(self) -> date:
        return data_end_date(self.config.data_freshness_lag_days, self.today)

    async def detect_rank_drop(self, site_url: str, page_url: str,
                               comparison_days: Optional[int] = None,
                               drop_threshold: Optional[float] = None,
                               keyword_drop_threshold: Optional[int] = None) -> RankDropResult:
        comparison_days = comparison_days or self.config.comparison_days
        drop_threshold = self.config.drop_threshold if drop_threshold is None else drop_threshold
        keyword_drop_threshold = keyword_drop_threshold or self.config.keyword_drop_threshold
        if comparison_days < 1:
            raise ValueError("comparison_days must be at least 1")

        end = self._end_date()
        start = end - timedelta(days=comparison_days * 2 - 1)
        # DataUnavailable from the client propagates unchanged
        points = await self.client.get_page_time_series(site_url, page_url, format_date(start), format_date(end))

        base, current = partition_windows(points, comparison_days)
        if not base or not current:
            logger.warning(f"Insufficient baseline for {page_url}: {len(base)} base days, {len(current)} current days")
            return RankDropResult(
                base_average_position=average_position(base),
                current_average_position=average_position(current),
                drop_amount=0.0,
                has_drop=False,
                insufficient_baseline=True,
                current_start=current[0].date if current else None,
                current_end=current[-1].date if current else None,
            )

        base_avg = average_position(base)
        current_avg = average_position(current)
        # Positive means the page moved further down the results
        drop_amount = current_avg - base_avg

        current_metrics = await self.client.get_keyword_metrics(
            site_url, page_url, current[0].date, current[-1].date)
        base_metrics = await self.client.get_keyword_metrics(
            site_url, page_url, base[0].date, base[-1].date)
        dropped = find_dropped_keywords(current_metrics, base_metrics, keyword_drop_threshold)

        has_drop = drop_amount >= drop_threshold or bool(dropped)
        logger.info(
            f"Rank check for {page_url}: base {base_avg:.2f}, current {current_avg:.2f}, "
            f"drop {drop_amount:.2f}, {len(dropped)} dropped keywords, has_drop={has_drop}"
        )

        return RankDropResult(
            base_average_position=base_avg,
            current_average_position=current_avg,
            drop_amount=drop_amount,
            dropped_keywords=dropped,
            has_drop=has_drop,
            base_start=base[0].date,
            base_end=base[-1].date,
            current_start=current[0].date,
            current_end=current[-1].date,
            analysis_target_keywords=dropped[:ANALYSIS_TARGET_COUNT],
        )

    async def check_consecutive_drop(self, site_url: str, page_url: str,
                                     consecutive_days: int, drop_threshold: float,
                                     comparison_days: Optional[int] = None) -> bool:
        """True when each of the last ``consecutive_days`` data days sits at least
        ``drop_threshold`` positions below the preceding baseline average"""
        comparison_days = comparison_days or self.config.comparison_days
        if consecutive_days < 1:
            return False
        end = self._end_date()
        start = end - timedelta(days=comparison_days + consecutive_days * 2)
        points = await self.client.get_page_time_series(site_url, page_url, format_date(start), format_date(end))

        with_data = sorted((p for p in points if p.impressions > 0), key=lambda p: p.date)
        recent = with_data[-consecutive_days:]
        base = with_data[:-consecutive_days][-comparison_days:]
        if len(recent) < consecutive_days or not base:
            return False
        baseline = average_position(base)
        return all(point.position >= baseline + drop_threshold for point in recent)
