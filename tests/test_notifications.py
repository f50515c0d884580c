"""
Tests for notification decisions
"""
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from conftest import TODAY, FakeRankClient, keyword_metric, make_points
from models import KeywordMetric, NotificationCheckResult, NotificationSettings, RankDropResult
from notifications import (
    FIXED_ARTICLE, NO_CONSECUTIVE_DROP, NO_DROP, NO_VALID_KEYWORDS, RANK_DROP_DETECTED,
    RECENT_NOTIFICATION, NotificationChecker, build_summary, days_since
)
from rank_drop import RankDropDetector

NOW = datetime(2024, 6, 30, 9, 0)


def dropped(keyword, impressions):
    return KeywordMetric(keyword=keyword, position=14.0, impressions=impressions, clicks=1, previous_position=6.0)


def mock_detector(has_drop=True, consecutive=True, dropped_keywords=None):
    detector = MagicMock()
    detector.detect_rank_drop = AsyncMock(return_value=RankDropResult(
        base_average_position=5.0,
        current_average_position=8.0,
        drop_amount=3.0,
        dropped_keywords=dropped_keywords or [],
        has_drop=has_drop,
    ))
    detector.check_consecutive_drop = AsyncMock(return_value=consecutive)
    return detector


class TestNotificationChecker:
    """Tests for the ordered notification rules"""

    @pytest.mark.asyncio
    async def test_recently_fixed_article_skipped(self):
        detector = mock_detector()
        result = await NotificationChecker(detector).check(
            "https://example.com/", "/guide", is_fixed=True, fixed_at=NOW - timedelta(days=3), now=NOW)

        assert result.should_notify is False
        assert result.reason == FIXED_ARTICLE
        detector.detect_rank_drop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fix_outside_cooldown_is_checked(self):
        detector = mock_detector(dropped_keywords=[dropped("coffee", 500)])
        result = await NotificationChecker(detector).check(
            "https://example.com/", "/guide", is_fixed=True, fixed_at=NOW - timedelta(days=10), now=NOW)
        assert result.reason == RANK_DROP_DETECTED

    @pytest.mark.asyncio
    async def test_recent_notification_skipped(self):
        detector = mock_detector()
        result = await NotificationChecker(detector).check(
            "https://example.com/", "/guide", last_notified_at=NOW - timedelta(days=2), now=NOW)

        assert result.reason == RECENT_NOTIFICATION
        detector.detect_rank_drop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_drop(self):
        detector = mock_detector(has_drop=False)
        result = await NotificationChecker(detector).check("https://example.com/", "/guide", now=NOW)

        assert result.reason == NO_DROP
        assert result.rank_drop is not None
        detector.check_consecutive_drop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_consecutive_drop(self):
        settings = NotificationSettings(consecutive_drop_days=5, drop_threshold=3.0, comparison_days=14)
        detector = mock_detector(consecutive=False)
        result = await NotificationChecker(detector).check("https://example.com/", "/guide", settings, now=NOW)

        assert result.reason == NO_CONSECUTIVE_DROP
        assert detector.check_consecutive_drop.await_args.args == ("https://example.com/", "/guide", 5, 3.0, 14)
        assert detector.detect_rank_drop.await_args.args[2:] == (14, 3.0, 10)

    @pytest.mark.asyncio
    async def test_only_low_traffic_keywords_dropped(self):
        detector = mock_detector(dropped_keywords=[dropped("rare", 20), dropped("rarer", 5)])
        result = await NotificationChecker(detector).check("https://example.com/", "/guide", now=NOW)

        assert result.should_notify is False
        assert result.reason == NO_VALID_KEYWORDS

    @pytest.mark.asyncio
    async def test_valid_keywords_filtered_by_impressions(self):
        detector = mock_detector(dropped_keywords=[dropped("coffee", 500), dropped("rare", 20)])
        result = await NotificationChecker(detector).check("https://example.com/", "/guide", now=NOW)

        assert result.should_notify is True
        assert result.reason == RANK_DROP_DETECTED
        assert [kw.keyword for kw in result.valid_keywords] == ["coffee"]

    @pytest.mark.asyncio
    async def test_page_level_drop_without_keywords_notifies(self):
        result = await NotificationChecker(mock_detector()).check("https://example.com/", "/guide", now=NOW)
        assert result.should_notify is True
        assert result.valid_keywords == []

    @pytest.mark.asyncio
    async def test_with_detector_over_search_data(self, test_config):
        client = FakeRankClient(
            points=make_points([5] * 7 + [6, 6, 6, 6, 12, 12, 12]),
            metric_responses=[
                [keyword_metric("coffee beans", 500, 15), keyword_metric("rare", 20, 12)],
                [keyword_metric("coffee beans", 500, 6), keyword_metric("rare", 20, 8)],
            ],
        )
        checker = NotificationChecker(RankDropDetector(client, test_config, TODAY))

        result = await checker.check("https://example.com/", "/guide", now=NOW)

        assert result.should_notify is True
        assert result.rank_drop.drop_amount == pytest.approx(25 / 7)
        assert [kw.keyword for kw in result.valid_keywords] == ["coffee beans"]
        assert result.valid_keywords[0].previous_position == 6


class TestSummary:
    """Tests for the notification payload"""

    def test_build_summary(self):
        result = NotificationCheckResult(
            should_notify=True,
            reason=RANK_DROP_DETECTED,
            rank_drop=RankDropResult(5.0, 8.571, 3.571, dropped_keywords=[dropped("coffee", 500)], has_drop=True),
            valid_keywords=[dropped("coffee", 500)],
        )
        summary = build_summary(result, "https://example.com/guide", "Coffee guide")

        assert summary.current_average_position == 8.6
        assert summary.drop_amount == 3.6
        assert summary.article_title == "Coffee guide"
        assert summary.dropped_keywords[0]["keyword"] == "coffee"
        assert summary.dropped_keywords[0]["previous_position"] == 6.0
        assert summary.reason == RANK_DROP_DETECTED

    def test_days_since(self):
        assert days_since(None, NOW) is None
        assert days_since(NOW - timedelta(days=4, hours=3), NOW) == 4
