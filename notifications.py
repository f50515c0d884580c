"""
Decides whether a rank drop warrants notifying the article owner
"""
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from models import NotificationCheckResult, NotificationSettings, NotificationSummary, RankDropResult
from rank_drop import RankDropDetector

logger = logging.getLogger(__name__)

FIXED_ARTICLE = "fixed_article"
RECENT_NOTIFICATION = "recent_notification"
NO_DROP = "no_drop"
NO_CONSECUTIVE_DROP = "no_consecutive_drop"
NO_VALID_KEYWORDS = "no_valid_keywords"
RANK_DROP_DETECTED = "rank_drop_detected"


def days_since(moment: Optional[datetime], now: datetime) -> Optional[int]:
    if moment is None:
        return None
    return (now - moment).days


class NotificationChecker:
    """Applies cooldowns and drop rules on top of RankDropDetector.

    Delivery is left to the caller; this class only answers "should we" and
    builds the payload.
    """

    def __init__(self, detector: RankDropDetector):
        self.detector = detector

    async def check(self, site_url: str, page_url: str,
                    settings: Optional[NotificationSettings] = None,
                    is_fixed: bool = False,
                    fixed_at: Optional[datetime] = None,
                    last_notified_at: Optional[datetime] = None,
                    now: Optional[datetime] = None) -> NotificationCheckResult:
        settings = settings or NotificationSettings()
        now = now or datetime.now()

        since_fixed = days_since(fixed_at, now)
        if is_fixed and since_fixed is not None and since_fixed < settings.notification_cooldown_days:
            logger.info(f"Skipping {page_url}: fixed {since_fixed} days ago")
            return NotificationCheckResult(should_notify=False, reason=FIXED_ARTICLE)

        since_notified = days_since(last_notified_at, now)
        if since_notified is not None and since_notified < settings.notification_cooldown_days:
            logger.info(f"Skipping {page_url}: notified {since_notified} days ago")
            return NotificationCheckResult(should_notify=False, reason=RECENT_NOTIFICATION)

        rank_drop = await self.detector.detect_rank_drop(
            site_url, page_url,
            settings.comparison_days,
            settings.drop_threshold,
            settings.keyword_drop_threshold,
        )
        if not rank_drop.has_drop:
            return NotificationCheckResult(should_notify=False, reason=NO_DROP, rank_drop=rank_drop)

        consecutive = await self.detector.check_consecutive_drop(
            site_url, page_url,
            settings.consecutive_drop_days,
            settings.drop_threshold,
            settings.comparison_days,
        )
        if not consecutive:
            return NotificationCheckResult(should_notify=False, reason=NO_CONSECUTIVE_DROP, rank_drop=rank_drop)

        valid_keywords = [kw for kw in rank_drop.dropped_keywords if kw.impressions >= settings.min_impressions]
        # A page-level drop alone still notifies; low-traffic keyword drops do not
        if rank_drop.dropped_keywords and not valid_keywords:
            return NotificationCheckResult(should_notify=False, reason=NO_VALID_KEYWORDS, rank_drop=rank_drop)

        logger.info(
            f"Notify for {page_url}: {rank_drop.base_average_position:.1f} -> "
            f"{rank_drop.current_average_position:.1f}"
        )
        return NotificationCheckResult(
            should_notify=True,
            reason=RANK_DROP_DETECTED,
            rank_drop=rank_drop,
            valid_keywords=valid_keywords,
        )


def build_summary(result: NotificationCheckResult, article_url: str,
                  article_title: Optional[str] = None) -> NotificationSummary:
    """Flatten a positive check into the payload the delivery side expects"""
    rank_drop = result.rank_drop or RankDropResult(0.0, 0.0, 0.0)
    keywords = result.valid_keywords or rank_drop.dropped_keywords
    return NotificationSummary(
        article_url=article_url,
        article_title=article_title,
        base_average_position=round(rank_drop.base_average_position, 1),
        current_average_position=round(rank_drop.current_average_position, 1),
        drop_amount=round(rank_drop.drop_amount, 1),
        dropped_keywords=[asdict(keyword) for keyword in keywords],
        reason=result.reason,
    )
