"""
Keyword prioritization for competitor analysis
"""
import logging
import re
import unicodedata
from typing import Dict, List, Optional

from models import KeywordMetric, PrioritizedKeyword

logger = logging.getLogger(__name__)

MANUAL_PRIORITY = 100.0
TITLE_BONUS_MAX = 0.05
TOP_RANKING_MAX_POSITION = 5
TOP_RANKING_MIN_IMPRESSIONS = 10
TOP_RANKING_LIMIT = 5


def position_weight(position: float) -> float:
    """Inverse-position factor; better ranks weigh more"""
    if position <= 0:
        return 0.0
    if position <= 5:
        return 1.0
    if position <= 10:
        return 0.6
    if position <= 20:
        return 0.3
    return 0.1


def normalize_keyword(keyword: str) -> str:
    """Lowercase, width-fold and collapse whitespace so variants compare equal"""
    keyword = unicodedata.normalize("NFKC", keyword or "")
    return " ".join(keyword.lower().split())


def title_overlap(keyword: str, title: Optional[str]) -> float:
    """Share of keyword tokens that occur in the title, between 0 and 1"""
    if not title:
        return 0.0
    tokens = [token for token in re.split(r"\s+", normalize_keyword(keyword)) if token]
    if not tokens:
        return 0.0
    title_text = normalize_keyword(title)
    matched = sum(1 for token in tokens if token in title_text)
    return matched / len(tokens)


class KeywordPrioritizer:
    """Ranks a page's keywords by search opportunity.

    Priority is ``impressions * position_weight(position)``. A title overlap
    bonus smaller than the smallest possible demand step (0.1) is added, so it
    only orders keywords whose demand scores are otherwise equal.
    """

    def __init__(self, min_impressions: int = 1):
        self.min_impressions = max(1, min_impressions)

    def score(self, metric: KeywordMetric, article_title: Optional[str] = None) -> float:
        demand = metric.impressions * position_weight(metric.position)
        return demand + TITLE_BONUS_MAX * title_overlap(metric.keyword, article_title)

    def prioritize(self, metrics: List[KeywordMetric], max_keywords: int = 5,
                   article_title: Optional[str] = None,
                   selected_keywords: Optional[List[str]] = None,
                   min_impressions: Optional[int] = None) -> List[PrioritizedKeyword]:
        if selected_keywords:
            return self.from_selection(selected_keywords, metrics, max_keywords)

        threshold = max(1, min_impressions or self.min_impressions)
        usable = [metric for metric in metrics if metric.impressions >= threshold]
        if not usable:
            logger.info("No keywords with impressions in window")
            return []

        scored = [
            PrioritizedKeyword(
                keyword=metric.keyword,
                priority=self.score(metric, article_title),
                impressions=metric.impressions,
                clicks=metric.clicks,
                position=metric.position,
            )
            for metric in usable
        ]
        # sorted() is stable, so equal priorities keep input order
        ranked = sorted(scored, key=lambda keyword: keyword.priority, reverse=True)
        return ranked[:max_keywords]

    def from_selection(self, selected_keywords: List[str], metrics: List[KeywordMetric],
                       max_keywords: int) -> List[PrioritizedKeyword]:
        """Manual selection wins over scoring; metrics only fill in the numbers"""
        known: Dict[str, KeywordMetric] = {normalize_keyword(m.keyword): m for m in metrics}
        selection = []
        for keyword in selected_keywords[:max_keywords]:
            metric = known.get(normalize_keyword(keyword))
            selection.append(PrioritizedKeyword(
                keyword=keyword,
                priority=MANUAL_PRIORITY,
                impressions=metric.impressions if metric else 0,
                clicks=metric.clicks if metric else 0,
                position=metric.position if metric else 0.0,
            ))
        logger.info(f"Using {len(selection)} manually selected keywords")
        return selection

    def prioritize_dropped(self, dropped: List[KeywordMetric], max_keywords: int = 5,
                           article_title: Optional[str] = None) -> List[PrioritizedKeyword]:
        """Dropped keywords count double against regular ones"""
        ranked = self.prioritize(dropped, max_keywords, article_title)
        for keyword in ranked:
            keyword.priority *= 2
        return ranked

    @staticmethod
    def merge(*groups: List[PrioritizedKeyword], max_keywords: int = 5) -> List[PrioritizedKeyword]:
        """Combine keyword lists, keeping the best-scored entry per normalized keyword"""
        best: Dict[str, PrioritizedKeyword] = {}
        order: List[str] = []
        for group in groups:
            for keyword in group:
                key = normalize_keyword(keyword.keyword)
                if key not in best:
                    order.append(key)
                    best[key] = keyword
                elif keyword.priority > best[key].priority:
                    best[key] = keyword
        merged = sorted((best[key] for key in order), key=lambda keyword: keyword.priority, reverse=True)
        return merged[:max_keywords]

    def group_and_select(self, metrics: List[KeywordMetric], max_groups: int = 5,
                         article_title: Optional[str] = None) -> List[PrioritizedKeyword]:
        """Pick the best keyword from each group sharing the same first two words"""
        ranked = self.prioritize(metrics, max_keywords=len(metrics), article_title=article_title)
        seen_groups = set()
        selected = []
        for keyword in ranked:
            group = " ".join(normalize_keyword(keyword.keyword).split()[:2])
            if group in seen_groups:
                continue
            seen_groups.add(group)
            selected.append(keyword)
            if len(selected) >= max_groups:
                break
        return selected

    @staticmethod
    def select_top_ranking(metrics: List[KeywordMetric]) -> List[KeywordMetric]:
        """Keywords already on the top of page one with meaningful demand"""
        top = [
            metric for metric in metrics
            if 1 <= metric.position <= TOP_RANKING_MAX_POSITION
            and metric.impressions >= TOP_RANKING_MIN_IMPRESSIONS
        ]
        top.sort(key=lambda metric: metric.impressions, reverse=True)
        return top[:TOP_RANKING_LIMIT]
