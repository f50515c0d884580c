"""
Data models for the rank drop analyzer
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional


@dataclass(frozen=True)
class TimeSeriesPoint:
    """One day of search performance for a page or keyword"""
    date: str
    position: float
    impressions: int
    clicks: int


@dataclass
class KeywordMetric:
    """Performance of one query for one page over a window"""
    keyword: str
    position: float
    impressions: int
    clicks: int
    ctr: float = 0.0
    previous_position: Optional[float] = None


@dataclass
class PrioritizedKeyword:
    """Keyword selected for competitor analysis"""
    keyword: str
    priority: float
    impressions: int = 0
    clicks: int = 0
    position: float = 0.0


@dataclass
class SearchResult:
    """One organic result entry for a keyword"""
    url: str
    title: str
    position: int


@dataclass
class CompetitorResultSet:
    """Search results for one keyword with the monitored page's own rank"""
    keyword: str
    competitors: List[SearchResult] = field(default_factory=list)
    own_position: Optional[int] = None
    total_results: int = 0
    provider: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Heading:
    level: int
    text: str


@dataclass
class ArticleContent:
    """Parsed content of a single article page"""
    url: str
    title: str
    main_text: str
    headings: List[Heading] = field(default_factory=list)
    paragraphs: List[str] = field(default_factory=list)
    lists: List[List[str]] = field(default_factory=list)
    word_count: int = 0
    has_faq: bool = False
    has_tables: bool = False
    has_update_date: bool = False
    has_author_info: bool = False
    has_structured_data: bool = False
    has_data_or_stats: bool = False
    has_question_headings: bool = False
    has_bullet_points: bool = False
    has_summary: bool = False


@dataclass
class AISEOCheckResult:
    """AI search optimization signals found on a page"""
    has_faq: bool = False
    has_summary: bool = False
    has_update_date: bool = False
    has_author_info: bool = False
    has_data_or_stats: bool = False
    has_structured_data: bool = False
    has_question_headings: bool = False
    has_bullet_points: bool = False
    has_tables: bool = False


@dataclass
class MissingAISEOElement:
    element: str
    description: str
    found_in: int
    recommendation: str


@dataclass
class AISEOAnalysisResult:
    own: AISEOCheckResult
    competitors: List[AISEOCheckResult] = field(default_factory=list)
    missing_elements: List[MissingAISEOElement] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class RankDropResult:
    """Outcome of comparing a baseline window against the current window"""
    base_average_position: float
    current_average_position: float
    drop_amount: float
    dropped_keywords: List[KeywordMetric] = field(default_factory=list)
    has_drop: bool = False
    insufficient_baseline: bool = False
    base_start: Optional[str] = None
    base_end: Optional[str] = None
    current_start: Optional[str] = None
    current_end: Optional[str] = None
    analysis_target_keywords: List[KeywordMetric] = field(default_factory=list)


@dataclass
class KeywordTimeSeries:
    """Daily series for one keyword plus freshness metadata"""
    keyword: str
    points: List[TimeSeriesPoint] = field(default_factory=list)
    last_data_date: Optional[str] = None
    days_since_last_data: Optional[int] = None
    has_recent_drop: bool = False
    last_position: Optional[float] = None


@dataclass
class MissingHeading:
    heading: str
    level: int
    found_in: int


@dataclass
class MissingKeyword:
    keyword: str
    frequency: int
    found_in: int


@dataclass
class WordCountDiff:
    own: int
    average: int
    diff: int


@dataclass
class DiffResult:
    """Deterministic structural comparison between own and competitor pages"""
    own_url: str
    competitor_urls: List[str] = field(default_factory=list)
    missing_headings: List[MissingHeading] = field(default_factory=list)
    missing_keywords: List[MissingKeyword] = field(default_factory=list)
    word_count_diff: WordCountDiff = field(default_factory=lambda: WordCountDiff(0, 0, 0))
    heading_count_diff: int = 0
    missing_signals: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class RecommendedAddition:
    section: str
    reason: str
    content: str
    competitor_urls: List[str] = field(default_factory=list)


@dataclass
class WhatToAdd:
    item: str
    competitor_urls: List[str] = field(default_factory=list)


@dataclass
class KeywordSpecificAnalysis:
    keyword: str
    why_ranking_dropped: str
    what_to_add: List[WhatToAdd] = field(default_factory=list)


@dataclass
class SemanticDiffResult:
    """LLM explanation of why competitors outrank the page"""
    why_competitors_rank_higher: str
    missing_content: List[str] = field(default_factory=list)
    recommended_additions: List[RecommendedAddition] = field(default_factory=list)
    keyword_specific_analysis: List[KeywordSpecificAnalysis] = field(default_factory=list)


@dataclass
class NotificationSettings:
    drop_threshold: float = 2.0
    keyword_drop_threshold: int = 10
    comparison_days: int = 7
    consecutive_drop_days: int = 3
    min_impressions: int = 100
    notification_cooldown_days: int = 7


@dataclass
class NotificationCheckResult:
    should_notify: bool
    reason: str
    rank_drop: Optional[RankDropResult] = None
    valid_keywords: List[KeywordMetric] = field(default_factory=list)


@dataclass
class NotificationSummary:
    """Plain payload handed to the notification delivery collaborator"""
    article_url: str
    article_title: Optional[str]
    base_average_position: float
    current_average_position: float
    drop_amount: float
    dropped_keywords: List[Dict[str, Any]] = field(default_factory=list)
    reason: str = ""


@dataclass
class TryKeywordResult:
    keyword: str
    own_position: Optional[int] = None
    status: str = ""
    top_competitor_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TryAnalysisResult:
    """Quick unauthenticated check of an article against a few keywords"""
    article_url: str
    keywords: List[TryKeywordResult] = field(default_factory=list)
    hint: Optional[str] = None
