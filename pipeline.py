"""
Three-step analysis pipeline with explicit, validated step contracts.

Each step is a function of its input payload plus external I/O. A caller can
persist any step's result and resume the next step in a later invocation.
"""
import time
import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ai_seo_analyzer import AISEOAnalyzer
from article_scraper import ArticleScraper
from competitor_filter import CompetitorFilter
from competitor_resolver import CompetitorResolver, dedupe_competitor_urls, find_own_position
from config import config
from diff_analyzer import DiffAnalyzer
from errors import DataUnavailable, PipelineTimeout, ProviderError, ScrapeFailed, SearchUnavailable, StepContractError
from keyword_prioritizer import KeywordPrioritizer
from llm_diff_analyzer import LLMDiffAnalyzer
from models import (
    AISEOAnalysisResult, ArticleContent, CompetitorResultSet, DiffResult, KeywordMetric,
    KeywordSpecificAnalysis, KeywordTimeSeries, PrioritizedKeyword, RankDropResult,
    RecommendedAddition, SemanticDiffResult, TimeSeriesPoint, TryAnalysisResult, TryKeywordResult,
)
from rank_drop import RankDropDetector
from search_providers import SearchProvider
from utils import (
    PerformanceMonitor, data_end_date, days_between, format_date, normalize_url, resolve_page_url, urls_match,
    validate_url,
)

logger = logging.getLogger(__name__)

STALE_DATA_DAYS = 3
TRY_MAX_KEYWORDS = 5
TRY_RESULT_COUNT = 20
TRY_HINT_TIMEOUT = 8.0

ModelT = TypeVar("ModelT", bound=BaseModel)


class Deadline:
    """Monotonic time budget for one invocation.

    ``check`` raises ``PipelineTimeout`` once less than ``safety_margin``
    seconds remain, before the platform would kill the process.
    """

    def __init__(self, budget_seconds: float, safety_margin: float = 5.0,
                 clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds
        self.safety_margin = safety_margin
        self._clock = clock
        self._started = clock()

    @classmethod
    def unlimited(cls) -> "Deadline":
        return cls(float("inf"), 0.0)

    def remaining(self) -> float:
        return self.budget_seconds - (self._clock() - self._started)

    def check(self, stage: str, last_completed_step: int):
        remaining = self.remaining()
        if remaining < self.safety_margin:
            logger.warning(f"Stopping at {stage}: {remaining:.1f}s left, last completed step {last_completed_step}")
            raise PipelineTimeout(stage, last_completed_step, remaining)


# Step contracts

class _Contract(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Step1Input(_Contract):
    site_url: str = Field(min_length=1)
    page_url: str = Field(min_length=1)
    article_title: Optional[str] = None
    selected_keywords: Optional[List[str]] = None
    max_keywords: int = Field(5, ge=1, le=20)
    comparison_days: int = Field(7, ge=1)
    drop_threshold: float = 2.0
    keyword_drop_threshold: int = Field(10, ge=1)
    detect_drop: bool = True


class Step1Result(_Contract):
    step: Literal[1] = 1
    site_url: str
    page_url: str
    prioritized_keywords: List[PrioritizedKeyword]
    keyword_time_series: List[KeywordTimeSeries] = Field(default_factory=list)
    top_ranking_keywords: List[KeywordMetric] = Field(default_factory=list)
    rank_drop: Optional[RankDropResult] = None
    rank_drop_error: Optional[str] = None


class Step2Input(_Contract):
    """Unset options fall back to the orchestrator's configuration"""
    previous: Step1Result
    max_competitors: Optional[int] = Field(None, ge=1, le=20)
    retry_count: Optional[int] = Field(None, ge=1)
    prefer_fast_provider: Optional[bool] = None
    locale: Optional[str] = None
    custom_excluded_domains: List[str] = Field(default_factory=list)
    use_default_exclusion: bool = True


class Step2Result(_Contract):
    step: Literal[2] = 2
    previous: Step1Result
    competitor_results: List[CompetitorResultSet]
    unique_competitor_urls: List[str]


class Step3Input(_Contract):
    previous: Step2Result
    skip_llm: bool = False
    use_browser_render: bool = False
    max_competitors_to_scrape: Optional[int] = Field(None, ge=0)
    locale: Optional[str] = None


class Completeness(_Contract):
    competitors_attempted: int = 0
    competitors_scraped: int = 0
    keywords_analyzed: int = 0
    keywords_without_competitors: List[str] = Field(default_factory=list)
    semantic_requested: bool = False
    semantic_available: bool = False


class AnalysisResult(_Contract):
    step: Literal[3] = 3
    site_url: str
    page_url: str
    own_url: str
    prioritized_keywords: List[PrioritizedKeyword]
    top_ranking_keywords: List[KeywordMetric] = Field(default_factory=list)
    rank_drop: Optional[RankDropResult] = None
    competitor_results: List[CompetitorResultSet] = Field(default_factory=list)
    unique_competitor_urls: List[str] = Field(default_factory=list)
    own_article: Optional[ArticleContent] = None
    own_article_error: Optional[str] = None
    competitor_articles: List[ArticleContent] = Field(default_factory=list)
    failed_competitor_urls: Dict[str, str] = Field(default_factory=dict)
    diff: Optional[DiffResult] = None
    aiseo: Optional[AISEOAnalysisResult] = None
    semantic_analysis: Optional[SemanticDiffResult] = None
    keyword_specific_analysis: List[KeywordSpecificAnalysis] = Field(default_factory=list)
    completeness: Completeness = Field(default_factory=Completeness)


Step3Result = AnalysisResult


def validate_step(model: Type[ModelT], payload: Any, step: str) -> ModelT:
    """Coerce a payload into a step contract or fail with StepContractError"""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise StepContractError(step, str(e)) from e


def build_keyword_time_series(series: Dict[str, List[TimeSeriesPoint]], today: date) -> List[KeywordTimeSeries]:
    """Attach freshness metadata to each keyword's daily series"""
    output = []
    for keyword, points in series.items():
        with_data = [point for point in points if point.impressions > 0]
        if not with_data:
            output.append(KeywordTimeSeries(keyword=keyword, points=points, has_recent_drop=True))
            continue
        last = with_data[-1]
        days_since = days_between(last.date, today)
        output.append(KeywordTimeSeries(
            keyword=keyword,
            points=points,
            last_data_date=last.date,
            days_since_last_data=days_since,
            has_recent_drop=days_since >= STALE_DATA_DAYS,
            last_position=last.position,
        ))
    return output


def select_competitors_above(result_set: CompetitorResultSet) -> CompetitorResultSet:
    """Keep only pages ranking above the monitored page.

    Rank 1 leaves nothing to learn from; an unknown rank keeps the whole
    first page.
    """
    if result_set.own_position is None:
        return result_set
    if result_set.own_position <= 1:
        result_set.competitors = []
    else:
        result_set.competitors = [c for c in result_set.competitors if c.position < result_set.own_position]
    return result_set


def select_scrape_targets(result_sets: List[CompetitorResultSet], per_keyword: int) -> List[str]:
    """Each keyword's top competitors, one entry per normalized URL"""
    seen = set()
    targets = []
    for result_set in result_sets:
        for competitor in result_set.competitors[:per_keyword]:
            key = normalize_url(competitor.url)
            if key in seen:
                continue
            seen.add(key)
            targets.append(competitor.url)
    return targets


def combine_semantic_results(results: List[Optional[SemanticDiffResult]]) -> Optional[SemanticDiffResult]:
    """Merge per-keyword semantic results; None when none are available"""
    available = [result for result in results if result is not None]
    if not available:
        return None

    reasons = [result.why_competitors_rank_higher for result in available if result.why_competitors_rank_higher]
    missing, seen_missing = [], set()
    additions, seen_sections = [], set()
    keyword_analyses = []
    for result in available:
        for item in result.missing_content:
            if item not in seen_missing:
                seen_missing.add(item)
                missing.append(item)
        for addition in result.recommended_additions:
            if addition.section not in seen_sections:
                seen_sections.add(addition.section)
                additions.append(RecommendedAddition(
                    section=addition.section, reason=addition.reason,
                    content=addition.content, competitor_urls=list(addition.competitor_urls),
                ))
        keyword_analyses.extend(result.keyword_specific_analysis)

    return SemanticDiffResult(
        why_competitors_rank_higher="\n\n".join(reasons),
        missing_content=missing,
        recommended_additions=additions,
        keyword_specific_analysis=keyword_analyses,
    )


class PipelineOrchestrator:
    """Runs the three analysis steps against injected collaborators"""

    def __init__(self, rank_client, resolver: CompetitorResolver, scraper: ArticleScraper,
                 llm_analyzer: Optional[LLMDiffAnalyzer] = None,
                 diff_analyzer: Optional[DiffAnalyzer] = None,
                 aiseo_analyzer: Optional[AISEOAnalyzer] = None,
                 prioritizer: Optional[KeywordPrioritizer] = None,
                 quick_search_provider: Optional[SearchProvider] = None,
                 analyzer_config=None,
                 today: Optional[date] = None):
        self.config = analyzer_config or config
        self.rank_client = rank_client
        self.resolver = resolver
        self.scraper = scraper
        self.llm_analyzer = llm_analyzer
        self.diff_analyzer = diff_analyzer or DiffAnalyzer()
        self.aiseo_analyzer = aiseo_analyzer or AISEOAnalyzer()
        self.prioritizer = prioritizer or KeywordPrioritizer(self.config.min_impressions)
        self.quick_search_provider = quick_search_provider
        self.detector = RankDropDetector(rank_client, self.config, today)
        self.today = today
        self.monitor = PerformanceMonitor()

    def new_deadline(self) -> Deadline:
        return Deadline(self.config.step_time_budget, self.config.step_safety_margin)

    def _today(self) -> date:
        return self.today or date.today()

    async def step1(self, payload: Any, deadline: Optional[Deadline] = None) -> Step1Result:
        """Keyword selection: rank drop check, prioritization and keyword series"""
        request = validate_step(Step1Input, payload, "step1")
        deadline = deadline or Deadline.unlimited()
        deadline.check("step1", 0)
        timer = self.monitor.start_timer("step1")
        try:
            return await self._run_step1(request)
        finally:
            self.monitor.end_timer(timer)

    async def _run_step1(self, request: Step1Input) -> Step1Result:
        rank_drop, rank_drop_error = None, None
        if request.detect_drop:
            try:
                rank_drop = await self.detector.detect_rank_drop(
                    request.site_url, request.page_url, request.comparison_days,
                    request.drop_threshold, request.keyword_drop_threshold,
                )
            except DataUnavailable as e:
                logger.warning(f"Rank drop detection failed, continuing with keyword data: {e}")
                rank_drop_error = e.message

        end = data_end_date(self.config.data_freshness_lag_days, self.today)
        start = end - timedelta(days=self.config.keyword_window_days - 1)
        metrics = await self.rank_client.get_keyword_metrics(
            request.site_url, request.page_url, format_date(start), format_date(end))

        if request.selected_keywords:
            prioritized = self.prioritizer.prioritize(
                metrics, request.max_keywords, request.article_title, request.selected_keywords)
        else:
            dropped = rank_drop.dropped_keywords if rank_drop else []
            prioritized = self.prioritizer.merge(
                self.prioritizer.prioritize_dropped(dropped, request.max_keywords, request.article_title),
                self.prioritizer.prioritize(metrics, request.max_keywords, request.article_title),
                max_keywords=request.max_keywords,
            )
        if not prioritized:
            raise DataUnavailable(
                "No keywords with impressions in the analysis window",
                stage="step1", context={"site": request.site_url, "page": request.page_url},
            )

        try:
            series = await self.rank_client.get_keyword_time_series(
                request.site_url, request.page_url, format_date(start), format_date(end),
                [keyword.keyword for keyword in prioritized],
            )
        except DataUnavailable as e:
            logger.warning(f"Keyword time series unavailable: {e}")
            series = {keyword.keyword: [] for keyword in prioritized}

        return Step1Result(
            site_url=request.site_url,
            page_url=request.page_url,
            prioritized_keywords=prioritized,
            keyword_time_series=build_keyword_time_series(series, self._today()),
            top_ranking_keywords=self.prioritizer.select_top_ranking(metrics),
            rank_drop=rank_drop,
            rank_drop_error=rank_drop_error,
        )

    async def step2(self, payload: Any, deadline: Optional[Deadline] = None) -> Step2Result:
        """Competitor discovery for every prioritized keyword"""
        request = validate_step(Step2Input, payload, "step2")
        deadline = deadline or Deadline.unlimited()
        deadline.check("step2", 1)
        timer = self.monitor.start_timer("step2")
        try:
            return await self._run_step2(request, deadline)
        finally:
            self.monitor.end_timer(timer)

    async def _run_step2(self, request: Step2Input, deadline: Deadline) -> Step2Result:
        previous = request.previous
        own_url = resolve_page_url(previous.site_url, previous.page_url)
        competitor_filter = CompetitorFilter(
            use_default_exclusion=request.use_default_exclusion,
            own_site_url=own_url,
            custom_excluded_domains=request.custom_excluded_domains,
        )

        prefer_fast_provider = request.prefer_fast_provider
        if prefer_fast_provider is None:
            prefer_fast_provider = self.config.prefer_serper_api

        result_sets = await self.resolver.resolve_many(
            [keyword.keyword for keyword in previous.prioritized_keywords],
            own_url,
            max_competitors=request.max_competitors or self.config.max_competitors,
            retry_count=request.retry_count or self.config.search_retry_count,
            prefer_fast_provider=prefer_fast_provider,
            locale=request.locale or self.config.locale,
            competitor_filter=competitor_filter,
            before_each=lambda keyword: deadline.check(f"step2:{keyword}", 1),
        )
        result_sets = [select_competitors_above(result_set) for result_set in result_sets]

        return Step2Result(
            previous=previous,
            competitor_results=result_sets,
            unique_competitor_urls=dedupe_competitor_urls(result_sets),
        )

    async def step3(self, payload: Any, deadline: Optional[Deadline] = None) -> AnalysisResult:
        """Scrape own and competitor pages, then diff them"""
        request = validate_step(Step3Input, payload, "step3")
        deadline = deadline or Deadline.unlimited()
        deadline.check("step3", 2)
        timer = self.monitor.start_timer("step3")
        try:
            return await self._run_step3(request, deadline)
        finally:
            self.monitor.end_timer(timer)

    async def _run_step3(self, request: Step3Input, deadline: Deadline) -> AnalysisResult:
        step2 = request.previous
        step1 = step2.previous
        own_url = resolve_page_url(step1.site_url, step1.page_url)
        per_keyword = request.max_competitors_to_scrape
        if per_keyword is None:
            per_keyword = self.config.max_competitors_to_scrape
        locale = request.locale or self.config.locale
        targets = select_scrape_targets(step2.competitor_results, per_keyword)

        outcomes = await asyncio.gather(
            self.scraper.scrape_article(own_url, request.use_browser_render),
            *[self.scraper.scrape_article(url, request.use_browser_render) for url in targets],
            return_exceptions=True,
        )
        own_outcome, competitor_outcomes = outcomes[0], outcomes[1:]

        competitor_articles: List[ArticleContent] = []
        failed: Dict[str, str] = {}
        for url, outcome in zip(targets, competitor_outcomes):
            if isinstance(outcome, Exception):
                reason = outcome.reason if isinstance(outcome, ScrapeFailed) else str(outcome)
                logger.warning(f"Competitor scrape failed for {url}: {reason}")
                failed[url] = reason
            else:
                competitor_articles.append(outcome)

        result = AnalysisResult(
            site_url=step1.site_url,
            page_url=step1.page_url,
            own_url=own_url,
            prioritized_keywords=step1.prioritized_keywords,
            top_ranking_keywords=step1.top_ranking_keywords,
            rank_drop=step1.rank_drop,
            competitor_results=step2.competitor_results,
            unique_competitor_urls=step2.unique_competitor_urls,
            competitor_articles=competitor_articles,
            failed_competitor_urls=failed,
            completeness=Completeness(
                competitors_attempted=len(targets),
                competitors_scraped=len(competitor_articles),
                semantic_requested=not request.skip_llm,
            ),
        )

        if isinstance(own_outcome, Exception):
            reason = own_outcome.reason if isinstance(own_outcome, ScrapeFailed) else str(own_outcome)
            logger.error(f"Own article scrape failed for {own_url}: {reason}")
            result.own_article_error = reason
            return result

        result.own_article = own_outcome
        result.diff = self.diff_analyzer.analyze(own_outcome, competitor_articles)
        result.aiseo = self.aiseo_analyzer.analyze_aiseo(own_outcome, competitor_articles)

        if not request.skip_llm and self.llm_analyzer is not None:
            deadline.check("step3:semantic", 2)
            semantic_results = await self._semantic_per_keyword(
                own_outcome, competitor_articles, step2.competitor_results, per_keyword, locale,
                result.completeness)
            combined = combine_semantic_results(semantic_results)
            result.semantic_analysis = combined
            result.keyword_specific_analysis = combined.keyword_specific_analysis if combined else []
            result.completeness.semantic_available = combined is not None

        return result

    async def _semantic_per_keyword(self, own_article: ArticleContent,
                                    competitor_articles: List[ArticleContent],
                                    result_sets: List[CompetitorResultSet],
                                    per_keyword: int,
                                    locale: str,
                                    completeness: Completeness) -> List[Optional[SemanticDiffResult]]:
        by_url = {normalize_url(article.url): article for article in competitor_articles}
        tasks = []
        for result_set in result_sets:
            articles = [
                by_url[normalize_url(c.url)]
                for c in result_set.competitors[:per_keyword] if normalize_url(c.url) in by_url
            ]
            if not articles:
                completeness.keywords_without_competitors.append(result_set.keyword)
                continue
            tasks.append(self.llm_analyzer.analyze_semantic_diff(result_set.keyword, own_article, articles, locale))

        completeness.keywords_analyzed = len(tasks)
        if not tasks:
            return []
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        results = []
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error(f"Semantic analysis raised unexpectedly: {outcome}")
                results.append(None)
            else:
                results.append(outcome)
        return results

    async def run_all(self, step1_payload: Any, step2_options: Optional[dict] = None,
                      step3_options: Optional[dict] = None,
                      deadline: Optional[Deadline] = None) -> AnalysisResult:
        """All three steps back to back, sharing one deadline"""
        deadline = deadline or Deadline.unlimited()
        step1 = await self.step1(step1_payload, deadline)
        step2 = await self.step2({"previous": step1, **(step2_options or {})}, deadline)
        return await self.step3({"previous": step2, **(step3_options or {})}, deadline)

    async def try_analysis(self, article_url: str, keywords: Any, locale: str = "ja") -> TryAnalysisResult:
        """Quick own-rank check for up to five keywords plus a best-effort hint"""
        if isinstance(keywords, str):
            keywords = keywords.split(",")
        keywords = [keyword.strip() for keyword in keywords if keyword and keyword.strip()][:TRY_MAX_KEYWORDS]
        if not validate_url(article_url):
            raise ValueError(f"Not an http(s) article URL: {article_url}")
        if not keywords:
            raise ValueError("At least one keyword is required")

        provider = self.quick_search_provider
        if provider is None or not provider.is_available():
            raise SearchUnavailable("Search API is not configured", stage="try_analysis")

        result = TryAnalysisResult(article_url=article_url)
        first_competitor: Optional[str] = None
        for keyword in keywords:
            try:
                search_results = await provider.search(keyword, TRY_RESULT_COUNT, locale)
            except ProviderError as e:
                logger.warning(f"Quick search failed for '{keyword}': {e}")
                result.keywords.append(TryKeywordResult(keyword=keyword, status="search failed", error=e.message))
                continue

            own_position = find_own_position(search_results, article_url)
            top = next((r.url for r in search_results if not urls_match(r.url, article_url)), None)
            if first_competitor is None:
                first_competitor = top
            result.keywords.append(TryKeywordResult(
                keyword=keyword,
                own_position=own_position,
                status=f"position {own_position}" if own_position else f"not in top {TRY_RESULT_COUNT}",
                top_competitor_url=top,
            ))

        if first_competitor:
            result.hint = await self._quick_hint(article_url, first_competitor)
        return result

    async def _quick_hint(self, article_url: str, competitor_url: str) -> Optional[str]:
        try:
            own, competitor = await asyncio.wait_for(
                asyncio.gather(
                    self.scraper.scrape_article(article_url),
                    self.scraper.scrape_article(competitor_url),
                ),
                timeout=TRY_HINT_TIMEOUT,
            )
        except (ScrapeFailed, asyncio.TimeoutError) as e:
            logger.info(f"No quick hint for {article_url}: {e}")
            return None
        diff = self.diff_analyzer.analyze(own, [competitor])
        return diff.recommendations[0] if diff.recommendations else None
