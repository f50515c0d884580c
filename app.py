"""
Main application for the rank drop analyzer - wires all components together
"""
import argparse
import json
import time
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from ai_seo_analyzer import AISEOAnalyzer
from article_scraper import ArticleScraper
from browser_utils import BrowserManager
from cache import TTLCache
from competitor_resolver import CompetitorResolver
from config import AnalyzerConfig, config
from diff_analyzer import DiffAnalyzer
from errors import AnalysisError
from gsc_client import SearchConsoleClient
from keyword_prioritizer import KeywordPrioritizer
from llm_diff_analyzer import LLMDiffAnalyzer
from models import NotificationSettings
from monitoring import collect_system_metrics, setup_logging
from notifications import NotificationChecker, build_summary
from pipeline import AnalysisResult, PipelineOrchestrator, Step1Result, Step2Result
from rank_drop import RankDropDetector
from search_providers import BrowserSearchProvider, SerperSearchProvider

logger = logging.getLogger(__name__)


class AnalyzerApp:
    """Owns the shared resources (cache, sessions, browser) for one process"""

    def __init__(self, analyzer_config: Optional[AnalyzerConfig] = None, init_logging: bool = True):
        self.config = analyzer_config or config
        if init_logging:
            setup_logging(self.config.log_level, self.config.log_dir)

        self.cache = TTLCache(self.config.cache_ttl_seconds, self.config.cache_max_size)
        self.rank_client = SearchConsoleClient(cache=self.cache, analyzer_config=self.config)
        self.browser_manager = BrowserManager(self.config)
        self.serper = SerperSearchProvider(analyzer_config=self.config)
        self.resolver = CompetitorResolver(
            api_provider=self.serper,
            browser_provider=BrowserSearchProvider(self.browser_manager, self.config),
            analyzer_config=self.config,
        )
        self.aiseo_analyzer = AISEOAnalyzer()
        self.scraper = ArticleScraper(self.browser_manager, analyzer_config=self.config,
                                      aiseo_analyzer=self.aiseo_analyzer)
        self.llm_analyzer = LLMDiffAnalyzer(analyzer_config=self.config)
        self.orchestrator = PipelineOrchestrator(
            rank_client=self.rank_client,
            resolver=self.resolver,
            scraper=self.scraper,
            llm_analyzer=self.llm_analyzer,
            diff_analyzer=DiffAnalyzer(),
            aiseo_analyzer=self.aiseo_analyzer,
            prioritizer=KeywordPrioritizer(self.config.min_impressions),
            quick_search_provider=self.serper,
            analyzer_config=self.config,
        )
        self.notification_checker = NotificationChecker(RankDropDetector(self.rank_client, self.config))
        self.started_at = time.time()

        logger.info("Rank drop analyzer initialized")

    async def step1(self, payload: Any) -> Step1Result:
        return await self.orchestrator.step1(payload, self.orchestrator.new_deadline())

    async def step2(self, payload: Any) -> Step2Result:
        return await self.orchestrator.step2(payload, self.orchestrator.new_deadline())

    async def step3(self, payload: Any) -> AnalysisResult:
        return await self.orchestrator.step3(payload, self.orchestrator.new_deadline())

    async def analyze(self, payload: Any, step2_options: Optional[dict] = None,
                      step3_options: Optional[dict] = None) -> AnalysisResult:
        """Run the whole pipeline in one invocation without a time budget"""
        start_time = time.time()
        result = await self.orchestrator.run_all(payload, step2_options, step3_options)
        logger.info(f"Full analysis of {result.page_url} finished in {time.time() - start_time:.2f}s")
        return result

    async def rank_drop(self, site_url: str, page_url: str, **options) -> Dict[str, Any]:
        return asdict(await self.orchestrator.detector.detect_rank_drop(site_url, page_url, **options))

    async def try_analysis(self, article_url: str, keywords: List[str], locale: Optional[str] = None) -> Dict[str, Any]:
        result = await self.orchestrator.try_analysis(article_url, keywords, locale or self.config.locale)
        return asdict(result)

    async def scrape(self, url: str, use_browser_render: bool = False) -> Dict[str, Any]:
        return asdict(await self.scraper.scrape_article(url, use_browser_render))

    async def check_notification(self, site_url: str, page_url: str,
                                 settings: Optional[NotificationSettings] = None,
                                 is_fixed: bool = False,
                                 fixed_at: Optional[datetime] = None,
                                 last_notified_at: Optional[datetime] = None,
                                 article_title: Optional[str] = None) -> Dict[str, Any]:
        result = await self.notification_checker.check(
            site_url, page_url, settings, is_fixed, fixed_at, last_notified_at)
        response = {"should_notify": result.should_notify, "reason": result.reason, "summary": None}
        if result.should_notify:
            response["summary"] = asdict(build_summary(result, page_url, article_title))
        return response

    def get_system_status(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.started_at, 1),
            "browser_running": self.browser_manager.is_running,
            "open_browser_contexts": self.browser_manager.open_contexts,
            "cached_responses": len(self.cache),
            "search_api_configured": self.serper.is_available(),
            "llm_provider": self.llm_analyzer.provider.name,
            "llm_available": self.llm_analyzer.is_available(),
            "step_timings": self.orchestrator.monitor.get_metrics(),
            "system": collect_system_metrics(),
        }

    async def close(self):
        """Gracefully release sessions and the browser"""
        logger.info("Shutting down rank drop analyzer")
        for name, closer in (
            ("search console client", self.rank_client.close),
            ("search API", self.serper.close),
            ("scraper", self.scraper.close),
            ("LLM provider", self.llm_analyzer.close),
            ("browser", self.browser_manager.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")
        self.cache.clear()
        logger.info("Shutdown completed")


def create_cli():
    """Create command line interface"""
    parser = argparse.ArgumentParser(description="Rank drop analyzer - find why a page lost rankings")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Full pipeline
    analyze_parser = subparsers.add_parser("analyze", help="Run keyword selection, competitor lookup and diff")
    analyze_parser.add_argument("site_url", help="Search Console property (https://example.com/ or sc-domain:example.com)")
    analyze_parser.add_argument("page_url", help="Page URL or path")
    analyze_parser.add_argument("--title", help="Article title used for keyword relevance")
    analyze_parser.add_argument("--keywords", nargs="*", help="Analyze these keywords instead of scoring")
    analyze_parser.add_argument("--max-keywords", type=int, default=config.max_keywords)
    analyze_parser.add_argument("--locale", default=config.locale, choices=["ja", "en"])
    analyze_parser.add_argument("--skip-llm", action="store_true", help="Only run the rule-based diff")
    analyze_parser.add_argument("--render", action="store_true", help="Render pages in the browser")

    # Rank drop only
    drop_parser = subparsers.add_parser("rank-drop", help="Check a page for a rank drop")
    drop_parser.add_argument("site_url")
    drop_parser.add_argument("page_url")
    drop_parser.add_argument("--days", type=int, default=config.comparison_days, help="Comparison window in days")
    drop_parser.add_argument("--threshold", type=float, default=config.drop_threshold)

    # Quick check
    try_parser = subparsers.add_parser("try", help="Quick rank check for a few keywords")
    try_parser.add_argument("article_url")
    try_parser.add_argument("keywords", nargs="+")
    try_parser.add_argument("--locale", default=config.locale, choices=["ja", "en"])

    # Single page
    scrape_parser = subparsers.add_parser("scrape", help="Extract content and signals from one page")
    scrape_parser.add_argument("url")
    scrape_parser.add_argument("--render", action="store_true")

    # Notification check
    notify_parser = subparsers.add_parser("check-notification", help="Decide whether a drop warrants a notification")
    notify_parser.add_argument("site_url")
    notify_parser.add_argument("page_url")

    # Server mode
    server_parser = subparsers.add_parser("server", help="Run the HTTP API")
    server_parser.add_argument("--host", default="0.0.0.0")
    server_parser.add_argument("--port", type=int, default=8000, help="Server port")

    return parser


async def run_command(args, app: AnalyzerApp) -> Any:
    if args.command == "analyze":
        result = await app.analyze(
            {
                "site_url": args.site_url,
                "page_url": args.page_url,
                "article_title": args.title,
                "selected_keywords": args.keywords or None,
                "max_keywords": args.max_keywords,
            },
            step2_options={"locale": args.locale},
            step3_options={"locale": args.locale, "skip_llm": args.skip_llm, "use_browser_render": args.render},
        )
        return result.model_dump(mode="json")
    if args.command == "rank-drop":
        return await app.rank_drop(args.site_url, args.page_url, comparison_days=args.days,
                                   drop_threshold=args.threshold)
    if args.command == "try":
        return await app.try_analysis(args.article_url, args.keywords, args.locale)
    if args.command == "scrape":
        return await app.scrape(args.url, args.render)
    if args.command == "check-notification":
        return await app.check_notification(args.site_url, args.page_url)
    raise ValueError(f"Unknown command: {args.command}")


async def main(args) -> int:
    """Run one CLI command against a fresh application"""
    app = AnalyzerApp()
    try:
        result = await run_command(args, app)
        print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
        return 0
    except AnalysisError as e:
        logger.error(f"Analysis failed: {e}")
        print(json.dumps(e.to_dict(), indent=2, ensure_ascii=False, default=str))
        return 2
    finally:
        await app.close()
