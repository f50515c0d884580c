"""
Tests for the three-step analysis pipeline and the quick keyword check
"""
import itertools
from datetime import timedelta
import pytest
from unittest.mock import AsyncMock, MagicMock

from competitor_resolver import CompetitorResolver
from conftest import (
    TODAY, FakeRankClient, FakeSearchProvider, keyword_metric, make_article, make_points, search_results
)
from errors import DataUnavailable, PipelineTimeout, ProviderError, ScrapeFailed, SearchUnavailable, StepContractError
from models import (
    CompetitorResultSet, KeywordSpecificAnalysis, PrioritizedKeyword, SemanticDiffResult, TimeSeriesPoint
)
from pipeline import (
    Deadline, PipelineOrchestrator, Step1Result, Step2Result, build_keyword_time_series,
    combine_semantic_results, select_competitors_above, select_scrape_targets
)

SITE = "https://example.com/"
PAGE = "/guide"
OWN_URL = "https://example.com/guide"

BASE = [5, 6, 5, 6, 5, 6, 5.5]
CURRENT = [8, 8, 8, 8, 8, 8, 9.4]


def make_scraper(articles, failures=None):
    """Scraper stand-in serving parsed articles by URL"""
    failures = failures or {}

    async def scrape(url, use_browser_render=False):
        if url in failures:
            raise ScrapeFailed(url, failures[url])
        return articles[url]

    scraper = MagicMock()
    scraper.scrape_article = AsyncMock(side_effect=scrape)
    return scraper


def make_llm(result=None):
    llm = MagicMock()
    llm.analyze_semantic_diff = AsyncMock(return_value=result)
    return llm


def semantic_result(keyword):
    return SemanticDiffResult(
        why_competitors_rank_higher=f"Competitors cover more for {keyword}.",
        missing_content=["Water temperature guidance"],
        keyword_specific_analysis=[KeywordSpecificAnalysis(keyword=keyword, why_ranking_dropped="Thin coverage")],
    )


def step1_result():
    return Step1Result(
        site_url=SITE,
        page_url=PAGE,
        prioritized_keywords=[
            PrioritizedKeyword("top", 10.0), PrioritizedKeyword("mid", 5.0), PrioritizedKeyword("absent", 1.0),
        ],
    )


def step2_result():
    return Step2Result(
        previous=step1_result(),
        competitor_results=[
            CompetitorResultSet(
                keyword="mid",
                competitors=search_results(
                    "https://rival-one.com/coffee", "https://rival-two.com/brew", "https://rival-three.com/x",
                ),
                own_position=4,
            ),
            CompetitorResultSet(keyword="top", own_position=1),
        ],
        unique_competitor_urls=[
            "https://rival-one.com/coffee", "https://rival-two.com/brew", "https://rival-three.com/x",
        ],
    )


def serp(keyword):
    return {
        "top": search_results(OWN_URL, "https://rival-one.com/coffee"),
        "mid": search_results("https://rival-one.com/coffee", "https://rival-two.com/brew",
                              OWN_URL, "https://rival-three.com/x"),
        "absent": search_results("https://rival-two.com/brew", "https://rival-three.com/x"),
    }[keyword]


@pytest.fixture
def build(test_config, no_sleep):
    def factory(rank_client=None, api=None, scraper=None, llm=None, quick=None):
        api = api or FakeSearchProvider("serper", results=serp)
        resolver = CompetitorResolver(api_provider=api, browser_provider=FakeSearchProvider("browser"),
                                      analyzer_config=test_config, sleep_fn=no_sleep)
        return PipelineOrchestrator(
            rank_client=rank_client or FakeRankClient(),
            resolver=resolver,
            scraper=scraper or make_scraper({}),
            llm_analyzer=llm,
            quick_search_provider=quick,
            analyzer_config=test_config,
            today=TODAY,
        )
    return factory


@pytest.fixture
def articles(own_article, competitor_articles):
    return {
        OWN_URL: own_article,
        "https://rival-one.com/coffee": competitor_articles[0],
        "https://rival-two.com/brew": competitor_articles[1],
    }


class TestDeadline:
    """Tests for the execution time budget"""

    def test_unlimited_never_raises(self):
        Deadline.unlimited().check("step1", 0)

    def test_raises_inside_safety_margin(self):
        now = [0.0]
        deadline = Deadline(10.0, safety_margin=5.0, clock=lambda: now[0])
        deadline.check("step1", 0)

        now[0] = 6.0
        with pytest.raises(PipelineTimeout) as exc_info:
            deadline.check("step2", 1)
        assert exc_info.value.retry_from_step == 2
        assert exc_info.value.context["last_completed_step"] == 1


class TestHelpers:
    """Tests for pure pipeline helpers"""

    def test_keyword_series_freshness(self):
        series = build_keyword_time_series({
            "fresh": make_points([4, 4, 5]),
            "stale": make_points([4, 4], end=TODAY - timedelta(days=6)),
            "gone": [TimeSeriesPoint("2024-06-20", 0.0, 0, 0)],
        }, TODAY)
        by_keyword = {item.keyword: item for item in series}

        assert by_keyword["fresh"].has_recent_drop is False
        assert by_keyword["fresh"].days_since_last_data == 2
        assert by_keyword["fresh"].last_position == 5
        assert by_keyword["stale"].has_recent_drop is True
        assert by_keyword["gone"].has_recent_drop is True
        assert by_keyword["gone"].last_data_date is None

    @pytest.mark.parametrize("own_position,expected", [
        (1, []),
        (3, ["https://a.com", "https://b.com"]),
        (None, ["https://a.com", "https://b.com", "https://c.com", "https://d.com"]),
    ])
    def test_select_competitors_above(self, own_position, expected):
        result_set = CompetitorResultSet(
            keyword="k",
            competitors=search_results("https://a.com", "https://b.com", "https://c.com", "https://d.com"),
            own_position=own_position,
        )
        assert [c.url for c in select_competitors_above(result_set).competitors] == expected

    def test_combine_semantic_results(self):
        combined = combine_semantic_results([semantic_result("a"), None, semantic_result("b")])
        assert combined.missing_content == ["Water temperature guidance"]
        assert [k.keyword for k in combined.keyword_specific_analysis] == ["a", "b"]
        assert "for a." in combined.why_competitors_rank_higher
        assert combine_semantic_results([None, None]) is None

    def test_scrape_targets_per_keyword(self):
        result_sets = [
            CompetitorResultSet(keyword="a", competitors=search_results(
                "https://shared.com/post", "https://a1.com", "https://a2.com", "https://a3.com")),
            CompetitorResultSet(keyword="b", competitors=search_results(
                "http://www.shared.com/post/", "https://b1.com")),
            CompetitorResultSet(keyword="c"),
        ]
        assert select_scrape_targets(result_sets, 3) == [
            "https://shared.com/post", "https://a1.com", "https://a2.com", "https://b1.com",
        ]
        assert select_scrape_targets(result_sets, 0) == []


class TestStep1:
    """Tests for keyword selection"""

    @pytest.mark.asyncio
    async def test_dropped_keywords_merged_with_demand(self, build):
        client = FakeRankClient(
            points=make_points(BASE + CURRENT),
            metric_responses=[
                [keyword_metric("coffee beans", 400, 15), keyword_metric("grinder", 50, 4)],
                [keyword_metric("coffee beans", 400, 6), keyword_metric("grinder", 50, 4)],
                [keyword_metric("coffee beans", 300, 9), keyword_metric("grinder", 200, 4),
                 keyword_metric("kettle", 10, 3)],
            ],
            keyword_series={"grinder": make_points([4, 4, 4])},
        )
        result = await build(rank_client=client).step1({"site_url": SITE, "page_url": PAGE})

        assert result.step == 1
        assert result.rank_drop.has_drop is True
        assert result.rank_drop.drop_amount == pytest.approx(2.7)
        assert [k.keyword for k in result.prioritized_keywords] == ["coffee beans", "grinder", "kettle"]
        assert result.prioritized_keywords[0].priority == pytest.approx(240.0)
        series = {s.keyword: s for s in result.keyword_time_series}
        assert series["grinder"].has_recent_drop is False
        assert series["coffee beans"].has_recent_drop is True
        assert [m.keyword for m in result.top_ranking_keywords] == ["grinder", "kettle"]

    @pytest.mark.asyncio
    async def test_manual_selection(self, build):
        client = FakeRankClient(default_metrics=[keyword_metric("kettle", 80, 3)])
        result = await build(rank_client=client).step1({
            "site_url": SITE, "page_url": PAGE, "detect_drop": False,
            "selected_keywords": ["kettle", "new phrase"],
        })
        assert [k.keyword for k in result.prioritized_keywords] == ["kettle", "new phrase"]
        assert result.prioritized_keywords[0].impressions == 80
        assert result.rank_drop is None

    @pytest.mark.asyncio
    async def test_detection_failure_is_recorded(self, build):
        client = FakeRankClient(error=DataUnavailable("quota exceeded", stage="gsc"),
                                default_metrics=[keyword_metric("kettle", 80, 3)])
        result = await build(rank_client=client).step1({"site_url": SITE, "page_url": PAGE})

        assert result.rank_drop is None
        assert result.rank_drop_error == "quota exceeded"
        assert [k.keyword for k in result.prioritized_keywords] == ["kettle"]

    @pytest.mark.asyncio
    async def test_no_keywords_raises(self, build):
        with pytest.raises(DataUnavailable):
            await build().step1({"site_url": SITE, "page_url": PAGE, "detect_drop": False})

    @pytest.mark.asyncio
    async def test_metrics_failure_propagates(self, build):
        client = FakeRankClient(metrics_error=DataUnavailable("HTTP 401", stage="gsc"))
        with pytest.raises(DataUnavailable):
            await build(rank_client=client).step1({"site_url": SITE, "page_url": PAGE, "detect_drop": False})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"page_url": PAGE},
        {"site_url": SITE, "page_url": PAGE, "max_keywords": 50},
        {"site_url": SITE, "page_url": PAGE, "unexpected": True},
    ])
    async def test_invalid_payload(self, build, payload):
        with pytest.raises(StepContractError):
            await build().step1(payload)


class TestStep2:
    """Tests for competitor discovery"""

    @pytest.mark.asyncio
    async def test_only_competitors_above_own_rank(self, build):
        result = await build().step2({"previous": step1_result(), "locale": "en"})
        by_keyword = {r.keyword: r for r in result.competitor_results}

        assert result.step == 2
        assert by_keyword["top"].own_position == 1
        assert by_keyword["top"].competitors == []
        assert [c.url for c in by_keyword["mid"].competitors] == [
            "https://rival-one.com/coffee", "https://rival-two.com/brew",
        ]
        assert by_keyword["absent"].own_position is None
        assert len(by_keyword["absent"].competitors) == 2
        assert result.unique_competitor_urls == [
            "https://rival-one.com/coffee", "https://rival-two.com/brew", "https://rival-three.com/x",
        ]

    @pytest.mark.asyncio
    async def test_resumes_from_serialized_step1(self, build):
        stored = step1_result().model_dump(mode="json")
        result = await build().step2({"previous": stored})
        assert result.previous.prioritized_keywords[1].keyword == "mid"

    @pytest.mark.asyncio
    async def test_wrong_step_rejected(self, build):
        stale = step2_result().model_dump(mode="json")
        with pytest.raises(StepContractError):
            await build().step2({"previous": stale})

    @pytest.mark.asyncio
    async def test_deadline_stops_between_keywords(self, build):
        api = FakeSearchProvider("serper", results=serp)
        ticks = itertools.chain([0.0, 0.0, 0.0], itertools.repeat(100.0))
        deadline = Deadline(60.0, safety_margin=5.0, clock=lambda: next(ticks))

        with pytest.raises(PipelineTimeout) as exc_info:
            await build(api=api).step2({"previous": step1_result()}, deadline)

        assert exc_info.value.retry_from_step == 2
        assert exc_info.value.stage == "step2:mid"
        assert api.calls == ["top"]

    @pytest.mark.asyncio
    async def test_unset_options_follow_config(self, build, test_config):
        test_config.prefer_serper_api = False
        test_config.max_competitors = 1
        api = FakeSearchProvider("serper", results=serp)
        browser_results = search_results("https://rival-one.com/coffee", "https://rival-two.com/brew")

        orchestrator = build(api=api)
        orchestrator.resolver.browser_provider = FakeSearchProvider("browser", results=browser_results)
        result = await orchestrator.step2({"previous": step1_result()})

        assert api.calls == []
        assert {r.provider for r in result.competitor_results} == {"browser"}
        assert all(r.total_results == 1 for r in result.competitor_results)


class TestStep3:
    """Tests for scraping and content comparison"""

    @pytest.mark.asyncio
    async def test_full_analysis(self, build, articles):
        scraper = make_scraper(articles, failures={"https://rival-three.com/x": "HTTP 404"})
        llm = make_llm(semantic_result("mid"))
        orchestrator = build(scraper=scraper, llm=llm)

        result = await orchestrator.step3({"previous": step2_result(), "locale": "en"})

        assert result.step == 3
        assert result.own_url == OWN_URL
        assert result.own_article.url == OWN_URL
        assert [a.url for a in result.competitor_articles] == [
            "https://rival-one.com/coffee", "https://rival-two.com/brew",
        ]
        assert result.failed_competitor_urls == {"https://rival-three.com/x": "HTTP 404"}
        assert result.diff.missing_headings[0].heading == "Water temperature"
        assert result.aiseo.missing_elements[0].element == "Tables"
        assert result.semantic_analysis is not None
        assert [k.keyword for k in result.keyword_specific_analysis] == ["mid"]

        completeness = result.completeness
        assert completeness.competitors_attempted == 3
        assert completeness.competitors_scraped == 2
        assert completeness.keywords_analyzed == 1
        assert completeness.keywords_without_competitors == ["top"]
        assert completeness.semantic_available is True

        keyword, own, competitors, locale = llm.analyze_semantic_diff.await_args.args
        assert keyword == "mid" and locale == "en"
        assert len(competitors) == 2

    @pytest.mark.asyncio
    async def test_each_keyword_compared_with_its_own_competitors(self, build, own_article):
        keywords = ["k1", "k2", "k3"]
        result_sets = [
            CompetitorResultSet(
                keyword=keyword,
                competitors=search_results(*[f"https://{keyword}-rival{i}.com/post" for i in range(1, 5)]),
            )
            for keyword in keywords
        ]
        previous = Step2Result(
            previous=Step1Result(
                site_url=SITE, page_url=PAGE,
                prioritized_keywords=[PrioritizedKeyword(keyword, 1.0) for keyword in keywords],
            ),
            competitor_results=result_sets,
            unique_competitor_urls=[c.url for r in result_sets for c in r.competitors],
        )
        pages = {OWN_URL: own_article}
        for result_set in result_sets:
            for competitor in result_set.competitors:
                pages[competitor.url] = make_article(competitor.url, title=f"Guide from {competitor.url}")
        scraper = make_scraper(pages)
        llm = MagicMock()
        llm.analyze_semantic_diff = AsyncMock(
            side_effect=lambda keyword, own, competitors, locale: semantic_result(keyword))

        result = await build(scraper=scraper, llm=llm).step3({"previous": previous})

        assert scraper.scrape_article.await_count == 1 + 9
        assert result.completeness.competitors_attempted == 9
        assert result.completeness.keywords_analyzed == 3
        assert result.completeness.keywords_without_competitors == []
        assert [k.keyword for k in result.keyword_specific_analysis] == keywords

        compared = {call.args[0]: [a.url for a in call.args[2]] for call in llm.analyze_semantic_diff.await_args_list}
        for keyword in keywords:
            assert compared[keyword] == [f"https://{keyword}-rival{i}.com/post" for i in range(1, 4)]

    @pytest.mark.asyncio
    async def test_scrape_limit(self, build, articles):
        scraper = make_scraper(articles)
        result = await build(scraper=scraper).step3(
            {"previous": step2_result(), "max_competitors_to_scrape": 1, "skip_llm": True})
        assert result.completeness.competitors_attempted == 1
        assert scraper.scrape_article.await_count == 2

    @pytest.mark.asyncio
    async def test_own_scrape_failure_gives_partial_result(self, build, articles):
        scraper = make_scraper(articles, failures={OWN_URL: "HTTP 500", "https://rival-three.com/x": "HTTP 404"})
        llm = make_llm(semantic_result("mid"))

        result = await build(scraper=scraper, llm=llm).step3({"previous": step2_result()})

        assert result.own_article is None
        assert result.own_article_error == "HTTP 500"
        assert result.diff is None
        assert len(result.competitor_articles) == 2
        llm.analyze_semantic_diff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skip_llm(self, build, articles):
        llm = make_llm(semantic_result("mid"))
        result = await build(scraper=make_scraper(articles), llm=llm).step3(
            {"previous": step2_result(), "max_competitors_to_scrape": 2, "skip_llm": True})

        assert result.diff is not None
        assert result.semantic_analysis is None
        assert result.completeness.semantic_requested is False
        llm.analyze_semantic_diff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_semantic_unavailable(self, build, articles):
        result = await build(scraper=make_scraper(articles), llm=make_llm(None)).step3(
            {"previous": step2_result(), "max_competitors_to_scrape": 2})

        assert result.semantic_analysis is None
        assert result.keyword_specific_analysis == []
        assert result.completeness.semantic_requested is True
        assert result.completeness.semantic_available is False

    @pytest.mark.asyncio
    async def test_step1_result_rejected(self, build):
        with pytest.raises(StepContractError):
            await build().step3({"previous": step1_result()})

    @pytest.mark.asyncio
    async def test_exhausted_deadline(self, build):
        deadline = Deadline(1.0, safety_margin=5.0)
        with pytest.raises(PipelineTimeout) as exc_info:
            await build().step3({"previous": step2_result()}, deadline)
        assert exc_info.value.retry_from_step == 3


class TestRunAll:
    """Tests for running every step in one invocation"""

    @pytest.mark.asyncio
    async def test_end_to_end(self, build, articles):
        client = FakeRankClient(default_metrics=[keyword_metric("mid", 300, 4)])
        orchestrator = build(rank_client=client, scraper=make_scraper(articles))

        result = await orchestrator.run_all(
            {"site_url": SITE, "page_url": PAGE, "detect_drop": False},
            step2_options={"locale": "en"},
            step3_options={"skip_llm": True, "max_competitors_to_scrape": 2},
        )

        assert result.step == 3
        assert [k.keyword for k in result.prioritized_keywords] == ["mid"]
        assert result.unique_competitor_urls == ["https://rival-one.com/coffee", "https://rival-two.com/brew"]
        assert len(result.competitor_articles) == 2
        assert set(orchestrator.monitor.get_metrics()) >= {"step1", "step2", "step3"}


class TestTryAnalysis:
    """Tests for the quick unauthenticated keyword check"""

    @pytest.mark.asyncio
    async def test_positions_and_hint(self, build, articles):
        quick = FakeSearchProvider(
            "serper",
            results=lambda keyword: search_results("https://rival-one.com/coffee", OWN_URL),
            failures=[None, ProviderError("HTTP 503")],
        )
        orchestrator = build(scraper=make_scraper(articles), quick=quick)

        result = await orchestrator.try_analysis(OWN_URL, "coffee, tea, ,", locale="en")

        assert [(k.keyword, k.status) for k in result.keywords] == [
            ("coffee", "position 2"), ("tea", "search failed"),
        ]
        assert result.keywords[0].top_competitor_url == "https://rival-one.com/coffee"
        assert result.keywords[1].error == "HTTP 503"
        assert result.hint.startswith("Add headings")

    @pytest.mark.asyncio
    async def test_not_ranked_and_keyword_cap(self, build):
        quick = FakeSearchProvider("serper", results=search_results("https://rival-one.com/coffee"))
        scraper = make_scraper({}, failures={OWN_URL: "HTTP 404", "https://rival-one.com/coffee": "HTTP 404"})
        orchestrator = build(scraper=scraper, quick=quick)

        result = await orchestrator.try_analysis(OWN_URL, [f"kw{i}" for i in range(8)])

        assert len(quick.calls) == 5
        assert result.keywords[0].status == "not in top 20"
        assert result.keywords[0].own_position is None
        assert result.hint is None

    @pytest.mark.asyncio
    async def test_requires_keywords(self, build):
        quick = FakeSearchProvider("serper")
        with pytest.raises(ValueError):
            await build(quick=quick).try_analysis(OWN_URL, " , ")

    @pytest.mark.asyncio
    async def test_requires_article_url(self, build):
        quick = FakeSearchProvider("serper")
        with pytest.raises(ValueError):
            await build(quick=quick).try_analysis("example.com/guide", "coffee")
        assert quick.calls == []

    @pytest.mark.asyncio
    async def test_requires_search_api(self, build):
        with pytest.raises(SearchUnavailable):
            await build().try_analysis(OWN_URL, "coffee")
        with pytest.raises(SearchUnavailable):
            await build(quick=FakeSearchProvider("serper", available=False)).try_analysis(OWN_URL, "coffee")
