"""
LLM-backed semantic comparison of an article against its competitors
"""
import re
import json
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from config import config
from errors import SemanticAnalysisUnavailable
from models import (
    ArticleContent, KeywordSpecificAnalysis, RecommendedAddition, SemanticDiffResult, WhatToAdd,
)

logger = logging.getLogger(__name__)

GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
QWEN_URL = "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

PARAGRAPH_PREVIEW_CHARS = 200
CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


# Wire shape of the model's JSON answer

class _AdditionPayload(BaseModel):
    section: str = ""
    reason: str = ""
    content: str = ""
    competitor_urls: List[str] = Field(default_factory=list, alias="competitorUrls")


class _SemanticPayload(BaseModel):
    why_competitors_rank_higher: str = Field("", alias="whyCompetitorsRankHigher")
    missing_content: List[str] = Field(default_factory=list, alias="missingContent")
    recommended_additions: List[_AdditionPayload] = Field(default_factory=list, alias="recommendedAdditions")


class _WhatToAddPayload(BaseModel):
    item: str
    competitor_urls: List[str] = Field(default_factory=list, alias="competitorUrls")


class _KeywordPayload(BaseModel):
    keyword: str = ""
    why_ranking_dropped: str = Field("", alias="whyRankingDropped")
    what_to_add: List[_WhatToAddPayload] = Field(default_factory=list, alias="whatToAdd")


class _ResponsePayload(BaseModel):
    semantic_analysis: _SemanticPayload = Field(alias="semanticAnalysis")
    keyword_specific_analysis: List[_KeywordPayload] = Field(default_factory=list, alias="keywordSpecificAnalysis")


class LLMProvider(ABC):
    """Prompt in, completion text out"""

    name = "llm"

    def __init__(self, api_key: Optional[str], model: str, analyzer_config=None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.api_key = api_key
        self.model = model
        self.config = analyzer_config or config
        self._session = session
        self._owns_session = session is None

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.llm_timeout)
            )
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _post(self, url: str, body: dict, headers: dict) -> dict:
        try:
            async with self._get_session().post(url, json=body, headers=headers) as response:
                if response.status != 200:
                    detail = await response.text()
                    raise SemanticAnalysisUnavailable(
                        f"{self.name} API error {response.status}: {detail[:200]}", stage="semantic_analysis"
                    )
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SemanticAnalysisUnavailable(f"{self.name} request failed: {e}", stage="semantic_analysis") from e
        except ValueError as e:
            raise SemanticAnalysisUnavailable(f"{self.name} returned invalid JSON", stage="semantic_analysis") from e

    @abstractmethod
    async def complete(self, system_prompt: str, prompt: str) -> str:
        """Return the raw completion text"""


class OpenAICompatibleProvider(LLMProvider):
    """Chat completions endpoint shared by Groq and OpenRouter"""

    def __init__(self, name: str, url: str, api_key: Optional[str], model: str,
                 analyzer_config=None, session: Optional[aiohttp.ClientSession] = None,
                 extra_headers: Optional[dict] = None, json_mode: bool = True):
        super().__init__(api_key, model, analyzer_config, session)
        self.name = name
        self.url = url
        self.extra_headers = extra_headers or {}
        self.json_mode = json_mode

    async def complete(self, system_prompt: str, prompt: str) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.config.llm_temperature,
            "max_tokens": self.config.llm_max_tokens,
        }
        if self.json_mode:
            body["response_format"] = {"type": "json_object"}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        headers.update(self.extra_headers)

        data = await self._post(self.url, body, headers)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (AttributeError, KeyError, IndexError, TypeError) as e:
            raise SemanticAnalysisUnavailable(f"Unexpected {self.name} response shape", stage="semantic_analysis") from e


class QwenProvider(LLMProvider):
    name = "qwen"

    async def complete(self, system_prompt: str, prompt: str) -> str:
        body = {
            "model": self.model,
            "input": {
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ]
            },
            "parameters": {"temperature": self.config.llm_temperature, "result_format": "message"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        data = await self._post(QWEN_URL, body, headers)
        try:
            return data["output"]["choices"][0]["message"]["content"] or ""
        except (AttributeError, KeyError, IndexError, TypeError) as e:
            raise SemanticAnalysisUnavailable("Unexpected qwen response shape", stage="semantic_analysis") from e


class GeminiProvider(LLMProvider):
    name = "gemini"

    async def complete(self, system_prompt: str, prompt: str) -> str:
        body = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.config.llm_temperature,
                "maxOutputTokens": self.config.llm_max_tokens,
                "responseMimeType": "application/json",
            },
        }
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        data = await self._post(GEMINI_URL.format(model=self.model), body, headers)
        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        except (AttributeError, KeyError, IndexError, TypeError) as e:
            raise SemanticAnalysisUnavailable("Unexpected gemini response shape", stage="semantic_analysis") from e


def create_provider(name: Optional[str] = None, analyzer_config=None,
                    session: Optional[aiohttp.ClientSession] = None) -> LLMProvider:
    """Build the provider named in configuration (groq, openrouter, qwen or gemini)"""
    cfg = analyzer_config or config
    name = (name or cfg.llm_provider or "groq").lower()
    if name == "groq":
        return OpenAICompatibleProvider("groq", GROQ_URL, cfg.groq_api_key, cfg.groq_model, cfg, session)
    if name == "openrouter":
        return OpenAICompatibleProvider(
            "openrouter", OPENROUTER_URL, cfg.openrouter_api_key, cfg.openrouter_model, cfg, session,
            extra_headers={"X-Title": "Rank Drop Analyzer"},
        )
    if name == "qwen":
        return QwenProvider(cfg.qwen_api_key, cfg.qwen_model, cfg, session)
    if name == "gemini":
        return GeminiProvider(cfg.gemini_api_key, cfg.gemini_model, cfg, session)
    raise ValueError(f"Unknown LLM provider: {name}")


def _describe_article(article: ArticleContent, paragraphs: int, english: bool) -> str:
    headings = "\n".join(f"  H{h.level}: {h.text}" for h in article.headings)
    previews = "\n\n".join(f"  {p[:PARAGRAPH_PREVIEW_CHARS]}..." for p in article.paragraphs[:paragraphs])
    if english:
        return (
            f"- URL: {article.url}\n- Title: {article.title}\n- Word Count: {article.word_count}\n"
            f"- Heading Structure:\n{headings}\n- Main Paragraphs (first {paragraphs}):\n{previews}"
        )
    return (
        f"- URL: {article.url}\n- タイトル: {article.title}\n- 文字数: {article.word_count}\n"
        f"- 見出し構造:\n{headings}\n- 主要な段落（最初の{paragraphs}つ）:\n{previews}"
    )


OUTPUT_FORMAT = """{
  "semanticAnalysis": {
    "whyCompetitorsRankHigher": "...",
    "missingContent": ["..."],
    "recommendedAdditions": [
      {"section": "...", "reason": "...", "content": "...", "competitorUrls": ["..."]}
    ]
  },
  "keywordSpecificAnalysis": [
    {"keyword": "%s", "whyRankingDropped": "...", "whatToAdd": [{"item": "...", "competitorUrls": ["..."]}]}
  ]
}"""


def build_prompt(keyword: str, own_article: ArticleContent,
                 competitor_articles: List[ArticleContent], locale: str = "ja") -> str:
    english = locale == "en"
    competitors = "\n\n".join(
        (f"Competitor Article {i}:\n" if english else f"競合記事{i}:\n") + _describe_article(c, 3, english)
        for i, c in enumerate(competitor_articles, 1)
    )
    output_format = OUTPUT_FORMAT % keyword

    if english:
        return (
            f'You are an SEO content analysis expert. Compare our article with competitor articles '
            f'for the search keyword "{keyword}".\n\n'
            f"## Our Article\n{_describe_article(own_article, 5, True)}\n\n"
            f"## Competitor Articles (Top {len(competitor_articles)} sites)\n{competitors}\n\n"
            "## Analysis Tasks\n"
            f'1. Explain why the competitor articles rank higher for "{keyword}" (2-3 sentences).\n'
            "2. List specific content missing from our article.\n"
            "3. Recommend sections to add, with the URLs of competitor articles that contain them "
            "(empty array when none apply).\n"
            "Only reflect content that actually appears in the competitor articles; do not invent formats.\n\n"
            f"## Output Format (JSON)\n{output_format}"
        )
    return (
        f"あなたはSEOコンテンツ分析の専門家です。検索キーワード「{keyword}」で、自社記事と競合記事を比較分析してください。\n\n"
        f"## 自社記事\n{_describe_article(own_article, 5, False)}\n\n"
        f"## 競合記事（上位{len(competitor_articles)}サイト）\n{competitors}\n\n"
        "## 分析タスク\n"
        f"1. 検索キーワード「{keyword}」で競合記事が上位にある理由を2-3文で説明してください。\n"
        "2. 自社記事に不足している内容を具体的に挙げてください。\n"
        "3. 追加すべきセクションを、その内容が記載されている競合記事のURLとともに提示してください（該当なしは空配列）。\n"
        "競合記事に実際に記載されている内容のみを反映し、形式を推測しないでください。\n\n"
        f"## 出力形式（JSON）\n{output_format}"
    )


def extract_json_text(text: str) -> str:
    """Strip a markdown code fence around the JSON answer if present"""
    match = CODE_FENCE.search(text or "")
    return match.group(1) if match else (text or "").strip()


def parse_semantic_response(text: str, keyword: str) -> Optional[SemanticDiffResult]:
    """Turn model output into a result; None when it holds nothing usable.

    Raises ``ValueError`` (including pydantic ``ValidationError``) on malformed JSON.
    """
    payload = _ResponsePayload.model_validate(json.loads(extract_json_text(text)))
    semantic = payload.semantic_analysis
    if not semantic.why_competitors_rank_higher and not semantic.recommended_additions \
            and not semantic.missing_content:
        return None

    keyword_analyses = [
        KeywordSpecificAnalysis(
            keyword=item.keyword or keyword,
            why_ranking_dropped=item.why_ranking_dropped,
            what_to_add=[WhatToAdd(item=w.item, competitor_urls=list(w.competitor_urls)) for w in item.what_to_add],
        )
        for item in payload.keyword_specific_analysis
    ]
    return SemanticDiffResult(
        why_competitors_rank_higher=semantic.why_competitors_rank_higher,
        missing_content=list(semantic.missing_content),
        recommended_additions=[
            RecommendedAddition(
                section=a.section, reason=a.reason, content=a.content, competitor_urls=list(a.competitor_urls)
            )
            for a in semantic.recommended_additions
        ],
        keyword_specific_analysis=keyword_analyses,
    )


class LLMDiffAnalyzer:
    """Best-effort semantic diff.

    ``analyze_semantic_diff`` returns ``None`` whenever the provider fails,
    times out or answers with something that cannot be used.
    """

    def __init__(self, provider: Optional[LLMProvider] = None, analyzer_config=None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.config = analyzer_config or config
        self.provider = provider or create_provider(analyzer_config=self.config, session=session)

    def is_available(self) -> bool:
        return self.provider.is_available()

    async def close(self):
        await self.provider.close()

    async def analyze_semantic_diff(self, keyword: str, own_article: ArticleContent,
                                    competitor_articles: List[ArticleContent],
                                    locale: Optional[str] = None) -> Optional[SemanticDiffResult]:
        if not competitor_articles:
            logger.info(f"No competitor articles for '{keyword}', skipping semantic analysis")
            return None
        if not self.is_available():
            logger.warning(f"LLM provider {self.provider.name} is not configured")
            return None

        locale = locale or self.config.locale
        language = "Respond in English." if locale == "en" else "日本語で回答してください。"
        system_prompt = f"You are an SEO content analysis expert. {language} Always respond in valid JSON format."
        prompt = build_prompt(keyword, own_article, competitor_articles, locale)

        try:
            text = await asyncio.wait_for(
                self.provider.complete(system_prompt, prompt), timeout=self.config.llm_timeout
            )
            result = parse_semantic_response(text, keyword)
        except SemanticAnalysisUnavailable as e:
            logger.warning(f"Semantic analysis unavailable for '{keyword}': {e}")
            return None
        except asyncio.TimeoutError:
            logger.warning(f"Semantic analysis timed out for '{keyword}'")
            return None
        except (ValueError, ValidationError) as e:
            logger.warning(f"Unparseable semantic analysis for '{keyword}': {e}")
            return None

        if result is None:
            logger.info(f"Semantic analysis for '{keyword}' returned no insight")
        return result
