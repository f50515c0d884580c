"""
AI search optimization checklist for article pages
"""
import re
import logging
from dataclasses import fields
from typing import List

from models import AISEOAnalysisResult, AISEOCheckResult, ArticleContent, MissingAISEOElement

logger = logging.getLogger(__name__)

FAQ_KEYWORDS = ['よくある質問', 'faq', 'frequently asked', 'q&a', 'q and a', '質問', '疑問']
SUMMARY_KEYWORDS = ['主なポイント', 'まとめ', '要約', 'summary', 'key points', 'key takeaways',
                    '要点', '結論', 'conclusion', 'サマリー', 'tl;dr']
SUMMARY_INTRO_MARKERS = ['本記事', 'この記事', 'まとめ', '要約', 'in this article', 'this article']
DATE_KEYWORDS = ['更新日', '最終更新', 'updated', 'last updated', '公開日', 'published', '投稿日', '作成日']
DATE_PATTERNS = [
    re.compile(r'\d{4}[-/年]\d{1,2}[-/月]\d{1,2}日?'),
    re.compile(r'\d{4}\.\d{1,2}\.\d{1,2}'),
]
AUTHOR_KEYWORDS = ['著者', 'author', '執筆者', 'written by', 'writer', '監修', 'supervised by', '編集者', 'editor']
DATA_KEYWORDS = ['調査', 'survey', 'データ', 'statistics', '統計', 'アンケート', 'study', 'according to']
DATA_PATTERNS = [
    re.compile(r'\d+\s?人'),
    re.compile(r'\d+\s?[件個]'),
    re.compile(r'\d+(\.\d+)?\s?[%％]'),
    re.compile(r'\d+\.\d+[KkMm]\b'),
    re.compile(r'\d+割'),
]
QUESTION_INDICATORS = ['?', '？', 'とは', 'どう', 'なぜ', '何', 'どの', 'いつ', 'どこ', '誰']
ENGLISH_QUESTION_WORDS = ('what', 'why', 'how', 'when', 'where', 'who', 'which', 'can', 'is', 'are', 'does', 'do')
TABLE_KEYWORDS = ['比較表', '一覧表', 'comparison table']

# element key -> (name, description, recommendation)
CHECK_ITEMS = {
    'has_faq': (
        'FAQ section',
        'A section answering frequently asked questions',
        'Add an FAQ section that answers common reader questions directly.',
    ),
    'has_summary': (
        'Summary section',
        'A key points or summary block near the top',
        'Open the article with a key points summary so the answer is clear from the start.',
    ),
    'has_update_date': (
        'Update date',
        'A visible last-updated timestamp',
        'Show when the article was last updated to signal freshness.',
    ),
    'has_author_info': (
        'Author information',
        'A named author or expert reviewer',
        'Name the author or supervising expert to show expertise and trustworthiness.',
    ),
    'has_data_or_stats': (
        'Data and statistics',
        'Original data, surveys or statistics',
        'Cite survey results or statistics to make the content more original and credible.',
    ),
    'has_question_headings': (
        'Question headings',
        'Headings phrased as the questions searchers ask',
        'Phrase some headings as questions so sections map directly to search intent.',
    ),
    'has_bullet_points': (
        'Bullet points',
        'Lists that make the content easy to scan',
        'Organize key information into bullet lists that are easy to scan.',
    ),
    'has_tables': (
        'Tables',
        'Comparison or reference tables',
        'Use comparison tables or reference tables to present information visually.',
    ),
    'has_structured_data': (
        'Structured data',
        'JSON-LD structured data markup',
        'Add JSON-LD structured data so search engines can understand the content.',
    ),
}


def _contains_any(text: str, keywords: List[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _is_question(text: str) -> bool:
    if _contains_any(text, QUESTION_INDICATORS):
        return True
    first_word = text.strip().lower().split(" ", 1)[0] if text.strip() else ""
    return first_word in ENGLISH_QUESTION_WORDS


class AISEOAnalyzer:
    """Pattern-based checks; no network access"""

    def check_aiseo(self, article: ArticleContent) -> AISEOCheckResult:
        full_text = article.main_text.lower()
        headings_text = " ".join(h.text for h in article.headings).lower()
        question_headings = [h for h in article.headings if _is_question(h.text)]

        has_faq = (
            _contains_any(headings_text, FAQ_KEYWORDS)
            or _contains_any(full_text, FAQ_KEYWORDS)
            or len(question_headings) >= 3
        )

        first_paragraph = (article.paragraphs[0] if article.paragraphs else "").lower()
        has_summary = (
            _contains_any(headings_text, SUMMARY_KEYWORDS)
            or _contains_any(full_text, SUMMARY_KEYWORDS)
            or (len(first_paragraph) < 300 and _contains_any(first_paragraph, SUMMARY_INTRO_MARKERS))
        )

        has_update_date = (
            article.has_update_date
            or _contains_any(full_text, DATE_KEYWORDS)
            or any(pattern.search(full_text) for pattern in DATE_PATTERNS)
        )

        has_author_info = article.has_author_info or _contains_any(full_text, AUTHOR_KEYWORDS)

        has_data_or_stats = (
            _contains_any(full_text, DATA_KEYWORDS)
            or any(pattern.search(full_text) for pattern in DATA_PATTERNS)
        )

        return AISEOCheckResult(
            has_faq=has_faq,
            has_summary=has_summary,
            has_update_date=has_update_date,
            has_author_info=has_author_info,
            has_data_or_stats=has_data_or_stats,
            has_structured_data=article.has_structured_data,
            has_question_headings=bool(question_headings),
            has_bullet_points=article.has_bullet_points or bool(article.lists),
            has_tables=article.has_tables or _contains_any(full_text, TABLE_KEYWORDS),
        )

    def analyze_aiseo(self, own_article: ArticleContent,
                      competitor_articles: List[ArticleContent]) -> AISEOAnalysisResult:
        """List signals competitors have that the own article lacks"""
        own_check = self.check_aiseo(own_article)
        competitor_checks = [self.check_aiseo(article) for article in competitor_articles]

        missing_elements = []
        for item in fields(AISEOCheckResult):
            key = item.name
            if getattr(own_check, key):
                continue
            found_in = sum(1 for check in competitor_checks if getattr(check, key))
            if found_in == 0:
                continue
            name, description, recommendation = CHECK_ITEMS[key]
            missing_elements.append(MissingAISEOElement(
                element=name,
                description=description,
                found_in=found_in,
                recommendation=recommendation,
            ))

        missing_elements.sort(key=lambda element: element.found_in, reverse=True)
        logger.debug(f"AI SEO check for {own_article.url}: {len(missing_elements)} missing elements")
        return AISEOAnalysisResult(
            own=own_check,
            competitors=competitor_checks,
            missing_elements=missing_elements,
            recommendations=[element.recommendation for element in missing_elements],
        )
