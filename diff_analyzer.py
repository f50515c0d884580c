"""
Deterministic structural comparison between an article and its competitors
"""
import re
import logging
from collections import Counter
from typing import Dict, List, Set

from models import ArticleContent, DiffResult, MissingHeading, MissingKeyword, WordCountDiff

logger = logging.getLogger(__name__)

MAX_MISSING_HEADINGS = 10
MAX_MISSING_KEYWORDS = 20
WORD_COUNT_GAP = 500

ENGLISH_WORD = re.compile(r"[a-z][a-z0-9\-]{2,}")
JAPANESE_WORD = re.compile(r"[\u30a0-\u30ff\u4e00-\u9faf]{2,10}")
STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had", "her", "was", "one",
    "our", "out", "has", "have", "this", "that", "with", "from", "they", "will", "your", "what",
    "when", "which", "their", "there", "about", "would", "these", "other", "into", "more", "some",
    "than", "then", "them", "also", "been", "were", "how", "its", "who", "may", "use", "such",
}

SIGNAL_LABELS = {
    "has_faq": "FAQ section",
    "has_tables": "tables",
    "has_update_date": "update date",
    "has_author_info": "author information",
    "has_structured_data": "structured data",
    "has_data_or_stats": "data or statistics",
    "has_question_headings": "question headings",
    "has_bullet_points": "bullet lists",
    "has_summary": "summary section",
}


def normalize_text(text: str) -> str:
    text = re.sub(r"\s+", " ", (text or "").lower())
    return re.sub(r"[^\w\s]", "", text).strip()


def extract_keywords(text: str) -> Counter:
    """Candidate terms with occurrence counts"""
    normalized = normalize_text(text)
    terms = Counter(word for word in ENGLISH_WORD.findall(normalized) if word not in STOPWORDS)
    terms.update(JAPANESE_WORD.findall(normalized))
    return terms


class DiffAnalyzer:
    """Rule-based diff; makes no external calls and never fails on valid input"""

    def analyze(self, own_article: ArticleContent, competitor_articles: List[ArticleContent]) -> DiffResult:
        if not competitor_articles:
            return DiffResult(
                own_url=own_article.url,
                word_count_diff=WordCountDiff(own=own_article.word_count, average=0, diff=0),
            )

        missing_headings = self.find_missing_headings(own_article, competitor_articles)
        missing_keywords = self.find_missing_keywords(own_article, competitor_articles)
        word_count_diff = self.word_count_diff(own_article, competitor_articles)
        heading_count_diff = round(
            sum(len(c.headings) for c in competitor_articles) / len(competitor_articles)
            - len(own_article.headings)
        )
        missing_signals = self.find_missing_signals(own_article, competitor_articles)

        result = DiffResult(
            own_url=own_article.url,
            competitor_urls=[c.url for c in competitor_articles],
            missing_headings=missing_headings,
            missing_keywords=missing_keywords,
            word_count_diff=word_count_diff,
            heading_count_diff=heading_count_diff,
            missing_signals=missing_signals,
        )
        result.recommendations = self.build_recommendations(result)
        logger.info(
            f"Diff for {own_article.url}: {len(missing_headings)} headings, "
            f"{len(missing_keywords)} keywords, word gap {word_count_diff.diff}"
        )
        return result

    def find_missing_headings(self, own_article: ArticleContent,
                              competitor_articles: List[ArticleContent]) -> List[MissingHeading]:
        own_headings = {normalize_text(h.text) for h in own_article.headings}
        found: Dict[str, MissingHeading] = {}
        sources: Dict[str, Set[str]] = {}

        for competitor in competitor_articles:
            for heading in competitor.headings:
                key = normalize_text(heading.text)
                if not key or key in own_headings:
                    continue
                if key not in found:
                    found[key] = MissingHeading(heading=heading.text, level=heading.level, found_in=0)
                    sources[key] = set()
                sources[key].add(competitor.url)
                found[key].found_in = len(sources[key])

        ranked = sorted(found.values(), key=lambda heading: heading.found_in, reverse=True)
        return ranked[:MAX_MISSING_HEADINGS]

    def find_missing_keywords(self, own_article: ArticleContent,
                              competitor_articles: List[ArticleContent]) -> List[MissingKeyword]:
        own_terms = extract_keywords(own_article.main_text)
        frequency: Counter = Counter()
        found_in: Counter = Counter()

        for competitor in competitor_articles:
            for term, count in extract_keywords(competitor.main_text).items():
                if term in own_terms:
                    continue
                frequency[term] += count
                found_in[term] += 1

        ranked = sorted(frequency, key=lambda term: (found_in[term], frequency[term]), reverse=True)
        return [
            MissingKeyword(keyword=term, frequency=frequency[term], found_in=found_in[term])
            for term in ranked[:MAX_MISSING_KEYWORDS]
        ]

    @staticmethod
    def word_count_diff(own_article: ArticleContent, competitor_articles: List[ArticleContent]) -> WordCountDiff:
        average = sum(c.word_count for c in competitor_articles) / len(competitor_articles)
        return WordCountDiff(
            own=own_article.word_count,
            average=round(average),
            diff=round(average - own_article.word_count),
        )

    @staticmethod
    def find_missing_signals(own_article: ArticleContent,
                             competitor_articles: List[ArticleContent]) -> List[str]:
        return [
            signal for signal in SIGNAL_LABELS
            if not getattr(own_article, signal) and any(getattr(c, signal) for c in competitor_articles)
        ]

    @staticmethod
    def build_recommendations(result: DiffResult) -> List[str]:
        recommendations = []
        if result.missing_headings:
            headings = ", ".join(f'"{h.heading}"' for h in result.missing_headings[:5])
            recommendations.append(f"Add headings that competitors cover: {headings}")
        if result.missing_keywords:
            keywords = ", ".join(k.keyword for k in result.missing_keywords[:5])
            recommendations.append(f"Cover terms competitors use frequently: {keywords}")
        diff = result.word_count_diff
        if diff.diff > WORD_COUNT_GAP:
            recommendations.append(
                f"Expand the article (currently {diff.own} words, competitor average {diff.average}, gap {diff.diff})"
            )
        if result.heading_count_diff >= 3:
            recommendations.append(
                f"Break the content into more sections (competitors use about {result.heading_count_diff} more headings)"
            )
        if result.missing_signals:
            labels = ", ".join(SIGNAL_LABELS[s] for s in result.missing_signals)
            recommendations.append(f"Add structural elements competitors have: {labels}")
        return recommendations
