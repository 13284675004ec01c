from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from .config import ANALYSIS_JOBSEEKER_KEYWORDS, ANALYSIS_SENTIMENT_PREFIX
from .models import AnalysisResult
from .storage import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_JOBSEEKER_KEYWORDS = [
    "أبحث عن عمل",
    "باحث عن وظيفة",
    "متوفر للعمل",
    "أرسل السيرة الذاتية",
    "أريد وظيفة",
    "looking for job",
    "looking for a job",
    "available for work",
    "send cv",
    "interested",
    "مهتم",
    "متاح",
]

DEFAULT_SENTIMENT_KEYWORDS: dict[str, list[str]] = {
    "positive": ["ممتاز", "رائع", "مهتم", "شكرا", "interested", "great", "excellent"],
    "negative": ["سيء", "صعب", "مستحيل", "bad", "difficult", "impossible"],
    "neutral": ["أرسل", "معلومات", "تفاصيل", "send", "details", "information"],
}

STOP_WORDS = frozenset(
    {
        "في", "من", "إلى", "على", "عن", "مع", "هذا", "هذه", "انا", "أنا", "انت", "أنت",
        "the", "and", "for", "with", "from", "about", "you", "your", "this", "that",
        "are", "was", "were", "been", "but", "then", "these", "those", "please",
        "thanks", "thank", "info", "details",
    }
)


class CommentAnalyzer(Protocol):
    def analyze(self, content: str) -> AnalysisResult: ...


@dataclass
class KeywordSet:
    job_seeker: list[str] = field(default_factory=lambda: list(DEFAULT_JOBSEEKER_KEYWORDS))
    sentiment: dict[str, list[str]] = field(
        default_factory=lambda: {key: list(value) for key, value in DEFAULT_SENTIMENT_KEYWORDS.items()}
    )


class KeywordCommentAnalyzer:
    """Keyword heuristics for job-seeker detection and sentiment.

    Keyword lists are JSON arrays stored in settings so operators can tune them
    without a deploy; missing or malformed values fall back to the defaults.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def analyze(self, content: str) -> AnalysisResult:
        keywords = self.load_keywords()
        normalized = content.lower().strip()
        matched = [kw for kw in keywords.job_seeker if kw.lower() in normalized]
        is_job_seeker = bool(matched)
        sentiment = _score_sentiment(normalized, keywords.sentiment)
        return AnalysisResult(
            is_job_seeker=is_job_seeker,
            sentiment=sentiment,
            keywords=_extract_keywords(normalized),
            confidence=_confidence(normalized, len(matched), sentiment),
        )

    def load_keywords(self) -> KeywordSet:
        keywords = KeywordSet()
        job_seeker = self._read_list(ANALYSIS_JOBSEEKER_KEYWORDS)
        if job_seeker is not None:
            keywords.job_seeker = job_seeker
        for sentiment in ("positive", "negative", "neutral"):
            values = self._read_list(f"{ANALYSIS_SENTIMENT_PREFIX}{sentiment}")
            if values is not None:
                keywords.sentiment[sentiment] = values
        return keywords

    def _read_list(self, key: str) -> list[str] | None:
        setting = self.store.get_setting(key)
        if setting is None or not setting.value:
            return None
        try:
            parsed = json.loads(setting.value)
        except json.JSONDecodeError:
            logger.warning("analysis_keywords event=invalid key=%s", key)
            return None
        if not isinstance(parsed, list):
            logger.warning("analysis_keywords event=invalid key=%s", key)
            return None
        return [str(item) for item in parsed]


def _score_sentiment(content: str, sentiment_keywords: dict[str, list[str]]) -> str:
    best, best_score = "neutral", 0
    for sentiment, words in sentiment_keywords.items():
        score = 0
        for word in words:
            pattern = rf"(?<!\w){re.escape(word.lower())}(?!\w)"
            score += len(re.findall(pattern, content))
        if score > best_score:
            best, best_score = sentiment, score
    return best


def _extract_keywords(content: str) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for word in re.split(r"[\W_]+", content):
        if len(word) <= 2 or word.isdigit() or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        output.append(word)
    return output[:10]


def _confidence(content: str, match_count: int, sentiment: str) -> float:
    confidence = 0.5
    if match_count:
        confidence += min(match_count * 0.15, 0.3)
    if len(content) > 30:
        confidence += 0.1
    if len(content) > 100:
        confidence += 0.05
    if sentiment != "neutral":
        confidence += 0.1
    return round(min(confidence, 0.95), 2)
