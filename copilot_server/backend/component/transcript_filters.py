"""Pure predicates that reject transcription noise and hallucinations."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Protocol, Sequence

QUESTION_TRIGGERS = (
    "what", "what's", "how", "why", "when", "who", "where", "explain",
    "define", "describe", "code", "write", "create", "compare", "difference",
    "solve", "fix", "debug", "optimize", "tell", "can", "could", "would",
    "is", "are", "do", "does", "did", "show", "list", "give", "solution",
    "which",
)

TECH_KEYWORDS = (
    "java", "python", "react", "node", "javascript", "sql", "nosql", "docker",
    "kubernetes", "aws", "azure", "spring", "api", "rest", "graphql", "redux",
    "html", "css", "algorithm", "structure", "system", "design", "database",
    "linux", "git", "agile", "scrum", "testing", "jest", "junit", "maven",
    "gradle", "jenkins", "devops", "cloud", "microservices", "frontend",
    "backend", "fullstack", "net", "c#", "cpp", "security", "performance",
    "scaling", "caching", "redis", "kafka", "mongodb", "postgres", "mysql",
    "oracle",
)

HALLUCINATION_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"^thank you\.?$", re.IGNORECASE),
    re.compile(r"^thanks\.?$", re.IGNORECASE),
    re.compile(r"^subtitles by", re.IGNORECASE),
    re.compile(r"^copyright", re.IGNORECASE),
    re.compile(r"^amara\.org", re.IGNORECASE),
    re.compile(r"^\. \.$"),
    re.compile(r"^you\.?$", re.IGNORECASE),
    re.compile(r"^bye\.?$", re.IGNORECASE),
    re.compile(r"^unintelligible", re.IGNORECASE),
    re.compile(r"^\[.*\]$"),
    re.compile(r"video nourishing", re.IGNORECASE),
    re.compile(r"driving devices", re.IGNORECASE),
    # Honorific followed by a garbled name.
    re.compile(r"^(mr|mrs|ms|dr|prof)\.?\s+\w", re.IGNORECASE),
    # "X? X?" echo.
    re.compile(r"^(.{8,})\?\s+\1\?$", re.IGNORECASE),
    re.compile(r"^\[?music\]?$", re.IGNORECASE),
    re.compile(r"^\[?applause\]?$", re.IGNORECASE),
    re.compile(r"^\[?laughter\]?$", re.IGNORECASE),
)

_TRAILING_PUNCT = re.compile(r"[.,!?;]$")
_PROPER_NOUN_SOUP = re.compile(r"^([A-Z][a-z]{3,}(\s+[A-Z][a-z]{3,}){0,4})$")
_QUESTION_RE = re.compile(
    r"^(" + "|".join(re.escape(word) for word in QUESTION_TRIGGERS) + r")\b",
    re.IGNORECASE,
)
_KEYWORD_RE = re.compile(
    r"^(" + "|".join(re.escape(word) for word in TECH_KEYWORDS) + r")\b",
    re.IGNORECASE,
)
# Words that mark Title Case text as ordinary English rather than name soup.
_COMMON_WORDS = frozenset(
    (
        "this", "that", "with", "from", "have", "what", "when", "where", "which",
        "there", "their", "about", "would", "could", "should", "tell", "explain",
        "please", "thank", "thanks", "hello", "good", "morning", "okay", "right",
        "yeah", "well", "just", "like", "some", "more", "your", "they", "them",
        "then", "than", "will", "were", "been", "into", "over", "also", "only",
    )
)


def normalize_for_match(text: str) -> str:
    """Trim whitespace and a single trailing punctuation mark."""
    return _TRAILING_PUNCT.sub("", text.strip())


class TranscriptFilter(Protocol):
    name: str

    def rejects(self, text: str) -> bool: ...


@dataclass(frozen=True)
class PatternFilter:
    """Rejects text matching any of a fixed set of artifact patterns."""

    patterns: Sequence[Pattern[str]] = HALLUCINATION_PATTERNS
    name: str = "hallucination"

    def rejects(self, text: str) -> bool:
        candidates = {text.strip(), normalize_for_match(text)}
        return any(
            pattern.search(candidate)
            for pattern in self.patterns
            for candidate in candidates
        )


@dataclass(frozen=True)
class ProperNounSoupFilter:
    """Rejects one to five Title Case words that contain no common English word."""

    name: str = "proper_noun_soup"

    def rejects(self, text: str) -> bool:
        candidate = normalize_for_match(text)
        if not _PROPER_NOUN_SOUP.match(candidate):
            return False
        if _KEYWORD_RE.match(candidate) or _QUESTION_RE.match(candidate):
            return False
        words = {word.lower() for word in candidate.split()}
        return not (words & _COMMON_WORDS)


@dataclass(frozen=True)
class MinimumContentFilter:
    """Rejects very short text unless it starts with a question word or keyword."""

    min_words: int = 2
    name: str = "too_short"

    def rejects(self, text: str) -> bool:
        candidate = normalize_for_match(text)
        if len(candidate.split()) >= self.min_words:
            return False
        if _QUESTION_RE.match(candidate) or _KEYWORD_RE.match(candidate):
            return False
        return True


class FilterChain:
    """Ordered set of filters; the first rejecting filter names the reason."""

    def __init__(self, filters: Optional[Iterable[TranscriptFilter]] = None) -> None:
        self._filters: List[TranscriptFilter] = list(
            filters if filters is not None else default_filters()
        )

    def add(self, transcript_filter: TranscriptFilter) -> None:
        self._filters.append(transcript_filter)

    @property
    def filters(self) -> List[TranscriptFilter]:
        return list(self._filters)

    def rejection_reason(self, text: str) -> Optional[str]:
        if not text or not text.strip():
            return "empty"
        for transcript_filter in self._filters:
            if transcript_filter.rejects(text):
                return transcript_filter.name
        return None

    def accepts(self, text: str) -> bool:
        return self.rejection_reason(text) is None


def default_filters(min_words: int = 2) -> List[TranscriptFilter]:
    return [
        MinimumContentFilter(min_words=min_words),
        PatternFilter(),
        ProperNounSoupFilter(),
    ]


__all__ = [
    "FilterChain",
    "HALLUCINATION_PATTERNS",
    "MinimumContentFilter",
    "PatternFilter",
    "ProperNounSoupFilter",
    "QUESTION_TRIGGERS",
    "TECH_KEYWORDS",
    "TranscriptFilter",
    "default_filters",
    "normalize_for_match",
]
