"""Keyword extraction and text sanitising for the lexical fallback."""

import re

STOPWORDS = frozenset(
    {"and", "the", "for", "with", "yang", "dari", "atau", "dan", "adalah", "untuk", "dengan"}
)

KEYWORD_SCORE_START = 0.5
KEYWORD_SCORE_STEP = 0.05

_NON_WORD = re.compile(r"[^\w\s]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def extract_keywords(query: str, limit: int = 3) -> list[str]:
    """Lowercased query words longer than two characters, minus stopwords."""
    words = _NON_WORD.sub(" ", query.lower()).split()
    keywords: list[str] = []
    for word in words:
        if len(word) > 2 and word not in STOPWORDS and word not in keywords:
            keywords.append(word)
    return keywords[:limit]


def keyword_score(rank: int) -> float:
    """Pseudo-similarity for the rank-th keyword match; never mistaken for a vector score."""
    return max(0.0, KEYWORD_SCORE_START - rank * KEYWORD_SCORE_STEP)


def sanitize_text(text: str) -> str:
    """Strip control characters that Postgres text columns reject."""
    return _CONTROL_CHARS.sub("", text)
