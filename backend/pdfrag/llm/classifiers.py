"""Pattern-based classifiers for queries and model answers.

Both heuristics sit behind ResponseClassifier so they can be swapped or tested
without running generation.
"""

import re
from typing import Protocol

from backend.pdfrag.models.answer import QueryClassification, ThinkingSplit

MATH_QUERY = re.compile(
    r"persamaan|rumus|formula|equation|differential|diferensial|gelombang|wave|eigen"
    r"|laplace|laplacian|poisson|turunan|derivative|integral|matemat",
    re.IGNORECASE,
)

FACTUAL_QUERY = re.compile(
    r"\b(apa|siapa|kapan|di mana|mengapa|bagaimana|what|who|when|where|why|how)\b",
    re.IGNORECASE,
)

THINKING_OPEN = "<PROSES_BERPIKIR>"
THINKING_CLOSE = "</PROSES_BERPIKIR>"

# Explicit tags first, then heading-style labels ending at a blank line
THINKING_PATTERNS = [
    re.compile(r"<PROSES_BERPIKIR>(.*?)</PROSES_BERPIKIR>", re.DOTALL),
    re.compile(r"<thinking>(.*?)</thinking>", re.DOTALL | re.IGNORECASE),
    re.compile(r"PROSES BERPIKIR:(.*?)(?=\n\n|\Z)", re.DOTALL),
    re.compile(r"THINKING PROCESS:(.*?)(?=\n\n|\Z)", re.DOTALL | re.IGNORECASE),
    re.compile(r"ANALISIS:(.*?)(?=\n\n|\Z)", re.DOTALL),
    re.compile(r"LANGKAH-LANGKAH:(.*?)(?=\n\n|\Z)", re.DOTALL),
]

_NUMBERED_STEP = re.compile(r"\n\d+\.\s")
_PARAGRAPH_BREAK = re.compile(r"\n\n(?=[A-Z])")

# A leading numbered breakdown counts as thinking only below this share of the answer
THINKING_MAX_SHARE = 0.7


class ResponseClassifier(Protocol):
    """Interface for query classification and thinking-block extraction."""

    def classify_query(self, text: str) -> QueryClassification:
        ...

    def extract_thinking_block(self, text: str) -> ThinkingSplit:
        ...


class HeuristicClassifier:
    """Regex implementation of ResponseClassifier."""

    def classify_query(self, text: str) -> QueryClassification:
        """Flag math/physics queries and bucket the query for metrics."""
        is_math = bool(MATH_QUERY.search(text))
        if is_math:
            category = "math"
        elif FACTUAL_QUERY.search(text):
            category = "factual"
        else:
            category = "general"
        return QueryClassification(is_math=is_math, category=category)

    def extract_thinking_block(self, text: str) -> ThinkingSplit:
        """Split a raw answer into final answer and thinking section.

        Tries the explicit delimiters in order. Failing that, a leading numbered
        multi-step breakdown shorter than 70% of the text is taken as thinking.
        """
        for pattern in THINKING_PATTERNS:
            match = pattern.search(text)
            if match:
                thinking = match.group(1).strip()
                answer = (text[: match.start()] + text[match.end() :]).strip()
                return ThinkingSplit(answer=answer, thinking=thinking or None)

        if len(_NUMBERED_STEP.split(text)) > 2:
            leading = _PARAGRAPH_BREAK.split(text, maxsplit=1)[0]
            if len(leading) < len(text) * THINKING_MAX_SHARE:
                return ThinkingSplit(answer=text[len(leading) :].strip(), thinking=leading.strip())

        return ThinkingSplit(answer=text.strip(), thinking=None)
