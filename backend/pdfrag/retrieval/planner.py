"""Query planner - lexical query expansion for recall.

Variants are ordered: the retriever tries them first to last and stops once it
has enough results, so the most literal forms come first.
"""

import re
from collections.abc import Iterable

from backend.pdfrag.llm.classifiers import HeuristicClassifier, ResponseClassifier

# Indonesian / English term pairs; longer phrases must win over their parts
TERM_PAIRS: list[tuple[str, str]] = [
    ("persamaan diferensial parsial", "partial differential equation"),
    ("persamaan diferensial", "differential equation"),
    ("persamaan gelombang", "wave equation"),
    ("persamaan poisson", "poisson equation"),
    ("persamaan laplace", "laplace equation"),
    ("persamaan panas", "heat equation"),
    ("persamaan difusi", "diffusion equation"),
    ("turunan parsial", "partial derivative"),
    ("nilai eigen", "eigenvalue"),
    ("vektor eigen", "eigenvector"),
    ("turunan", "derivative"),
    ("rumus", "formula"),
    ("persamaan", "equation"),
    ("gelombang", "wave"),
    ("definisi", "definition"),
]

# topic -> (trigger words, equation-name variants)
TOPIC_VARIANTS: dict[str, tuple[tuple[str, ...], list[str]]] = {
    "wave": (
        ("gelombang", "wave"),
        [
            "wave equation",
            "persamaan gelombang",
            "wave equation definition",
            "persamaan gelombang definisi",
            "bentuk matematis persamaan gelombang",
            "partial differential equation wave",
            "persamaan diferensial parsial gelombang",
        ],
    ),
    "poisson": (
        ("poisson",),
        [
            "poisson equation",
            "persamaan poisson",
            "poisson equation definition",
            "persamaan poisson definisi",
            "bentuk matematis persamaan poisson",
            "laplace equation",
            "persamaan laplace",
        ],
    ),
    "laplace": (
        ("laplace", "laplacian"),
        ["laplace equation", "persamaan laplace", "laplacian operator"],
    ),
    "heat": (
        ("panas", "heat", "difusi", "diffusion"),
        ["heat equation", "persamaan panas", "diffusion equation", "persamaan difusi"],
    ),
}

# Titles worth splicing into math queries
MATH_TITLE = re.compile(
    r"differential|diferensial|equation|persamaan|physics|fisika|math|calculus|kalkulus",
    re.IGNORECASE,
)

_TRANSLATION = {a: b for a, b in TERM_PAIRS} | {b: a for a, b in TERM_PAIRS}
_TRANSLATION_PATTERN = re.compile(
    r"\b("
    + "|".join(re.escape(term) for term in sorted(_TRANSLATION, key=len, reverse=True))
    + r")\b",
    re.IGNORECASE,
)


def translate_terms(query: str) -> str:
    """Swap known Indonesian and English math terms in both directions."""
    return _TRANSLATION_PATTERN.sub(lambda m: _TRANSLATION[m.group(0).lower()], query)


def _dedupe(variants: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for variant in variants:
        variant = " ".join(variant.split())
        key = variant.lower()
        if variant and key not in seen:
            seen.add(key)
            unique.append(variant)
    return unique


class QueryPlanner:
    """Expands a query into ordered lexical variants."""

    def __init__(self, classifier: ResponseClassifier | None = None) -> None:
        self._classifier = classifier or HeuristicClassifier()

    def expand(self, query: str, document_titles: Iterable[str] = ()) -> list[str]:
        """Expand a query into ordered variants.

        Deterministic for the same query and set of document titles.

        Args:
            query: Raw user query
            document_titles: Titles of the active documents

        Returns:
            Variants, raw query first, without duplicates
        """
        q = " ".join(query.split())
        if not q:
            return []

        variants = [q, f'"{q}"', f"{q} formula"]
        if not self._classifier.classify_query(q).is_math:
            return _dedupe(variants)

        lowered = q.lower()
        without_equation = re.sub(r"\bpersamaan\b", "", q, flags=re.IGNORECASE)
        variants += [
            translate_terms(q),
            f"bentuk {q}",
            f"{q} matematika",
            f"formula {q}",
            f"persamaan {without_equation}",
            f"equation {q}",
            f"mathematical {q}",
            f"definisi {q}",
            f"bentuk matematis {q}",
        ]
        for triggers, topic_variants in TOPIC_VARIANTS.values():
            if any(re.search(rf"\b{trigger}\b", lowered) for trigger in triggers):
                variants += topic_variants

        titles = sorted(set(document_titles))
        variants += [f"{q} {title}" for title in titles if MATH_TITLE.search(title)]
        if titles:
            variants.append(f"{q} dalam {' '.join(titles)}")
        return _dedupe(variants)
