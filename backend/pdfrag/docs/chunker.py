"""Document chunker - recursive separator cascade with math-aware sizing.

Chunks are exact character spans of the source text. Consecutive chunks share
up to ``chunk_overlap`` characters, and the non-overlapping part of every chunk
laid end to end reproduces the input.
"""

import bisect
import re
from collections import deque
from dataclasses import dataclass

from backend.pdfrag.config import Settings
from backend.pdfrag.models.docs import ChunkDraft

# (separator, cut after separator); coarsest first
SEPARATORS: list[tuple[str, bool]] = [
    ("\n## Page", False),
    ("\n\n", True),
    ("\n", True),
    (". ", True),
    (" ", True),
]

PAGE_MARKER = re.compile(r"## Page (\d+)")

# Math spans that are never cut
MATH_SPAN = re.compile(
    r"\$\$.+?\$\$"
    r"|\$[^$\n]+?\$"
    r"|\\\(.+?\\\)"
    r"|\\\[.+?\\\]"
    r"|\\begin\{(equation\*?|align\*?)\}.+?\\end\{\1\}",
    re.DOTALL,
)

EQUATION_MARKER = re.compile(r"\$|\\\(|\\\[|\\begin\{equation\}|\\frac|∫|∂|∇|∆|∑")

MATH_SYMBOL = re.compile(r"[∫∬∭∮∇∆∂∏∑√≈≠≤≥±×÷]|\\[a-zA-Z]+|\$|\^|_\{")

MATH_VOCABULARY = re.compile(
    r"\b(equation|persamaan|differential|diferensial|formula|rumus|theorem|teorema|lemma"
    r"|eigenvalue|eigenvector|laplace|laplacian|poisson|gelombang)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk sizing in characters."""

    chunk_size: int = 1500
    chunk_overlap: int = 300
    math_aware: bool = True
    math_chunk_size: int = 1800
    math_chunk_overlap: int = 400
    dense_math_chunk_overlap: int = 600
    math_density_threshold: float = 8.0
    # Tokens longer than chunk_size * hard_limit_factor are sliced by character
    hard_limit_factor: int = 4

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChunkingConfig":
        return cls(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            math_chunk_size=settings.math_chunk_size,
            math_chunk_overlap=settings.math_chunk_overlap,
            dense_math_chunk_overlap=settings.dense_math_chunk_overlap,
            math_density_threshold=settings.math_density_threshold,
        )


def contains_equations(text: str) -> bool:
    """Heuristic: LaTeX delimiters, math operators or math/physics vocabulary."""
    return bool(EQUATION_MARKER.search(text) or MATH_VOCABULARY.search(text))


def math_density(text: str) -> float:
    """Math symbols per 1000 characters."""
    if not text:
        return 0.0
    return len(MATH_SYMBOL.findall(text)) * 1000 / len(text)


def effective_sizes(text: str, config: ChunkingConfig) -> tuple[int, int]:
    """Resolve chunk size and overlap, enlarging both for equation-bearing text."""
    size, overlap = config.chunk_size, config.chunk_overlap
    if not config.math_aware or not contains_equations(text):
        return size, overlap

    size = max(size, config.math_chunk_size)
    overlap = max(overlap, config.math_chunk_overlap)
    if math_density(text) >= config.math_density_threshold:
        overlap = max(overlap, config.dense_math_chunk_overlap)
    return size, min(overlap, size - 1)


class _ProtectedSpans:
    """Sorted, non-overlapping spans where cuts are not allowed."""

    def __init__(self, text: str) -> None:
        spans = [(m.start(), m.end()) for m in MATH_SPAN.finditer(text)]
        self._starts = [s for s, _ in spans]
        self._ends = [e for _, e in spans]

    def covers(self, pos: int) -> bool:
        idx = bisect.bisect_right(self._starts, pos) - 1
        return idx >= 0 and self._starts[idx] < pos < self._ends[idx]


def _find_cuts(
    text: str, start: int, end: int, sep: str, after: bool, protected: _ProtectedSpans
) -> list[int]:
    cuts: list[int] = []
    i = text.find(sep, start, end)
    while i != -1:
        cut = i + len(sep) if after else i
        if start < cut < end and not protected.covers(cut):
            cuts.append(cut)
        i = text.find(sep, i + len(sep), end)
    return cuts


def _atomize(
    text: str,
    start: int,
    end: int,
    level: int,
    size: int,
    hard_limit: int,
    protected: _ProtectedSpans,
) -> list[tuple[int, int]]:
    """Split [start, end) into pieces no larger than size where a separator allows."""
    if end - start <= size:
        return [(start, end)]

    for lvl in range(level, len(SEPARATORS)):
        sep, after = SEPARATORS[lvl]
        cuts = _find_cuts(text, start, end, sep, after, protected)
        if not cuts:
            continue
        bounds = [start, *cuts, end]
        pieces: list[tuple[int, int]] = []
        for a, b in zip(bounds, bounds[1:]):
            pieces.extend(_atomize(text, a, b, lvl + 1, size, hard_limit, protected))
        return pieces

    # A single unbreakable token: keep it whole unless it is pathological
    if end - start > hard_limit:
        return [(i, min(i + size, end)) for i in range(start, end, size)]
    return [(start, end)]


def _merge(pieces: list[tuple[int, int]], size: int, overlap: int) -> list[tuple[int, int]]:
    """Pack contiguous pieces into chunks, carrying trailing pieces as overlap."""
    chunks: list[tuple[int, int]] = []
    window: deque[tuple[int, int]] = deque()
    total = 0

    for start, end in pieces:
        length = end - start
        if window and total + length > size:
            chunks.append((window[0][0], window[-1][1]))
            while window and (total > overlap or total + length > size):
                s, e = window.popleft()
                total -= e - s
        window.append((start, end))
        total += length

    if window:
        chunks.append((window[0][0], window[-1][1]))
    return chunks


def _absorb_blank(text: str, spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Fold whitespace-only spans into a neighbour so no text is lost."""
    result: list[tuple[int, int]] = []
    pending_start: int | None = None
    for start, end in spans:
        if not text[start:end].strip():
            if result:
                result[-1] = (result[-1][0], max(result[-1][1], end))
            elif pending_start is None:
                pending_start = start
            continue
        if pending_start is not None:
            start = min(start, pending_start)
            pending_start = None
        result.append((start, end))
    return result


def _page_for(position: int, marker_positions: list[int], marker_pages: list[int]) -> int | None:
    idx = bisect.bisect_right(marker_positions, position) - 1
    return marker_pages[idx] if idx >= 0 else None


def chunk_document(text: str, *, config: ChunkingConfig | None = None) -> list[ChunkDraft]:
    """Split document text into ordered, overlapping chunk drafts.

    Args:
        text: Extracted document text, optionally with ``## Page N`` markers
        config: Chunk sizing; defaults to ChunkingConfig()

    Returns:
        Chunk drafts in document order with page hints and equation flags
    """
    config = config or ChunkingConfig()
    if not text.strip():
        return []

    size, overlap = effective_sizes(text, config)
    protected = _ProtectedSpans(text)
    pieces = _atomize(text, 0, len(text), 0, size, size * config.hard_limit_factor, protected)
    spans = _absorb_blank(text, _merge(pieces, size, overlap))

    markers = [(m.start(), int(m.group(1))) for m in PAGE_MARKER.finditer(text)]
    marker_positions = [pos for pos, _ in markers]
    marker_pages = [page for _, page in markers]

    drafts: list[ChunkDraft] = []
    for index, (start, end) in enumerate(spans):
        content = text[start:end]
        first_char = start + len(content) - len(content.lstrip())
        is_math = contains_equations(content)
        drafts.append(
            ChunkDraft(
                index=index,
                content=content,
                start=start,
                end=end,
                page=_page_for(first_char, marker_positions, marker_pages),
                contains_equations=is_math,
                chunk_type="math_content" if is_math else "text",
                equation_count=sum(1 for _ in MATH_SPAN.finditer(content)),
            )
        )
    return drafts

