"""Context assembly and reference sections.

Turns ranked chunks into the labelled context block the model sees and the
parallel citation list returned to the caller.
"""

import re
from collections.abc import Sequence

from backend.pdfrag.models.answer import AssembledContext, Citation
from backend.pdfrag.models.retrieval import ScoredChunk

EXCERPT_CHARS = 200
REFERENCES_HEADING = "REFERENSI:"

# Any of these means the model already wrote its own references section
REFERENCES_SECTION = re.compile(r"\n\n(?:REFEREN[CS]I|SUMBER|REFERENCES)\s*:", re.IGNORECASE)


def format_location(source: str, page: int | None) -> str:
    if page is None:
        return source
    return f"{source} (halaman {page})"


def to_citation(chunk: ScoredChunk) -> Citation:
    return Citation(
        source=chunk.document_title,
        page=chunk.page,
        excerpt=chunk.content[:EXCERPT_CHARS],
    )


def assemble(chunks: Sequence[ScoredChunk]) -> AssembledContext:
    """Format ranked chunks into context text and citations.

    Block i and citation i always describe the same chunk.

    Args:
        chunks: Ranked chunks from the retriever

    Returns:
        AssembledContext with one labelled block per chunk
    """
    blocks: list[str] = []
    citations: list[Citation] = []
    for i, chunk in enumerate(chunks, start=1):
        location = format_location(chunk.document_title, chunk.page)
        blocks.append(f"--- Document #{i}: {location} ---\n{chunk.content}")
        citations.append(to_citation(chunk))
    return AssembledContext(text="\n\n".join(blocks), citations=citations)


def has_references(text: str) -> bool:
    return REFERENCES_SECTION.search(text) is not None


def unique_citations(citations: Sequence[Citation]) -> list[Citation]:
    """Citations deduplicated by (source, page) in first-seen order."""
    seen: set[tuple[str, int | None]] = set()
    unique: list[Citation] = []
    for citation in citations:
        key = (citation.source, citation.page)
        if key not in seen:
            seen.add(key)
            unique.append(citation)
    return unique


def ensure_references(text: str, citations: Sequence[Citation]) -> str:
    """Append a numbered references section unless the answer already has one."""
    if not citations or has_references(text):
        return text
    lines = [
        f"[{n}] {format_location(c.source, c.page)}"
        for n, c in enumerate(unique_citations(citations), start=1)
    ]
    return f"{text.rstrip()}\n\n{REFERENCES_HEADING}\n" + "\n".join(lines)
