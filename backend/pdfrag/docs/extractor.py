"""PDF text extraction with page markers.

Output layout consumed by the chunker:

    # <title>
    Pages: N

    ## Page 1

    <page text>
"""

import logging
import re

import fitz  # PyMuPDF

from backend.pdfrag.docs.chunker import contains_equations
from backend.pdfrag.errors import ExtractionError
from backend.pdfrag.models.docs import ExtractedDocument

logger = logging.getLogger(__name__)

_LIGATURES = {"ﬁ": "fi", "ﬂ": "fl", "ﬀ": "ff", "ﬃ": "ffi", "ﬄ": "ffl"}


def _clean_page(text: str) -> str:
    for ligature, replacement in _LIGATURES.items():
        text = text.replace(ligature, replacement)
    # Rejoin words hyphenated across line breaks
    text = re.sub(r"(\w)-\n(\w)", r"\1\2", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def format_pages(title: str, pages: list[str]) -> str:
    """Join page texts under a title header with ``## Page N`` markers."""
    parts = [f"# {title}\nPages: {len(pages)}"]
    for number, page_text in enumerate(pages, start=1):
        parts.append(f"## Page {number}\n\n{_clean_page(page_text)}")
    return "\n\n".join(parts)


def extract_pdf(data: bytes, *, title: str) -> ExtractedDocument:
    """Extract marker-annotated text from PDF bytes.

    Args:
        data: Raw PDF file content
        title: Document title (usually the file name)

    Returns:
        ExtractedDocument with text, page count and equation flag

    Raises:
        ExtractionError: If the file is not a readable PDF or has no text
    """
    try:
        with fitz.open(stream=data, filetype="pdf") as pdf:
            pages = [page.get_text("text") for page in pdf]
    except (RuntimeError, ValueError) as e:
        raise ExtractionError(f"unreadable PDF: {e}", stage="extraction") from e

    if not any(page.strip() for page in pages):
        raise ExtractionError("no extractable text (scanned PDF?)", stage="extraction")

    text = format_pages(title, pages)
    logger.info(
        f"Extracted {len(pages)} pages from {title}",
        extra={"structured": {"title": title, "pages": len(pages), "chars": len(text)}},
    )
    return ExtractedDocument(
        title=title,
        text=text,
        page_count=len(pages),
        byte_size=len(data),
        contains_equations=contains_equations(text),
    )
