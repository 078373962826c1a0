"""Prompt construction for grounded answers."""

from collections.abc import Sequence

from backend.pdfrag.citations.assembler import REFERENCES_HEADING
from backend.pdfrag.llm.classifiers import THINKING_CLOSE, THINKING_OPEN
from backend.pdfrag.models.answer import ChatTurn, ResponseStyle

HISTORY_LIMIT = 10

STYLE_INSTRUCTIONS: dict[str, str] = {
    "precise": "Give short, dense, factual answers based on the documents.",
    "creative": (
        "Give detailed, elaborated answers while staying faithful to the documents."
    ),
    "balanced": "Balance completeness and brevity, based on the documents.",
}

THINKING_INSTRUCTION = (
    "BEFORE answering, show your reasoning in this exact block:\n"
    f"{THINKING_OPEN}\n"
    "1. Analyse the question to understand what the user is asking\n"
    "2. Identify the relevant information in the documents\n"
    "3. Compose the answer from that information\n"
    f"{THINKING_CLOSE}\n\n"
    "Then give your answer."
)

MATH_INSTRUCTION = (
    "The question concerns mathematics, equations or physics. "
    "Write equations in LaTeX, using $...$ inline and $$...$$ for display equations. "
    "Explain the meaning of every symbol and give a physical interpretation where useful."
)

GROUNDING_INSTRUCTION = (
    "Say clearly and honestly when the documents contain no relevant information.\n"
    "Do NOT invent information that is not in the provided documents."
)

REFERENCE_FORMAT_INSTRUCTION = (
    "Always end your answer with a references section naming the source document "
    "and page (when known), formatted like this:\n\n"
    f"{REFERENCES_HEADING}\n[1] File A (halaman X)\n[2] File B (halaman Y)"
)


def build_system_prompt(
    *, style: ResponseStyle, show_thinking: bool, is_math: bool
) -> str:
    """System instruction for the given style and query type."""
    parts = [
        "You are an assistant that answers questions using the documents provided. "
        + STYLE_INSTRUCTIONS[style]
    ]
    if show_thinking:
        parts.append(THINKING_INSTRUCTION)
    if is_math:
        parts.append(MATH_INSTRUCTION)
    parts.append(GROUNDING_INSTRUCTION)
    return "\n\n".join(parts)


def build_user_prompt(query: str, context: str) -> str:
    """Context block, question and reference format as one user message."""
    return (
        f"Use the following information to answer:\n{context}\n\n"
        f"Question: {query}\n\n{REFERENCE_FORMAT_INSTRUCTION}"
    )


def format_history(
    history: Sequence[ChatTurn], limit: int = HISTORY_LIMIT
) -> list[ChatTurn]:
    """Keep user/assistant turns only, most recent `limit` of them."""
    turns = [turn for turn in history if turn.role in ("user", "assistant")]
    if limit <= 0:
        return []
    return turns[-limit:]
