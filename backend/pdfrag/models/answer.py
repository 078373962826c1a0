"""Generation and query result models."""

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

ResponseStyle = Literal["precise", "creative", "balanced"]
QueryCategory = Literal["math", "factual", "general"]


class ChatTurn(BaseModel):
    """One prior message in the conversation."""

    role: str
    content: str


class GenerationConfig(BaseModel):
    """Per-request generation settings."""

    model: str | None = None
    temperature: float = Field(0.2, ge=0.0, le=2.0)
    top_p: float = Field(0.95, gt=0.0, le=1.0)
    max_output_tokens: int = Field(8192, gt=0)
    response_style: ResponseStyle = "balanced"
    show_thinking_process: bool = False


class Citation(BaseModel):
    """Reference from an answer back to a source chunk."""

    source: str
    page: int | None = None
    excerpt: str


class AssembledContext(BaseModel):
    """Citation-tagged context block and its parallel citation list."""

    text: str
    citations: list[Citation]


class QueryClassification(BaseModel):
    """Result of classifying a user query."""

    is_math: bool
    category: QueryCategory


class ThinkingSplit(BaseModel):
    """Model answer split into final answer and optional thinking section."""

    answer: str
    thinking: str | None = None


class GeneratedAnswer(BaseModel):
    """Output of the answer generator."""

    text: str
    thinking_process: str | None = None
    citations: list[Citation] = Field(default_factory=list)


class PerformanceSnapshot(BaseModel):
    """Point-in-time copy of the query performance counters."""

    queries: int = 0
    total_response_time_ms: float = 0.0
    average_response_time_ms: float = 0.0
    successful_queries: int = 0
    failed_queries: int = 0
    document_citations: int = 0
    query_types: dict[str, int] = Field(
        default_factory=lambda: {"math": 0, "factual": 0, "general": 0}
    )


class QueryResult(BaseModel):
    """Answer returned to the caller."""

    text: str
    thinking_process: str | None = None
    citations: list[Citation]
    session_id: UUID | None = None
    used_config: GenerationConfig
    degraded_retrieval: bool = False
    performance: PerformanceSnapshot
