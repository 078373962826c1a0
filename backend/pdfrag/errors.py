"""Error taxonomy for the retrieval pipeline.

Every error records the pipeline stage it was raised from. The original cause is
chained with ``raise ... from exc`` so logs keep it, while ``user_message`` stays
free of internal detail.
"""


class RagError(Exception):
    """Base error for the RAG pipeline."""

    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, *, stage: str = "unknown") -> None:
        super().__init__(message or self.default_message)
        self.stage = stage

    @property
    def user_message(self) -> str:
        """Message safe to show to the end user."""
        return self.default_message


# Transient / retriable
class TransientProviderError(RagError):
    """Provider returned a retriable failure (rate limit, unavailable)."""

    default_message = "The AI service is temporarily unavailable. Please try again."

    def __init__(
        self, message: str | None = None, *, status_code: int | None = None, stage: str = "provider"
    ) -> None:
        super().__init__(message, stage=stage)
        self.status_code = status_code


class RetryExhaustedError(RagError):
    """All retry attempts failed with transient errors."""

    default_message = "The AI service is temporarily unavailable. Please try again."

    def __init__(self, message: str, *, attempts: int, stage: str = "retry") -> None:
        super().__init__(message, stage=stage)
        self.attempts = attempts


# User input / precondition
class NoDocumentsProcessedError(RagError):
    """Query issued before any document was ingested."""

    default_message = "No documents have been processed yet. Upload a PDF first."


class EmptyQueryError(RagError):
    """Query text was empty or whitespace."""

    default_message = "The question must not be empty."


class MissingCredentialsError(RagError):
    """Provider credentials are not configured."""

    default_message = "The AI service is not configured. Set OPENAI_API_KEY."


class NoRelevantInformationError(RagError):
    """Retrieval produced no results for the query."""

    default_message = (
        "No relevant information was found in the selected documents. "
        "Try rephrasing the question or adding more documents."
    )


class DocumentLimitExceededError(RagError):
    """Too many documents for a single session."""

    default_message = "Too many documents for one session."


class DocumentNotFoundError(RagError):
    """Document does not exist."""

    default_message = "Document not found."


class DocumentAccessDeniedError(RagError):
    """User may not read or modify the document."""

    default_message = "You do not have access to this document."


# Degraded-but-continuable
class ExtractionError(RagError):
    """No usable text could be extracted from a file."""

    default_message = "No text could be extracted from the file."


class IngestionCancelledError(RagError):
    """Ingestion was cancelled between batches."""

    default_message = "Document processing was cancelled."


# Fatal / configuration
class EmbeddingProviderError(RagError):
    """Embedding provider failed with a non-retriable error."""

    default_message = "The embedding service rejected the request."


class PersistentStoreUnavailableError(RagError):
    """Every persistent search strategy failed."""

    default_message = "The document store is unavailable."


class GenerationError(RagError):
    """LLM call failed after retries."""

    default_message = "The AI service failed to generate an answer."


class StrategyUnavailableError(RagError):
    """A search strategy cannot run against the current backend."""

    pass
