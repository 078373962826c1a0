"""FastAPI application."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from backend.pdfrag.api.routes.documents import router as documents_router
from backend.pdfrag.api.routes.health import router as health_router
from backend.pdfrag.api.routes.metrics import router as metrics_router
from backend.pdfrag.api.routes.qa import router as qa_router
from backend.pdfrag.errors import (
    DocumentAccessDeniedError,
    DocumentLimitExceededError,
    DocumentNotFoundError,
    EmbeddingProviderError,
    EmptyQueryError,
    ExtractionError,
    GenerationError,
    IngestionCancelledError,
    MissingCredentialsError,
    NoDocumentsProcessedError,
    NoRelevantInformationError,
    PersistentStoreUnavailableError,
    RagError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)

# First matching class wins
ERROR_STATUS: list[tuple[type[RagError], int]] = [
    (EmptyQueryError, status.HTTP_400_BAD_REQUEST),
    (ExtractionError, status.HTTP_400_BAD_REQUEST),
    (DocumentLimitExceededError, status.HTTP_400_BAD_REQUEST),
    (DocumentAccessDeniedError, status.HTTP_403_FORBIDDEN),
    (DocumentNotFoundError, status.HTTP_404_NOT_FOUND),
    (NoRelevantInformationError, status.HTTP_404_NOT_FOUND),
    (NoDocumentsProcessedError, status.HTTP_409_CONFLICT),
    (IngestionCancelledError, status.HTTP_409_CONFLICT),
    (GenerationError, status.HTTP_502_BAD_GATEWAY),
    (EmbeddingProviderError, status.HTTP_502_BAD_GATEWAY),
    (MissingCredentialsError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RetryExhaustedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PersistentStoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(error: RagError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


app = FastAPI(title="PDF RAG API", version="0.1.0")

# Register routes
app.include_router(health_router, tags=["health"])
app.include_router(metrics_router, tags=["metrics"])
app.include_router(documents_router, tags=["documents"])
app.include_router(qa_router, tags=["qa"])


@app.exception_handler(RagError)
async def rag_error_handler(request: Request, exc: RagError) -> JSONResponse:
    """Map pipeline errors to HTTP responses without internal detail."""
    code = status_for(exc)
    log = logger.error if code >= 500 else logger.info
    log(
        f"{request.method} {request.url.path} failed at {exc.stage}: {exc}",
        extra={"structured": {"stage": exc.stage, "error_type": type(exc).__name__, "status": code}},
    )
    return JSONResponse(
        status_code=code,
        content={"detail": exc.user_message, "error": type(exc).__name__, "stage": exc.stage},
    )


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "PDF RAG API", "version": "0.1.0"}
