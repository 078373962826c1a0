"""Document endpoints - upload, list, re-upload and delete PDFs."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel

from backend.pdfrag.api.deps import get_rag_service
from backend.pdfrag.models.docs import Document, SourceFile
from backend.pdfrag.models.session import DeleteResult, IngestedDocument, IngestionReport
from backend.pdfrag.orchestration.service import RagService

router = APIRouter(prefix="/documents", tags=["documents"])


class UploadResponse(BaseModel):
    """Response for POST /documents."""

    report: IngestionReport
    summary: str


class DocumentListResponse(BaseModel):
    """Response for GET /documents."""

    documents: list[Document]


async def _read(upload: UploadFile) -> SourceFile:
    return SourceFile(name=upload.filename or "document.pdf", data=await upload.read())


@router.post("", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_documents(
    files: Annotated[list[UploadFile], File(description="PDF files")],
    service: Annotated[RagService, Depends(get_rag_service)],
    conversation_id: Annotated[uuid.UUID | None, Form()] = None,
    is_public: Annotated[bool, Form()] = False,
) -> UploadResponse:
    """Extract, chunk and embed uploaded PDFs into the caller's active context.

    Files that fail are listed in the report; the rest are still ingested.
    """
    sources = [await _read(upload) for upload in files]
    report = await service.ingest_documents(
        sources, conversation_id=conversation_id, is_public=is_public
    )
    return UploadResponse(report=report, summary=report.summary)


@router.get("", response_model=DocumentListResponse)
async def list_documents(
    service: Annotated[RagService, Depends(get_rag_service)],
) -> DocumentListResponse:
    """List own, public and shared documents, newest first."""
    return DocumentListResponse(documents=await service.list_documents())


@router.put("/{document_id}", response_model=IngestedDocument)
async def reupload_document(
    document_id: uuid.UUID,
    file: Annotated[UploadFile, File(description="Replacement PDF")],
    service: Annotated[RagService, Depends(get_rag_service)],
) -> IngestedDocument:
    """Replace an owned document's content and re-index it."""
    return await service.reprocess_document(document_id, await _read(file))


@router.delete("/{document_id}", response_model=DeleteResult)
async def delete_document(
    document_id: uuid.UUID,
    service: Annotated[RagService, Depends(get_rag_service)],
) -> DeleteResult:
    """Delete an owned document, its chunks and all references to it."""
    return await service.delete_document(document_id)
