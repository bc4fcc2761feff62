"""
FastAPI routes — knowledge file lifecycle, processing and semantic search.

Architecture:
- Routes are thin: they validate input and delegate to services.
- Business logic lives in services/, not here.
- Pydantic models in models/ define all request/response shapes.
- The caller's identity arrives explicitly in the X-Owner-Id header.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from core.database import init_db
from core.exceptions import RetrievalEngineError
from models.knowledge import (
    FileCreateRequest,
    KnowledgeFile,
    KnowledgeStats,
    LinkUpdateRequest,
    OwnerContext,
    ProcessingResult,
    ProcessRequest,
    SearchLogEntry,
)
from services.chunk_store import chunk_store
from services.document_processor import document_processor
from services.retrieval_service import format_retrieved_context, retrieval_service

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Engine error kind → HTTP status
_ERROR_STATUS = {
    "file_not_found": 404,
    "empty_document": 422,
    "input_too_large": 422,
    "chunking_error": 422,
    "invalid_transition": 409,
    "provider_error": 502,
    "dimension_mismatch": 409,
    "scope_violation": 500,
}


def _http_error(exc: RetrievalEngineError) -> HTTPException:
    return HTTPException(status_code=_ERROR_STATUS.get(exc.kind, 500), detail=exc.to_dict())


# ---------------------------------------------------------------------------
# App lifespan: create tables on boot
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise the database on boot."""
    logger.info("🗄️  [BOOT] Initializing database...")
    try:
        await init_db()
        logger.info("✅ [BOOT] Database initialized successfully")
    except Exception as e:
        logger.error("❌ [BOOT] Database initialization failed: %s", e, exc_info=True)
        raise
    yield
    logger.info("🛑 [SHUTDOWN] Knowledge engine stopping")


app = FastAPI(
    title="Knowledge Retrieval Engine",
    description="Document chunking, embedding and semantic search per owner collection",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _get_owned_file(file_id: str, owner_id: str) -> KnowledgeFile:
    file = await chunk_store.get_file(file_id, owner_id)
    if not file:
        raise HTTPException(status_code=404, detail="Knowledge file not found.")
    return file


# ---------------------------------------------------------------------------
# Knowledge files
# ---------------------------------------------------------------------------
@app.post("/api/knowledge/files", response_model=KnowledgeFile, status_code=201)
async def create_file(request: FileCreateRequest, x_owner_id: str = Header(..., min_length=1)):
    """Register an uploaded document (status `pending`)."""
    return await chunk_store.create_file(
        owner_id=x_owner_id,
        collection_id=request.collection_id,
        file_name=request.file_name,
        is_linked=request.is_linked,
    )


@app.get("/api/knowledge/files", response_model=List[KnowledgeFile])
async def list_files(
    collection_id: str = Query(..., description="Collection (bot/workspace) ID"),
    x_owner_id: str = Header(..., min_length=1),
):
    """List knowledge files in a collection."""
    return await chunk_store.list_files(x_owner_id, collection_id)


@app.get("/api/knowledge/files/{file_id}", response_model=KnowledgeFile)
async def get_file(file_id: str, x_owner_id: str = Header(..., min_length=1)):
    return await _get_owned_file(file_id, x_owner_id)


@app.post("/api/knowledge/files/{file_id}/process", response_model=ProcessingResult)
async def process_file(
    file_id: str,
    request: ProcessRequest,
    x_owner_id: str = Header(..., min_length=1),
    x_provider_key: Optional[str] = Header(None),
):
    """
    Chunk, embed and index a document's extracted text.

    Reprocessing replaces the previous chunks only if the new attempt
    succeeds in full.
    """
    file = await _get_owned_file(file_id, x_owner_id)
    owner = OwnerContext(owner_id=x_owner_id, collection_id=file.collection_id, api_key=x_provider_key)
    try:
        result = await document_processor.process(file, request.text, owner=owner)
    except RetrievalEngineError as exc:
        raise _http_error(exc)
    logger.info("📚 Processed file %s: status=%s chunks=%d", file_id, result.status.value, result.chunk_count)
    return result


@app.get("/api/knowledge/files/{file_id}/processed")
async def file_processed(file_id: str, x_owner_id: str = Header(..., min_length=1)):
    """Whether the file currently has indexed chunks."""
    file = await _get_owned_file(file_id, x_owner_id)
    processed = await chunk_store.is_document_processed(file_id, x_owner_id, collection_id=file.collection_id)
    return {"file_id": file_id, "processed": processed}


@app.post("/api/knowledge/files/{file_id}/cancel")
async def cancel_processing(file_id: str, x_owner_id: str = Header(..., min_length=1)):
    """Ask a running processing attempt to stop before its next batch."""
    await _get_owned_file(file_id, x_owner_id)
    cancelled = document_processor.cancel(file_id)
    return {"file_id": file_id, "cancel_requested": cancelled}


@app.patch("/api/knowledge/files/{file_id}/link", response_model=KnowledgeFile)
async def update_link(file_id: str, request: LinkUpdateRequest, x_owner_id: str = Header(..., min_length=1)):
    """Include or exclude a file from search."""
    file = await chunk_store.set_linked(file_id, x_owner_id, request.is_linked)
    if not file:
        raise HTTPException(status_code=404, detail="Knowledge file not found.")
    return file


@app.delete("/api/knowledge/files/{file_id}", status_code=204)
async def delete_file(file_id: str, x_owner_id: str = Header(..., min_length=1)):
    """Delete a knowledge file and all its chunks."""
    deleted = await chunk_store.delete_file(file_id, x_owner_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Knowledge file not found.")


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
@app.get("/api/knowledge/search")
async def search_knowledge(
    q: str = Query(..., min_length=1, description="Search query"),
    collection_id: str = Query(...),
    limit: int = Query(5, ge=1, le=50),
    threshold: float = Query(0.7, ge=-1.0, le=1.0),
    format: str = Query("json", pattern="^(json|context)$"),
    x_owner_id: str = Header(..., min_length=1),
    x_provider_key: Optional[str] = Header(None),
):
    """
    Semantic search over a collection's linked, processed files.

    `format=context` renders the results as a prompt-ready context block.
    """
    owner = OwnerContext(owner_id=x_owner_id, collection_id=collection_id, api_key=x_provider_key)
    try:
        result = await retrieval_service.search(
            q, x_owner_id, collection_id, limit=limit, threshold=threshold, owner=owner
        )
    except RetrievalEngineError as exc:
        raise _http_error(exc)

    if format == "context":
        return {
            "context": format_retrieved_context(result.chunks),
            "total_found": result.total_found,
            "no_linked_files": result.no_linked_files,
        }
    return result


@app.get("/api/knowledge/search-logs", response_model=List[SearchLogEntry])
async def search_logs(collection_id: str = Query(...), x_owner_id: str = Header(..., min_length=1)):
    """Search history for a collection, oldest first."""
    return await chunk_store.list_search_logs(x_owner_id, collection_id)


@app.get("/api/knowledge/stats", response_model=KnowledgeStats)
async def knowledge_stats(collection_id: str = Query(...), x_owner_id: str = Header(..., min_length=1)):
    """Chunk and search counts for a collection."""
    return await chunk_store.get_stats(x_owner_id, collection_id)


# ---------------------------------------------------------------------------
# Infrastructure endpoints
# ---------------------------------------------------------------------------
@app.get("/api/health")
async def health():
    """Health check for monitoring."""
    return {
        "status": "ok",
        "version": VERSION,
        "uptime_seconds": settings.uptime_seconds,
        "embeddings_configured": settings.embeddings_configured,
        "embedding_model": settings.embedding_model,
    }
