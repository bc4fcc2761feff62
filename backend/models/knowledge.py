"""
Pydantic models for the knowledge base: files, chunks, search results.

These are the canonical shapes passed between the chunk store, the
document processor and the retrieval service. SQLAlchemy rows live in
models/database_models.py.
"""

from enum import Enum
from typing import Optional, List, Dict, Set
from datetime import datetime
from pydantic import BaseModel, Field

from core.exceptions import InvalidTransition


# ---------------------------------------------------------------------------
# Processing state machine
# ---------------------------------------------------------------------------
class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"
    CANCELLED = "cancelled"


# processing -> processing lets a new attempt take over from one that died
# mid-run; in-process attempts are already serialised per file.
ALLOWED_TRANSITIONS: Dict[ProcessingStatus, Set[ProcessingStatus]] = {
    ProcessingStatus.PENDING: {ProcessingStatus.PROCESSING},
    ProcessingStatus.PROCESSING: {
        ProcessingStatus.PROCESSING,
        ProcessingStatus.PROCESSED,
        ProcessingStatus.ERROR,
        ProcessingStatus.CANCELLED,
    },
    ProcessingStatus.PROCESSED: {ProcessingStatus.PROCESSING},
    ProcessingStatus.ERROR: {ProcessingStatus.PROCESSING},
    ProcessingStatus.CANCELLED: {ProcessingStatus.PROCESSING},
}


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    return ProcessingStatus(target) in ALLOWED_TRANSITIONS.get(ProcessingStatus(current), set())


def ensure_transition(current: ProcessingStatus, target: ProcessingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Transition not allowed: {ProcessingStatus(current).value} -> {ProcessingStatus(target).value}"
        )


# ---------------------------------------------------------------------------
# Caller context
# ---------------------------------------------------------------------------
class OwnerContext(BaseModel):
    """Explicit identity threaded through every engine call."""

    owner_id: str
    collection_id: Optional[str] = None
    api_key: Optional[str] = Field(
        default=None, repr=False, description="Owner-specific provider key; overrides the service key"
    )


# ---------------------------------------------------------------------------
# Files and chunks
# ---------------------------------------------------------------------------
class KnowledgeFile(BaseModel):
    """An uploaded document tracked through the processing state machine."""

    id: str
    owner_id: str
    collection_id: str
    file_name: str = Field(default="document.txt")
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    is_linked: bool = Field(default=True, description="Whether the file participates in search")
    raw_text_preview: Optional[str] = None
    error_message: Optional[str] = None
    chunk_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Chunk(BaseModel):
    """A bounded, indexed slice of a document paired with its embedding."""

    id: str
    file_id: str
    owner_id: str
    collection_id: str
    index: int = Field(..., ge=0)
    text: str
    embedding: List[float]
    page_number: Optional[int] = None
    section_title: Optional[str] = None
    chunk_type: str = "content"

    @property
    def chunk_size(self) -> int:
        return len(self.text)


class ScoredChunk(BaseModel):
    chunk: Chunk
    similarity: float = Field(description="Cosine similarity to the query (-1–1)")


class RankedResult(BaseModel):
    """Ranked, thresholded chunks answering one query."""

    chunks: List[ScoredChunk] = Field(default_factory=list)
    total_found: int = 0
    search_time_ms: int = 0
    no_linked_files: bool = Field(
        default=False, description="True when the collection had nothing eligible to search"
    )


class SearchLogEntry(BaseModel):
    owner_id: str
    collection_id: str
    query_text: str
    query_embedding: Optional[List[float]] = None
    result_count: int = 0
    top_similarity_score: float = 0.0
    timestamp: Optional[datetime] = None


class ProcessingResult(BaseModel):
    """Outcome of one DocumentProcessor.process attempt."""

    file_id: str
    status: ProcessingStatus
    chunk_count: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ProcessingStatus.PROCESSED


class KnowledgeStats(BaseModel):
    total_chunks: int = 0
    total_searches: int = 0


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class FileCreateRequest(BaseModel):
    collection_id: str
    file_name: str = "document.txt"
    is_linked: bool = True


class ProcessRequest(BaseModel):
    text: str = Field(..., description="Extracted plain text of the document")


class LinkUpdateRequest(BaseModel):
    is_linked: bool
