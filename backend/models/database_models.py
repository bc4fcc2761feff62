import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    String,
    Float,
    Boolean,
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeFile(Base):
    """SQLAlchemy model for an uploaded knowledge document."""
    __tablename__ = "knowledge_files"
    __table_args__ = (
        Index("idx_knowledge_files_owner_collection", "owner_id", "collection_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    collection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), default="document.txt")
    processing_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    is_linked: Mapped[bool] = mapped_column(Boolean, default=True)
    raw_text_preview: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    chunks: Mapped[List["DocumentChunk"]] = relationship(
        "DocumentChunk", back_populates="file", cascade="all, delete-orphan", passive_deletes=True
    )


class DocumentChunk(Base):
    """SQLAlchemy model for one embedded chunk. owner/collection are denormalised for scoping."""
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("file_id", "chunk_index", name="uq_document_chunks_file_index"),
        Index("idx_document_chunks_owner_collection", "owner_id", "collection_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    file_id: Mapped[str] = mapped_column(ForeignKey("knowledge_files.id", ondelete="CASCADE"), index=True)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    collection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    section_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_type: Mapped[str] = mapped_column(String(20), default="content")
    # Older rows may hold a JSON-encoded string instead of a list; see ChunkStore._parse_embedding
    embedding: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    embedding_dim: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    file: Mapped["KnowledgeFile"] = relationship("KnowledgeFile", back_populates="chunks")


class SearchLog(Base):
    """Append-only record of every search call."""
    __tablename__ = "rag_search_logs"
    __table_args__ = (
        Index("idx_rag_search_logs_owner_collection", "owner_id", "collection_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    collection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    query_embedding: Mapped[Optional[List[float]]] = mapped_column(JSON, nullable=True)
    chunks_found: Mapped[int] = mapped_column(Integer, default=0)
    top_similarity_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
