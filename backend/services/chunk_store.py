"""
ChunkStore — persistence of knowledge files, chunks and search logs.

Every read and write is restricted to one owner_id, compared with `==`, and
to the collection wherever the caller knows it. That predicate is the
multi-tenancy boundary and is applied here, never assumed from the
caller. Embeddings are parsed and validated once, on the read path, so the
ranking code only ever sees typed vectors.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Set

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import AsyncSessionLocal
from core.exceptions import ChunkingError, DimensionMismatch, FileNotFound, ScopeViolation
from models.database_models import (
    DocumentChunk as DocumentChunkModel,
    KnowledgeFile as KnowledgeFileModel,
    SearchLog as SearchLogModel,
)
from models.knowledge import (
    Chunk,
    KnowledgeFile,
    KnowledgeStats,
    ProcessingStatus,
    SearchLogEntry,
    ensure_transition,
)
from services.chunker import MIN_CHUNK_CHARS

logger = logging.getLogger(__name__)


def _parse_embedding(raw) -> Optional[List[float]]:
    """Return the stored vector as a list of floats, or None if unusable."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, list) or not raw:
        return None
    try:
        return [float(v) for v in raw]
    except (TypeError, ValueError):
        return None


def _require_owner(owner_id: str) -> None:
    if not owner_id:
        raise ScopeViolation("owner_id is required to access knowledge data")


class ChunkStore:
    """Handles knowledge file, chunk and search-log persistence via SQLAlchemy."""

    def _to_file(self, model: KnowledgeFileModel) -> KnowledgeFile:
        """Helper to convert SQLAlchemy model to Pydantic KnowledgeFile."""
        return KnowledgeFile(
            id=model.id,
            owner_id=model.owner_id,
            collection_id=model.collection_id,
            file_name=model.file_name,
            processing_status=ProcessingStatus(model.processing_status),
            is_linked=model.is_linked,
            raw_text_preview=model.raw_text_preview,
            error_message=model.error_message,
            chunk_count=model.chunk_count or 0,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_row(self, chunk: Chunk) -> DocumentChunkModel:
        return DocumentChunkModel(
            id=chunk.id or str(uuid.uuid4()),
            file_id=chunk.file_id,
            owner_id=chunk.owner_id,
            collection_id=chunk.collection_id,
            chunk_index=chunk.index,
            chunk_text=chunk.text,
            chunk_size=chunk.chunk_size,
            page_number=chunk.page_number,
            section_title=chunk.section_title,
            chunk_type=chunk.chunk_type,
            embedding=list(chunk.embedding),
            embedding_dim=len(chunk.embedding),
        )

    def _scoped_file_query(self, file_id: str, owner_id: str, collection_id: Optional[str] = None):
        """Select one file row, always restricted to its owner."""
        _require_owner(owner_id)
        query = select(KnowledgeFileModel).where(
            KnowledgeFileModel.id == file_id,
            KnowledgeFileModel.owner_id == owner_id,
        )
        if collection_id is not None:
            query = query.where(KnowledgeFileModel.collection_id == collection_id)
        return query

    async def _get_file_row(
        self, file_id: str, owner_id: str, collection_id: Optional[str], db: AsyncSession
    ) -> KnowledgeFileModel:
        result = await db.execute(self._scoped_file_query(file_id, owner_id, collection_id))
        model = result.scalar_one_or_none()
        if model is None:
            raise FileNotFound(f"Knowledge file '{file_id}' not found")
        return model

    # ── Files ────────────────────────────────────────────────────────────────

    async def create_file(
        self,
        owner_id: str,
        collection_id: str,
        file_name: str = "document.txt",
        is_linked: bool = True,
        db: Optional[AsyncSession] = None,
    ) -> KnowledgeFile:
        """Register an uploaded document in status `pending`."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.create_file(owner_id, collection_id, file_name, is_linked, session)

        _require_owner(owner_id)
        model = KnowledgeFileModel(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            collection_id=collection_id,
            file_name=file_name,
            processing_status=ProcessingStatus.PENDING.value,
            is_linked=is_linked,
            chunk_count=0,
        )
        db.add(model)
        await db.commit()
        await db.refresh(model)
        logger.info("📄 Knowledge file registered: %s (owner=%s, collection=%s)", model.id, owner_id, collection_id)
        return self._to_file(model)

    async def get_file(
        self,
        file_id: str,
        owner_id: str,
        collection_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> Optional[KnowledgeFile]:
        """Fetch one of the owner's files, optionally restricted to a collection."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.get_file(file_id, owner_id, collection_id, session)

        result = await db.execute(self._scoped_file_query(file_id, owner_id, collection_id))
        model = result.scalar_one_or_none()
        return self._to_file(model) if model else None

    async def list_files(
        self, owner_id: str, collection_id: str, db: Optional[AsyncSession] = None
    ) -> List[KnowledgeFile]:
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.list_files(owner_id, collection_id, session)

        result = await db.execute(
            select(KnowledgeFileModel)
            .where(
                KnowledgeFileModel.owner_id == owner_id,
                KnowledgeFileModel.collection_id == collection_id,
            )
            .order_by(KnowledgeFileModel.created_at, KnowledgeFileModel.id)
        )
        return [self._to_file(m) for m in result.scalars().all()]

    async def set_status(
        self,
        file_id: str,
        owner_id: str,
        status: ProcessingStatus,
        error_message: Optional[str] = None,
        collection_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> KnowledgeFile:
        """Move a file through the processing state machine."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.set_status(file_id, owner_id, status, error_message, collection_id, session)

        model = await self._get_file_row(file_id, owner_id, collection_id, db)
        ensure_transition(ProcessingStatus(model.processing_status), status)
        model.processing_status = ProcessingStatus(status).value
        model.error_message = error_message
        model.updated_at = datetime.now(timezone.utc)
        await db.commit()
        await db.refresh(model)
        return self._to_file(model)

    async def set_linked(
        self,
        file_id: str,
        owner_id: str,
        is_linked: bool,
        collection_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> Optional[KnowledgeFile]:
        """Include or exclude a file from search without touching its chunks."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.set_linked(file_id, owner_id, is_linked, collection_id, session)

        result = await db.execute(self._scoped_file_query(file_id, owner_id, collection_id))
        model = result.scalar_one_or_none()
        if not model:
            return None

        model.is_linked = is_linked
        model.updated_at = datetime.now(timezone.utc)
        await db.commit()
        await db.refresh(model)
        logger.info("🔗 Knowledge file %s %s", file_id, "linked" if is_linked else "unlinked")
        return self._to_file(model)

    async def delete_file(
        self,
        file_id: str,
        owner_id: str,
        collection_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> bool:
        """Delete one of the owner's files and all of its chunks."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.delete_file(file_id, owner_id, collection_id, session)

        result = await db.execute(self._scoped_file_query(file_id, owner_id, collection_id))
        model = result.scalar_one_or_none()
        if not model:
            return False

        removed = await db.execute(
            delete(DocumentChunkModel).where(
                DocumentChunkModel.file_id == file_id,
                DocumentChunkModel.owner_id == owner_id,
            )
        )
        await db.delete(model)
        await db.commit()
        logger.info("🗑️ Knowledge file deleted: %s (%d chunks removed)", file_id, removed.rowcount or 0)
        return True

    # ── Chunks ───────────────────────────────────────────────────────────────

    async def _collection_dimension(
        self, owner_id: str, collection_id: str, exclude_file_id: str, db: AsyncSession
    ) -> Optional[int]:
        result = await db.execute(
            select(DocumentChunkModel.embedding_dim)
            .where(
                DocumentChunkModel.owner_id == owner_id,
                DocumentChunkModel.collection_id == collection_id,
                DocumentChunkModel.file_id != exclude_file_id,
                DocumentChunkModel.embedding_dim.is_not(None),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _validate_generation(self, file: KnowledgeFileModel, chunks: List[Chunk]) -> Optional[int]:
        """Check scope, text length, dense indices and a single dimensionality. Returns that dimensionality."""
        for chunk in chunks:
            if chunk.file_id != file.id:
                raise ScopeViolation(f"Chunk {chunk.index} belongs to file {chunk.file_id}, not {file.id}")
            if chunk.owner_id != file.owner_id or chunk.collection_id != file.collection_id:
                logger.critical(
                    "🚨 Scope violation on write: chunk %d of file %s has owner=%s collection=%s",
                    chunk.index, file.id, chunk.owner_id, chunk.collection_id,
                )
                raise ScopeViolation(f"Chunk {chunk.index} scope does not match file {file.id}")
            if len(chunk.text) < MIN_CHUNK_CHARS:
                raise ChunkingError(
                    f"Chunk {chunk.index} of file {file.id} has {len(chunk.text)} chars, "
                    f"minimum is {MIN_CHUNK_CHARS}"
                )

        indices = sorted(c.index for c in chunks)
        if indices != list(range(len(chunks))):
            raise ChunkingError(f"Chunk indices for file {file.id} must be dense from 0, got {indices}")

        dims = {len(c.embedding) for c in chunks}
        if len(dims) > 1:
            raise DimensionMismatch(f"Mixed embedding dimensionalities in one file: {sorted(dims)}")
        return dims.pop() if dims else None

    async def replace_chunks(
        self,
        file_id: str,
        owner_id: str,
        chunks: List[Chunk],
        raw_text_preview: Optional[str] = None,
        collection_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> int:
        """
        Atomically swap a file's chunks for a new generation and mark it processed.

        Delete, insert and status update share one transaction: a reader sees
        either the full old set or the full new set, never a mix.
        """
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.replace_chunks(file_id, owner_id, chunks, raw_text_preview, collection_id, session)

        try:
            file = await self._get_file_row(file_id, owner_id, collection_id, db)
            ensure_transition(ProcessingStatus(file.processing_status), ProcessingStatus.PROCESSED)
            dim = self._validate_generation(file, chunks)
            if dim is not None:
                existing_dim = await self._collection_dimension(file.owner_id, file.collection_id, file.id, db)
                if existing_dim is not None and existing_dim != dim:
                    raise DimensionMismatch(
                        f"Collection {file.collection_id} is indexed with {existing_dim}-dim embeddings, "
                        f"new chunks have {dim}"
                    )

            await db.execute(
                delete(DocumentChunkModel).where(
                    DocumentChunkModel.file_id == file_id,
                    DocumentChunkModel.owner_id == owner_id,
                )
            )
            for chunk in chunks:
                db.add(self._to_row(chunk))

            file.processing_status = ProcessingStatus.PROCESSED.value
            file.chunk_count = len(chunks)
            file.error_message = None
            if raw_text_preview is not None:
                file.raw_text_preview = raw_text_preview
            file.updated_at = datetime.now(timezone.utc)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("💾 Stored %d chunks for file %s", len(chunks), file_id)
        return len(chunks)

    def _scoped_chunk_filter(self, file_id: str, owner_id: str, collection_id: Optional[str]):
        _require_owner(owner_id)
        conditions = [DocumentChunkModel.file_id == file_id, DocumentChunkModel.owner_id == owner_id]
        if collection_id is not None:
            conditions.append(DocumentChunkModel.collection_id == collection_id)
        return conditions

    async def list_chunks(
        self,
        file_id: str,
        owner_id: str,
        collection_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> List[Chunk]:
        """All chunks of one of the owner's files in index order."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.list_chunks(file_id, owner_id, collection_id, session)

        result = await db.execute(
            select(DocumentChunkModel)
            .where(*self._scoped_chunk_filter(file_id, owner_id, collection_id))
            .order_by(DocumentChunkModel.chunk_index)
        )
        return [c for c in (self._to_chunk(row) for row in result.scalars().all()) if c is not None]

    def _to_chunk(self, row: DocumentChunkModel) -> Optional[Chunk]:
        embedding = _parse_embedding(row.embedding)
        if embedding is None:
            logger.warning("⚠️ Invalid stored embedding, skipping chunk %s (file=%s)", row.id, row.file_id)
            return None
        return Chunk(
            id=row.id,
            file_id=row.file_id,
            owner_id=row.owner_id,
            collection_id=row.collection_id,
            index=row.chunk_index,
            text=row.chunk_text,
            embedding=embedding,
            page_number=row.page_number,
            section_title=row.section_title,
            chunk_type=row.chunk_type or "content",
        )

    async def list_linked_processed_file_ids(
        self, owner_id: str, collection_id: str, db: Optional[AsyncSession] = None
    ) -> Set[str]:
        """IDs of files in this collection that are processed and linked."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.list_linked_processed_file_ids(owner_id, collection_id, session)

        result = await db.execute(
            select(KnowledgeFileModel.id).where(
                KnowledgeFileModel.owner_id == owner_id,
                KnowledgeFileModel.collection_id == collection_id,
                KnowledgeFileModel.is_linked.is_(True),
                KnowledgeFileModel.processing_status == ProcessingStatus.PROCESSED.value,
            )
        )
        return set(result.scalars().all())

    async def fetch_search_candidates(
        self, owner_id: str, collection_id: str, limit: int, db: Optional[AsyncSession] = None
    ) -> List[Chunk]:
        """
        Up to `limit` chunks from processed, linked files of this owner/collection.

        Order is stable (file creation, file id, chunk index) so equal scores
        rank in fetch order. Rows with unparsable embeddings are dropped.
        """
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.fetch_search_candidates(owner_id, collection_id, limit, session)

        result = await db.execute(
            select(DocumentChunkModel)
            .join(KnowledgeFileModel, DocumentChunkModel.file_id == KnowledgeFileModel.id)
            .where(
                DocumentChunkModel.owner_id == owner_id,
                DocumentChunkModel.collection_id == collection_id,
                KnowledgeFileModel.owner_id == owner_id,
                KnowledgeFileModel.collection_id == collection_id,
                KnowledgeFileModel.is_linked.is_(True),
                KnowledgeFileModel.processing_status == ProcessingStatus.PROCESSED.value,
            )
            .order_by(
                KnowledgeFileModel.created_at,
                KnowledgeFileModel.id,
                DocumentChunkModel.chunk_index,
            )
            .limit(limit)
        )
        return [c for c in (self._to_chunk(row) for row in result.scalars().all()) if c is not None]

    async def is_document_processed(
        self,
        file_id: str,
        owner_id: str,
        collection_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> bool:
        """True once at least one chunk exists for the owner's file."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.is_document_processed(file_id, owner_id, collection_id, session)

        result = await db.execute(
            select(DocumentChunkModel.id)
            .where(*self._scoped_chunk_filter(file_id, owner_id, collection_id))
            .limit(1)
        )
        return result.first() is not None

    # ── Search logs & stats ──────────────────────────────────────────────────

    async def append_search_log(self, entry: SearchLogEntry, db: Optional[AsyncSession] = None) -> None:
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.append_search_log(entry, session)

        db.add(
            SearchLogModel(
                id=str(uuid.uuid4()),
                owner_id=entry.owner_id,
                collection_id=entry.collection_id,
                query_text=entry.query_text,
                query_embedding=entry.query_embedding,
                chunks_found=entry.result_count,
                top_similarity_score=entry.top_similarity_score,
                created_at=entry.timestamp or datetime.now(timezone.utc),
            )
        )
        await db.commit()

    async def list_search_logs(
        self, owner_id: str, collection_id: str, db: Optional[AsyncSession] = None
    ) -> List[SearchLogEntry]:
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.list_search_logs(owner_id, collection_id, session)

        result = await db.execute(
            select(SearchLogModel)
            .where(SearchLogModel.owner_id == owner_id, SearchLogModel.collection_id == collection_id)
            .order_by(SearchLogModel.created_at)
        )
        return [
            SearchLogEntry(
                owner_id=row.owner_id,
                collection_id=row.collection_id,
                query_text=row.query_text,
                query_embedding=row.query_embedding,
                result_count=row.chunks_found or 0,
                top_similarity_score=row.top_similarity_score or 0.0,
                timestamp=row.created_at,
            )
            for row in result.scalars().all()
        ]

    async def get_stats(
        self, owner_id: str, collection_id: str, db: Optional[AsyncSession] = None
    ) -> KnowledgeStats:
        """Chunk and search counts for one owner/collection."""
        if db is None:
            async with AsyncSessionLocal() as session:
                return await self.get_stats(owner_id, collection_id, session)

        total_chunks = await db.scalar(
            select(func.count(DocumentChunkModel.id)).where(
                DocumentChunkModel.owner_id == owner_id,
                DocumentChunkModel.collection_id == collection_id,
            )
        )
        total_searches = await db.scalar(
            select(func.count(SearchLogModel.id)).where(
                SearchLogModel.owner_id == owner_id,
                SearchLogModel.collection_id == collection_id,
            )
        )
        return KnowledgeStats(total_chunks=total_chunks or 0, total_searches=total_searches or 0)


# Module-level singleton
chunk_store = ChunkStore()
