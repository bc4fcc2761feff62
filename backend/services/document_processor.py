"""
DocumentProcessor — (re)indexes one knowledge file.

Pipeline per attempt:
  1. Mark the file `processing`
  2. Chunk the raw text
  3. Embed chunks in batches of 5: concurrent within a batch, sequential
     across batches, with a fixed pause between batches (provider rate limits)
  4. Swap the new chunks in atomically and mark the file `processed`

Any embedding failure aborts the attempt: the file goes to `error` and
nothing from the attempt is written, so the last good index survives.
Attempts on the same file are serialised with a per-file asyncio.Lock.
Cancellation is honoured between batches and once more before the swap;
it resolves to `cancelled`.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.config import settings
from core.exceptions import EmptyDocument, ProcessingCancelled, ProviderError, RetrievalEngineError
from models.knowledge import Chunk, KnowledgeFile, OwnerContext, ProcessingResult, ProcessingStatus
from services.chunk_store import ChunkStore, chunk_store as default_chunk_store
from services.chunker import chunk_text
from services.embedding_client import EmbeddingClient, TASK_DOCUMENT, embedding_client as default_embedding_client

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingOutcome:
    """Result of embedding one chunk: a vector or the error that prevented it."""

    index: int
    text: str
    embedding: Optional[List[float]] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.embedding is not None


class _FileLock:
    """A per-file lock with a user count so idle locks can be dropped."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class DocumentProcessor:
    """Orchestrates chunker, embedding client and chunk store for one file at a time."""

    def __init__(
        self,
        embedding_client: Optional[EmbeddingClient] = None,
        store: Optional[ChunkStore] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        preview_chars: Optional[int] = None,
    ) -> None:
        self.embedding_client = embedding_client or default_embedding_client
        self.store = store or default_chunk_store
        self.batch_size = batch_size or settings.embedding_batch_size
        self.batch_delay = settings.embedding_batch_delay_seconds if batch_delay is None else batch_delay
        self.chunk_size = chunk_size or settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        self.preview_chars = settings.raw_text_preview_chars if preview_chars is None else preview_chars
        self._locks: Dict[str, _FileLock] = {}
        self._cancel_requests: Dict[str, asyncio.Event] = {}

    # ── Public API ───────────────────────────────────────────────────────────

    async def process(
        self, file: KnowledgeFile, raw_text: str, owner: Optional[OwnerContext] = None
    ) -> ProcessingResult:
        """Index `raw_text` as the new content of `file`. Never leaves the file `processing`."""
        entry = self._locks.setdefault(file.id, _FileLock())
        entry.users += 1
        try:
            async with entry.lock:
                return await self._process_locked(file, raw_text, owner)
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(file.id, None)

    def cancel(self, file_id: str) -> bool:
        """Request cancellation of a running attempt. Takes effect before the next batch or the chunk swap."""
        event = self._cancel_requests.get(file_id)
        if event is None:
            return False
        event.set()
        logger.info("🛑 Cancellation requested for file %s", file_id)
        return True

    def is_processing(self, file_id: str) -> bool:
        return file_id in self._cancel_requests

    # ── Internals ────────────────────────────────────────────────────────────

    async def _process_locked(
        self, file: KnowledgeFile, raw_text: str, owner: Optional[OwnerContext]
    ) -> ProcessingResult:
        context = owner or OwnerContext(owner_id=file.owner_id, collection_id=file.collection_id)
        cancel_event = asyncio.Event()
        self._cancel_requests[file.id] = cancel_event
        try:
            return await self._run_attempt(file, raw_text, context, cancel_event)
        finally:
            self._cancel_requests.pop(file.id, None)

    async def _run_attempt(
        self,
        file: KnowledgeFile,
        raw_text: str,
        context: OwnerContext,
        cancel_event: asyncio.Event,
    ) -> ProcessingResult:
        await self.store.set_status(
            file.id, file.owner_id, ProcessingStatus.PROCESSING, collection_id=file.collection_id
        )
        logger.info("📚 Processing file %s (%s) for owner=%s", file.id, file.file_name, file.owner_id)
        try:
            texts = chunk_text(raw_text, self.chunk_size, self.chunk_overlap)
            if not texts:
                raise EmptyDocument("Document did not contain enough text to index")
            logger.info("✂️  File %s split into %d chunks", file.id, len(texts))

            outcomes = await self._embed_all(file, texts, context, cancel_event)
            chunks = [
                Chunk(
                    id=str(uuid.uuid4()),
                    file_id=file.id,
                    owner_id=file.owner_id,
                    collection_id=file.collection_id,
                    index=outcome.index,
                    text=outcome.text,
                    embedding=outcome.embedding,
                )
                for outcome in outcomes
            ]
            if cancel_event.is_set():
                raise ProcessingCancelled(f"Processing cancelled after {len(chunks)}/{len(texts)} chunks")
            await self.store.replace_chunks(
                file.id, file.owner_id, chunks, raw_text[: self.preview_chars], collection_id=file.collection_id
            )
        except asyncio.CancelledError:
            logger.warning("🛑 Processing of file %s cancelled by caller", file.id)
            await asyncio.shield(
                self._finish(file, ProcessingStatus.CANCELLED, "Processing cancelled")
            )
            raise
        except ProcessingCancelled as exc:
            await self._finish(file, ProcessingStatus.CANCELLED, exc.message)
            return ProcessingResult(
                file_id=file.id,
                status=ProcessingStatus.CANCELLED,
                error_kind=exc.kind,
                error_message=exc.message,
            )
        except RetrievalEngineError as exc:
            logger.error("❌ Processing failed for file %s: %s", file.id, exc.message)
            await self._finish(file, ProcessingStatus.ERROR, exc.message)
            return ProcessingResult(
                file_id=file.id,
                status=ProcessingStatus.ERROR,
                error_kind=exc.kind,
                error_message=exc.message,
            )
        except Exception as exc:
            logger.error("❌ Unexpected error processing file %s: %s", file.id, exc, exc_info=True)
            await self._finish(file, ProcessingStatus.ERROR, str(exc))
            raise

        logger.info("✅ Successfully processed %d chunks for file %s", len(chunks), file.id)
        return ProcessingResult(file_id=file.id, status=ProcessingStatus.PROCESSED, chunk_count=len(chunks))

    async def _finish(self, file: KnowledgeFile, status: ProcessingStatus, message: Optional[str]) -> None:
        try:
            await self.store.set_status(
                file.id, file.owner_id, status, error_message=message, collection_id=file.collection_id
            )
        except Exception as exc:
            logger.error("❌ Could not update file %s status to %s: %s", file.id, status.value, exc)
            raise

    async def _embed_all(
        self,
        file: KnowledgeFile,
        texts: List[str],
        owner: OwnerContext,
        cancel_event: asyncio.Event,
    ) -> List[EmbeddingOutcome]:
        """Embed every chunk batch by batch; raise on the first failed batch."""
        outcomes: List[EmbeddingOutcome] = []
        total = len(texts)

        for start in range(0, total, self.batch_size):
            if cancel_event.is_set():
                raise ProcessingCancelled(f"Processing cancelled after {start}/{total} chunks")

            batch = texts[start:start + self.batch_size]
            # Indices are fixed here, before any call completes
            results = await asyncio.gather(
                *(self.embedding_client.embed(text, owner, task_type=TASK_DOCUMENT) for text in batch),
                return_exceptions=True,
            )
            batch_outcomes = [
                EmbeddingOutcome(index=start + offset, text=text, error=result)
                if isinstance(result, BaseException)
                else EmbeddingOutcome(index=start + offset, text=text, embedding=result)
                for offset, (text, result) in enumerate(zip(batch, results))
            ]

            failed = [o for o in batch_outcomes if not o.ok]
            if failed:
                first = failed[0]
                logger.error(
                    "❌ Embedding failed for chunk %d/%d of file %s (%d failures in batch): %s",
                    first.index + 1, total, file.id, len(failed), first.error,
                )
                if isinstance(first.error, RetrievalEngineError):
                    raise first.error
                raise ProviderError(f"Embedding failed for chunk {first.index}: {first.error}") from first.error

            outcomes.extend(batch_outcomes)
            logger.info("📦 Embedded chunks %d-%d/%d for file %s", start + 1, start + len(batch), total, file.id)

            if start + self.batch_size < total and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        return outcomes


# Module-level singleton
document_processor = DocumentProcessor()
