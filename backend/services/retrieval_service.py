"""
RetrievalService — answers a natural-language query with ranked passages.

Flow:
  1. No linked + processed files in the collection → empty result, no embedding call
  2. Embed the query and fetch limit × 3 candidates concurrently
  3. Score each candidate by cosine similarity (mismatched vectors are skipped)
  4. Keep score >= threshold, stable sort descending, truncate to limit
  5. Append a search log entry

format_retrieved_context() renders results as a prompt-ready block.
"""

import asyncio
import logging
import time
from typing import List, Optional

from core.config import settings
from core.exceptions import DimensionMismatch, ScopeViolation
from models.knowledge import OwnerContext, RankedResult, ScoredChunk, SearchLogEntry
from services.chunk_store import ChunkStore, chunk_store as default_chunk_store
from services.embedding_client import EmbeddingClient, TASK_QUERY, embedding_client as default_embedding_client
from services.similarity import cosine_similarity

logger = logging.getLogger(__name__)


class RetrievalService:
    """Semantic search over one owner's collection."""

    def __init__(
        self,
        embedding_client: Optional[EmbeddingClient] = None,
        store: Optional[ChunkStore] = None,
        candidate_multiplier: Optional[int] = None,
    ) -> None:
        self.embedding_client = embedding_client or default_embedding_client
        self.store = store or default_chunk_store
        self.candidate_multiplier = candidate_multiplier or settings.search_candidate_multiplier

    async def search(
        self,
        query: str,
        owner_id: str,
        collection_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        owner: Optional[OwnerContext] = None,
    ) -> RankedResult:
        """
        Return at most `limit` chunks scoring >= `threshold`, best first.

        Query-embedding failures propagate to the caller; a single bad
        candidate only reduces the candidate count.
        """
        started = time.monotonic()
        limit = limit or settings.search_default_limit
        threshold = settings.search_similarity_threshold if threshold is None else threshold

        file_ids = await self.store.list_linked_processed_file_ids(owner_id, collection_id)
        if not file_ids:
            logger.info("📭 No linked files for owner=%s collection=%s — skipping search", owner_id, collection_id)
            await self.store.append_search_log(
                SearchLogEntry(
                    owner_id=owner_id,
                    collection_id=collection_id,
                    query_text=query,
                    result_count=0,
                    top_similarity_score=0.0,
                )
            )
            return RankedResult(search_time_ms=_elapsed_ms(started), no_linked_files=True)

        context = owner or OwnerContext(owner_id=owner_id, collection_id=collection_id)
        outcomes = await asyncio.gather(
            self.embedding_client.embed(query, context, task_type=TASK_QUERY),
            self.store.fetch_search_candidates(owner_id, collection_id, limit * self.candidate_multiplier),
            return_exceptions=True,
        )
        # Both calls settle before either error surfaces
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        query_embedding, candidates = outcomes

        scored: List[ScoredChunk] = []
        skipped = 0
        for candidate in candidates:
            if candidate.owner_id != owner_id or candidate.collection_id != collection_id:
                logger.critical(
                    "🚨 Scope violation: chunk %s (owner=%s, collection=%s) returned for owner=%s collection=%s",
                    candidate.id, candidate.owner_id, candidate.collection_id, owner_id, collection_id,
                )
                raise ScopeViolation(f"Chunk {candidate.id} is outside the requested scope")
            try:
                similarity = cosine_similarity(query_embedding, candidate.embedding)
            except DimensionMismatch as exc:
                skipped += 1
                logger.warning("⚠️ Skipping chunk %s: %s", candidate.id, exc.message)
                continue
            if similarity >= threshold:
                scored.append(ScoredChunk(chunk=candidate, similarity=similarity))

        # sorted() is stable, so equal scores keep fetch order
        ranked = sorted(scored, key=lambda item: item.similarity, reverse=True)[:limit]

        await self.store.append_search_log(
            SearchLogEntry(
                owner_id=owner_id,
                collection_id=collection_id,
                query_text=query,
                query_embedding=query_embedding,
                result_count=len(ranked),
                top_similarity_score=ranked[0].similarity if ranked else 0.0,
            )
        )

        elapsed = _elapsed_ms(started)
        logger.info(
            "🔎 Search owner=%s collection=%s: %d candidates, %d skipped, %d results in %dms",
            owner_id, collection_id, len(candidates), skipped, len(ranked), elapsed,
        )
        return RankedResult(chunks=ranked, total_found=len(ranked), search_time_ms=elapsed)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def format_retrieved_context(chunks: List[ScoredChunk]) -> str:
    """Render ranked chunks as numbered, delimited passages for a prompt."""
    if not chunks:
        return ""

    lines = [
        "",
        "",
        "=== RELEVANT KNOWLEDGE BASE CONTENT ===",
        "Based on your query, here are the most relevant sections from your knowledge base:",
        "",
    ]
    for number, item in enumerate(chunks, start=1):
        lines.append(f"--- Relevant Section {number} (Similarity: {item.similarity * 100:.1f}%) ---")
        if item.chunk.section_title:
            lines.append(f"Section: {item.chunk.section_title}")
        if item.chunk.page_number:
            lines.append(f"Page: {item.chunk.page_number}")
        lines.append(item.chunk.text)
        lines.append("")
    lines.append("=== END RELEVANT CONTENT ===")
    lines.append("")
    lines.append(
        "Please use this information to provide accurate, detailed responses. "
        "When referencing this content, you can mention that you're drawing from your knowledge base."
    )
    return "\n".join(lines)


# Module-level singleton
retrieval_service = RetrievalService()
