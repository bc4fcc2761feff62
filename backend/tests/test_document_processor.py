"""
Tests for backend/services/document_processor.py

Tests DocumentProcessor:
- End-to-end processing into the store
- Failure mid-run leaves no partial generation
- Empty documents, cancellation, per-file serialisation
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from models.knowledge import KnowledgeFile, ProcessingStatus
from services.document_processor import DocumentProcessor
from services.embedding_client import EmbeddingClient, TASK_DOCUMENT

from conftest import FakeEmbeddingProvider, make_document


def one_chunk_per_sentence(embedder, store, **kwargs):
    """Small target size and no overlap: every ~100-char sentence is its own chunk."""
    return DocumentProcessor(
        embedding_client=embedder, store=store, batch_size=5, batch_delay=0,
        chunk_size=60, chunk_overlap=0, **kwargs,
    )


class TestProcess:

    @pytest.mark.asyncio
    async def test_three_thousand_char_document(self, processor, store, provider):
        file = await store.create_file("owner-1", "collection-1", "guide.txt")

        result = await processor.process(file, make_document(30))

        stored = await store.get_file(file.id, "owner-1")
        chunks = await store.list_chunks(file.id, "owner-1")
        assert result.ok
        assert result.chunk_count == 4
        assert stored.processing_status == ProcessingStatus.PROCESSED
        assert stored.chunk_count == 4
        assert [c.index for c in chunks] == [0, 1, 2, 3]
        assert all(len(c.text) >= 50 for c in chunks)
        assert all(c.owner_id == "owner-1" and c.collection_id == "collection-1" for c in chunks)
        assert len(provider.calls) == 4
        assert all(task == TASK_DOCUMENT for _, _, task in provider.calls)

    @pytest.mark.asyncio
    async def test_stores_raw_text_preview(self, embedder, store):
        processor = DocumentProcessor(embedding_client=embedder, store=store, batch_delay=0, preview_chars=20)
        file = await store.create_file("owner-1", "collection-1")
        document = make_document(12)

        await processor.process(file, document)

        assert (await store.get_file(file.id, "owner-1")).raw_text_preview == document[:20]

    @pytest.mark.asyncio
    async def test_owner_context_reaches_provider(self, processor, store, provider):
        file = await store.create_file("owner-1", "collection-1")

        await processor.process(file, make_document(3))

        owner = provider.calls[0][1]
        assert owner.owner_id == "owner-1"
        assert owner.collection_id == "collection-1"

    @pytest.mark.asyncio
    async def test_empty_document(self, processor, store, provider):
        file = await store.create_file("owner-1", "collection-1")

        result = await processor.process(file, "   \n  ")

        assert result.status == ProcessingStatus.ERROR
        assert result.error_kind == "empty_document"
        assert (await store.get_file(file.id, "owner-1")).processing_status == ProcessingStatus.ERROR
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_reprocess_replaces_chunks(self, processor, store):
        file = await store.create_file("owner-1", "collection-1")
        await processor.process(file, make_document(30))
        first_ids = {c.id for c in await store.list_chunks(file.id, "owner-1")}

        result = await processor.process(file, make_document(12))

        chunks = await store.list_chunks(file.id, "owner-1")
        assert result.ok
        assert len(chunks) == result.chunk_count
        assert first_ids.isdisjoint(c.id for c in chunks)
        assert [c.index for c in chunks] == list(range(len(chunks)))


class TestFailures:

    @pytest.mark.asyncio
    async def test_provider_failure_on_chunk_seven_of_ten(self, embedder, store, provider):
        processor = one_chunk_per_sentence(embedder, store)
        provider.fail_on_call = 7
        file = await store.create_file("owner-1", "collection-1")

        result = await processor.process(file, make_document(10))

        stored = await store.get_file(file.id, "owner-1")
        assert result.status == ProcessingStatus.ERROR
        assert result.error_kind == "provider_error"
        assert stored.processing_status == ProcessingStatus.ERROR
        assert stored.error_message
        assert await store.list_chunks(file.id, "owner-1") == []
        assert len(provider.calls) == 10

    @pytest.mark.asyncio
    async def test_failed_reprocess_keeps_previous_chunks(self, embedder, store, provider):
        processor = one_chunk_per_sentence(embedder, store)
        file = await store.create_file("owner-1", "collection-1")
        await processor.process(file, make_document(10))
        before = [(c.id, c.text) for c in await store.list_chunks(file.id, "owner-1")]

        provider.fail_on_call = len(provider.calls) + 7
        result = await processor.process(file, make_document(8))

        after = [(c.id, c.text) for c in await store.list_chunks(file.id, "owner-1")]
        assert result.status == ProcessingStatus.ERROR
        assert after == before
        assert (await store.get_file(file.id, "owner-1")).processing_status == ProcessingStatus.ERROR

    @pytest.mark.asyncio
    async def test_later_batches_not_started_after_failure(self, embedder, store, provider):
        processor = one_chunk_per_sentence(embedder, store)
        provider.fail_on_call = 2
        file = await store.create_file("owner-1", "collection-1")

        await processor.process(file, make_document(12))

        # First batch of five runs to completion, nothing after it
        assert len(provider.calls) == 5

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_file_and_propagates(self, embedder, store):
        processor = one_chunk_per_sentence(embedder, store)
        file = await store.create_file("owner-1", "collection-1")

        async def broken_replace(*args, **kwargs):
            raise RuntimeError("database went away")

        store.replace_chunks = broken_replace
        with pytest.raises(RuntimeError):
            await processor.process(file, make_document(3))

        assert (await store.get_file(file.id, "owner-1")).processing_status == ProcessingStatus.ERROR


class CancellingProvider(FakeEmbeddingProvider):
    """Requests cancellation of the file while the first batch is in flight."""

    def __init__(self):
        super().__init__()
        self.processor = None
        self.file_id = None
        self.cancel_accepted = None

    async def embed(self, text, owner, task_type=TASK_DOCUMENT):
        if not self.calls:
            self.cancel_accepted = self.processor.cancel(self.file_id)
        return await super().embed(text, owner, task_type)


class BlockingProvider(FakeEmbeddingProvider):
    """Blocks every call until released; tracks peak concurrency."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.peak = 0

    async def embed(self, text, owner, task_type=TASK_DOCUMENT):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.started.set()
        try:
            await self.release.wait()
            return await super().embed(text, owner, task_type)
        finally:
            self.in_flight -= 1


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self, store):
        provider = CancellingProvider()
        processor = one_chunk_per_sentence(EmbeddingClient(provider=provider, max_retries=0), store)
        file = await store.create_file("owner-1", "collection-1")
        provider.processor, provider.file_id = processor, file.id

        result = await processor.process(file, make_document(10))

        assert result.status == ProcessingStatus.CANCELLED
        assert result.error_kind == "cancelled"
        assert len(provider.calls) == 5
        assert (await store.get_file(file.id, "owner-1")).processing_status == ProcessingStatus.CANCELLED
        assert await store.list_chunks(file.id, "owner-1") == []
        assert not processor.is_processing(file.id)

    @pytest.mark.asyncio
    async def test_cancel_during_final_batch_skips_swap(self, store):
        provider = CancellingProvider()
        processor = one_chunk_per_sentence(EmbeddingClient(provider=provider, max_retries=0), store)
        file = await store.create_file("owner-1", "collection-1")
        provider.processor, provider.file_id = processor, file.id

        # Three chunks fit in one batch, so no batch boundary follows the request
        result = await processor.process(file, make_document(3))

        assert provider.cancel_accepted is True
        assert len(provider.calls) == 3
        assert result.status == ProcessingStatus.CANCELLED
        assert (await store.get_file(file.id, "owner-1")).processing_status == ProcessingStatus.CANCELLED
        assert await store.list_chunks(file.id, "owner-1") == []

    @pytest.mark.asyncio
    async def test_cancel_without_running_attempt(self, processor):
        assert processor.cancel("no-such-file") is False

    @pytest.mark.asyncio
    async def test_task_cancellation_marks_file_cancelled(self, store):
        provider = BlockingProvider()
        processor = one_chunk_per_sentence(EmbeddingClient(provider=provider, max_retries=0), store)
        file = await store.create_file("owner-1", "collection-1")

        task = asyncio.create_task(processor.process(file, make_document(3)))
        await provider.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert (await store.get_file(file.id, "owner-1")).processing_status == ProcessingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_file_can_be_reprocessed(self, store, embedder):
        provider = CancellingProvider()
        cancelling = one_chunk_per_sentence(EmbeddingClient(provider=provider, max_retries=0), store)
        file = await store.create_file("owner-1", "collection-1")
        provider.processor, provider.file_id = cancelling, file.id
        await cancelling.process(file, make_document(10))

        result = await one_chunk_per_sentence(embedder, store).process(file, make_document(10))

        assert result.ok
        assert result.chunk_count == 10


class TestSerialisation:

    @pytest.mark.asyncio
    async def test_attempts_on_same_file_do_not_overlap(self, store):
        provider = BlockingProvider()
        processor = one_chunk_per_sentence(EmbeddingClient(provider=provider, max_retries=0), store)
        file = await store.create_file("owner-1", "collection-1")

        first = asyncio.create_task(processor.process(file, make_document(2)))
        second = asyncio.create_task(processor.process(file, make_document(2)))
        await provider.started.wait()
        await asyncio.sleep(0.01)
        assert provider.in_flight == 2
        provider.release.set()

        results = await asyncio.gather(first, second)

        assert all(r.ok for r in results)
        assert provider.peak == 2
        assert len(provider.calls) == 4
        assert len(await store.list_chunks(file.id, "owner-1")) == 2
        assert processor._locks == {}

    @pytest.mark.asyncio
    async def test_different_files_run_concurrently(self):
        provider = BlockingProvider()
        mock_store = MagicMock()
        mock_store.set_status = AsyncMock()
        mock_store.replace_chunks = AsyncMock()
        processor = one_chunk_per_sentence(EmbeddingClient(provider=provider, max_retries=0), mock_store)
        file_a = KnowledgeFile(id="file-a", owner_id="owner-1", collection_id="collection-1")
        file_b = KnowledgeFile(id="file-b", owner_id="owner-1", collection_id="collection-1")

        tasks = [
            asyncio.create_task(processor.process(file_a, make_document(2))),
            asyncio.create_task(processor.process(file_b, make_document(2))),
        ]
        await provider.started.wait()
        await asyncio.sleep(0.01)
        peak_before_release = provider.peak
        provider.release.set()
        results = await asyncio.gather(*tasks)

        assert peak_before_release == 4
        assert all(r.ok for r in results)
        assert mock_store.replace_chunks.await_count == 2
        for call in mock_store.replace_chunks.await_args_list:
            assert call.args[1] == "owner-1"
            assert call.kwargs["collection_id"] == "collection-1"
