"""
Pytest configuration and fixtures for backend tests.

Environment variables are set at module import time, before any backend
module reads them: the engine runs against an in-memory SQLite database
and no real embedding credentials are needed.
"""

import os

# Set environment variables BEFORE any backend imports
os.environ.update({
    "DATABASE_URL": "sqlite+aiosqlite://",
    "GEMINI_API_KEY": "test-key",
    "EMBEDDING_BATCH_DELAY_SECONDS": "0",
    "LOG_LEVEL": "DEBUG",
})

import hashlib
import math
from typing import List, Optional

import pytest
import pytest_asyncio

from core.database import drop_db, engine, init_db
from core.exceptions import ProviderError
from models.knowledge import OwnerContext
from services.chunk_store import ChunkStore
from services.document_processor import DocumentProcessor
from services.embedding_client import EmbeddingClient, EmbeddingProvider, TASK_DOCUMENT
from services.retrieval_service import RetrievalService

DIMENSIONS = 8


def text_vector(text: str, dimensions: int = DIMENSIONS) -> List[float]:
    """Deterministic unit vector derived from the text's hash."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    values = [b - 127.5 for b in digest[:dimensions]]
    norm = math.sqrt(sum(v * v for v in values)) or 1.0
    return [v / norm for v in values]


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Records every call and returns deterministic vectors.

    `vectors` pins specific texts to specific vectors; `fail_on_call` makes
    the N-th call (1-based) raise a ProviderError.
    """

    def __init__(self, dimensions: int = DIMENSIONS, fail_on_call: Optional[int] = None):
        self.dimensions = dimensions
        self.fail_on_call = fail_on_call
        self.vectors = {}
        self.calls = []

    async def embed(self, text, owner, task_type=TASK_DOCUMENT):
        self.calls.append((text, owner, task_type))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise ProviderError("Simulated provider outage", status_code=503, retryable=True)
        if text in self.vectors:
            return list(self.vectors[text])
        return text_vector(text, self.dimensions)


@pytest_asyncio.fixture(autouse=True)
async def fresh_database():
    """Create the schema before each test and discard it afterwards."""
    await init_db()
    yield
    await drop_db()
    await engine.dispose()


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedder(provider):
    return EmbeddingClient(provider=provider, max_input_chars=8000, timeout_seconds=5, max_retries=0)


@pytest.fixture
def store():
    return ChunkStore()


@pytest.fixture
def processor(embedder, store):
    return DocumentProcessor(embedding_client=embedder, store=store, batch_size=5, batch_delay=0)


@pytest.fixture
def retrieval(embedder, store):
    return RetrievalService(embedding_client=embedder, store=store)


@pytest.fixture
def owner():
    return OwnerContext(owner_id="owner-1", collection_id="collection-1")


def make_sentence(number: int) -> str:
    """A 98-character, 17-word sentence with no terminators inside."""
    words = ["Sentence", f"{number:02d}"] + ["alpha"] * 14 + ["xy"]
    return " ".join(words)


def make_document(sentence_count: int) -> str:
    """Sentences joined as `sentence. `, so each adds exactly 100 characters."""
    return "".join(make_sentence(i) + ". " for i in range(1, sentence_count + 1))
