"""
Sentence-aware text chunker.

Splits raw document text into ordered, overlapping segments sized for
embedding. The size bound is a soft target: sentences are never cut, so a
single oversized sentence becomes one oversized chunk.

Pure and deterministic; reprocessing the same text yields the same chunks.
"""

import re
from typing import List

from core.exceptions import ChunkingError

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP = 200
MIN_CHUNK_CHARS = 50      # shorter fragments are noise
CHARS_PER_WORD = 5        # overlap is given in chars, carried over as words

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def split_sentences(text: str) -> List[str]:
    """Split on runs of sentence terminators, dropping blank units."""
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def overlap_tail(chunk: str, overlap: int) -> str:
    """Last `overlap // 5` words of an emitted chunk, plus a trailing space."""
    word_count = overlap // CHARS_PER_WORD
    if word_count <= 0:
        return ""
    words = chunk.split()
    return " ".join(words[-word_count:]) + " "


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> List[str]:
    """Chunk text into sentence-aligned pieces of roughly `chunk_size` characters."""
    if chunk_size < 1:
        raise ChunkingError(f"chunk_size must be >= 1, got {chunk_size}")
    if overlap < 0:
        raise ChunkingError(f"overlap must be >= 0, got {overlap}")
    if not text or not text.strip():
        return []

    chunks: List[str] = []
    buffer = ""
    for sentence in split_sentences(text):
        if buffer and len(buffer) + len(sentence) > chunk_size:
            emitted = buffer.strip()
            chunks.append(emitted)
            buffer = overlap_tail(emitted, overlap)
        buffer += sentence + ". "

    if buffer.strip():
        chunks.append(buffer.strip())

    return [c for c in chunks if len(c) >= MIN_CHUNK_CHARS]
