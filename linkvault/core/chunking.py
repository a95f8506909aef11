"""Sentence-aware text chunking for embeddings."""

from __future__ import annotations

import re
from dataclasses import dataclass

from linkvault.core.errors import InvalidInputError

# Chunking parameters
CHUNK_SIZE = 500  # characters
CHUNK_OVERLAP = 50  # characters, approximated as overlap // 5 words
MIN_CHUNK_SIZE = 50
MAX_CHUNK_SIZE = 8000

# A chunk is only closed early once it holds more than this
MIN_CLOSE_LENGTH = 100

# Trailing chunks at or below this (trimmed) length are dropped
MIN_TAIL_LENGTH = 50

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


@dataclass
class Chunk:
    """A chunk plus its position in the batch it came from."""

    text: str
    chunk_index: int
    parent_index: int

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "chunkIndex": self.chunk_index,
            "parentIndex": self.parent_index,
        }


def validate_chunk_size(chunk_size: int) -> int:
    """Reject chunk sizes outside [MIN_CHUNK_SIZE, MAX_CHUNK_SIZE]."""
    if (
        isinstance(chunk_size, bool)
        or not isinstance(chunk_size, int)
        or not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE
    ):
        raise InvalidInputError(
            f"chunkSize must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}"
        )
    return chunk_size


def split_into_sentences(text: str) -> list[str]:
    return _SENTENCE_BOUNDARY.split(text)


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> list[str]:
    """Split text into overlapping chunks of roughly ``chunk_size`` chars.

    Text that already fits is returned unchanged as a single chunk. Longer
    text is accumulated sentence by sentence; when the next sentence would
    overflow a chunk of more than ``MIN_CLOSE_LENGTH`` chars, the chunk is
    closed and the next one starts with its last ``overlap // 5`` words.
    """
    if len(text) <= chunk_size:
        return [text]

    overlap_words = max(overlap, 0) // 5
    chunks: list[str] = []
    current = ""

    for sentence in split_into_sentences(text):
        if len(current) + len(sentence) > chunk_size and len(current) > MIN_CLOSE_LENGTH:
            chunks.append(current.strip())
            tail = current.split(" ")[-overlap_words:] if overlap_words else []
            current = " ".join(tail + [sentence])
        else:
            current = f"{current} {sentence}" if current else sentence

    if len(current.strip()) > MIN_TAIL_LENGTH:
        chunks.append(current.strip())

    return chunks


def chunk_texts(
    texts: list[str],
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[Chunk]:
    """Chunk every text in a batch, tagging chunks with their source index.

    If chunking a text yields nothing, the whole text is kept as one chunk.
    """
    chunks: list[Chunk] = []
    for parent_index, text in enumerate(texts):
        pieces = chunk_text(text, chunk_size, overlap) or [text]
        for chunk_index, piece in enumerate(pieces):
            chunks.append(Chunk(text=piece, chunk_index=chunk_index, parent_index=parent_index))
    return chunks
