# tenantrag/memory/chunker.py

import logging
from typing import List

from tenantrag.config import (
    CHUNK_SIZE,
    CHUNK_OVERLAP,
)
from tenantrag.errors import EmptyInputError

logger = logging.getLogger(__name__)


def chunk_text(
    text: str,
    size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> List[str]:
    """
    Split text into overlapping windows of whitespace-separated words.

    Windows hold `size` words and start every `size - overlap` words.
    The same input always yields the same sequence.

    Raises:
        ValueError: invalid size/overlap combination
        EmptyInputError: nothing to chunk
    """

    if size <= 0:
        raise ValueError(f"Invalid chunk size: {size}")

    if overlap < 0:
        raise ValueError(f"Invalid chunk overlap: {overlap}")

    if overlap >= size:
        raise ValueError(
            f"Overlap must be smaller than chunk size "
            f"(overlap={overlap}, size={size})"
        )

    words = (text or "").split()

    step = size - overlap

    chunks = []

    for start in range(0, len(words), step):

        chunk = " ".join(words[start:start + size]).strip()

        if chunk:
            chunks.append(chunk)

    if not chunks:
        raise EmptyInputError("Content is too short or invalid to create chunks")

    logger.debug(
        "Chunking completed",
        extra={
            "total_words": len(words),
            "chunk_size": size,
            "overlap": overlap,
            "chunks_created": len(chunks),
        },
    )

    return chunks
