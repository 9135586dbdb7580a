# tenantrag/memory/retriever.py

"""
Tiered retrieval.

Tiers run in strict order, each filtered by tenant:

1. VectorTier - embedding similarity through the Qdrant index
2. TextTier - BM25 relevance through the text index
3. KeywordTier - conjunctive keyword match over stored chunks

A tier returns either a non-empty ranked list, which ends the search,
or an empty list, which hands over to the next tier. Infrastructure
failures in the first two tiers count as "empty"; the keyword tier has
no fallback, so its failures raise RetrievalError.
"""

import logging
import re

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from tenantrag.config import (
    CANDIDATE_FACTOR,
    KEYWORD_HIT_WEIGHT,
    KEYWORD_MIN_LENGTH,
    KEYWORD_MIN_SCORE,
    SEARCH_LIMIT,
    SIMILARITY_THRESHOLD,
)
from tenantrag.errors import RetrievalError
from tenantrag.memory.embedder import Embedder
from tenantrag.memory.qdrant_client import QdrantVectorDB
from tenantrag.memory.records import Passage
from tenantrag.memory.store import SectionStore
from tenantrag.memory.text_index import BM25Index

logger = logging.getLogger(__name__)


TIER_NONE = "none"


# ============================================================
# PURE SCORING HELPERS
# ============================================================

def rank(passages: Sequence[Passage], limit: int) -> List[Passage]:
    """Descending score, earliest-inserted chunk first on ties."""

    return sorted(passages, key=lambda p: (-p.score, p.seq))[:limit]


def normalize_text_score(raw: float) -> float:
    """Map an unbounded relevance score onto [0, 1), preserving order."""

    if raw <= 0:
        return 0.0

    return raw / (1.0 + raw)


def keyword_terms(query: str) -> List[str]:

    return [
        word for word in query.lower().split()
        if len(word) >= KEYWORD_MIN_LENGTH
    ]


def keyword_pattern(keywords: Sequence[str]) -> re.Pattern:
    """
    Matches only when every keyword occurs somewhere in the text.

    Apply with .match(); every lookahead already scans from offset 0.
    """

    lookaheads = "".join(f"(?=.*{re.escape(k)})" for k in keywords)

    return re.compile(lookaheads, re.IGNORECASE | re.DOTALL)


def keyword_score(
    keywords: Sequence[str],
    text: str,
    weight: float = KEYWORD_HIT_WEIGHT,
) -> float:
    """
    weight × total keyword occurrences, capped at 1.0.

    No diminishing returns and no length normalization, so short chunks
    dense in keywords rank high. Tune through KEYWORD_HIT_WEIGHT.
    """

    lowered = text.lower()

    hits = sum(len(re.findall(re.escape(k), lowered)) for k in keywords)

    return min(1.0, weight * hits)


# ============================================================
# TIERS
# ============================================================

class VectorTier:

    name = "vector"

    def __init__(self, embedder: Embedder, index: Optional[QdrantVectorDB], store: SectionStore):
        self._embedder = embedder
        self._index = index
        self._store = store

    def search(self, tenant_id, query, limit, min_score, section_type=None) -> List[Passage]:

        if self._index is None:
            return []

        try:

            vector = self._embedder.embed(query)

            hits = self._index.nearest_neighbors(
                vector,
                k=limit * CANDIDATE_FACTOR,
                tenant_id=tenant_id,
                section_type=section_type,
            )

        except Exception as e:

            logger.warning(
                "Vector search failed, falling back",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )

            return []

        chunks = self._store.get_chunks(tenant_id, [chunk_id for chunk_id, _ in hits])

        passages = [
            Passage.from_chunk(chunks[chunk_id], score)
            for chunk_id, score in hits
            if chunk_id in chunks and score >= min_score
        ]

        return rank(passages, limit)


class TextTier:

    name = "text"

    def __init__(self, index: Optional[BM25Index], store: SectionStore):
        self._index = index
        self._store = store

    def search(self, tenant_id, query, limit, min_score, section_type=None) -> List[Passage]:

        if self._index is None:
            return []

        try:

            hits = self._index.text_search(
                query,
                tenant_id=tenant_id,
                section_type=section_type,
                k=limit,
            )

        except Exception as e:

            logger.warning(
                "Text search failed, falling back",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )

            return []

        chunks = self._store.get_chunks(tenant_id, [chunk_id for chunk_id, _ in hits])

        passages = [
            Passage.from_chunk(chunks[chunk_id], normalize_text_score(raw))
            for chunk_id, raw in hits
            if chunk_id in chunks
        ]

        return rank(passages, limit)


class KeywordTier:

    name = "keyword"

    def __init__(self, store: SectionStore):
        self._store = store

    def search(self, tenant_id, query, limit, min_score, section_type=None) -> List[Passage]:

        keywords = keyword_terms(query)

        if not keywords:
            return []

        pattern = keyword_pattern(keywords)

        try:

            passages = []

            for chunk in self._store.iter_chunks(tenant_id, section_type):

                haystack = f"{chunk.text} {chunk.section_title}"

                if not pattern.match(haystack):
                    continue

                score = keyword_score(keywords, haystack)

                if score > KEYWORD_MIN_SCORE:
                    passages.append(Passage.from_chunk(chunk, score))

        except Exception as e:

            logger.error(
                "Keyword search failed",
                extra={"tenant_id": tenant_id, "error": str(e)},
                exc_info=True,
            )

            raise RetrievalError(f"Keyword search failed: {e}") from e

        return rank(passages, limit)


# ============================================================
# ENGINE
# ============================================================

@dataclass
class SearchResult:
    passages: List[Passage] = field(default_factory=list)
    tier: str = TIER_NONE

    @property
    def top_score(self) -> Optional[float]:
        return self.passages[0].score if self.passages else None


class RetrievalEngine:

    def __init__(self, tiers: Sequence):
        self._tiers = list(tiers)

    @classmethod
    def build(
        cls,
        embedder: Embedder,
        store: SectionStore,
        vector_index: Optional[QdrantVectorDB] = None,
        text_index: Optional[BM25Index] = None,
    ) -> "RetrievalEngine":

        return cls([
            VectorTier(embedder, vector_index, store),
            TextTier(text_index, store),
            KeywordTier(store),
        ])

    @property
    def tier_names(self) -> List[str]:
        return [tier.name for tier in self._tiers]

    def search(
        self,
        tenant_id: str,
        query: str,
        limit: int = SEARCH_LIMIT,
        min_score: float = SIMILARITY_THRESHOLD,
        section_type: Optional[str] = None,
    ) -> SearchResult:
        """
        Ranked passages from the first tier that produces any.

        An empty result means "insufficient information", not an error.
        """

        for tier in self._tiers:

            passages = tier.search(tenant_id, query, limit, min_score, section_type)

            if passages:

                logger.info(
                    "Search completed",
                    extra={
                        "tenant_id": tenant_id,
                        "tier": tier.name,
                        "results": len(passages),
                    },
                )

                return SearchResult(passages=passages, tier=tier.name)

            logger.debug(
                "Tier returned no results",
                extra={"tenant_id": tenant_id, "tier": tier.name},
            )

        logger.info(
            "Search returned no results",
            extra={"tenant_id": tenant_id},
        )

        return SearchResult()
