"""
BM25 text-relevance index over chunk text.

Dense hash or model embeddings miss exact terms; this index ranks a
tenant's chunks by keyword relevance instead:

  1. Tokenize every chunk (lowercase alphanumerics, stopwords removed)
  2. Track per-tenant document frequencies, so IDF is tenant-local
  3. Score chunks by term frequency × IDF, normalized by chunk length

Statistics are kept per tenant; a query never sees another tenant's
documents, not even through IDF.
"""

import logging
import math
import re
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from tenantrag.memory.records import Chunk

logger = logging.getLogger(__name__)


_STOPWORDS = frozenset("""
a an and are as at be but by do does for from has have how i if in is it
its me my no not of on or our so than that the their them then there these
they this to was we what when where which who why will with you your
""".split())


def tokenize(text: str) -> List[str]:
    tokens = re.findall(r"[a-z0-9]+", text.lower())
    return [t for t in tokens if t not in _STOPWORDS]


@dataclass
class _Doc:
    terms: Counter
    length: int
    section_type: str
    seq: int


class _TenantCorpus:

    def __init__(self):
        self.docs: Dict[str, _Doc] = {}
        self.doc_freqs: Counter = Counter()
        self.total_length = 0

    def add(self, chunk_id: str, doc: _Doc):
        self.docs[chunk_id] = doc
        self.doc_freqs.update(doc.terms.keys())
        self.total_length += doc.length

    def remove(self, chunk_id: str):
        doc = self.docs.pop(chunk_id, None)
        if doc is None:
            return
        self.doc_freqs.subtract(doc.terms.keys())
        self.doc_freqs += Counter()  # drop zero counts
        self.total_length -= doc.length


class BM25Index:
    """
    Parameters:
      - k1 (default 1.5): term frequency saturation
      - b (default 0.75): length normalization
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._lock = threading.Lock()
        self._tenants: Dict[str, _TenantCorpus] = {}

    def add_chunks(self, chunks: List[Chunk]):

        with self._lock:
            for chunk in chunks:
                tokens = tokenize(chunk.text + " " + chunk.section_title)
                corpus = self._tenants.setdefault(chunk.tenant_id, _TenantCorpus())
                corpus.add(
                    chunk.chunk_id,
                    _Doc(Counter(tokens), len(tokens), chunk.section_type, chunk.seq),
                )

    def remove_chunks(self, tenant_id: str, chunk_ids: List[str]):

        with self._lock:
            corpus = self._tenants.get(tenant_id)
            if corpus is None:
                return
            for chunk_id in chunk_ids:
                corpus.remove(chunk_id)

    def text_search(
        self,
        query: str,
        tenant_id: str,
        section_type: Optional[str] = None,
        k: int = 5,
    ) -> List[Tuple[str, float]]:
        """Top-k (chunk_id, raw BM25 score); only positive scores."""

        query_tokens = tokenize(query)
        if not query_tokens:
            return []

        with self._lock:

            corpus = self._tenants.get(tenant_id)
            if corpus is None or not corpus.docs:
                return []

            n_docs = len(corpus.docs)
            avg_dl = corpus.total_length / n_docs or 1.0

            idf = {
                term: math.log(
                    (n_docs - corpus.doc_freqs[term] + 0.5)
                    / (corpus.doc_freqs[term] + 0.5)
                    + 1.0
                )
                for term in set(query_tokens)
            }

            scored = []

            for chunk_id, doc in corpus.docs.items():

                if section_type and doc.section_type != section_type:
                    continue

                score = 0.0
                for term in query_tokens:
                    tf = doc.terms.get(term, 0)
                    if not tf:
                        continue
                    numerator = tf * (self.k1 + 1)
                    denominator = tf + self.k1 * (1 - self.b + self.b * doc.length / avg_dl)
                    score += idf[term] * numerator / denominator

                if score > 0:
                    scored.append((score, doc.seq, chunk_id))

        scored.sort(key=lambda item: (-item[0], item[1]))

        return [(chunk_id, score) for score, _, chunk_id in scored[:k]]

    def size(self, tenant_id: str) -> int:

        with self._lock:
            corpus = self._tenants.get(tenant_id)
            return len(corpus.docs) if corpus else 0
