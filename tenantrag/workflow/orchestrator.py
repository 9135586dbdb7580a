# tenantrag/workflow/orchestrator.py

"""
Query orchestration.

Ingestion:  validate → chunk → embed (one batch) → store (atomic)
Querying:   admit (called by the router) → tiered search → answer

Tenant identity and limits travel in an explicit TenantContext.
"""

import logging

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from tenantrag.config import CHUNK_OVERLAP, CHUNK_SIZE, SEARCH_LIMIT, SIMILARITY_THRESHOLD
from tenantrag.errors import EmptyContentError, EmptyInputError, QuotaExceededError
from tenantrag.memory.chunker import chunk_text
from tenantrag.memory.embedder import Embedder
from tenantrag.memory.records import PreparedSection, Section
from tenantrag.memory.retriever import RetrievalEngine, SearchResult
from tenantrag.memory.store import SectionStore
from tenantrag.models import (
    IngestResult,
    SectionInput,
    SectionResult,
    TenantContext,
)
from tenantrag.quota.ledger import Admission, QuotaLedger
from tenantrag.workflow.answer import compose_answer
from tenantrag.workflow.session import SessionHistory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryOptions:
    limit: int = SEARCH_LIMIT
    min_score: float = SIMILARITY_THRESHOLD
    section_type: Optional[str] = None


class QueryOrchestrator:

    def __init__(
        self,
        store: SectionStore,
        embedder: Embedder,
        engine: RetrievalEngine,
        ledger: QuotaLedger,
        sessions: SessionHistory,
        completion_client=None,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
    ):
        self._store = store
        self._embedder = embedder
        self._engine = engine
        self._ledger = ledger
        self._sessions = sessions
        self._completion_client = completion_client
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap

    # ============================================================
    # INGESTION
    # ============================================================

    def _chunk(self, title: str, content: Optional[str]) -> List[str]:

        try:
            return chunk_text(content or "", self._chunk_size, self._chunk_overlap)
        except EmptyInputError as e:
            raise EmptyContentError(f'Section "{title}" has empty content') from e

    def ingest(self, ctx: TenantContext, sections: Sequence[SectionInput]) -> IngestResult:
        """
        Register a batch of sections. All or nothing.

        Raises:
            QuotaExceededError: batch exceeds sections_per_tenant
            EmptyContentError: a section has no usable content
            EmbeddingUnavailableError / UpstreamUnavailableError
        """

        limit = ctx.limits.sections_per_tenant
        current = self._store.count_sections(ctx.tenant_id)

        if current + len(sections) > limit:
            raise QuotaExceededError(
                f"Section limit exceeded. Your plan allows {limit} sections. "
                f"Current: {current}, Attempting to add: {len(sections)}",
                used=current,
                limit=limit,
            )

        chunked = [(section, self._chunk(section.title, section.content)) for section in sections]

        texts = [text for _, chunks in chunked for text in chunks]

        logger.info(
            "Generating embeddings",
            extra={"tenant_id": ctx.tenant_id, "chunks": len(texts)},
        )

        embeddings = self._embedder.embed_batch(texts)

        prepared = []
        offset = 0

        for section, chunks in chunked:

            prepared.append(
                PreparedSection(
                    type=section.type,
                    title=section.title,
                    content=section.content,
                    chunks=chunks,
                    embeddings=embeddings[offset:offset + len(chunks)],
                    metadata=section.metadata,
                )
            )

            offset += len(chunks)

        stored = self._store.create_sections(ctx.tenant_id, prepared, limit)

        return IngestResult(
            sections_created=len(stored),
            chunks_created=sum(s.chunk_count for s in stored),
            sections=[
                SectionResult(
                    section_id=s.section_id,
                    type=s.type,
                    title=s.title,
                    chunk_count=s.chunk_count,
                    status=s.status,
                )
                for s in stored
            ],
        )

    def update_section(
        self,
        ctx: TenantContext,
        section_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Section:
        """New content regenerates every chunk; title/metadata alone do not."""

        if content is None:
            return self._store.update_details(ctx.tenant_id, section_id, title, metadata)

        # existence check before paying for embeddings
        current = self._store.get_section(ctx.tenant_id, section_id)

        chunks = self._chunk(title or current.title, content)

        logger.info(
            "Regenerating embeddings",
            extra={"tenant_id": ctx.tenant_id, "section_id": section_id, "chunks": len(chunks)},
        )

        prepared = PreparedSection(
            type=current.type,
            title=title or current.title,
            content=content,
            chunks=chunks,
            embeddings=self._embedder.embed_batch(chunks),
            metadata=metadata or {},
        )

        return self._store.replace_content(ctx.tenant_id, section_id, prepared)

    def delete_section(self, ctx: TenantContext, section_id: str) -> int:
        return self._store.delete_section(ctx.tenant_id, section_id)

    def get_section(self, ctx: TenantContext, section_id: str) -> Section:
        return self._store.get_section(ctx.tenant_id, section_id)

    def list_sections(self, ctx: TenantContext, skip: int = 0, limit: int = 50,
                      section_type: Optional[str] = None) -> List[Section]:
        return self._store.list_sections(ctx.tenant_id, skip, limit, section_type)

    def count_sections(self, ctx: TenantContext) -> int:
        return self._store.count_sections(ctx.tenant_id)

    def stats(self, ctx: TenantContext) -> dict:
        return self._store.stats(ctx.tenant_id)

    # ============================================================
    # QUERYING
    # ============================================================

    def admit(self, ctx: TenantContext) -> Admission:
        return self._ledger.admit(ctx.tenant_id, ctx.limits)

    def query(
        self,
        ctx: TenantContext,
        text: str,
        session_id: Optional[str] = None,
        options: Optional[QueryOptions] = None,
    ) -> SearchResult:
        """
        Ranked passages plus the tier that produced them.

        `session_id` only correlates the search in logs; history is read
        and written by `ask`.
        """

        options = options or QueryOptions()

        result = self._engine.search(
            ctx.tenant_id,
            text,
            limit=options.limit,
            min_score=options.min_score,
            section_type=options.section_type,
        )

        logger.debug(
            "Query resolved",
            extra={
                "tenant_id": ctx.tenant_id,
                "session_id": session_id,
                "tier": result.tier,
            },
        )

        return result

    def ask(
        self,
        ctx: TenantContext,
        text: str,
        session_id: Optional[str] = None,
        include_metadata: bool = False,
        options: Optional[QueryOptions] = None,
    ) -> Dict:
        """Retrieve, compose an answer, and record the exchange in the session."""

        result = self.query(ctx, text, session_id, options)

        history = self._sessions.get(ctx.tenant_id, session_id) if session_id else []

        response = compose_answer(
            query=text,
            passages=result.passages,
            tier=result.tier,
            business_name=ctx.business_name,
            tokens_per_request=ctx.limits.tokens_per_request,
            completion_client=self._completion_client,
            history=history,
            include_metadata=include_metadata,
        )

        if session_id and result.passages:
            self._sessions.append(ctx.tenant_id, session_id, text, response["answer"])

        logger.info(
            "Chat query processed",
            extra={
                "tenant_id": ctx.tenant_id,
                "tier": result.tier,
                "confidence": response["confidence"],
                "sources": len(result.passages),
            },
        )

        return response

    def clear_session(self, ctx: TenantContext, session_id: str) -> None:
        self._sessions.clear(ctx.tenant_id, session_id)
