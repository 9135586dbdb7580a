# tenantrag/services.py

"""
Service wiring.

Backends are chosen once here, from configuration; nothing downstream
branches on which backend is active.
"""

import logging
import time

from dataclasses import dataclass
from typing import Callable, Optional

from tenantrag.config import TEXT_INDEX_ENABLED
from tenantrag.db.kv_store import KeyValueStore, build_store
from tenantrag.llm.client import build_completion_client
from tenantrag.memory.embedder import Embedder, build_embedder
from tenantrag.memory.qdrant_client import QdrantVectorDB
from tenantrag.memory.retriever import RetrievalEngine
from tenantrag.memory.store import SectionStore
from tenantrag.memory.text_index import BM25Index
from tenantrag.quota.ledger import QuotaLedger
from tenantrag.tenants.directory import TenantDirectory, TenantRepository
from tenantrag.workflow.orchestrator import QueryOrchestrator
from tenantrag.workflow.session import SessionHistory

logger = logging.getLogger(__name__)


@dataclass
class Services:
    kv_store: KeyValueStore
    embedder: Embedder
    vector_index: Optional[QdrantVectorDB]
    text_index: Optional[BM25Index]
    store: SectionStore
    engine: RetrievalEngine
    ledger: QuotaLedger
    directory: TenantDirectory
    orchestrator: QueryOrchestrator


def build_services(
    kv_store: Optional[KeyValueStore] = None,
    embedder: Optional[Embedder] = None,
    vector_index: Optional[QdrantVectorDB] = None,
    text_index_enabled: bool = TEXT_INDEX_ENABLED,
    completion_client=None,
    clock: Callable[[], float] = time.time,
) -> Services:

    kv_store = kv_store or build_store()
    embedder = embedder or build_embedder()

    if vector_index is None:
        vector_index = QdrantVectorDB(dim=embedder.get_dimension())

    text_index = BM25Index() if text_index_enabled else None

    if completion_client is None:
        completion_client = build_completion_client()

    store = SectionStore(vector_index=vector_index, text_index=text_index)
    store.rebuild_from_index()

    engine = RetrievalEngine.build(embedder, store, vector_index, text_index)
    ledger = QuotaLedger(kv_store, clock=clock)

    orchestrator = QueryOrchestrator(
        store=store,
        embedder=embedder,
        engine=engine,
        ledger=ledger,
        sessions=SessionHistory(kv_store),
        completion_client=completion_client,
    )

    logger.info(
        "Services initialized",
        extra={
            "embedder": embedder.name,
            "tiers": engine.tier_names,
            "text_index": text_index is not None,
        },
    )

    return Services(
        kv_store=kv_store,
        embedder=embedder,
        vector_index=vector_index,
        text_index=text_index,
        store=store,
        engine=engine,
        ledger=ledger,
        directory=TenantDirectory(TenantRepository(kv_store), kv_store),
        orchestrator=orchestrator,
    )
