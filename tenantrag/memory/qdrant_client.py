import logging
import threading
from contextlib import nullcontext
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from qdrant_client import QdrantClient

from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from tenantrag.config import (
    QDRANT_URL,
    QDRANT_API_KEY,
    QDRANT_COLLECTION,
)
from tenantrag.memory.records import Chunk

logger = logging.getLogger(__name__)


_PAYLOAD_INDEXES = ("tenant_id", "section_id", "section_type")


def tenant_filter(
    tenant_id: str,
    section_type: Optional[str] = None,
    section_id: Optional[str] = None,
) -> Filter:
    """Every index query and delete goes through this filter."""

    must = [FieldCondition(key="tenant_id", match=MatchValue(value=tenant_id))]

    if section_type:
        must.append(
            FieldCondition(key="section_type", match=MatchValue(value=section_type))
        )

    if section_id:
        must.append(
            FieldCondition(key="section_id", match=MatchValue(value=section_id))
        )

    return Filter(must=must)


class QdrantVectorDB:
    """
    Similarity index over chunk embeddings.

    Cosine distance, one collection per deployment, tenant isolation
    through payload filters. Runs in local in-memory mode when no
    QDRANT_URL is configured.
    """

    def __init__(
        self,
        dim: int,
        url: Optional[str] = QDRANT_URL,
        api_key: Optional[str] = QDRANT_API_KEY,
        collection: str = QDRANT_COLLECTION,
        client: Optional[QdrantClient] = None,
    ):

        self._dim = dim
        self._collection = collection

        if client is not None:
            self._client = client
        elif url:
            self._client = QdrantClient(url=url, api_key=api_key, timeout=60.0)
        else:
            self._client = QdrantClient(location=":memory:")

        # Local mode is an in-process engine without its own locking
        self._guard = nullcontext() if url else threading.Lock()

        self._ensure_collection()

        logger.info(
            "Qdrant client initialized",
            extra={
                "collection": self._collection,
                "dimension": dim,
            },
        )

    def _ensure_collection(self):

        if not self._client.collection_exists(self._collection):

            self._client.create_collection(
                collection_name=self._collection,
                vectors_config=VectorParams(
                    size=self._dim,
                    distance=Distance.COSINE,
                ),
            )

            logger.info(
                "Qdrant collection created",
                extra={"collection": self._collection},
            )

        for field_name in _PAYLOAD_INDEXES:

            try:

                self._client.create_payload_index(
                    collection_name=self._collection,
                    field_name=field_name,
                    field_schema=PayloadSchemaType.KEYWORD,
                )

            except Exception as e:
                # Already exists, or unsupported in local mode
                logger.debug(
                    "Payload index skipped",
                    extra={"field": field_name, "error": str(e)},
                )

    def upsert(
        self,
        chunks: Sequence[Chunk],
        section_fields: Optional[Dict[str, dict]] = None,
    ) -> None:
        """
        Write chunk points.

        The payload carries everything needed to rebuild the section
        store at startup. `section_fields` maps section id to section
        level fields; "section_content" is kept on the first chunk only.
        """

        if not chunks:
            return

        section_fields = section_fields or {}

        points = []

        for chunk in chunks:

            payload = {
                "tenant_id": chunk.tenant_id,
                "section_id": chunk.section_id,
                "section_type": chunk.section_type,
                "section_title": chunk.section_title,
                "position": chunk.position,
                "seq": chunk.seq,
                "text": chunk.text,
            }

            extra = dict(section_fields.get(chunk.section_id, {}))

            if chunk.position != 0:
                extra.pop("section_content", None)

            payload.update(extra)

            points.append(
                PointStruct(
                    id=chunk.chunk_id,
                    vector=chunk.embedding.tolist(),
                    payload=payload,
                )
            )

        with self._guard:
            self._client.upsert(
                collection_name=self._collection,
                points=points,
                wait=True,
            )

    def update_payload(self, chunk_ids: Sequence[str], payload: dict) -> None:
        """Merge `payload` into existing points."""

        if not chunk_ids:
            return

        with self._guard:
            self._client.set_payload(
                collection_name=self._collection,
                payload=payload,
                points=list(chunk_ids),
                wait=True,
            )

    def iter_points(self, batch_size: int = 100) -> Iterator[Tuple[str, List[float], dict]]:
        """Every stored point as (chunk_id, vector, payload), scrolled in batches."""

        offset = None

        while True:

            with self._guard:
                points, offset = self._client.scroll(
                    collection_name=self._collection,
                    limit=batch_size,
                    offset=offset,
                    with_payload=True,
                    with_vectors=True,
                )

            for point in points:
                yield str(point.id), point.vector, point.payload or {}

            if offset is None or not points:
                break

    def delete_ids(self, chunk_ids: Sequence[str]) -> None:

        if not chunk_ids:
            return

        with self._guard:
            self._client.delete(
                collection_name=self._collection,
                points_selector=PointIdsList(points=list(chunk_ids)),
                wait=True,
            )

    def nearest_neighbors(
        self,
        vector,
        k: int,
        tenant_id: str,
        section_type: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        """Top-k (chunk_id, score) pairs, score clamped to [0, 1]."""

        with self._guard:
            response = self._client.query_points(
                collection_name=self._collection,
                query=[float(x) for x in vector],
                query_filter=tenant_filter(tenant_id, section_type=section_type),
                limit=k,
                with_payload=False,
            )

        return [
            (str(point.id), min(1.0, max(0.0, float(point.score))))
            for point in response.points
        ]

    def count(self, tenant_id: Optional[str] = None) -> int:

        with self._guard:
            result = self._client.count(
                collection_name=self._collection,
                count_filter=tenant_filter(tenant_id) if tenant_id else None,
                exact=True,
            )

        return result.count

    def health_check(self) -> bool:

        try:
            self._client.get_collections()
            return True
        except Exception as e:
            logger.warning("Qdrant health check failed", extra={"error": str(e)})
            return False
