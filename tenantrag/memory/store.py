import itertools
import logging
import threading
import uuid

from collections import Counter
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from tenantrag.errors import (
    NotFoundError,
    QuotaExceededError,
    UpstreamUnavailableError,
)
from tenantrag.memory.qdrant_client import QdrantVectorDB
from tenantrag.memory.records import (
    STATUS_COMPLETED,
    Chunk,
    PreparedSection,
    Section,
)
from tenantrag.memory.text_index import BM25Index
from tenantrag.models import utcnow


logger = logging.getLogger(__name__)


def generate_section_id() -> str:
    return f"sec_{uuid.uuid4().hex[:21]}"


def generate_chunk_id() -> str:
    # Doubles as the Qdrant point id, which must be a UUID
    return str(uuid.uuid4())


# Point payload fields a chunk cannot be restored without
_REQUIRED_PAYLOAD = ("tenant_id", "section_id", "position", "seq", "text")


def _parse_time(value: Optional[str]) -> datetime:
    return datetime.fromisoformat(value) if value else utcnow()


def section_fields(section: Section, content: str, metadata: dict) -> dict:
    """Section-level payload stored alongside its chunk points."""

    return {
        "section_content": content,
        "section_metadata": dict(metadata),
        "created_at": section.created_at.isoformat(),
        "updated_at": utcnow().isoformat(),
    }


class SectionStore:
    """
    Tenant-scoped section and chunk storage.

    Rows live in process memory and are mirrored into the similarity
    index (Qdrant) and the text index (BM25). Every read and write takes
    a tenant id; there is no cross-tenant path.

    Writes follow reserve → index → commit:

    • sections are reserved as "pending" under the lock
    • chunks are pushed to the indexes with the lock released
    • sections flip to "completed" (visible) or are rolled back

    so a failed batch never leaves a partial section visible.

    Point payloads carry the full section, so a store over a persistent
    Qdrant collection is restored with rebuild_from_index() at startup.
    """

    def __init__(
        self,
        vector_index: Optional[QdrantVectorDB] = None,
        text_index: Optional[BM25Index] = None,
    ):

        self._vector_index = vector_index
        self._text_index = text_index

        self._lock = threading.Lock()
        self._seq = itertools.count(1)

        self._sections: Dict[str, Section] = {}
        self._chunks: Dict[str, Chunk] = {}
        self._section_chunks: Dict[str, List[str]] = {}

    # ============================================================
    # INTERNAL
    # ============================================================

    def _build_chunks(
        self,
        tenant_id: str,
        section_id: str,
        section_type: str,
        title: str,
        prepared: PreparedSection,
    ) -> List[Chunk]:

        return [
            Chunk(
                chunk_id=generate_chunk_id(),
                section_id=section_id,
                tenant_id=tenant_id,
                position=position,
                text=text,
                embedding=prepared.embeddings[position],
                section_title=title,
                section_type=section_type,
                metadata=dict(prepared.metadata),
                seq=next(self._seq),
            )
            for position, text in enumerate(prepared.chunks)
        ]

    def _owned(self, tenant_id: str, section_id: str) -> Section:
        """Caller must hold the lock."""

        section = self._sections.get(section_id)

        if section is None or section.tenant_id != tenant_id or not section.visible:
            raise NotFoundError("Section not found")

        return section

    def _drop_rows(self, section_ids: Sequence[str]) -> List[str]:
        """Caller must hold the lock. Returns removed chunk ids."""

        removed = []

        for section_id in section_ids:

            self._sections.pop(section_id, None)

            for chunk_id in self._section_chunks.pop(section_id, []):
                self._chunks.pop(chunk_id, None)
                removed.append(chunk_id)

        return removed

    def _index_chunks(
        self,
        chunks: List[Chunk],
        fields: Optional[Dict[str, dict]] = None,
    ) -> None:

        if self._vector_index is not None:

            try:
                self._vector_index.upsert(chunks, fields)

            except Exception as e:

                logger.error(
                    "Vector index write failed",
                    extra={"chunks": len(chunks), "error": str(e)},
                )

                raise UpstreamUnavailableError(
                    f"Similarity index unavailable: {e}"
                ) from e

        if self._text_index is not None:
            self._text_index.add_chunks(chunks)

    def _unindex_chunks(self, tenant_id: str, chunk_ids: List[str]) -> None:

        if self._text_index is not None:
            self._text_index.remove_chunks(tenant_id, chunk_ids)

        if self._vector_index is not None and chunk_ids:

            try:
                self._vector_index.delete_ids(chunk_ids)

            except Exception as e:
                # Orphaned points are filtered out at read time
                logger.warning(
                    "Vector index delete failed",
                    extra={
                        "tenant_id": tenant_id,
                        "chunks": len(chunk_ids),
                        "error": str(e),
                    },
                )

    # ============================================================
    # WRITES
    # ============================================================

    def create_sections(
        self,
        tenant_id: str,
        prepared: Sequence[PreparedSection],
        max_sections: int,
    ) -> List[Section]:
        """
        Store a batch of sections atomically.

        Raises QuotaExceededError when the batch would push the tenant
        past `max_sections`, UpstreamUnavailableError when indexing fails.
        """

        with self._lock:

            current = sum(
                1 for s in self._sections.values() if s.tenant_id == tenant_id
            )

            if current + len(prepared) > max_sections:
                raise QuotaExceededError(
                    f"Section limit exceeded. Your plan allows {max_sections} sections. "
                    f"Current: {current}, Attempting to add: {len(prepared)}",
                    used=current,
                    limit=max_sections,
                )

            sections = []
            all_chunks = []

            for item in prepared:

                section_id = generate_section_id()

                chunks = self._build_chunks(
                    tenant_id, section_id, item.type, item.title, item
                )

                section = Section(
                    section_id=section_id,
                    tenant_id=tenant_id,
                    type=item.type,
                    title=item.title,
                    content=item.content,
                    chunk_count=len(chunks),
                    metadata=dict(item.metadata),
                )

                self._sections[section_id] = section
                self._section_chunks[section_id] = [c.chunk_id for c in chunks]

                for chunk in chunks:
                    self._chunks[chunk.chunk_id] = chunk

                sections.append(section)
                all_chunks.extend(chunks)

        section_ids = [s.section_id for s in sections]

        fields = {
            s.section_id: section_fields(s, s.content, s.metadata)
            for s in sections
        }

        try:

            self._index_chunks(all_chunks, fields)

        except Exception:

            with self._lock:
                removed = self._drop_rows(section_ids)

            self._unindex_chunks(tenant_id, removed)

            raise

        with self._lock:

            now = utcnow()

            for section in sections:
                section.status = STATUS_COMPLETED
                section.updated_at = now

        logger.info(
            "Sections stored",
            extra={
                "tenant_id": tenant_id,
                "sections": len(sections),
                "chunks": len(all_chunks),
            },
        )

        return sections

    def replace_content(
        self,
        tenant_id: str,
        section_id: str,
        prepared: PreparedSection,
    ) -> Section:
        """Swap a section's content and chunks. Old chunks stay live until the swap."""

        with self._lock:

            section = self._owned(tenant_id, section_id)

            title = prepared.title or section.title

            new_chunks = self._build_chunks(
                tenant_id, section_id, section.type, title, prepared
            )

            fields = {
                section_id: section_fields(
                    section,
                    prepared.content,
                    prepared.metadata or section.metadata,
                )
            }

        # Raises before anything visible changed
        self._index_chunks(new_chunks, fields)

        with self._lock:

            section = self._sections.get(section_id)

            if section is None or section.tenant_id != tenant_id:
                stale = [c.chunk_id for c in new_chunks]
                old_ids = None
            else:
                old_ids = self._section_chunks.get(section_id, [])

                for chunk_id in old_ids:
                    self._chunks.pop(chunk_id, None)

                for chunk in new_chunks:
                    self._chunks[chunk.chunk_id] = chunk

                self._section_chunks[section_id] = [c.chunk_id for c in new_chunks]

                section.content = prepared.content
                section.title = title
                section.chunk_count = len(new_chunks)
                if prepared.metadata:
                    section.metadata = dict(prepared.metadata)
                section.updated_at = utcnow()

                stale = list(old_ids)

        self._unindex_chunks(tenant_id, stale)

        if old_ids is None:
            # Deleted concurrently
            raise NotFoundError("Section not found")

        logger.info(
            "Section content replaced",
            extra={
                "tenant_id": tenant_id,
                "section_id": section_id,
                "chunks": len(new_chunks),
            },
        )

        return section

    def update_details(
        self,
        tenant_id: str,
        section_id: str,
        title: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Section:
        """Change title/metadata without regenerating chunks."""

        with self._lock:

            section = self._owned(tenant_id, section_id)

            if title:
                section.title = title
            if metadata is not None:
                section.metadata = dict(metadata)
            section.updated_at = utcnow()

            chunks = [self._chunks[cid] for cid in self._section_chunks.get(section_id, [])]

            if title:
                for chunk in chunks:
                    chunk.section_title = title

        if title and self._text_index is not None:
            self._text_index.remove_chunks(tenant_id, [c.chunk_id for c in chunks])
            self._text_index.add_chunks(chunks)

        if self._vector_index is not None:

            try:
                self._vector_index.update_payload(
                    [c.chunk_id for c in chunks],
                    {
                        "section_title": section.title,
                        "section_metadata": dict(section.metadata),
                        "updated_at": section.updated_at.isoformat(),
                    },
                )

            except Exception as e:
                # Only a later rebuild sees the stale payload
                logger.warning(
                    "Vector index payload update failed",
                    extra={
                        "tenant_id": tenant_id,
                        "section_id": section_id,
                        "error": str(e),
                    },
                )

        return section

    def delete_section(self, tenant_id: str, section_id: str) -> int:
        """Delete a section and its chunks. Returns the number of chunks removed."""

        with self._lock:
            self._owned(tenant_id, section_id)
            removed = self._drop_rows([section_id])

        self._unindex_chunks(tenant_id, removed)

        logger.info(
            "Section deleted",
            extra={
                "tenant_id": tenant_id,
                "section_id": section_id,
                "chunks_deleted": len(removed),
            },
        )

        return len(removed)

    # ============================================================
    # STARTUP
    # ============================================================

    def rebuild_from_index(self) -> int:
        """
        Restore sections and chunks from the similarity index.

        Only runs on an empty store. Points without the payload written
        by upsert() are skipped. Returns the number of sections restored.
        """

        if self._vector_index is None:
            return 0

        with self._lock:
            if self._sections:
                return 0

        grouped: Dict[str, List[Tuple[Chunk, dict]]] = {}

        try:

            for chunk_id, vector, payload in self._vector_index.iter_points():

                if any(payload.get(key) is None for key in _REQUIRED_PAYLOAD):
                    continue

                chunk = Chunk(
                    chunk_id=chunk_id,
                    section_id=payload["section_id"],
                    tenant_id=payload["tenant_id"],
                    position=int(payload["position"]),
                    text=payload["text"],
                    embedding=np.array(vector, dtype="float32"),
                    section_title=payload.get("section_title", ""),
                    section_type=payload.get("section_type", ""),
                    metadata=dict(payload.get("section_metadata") or {}),
                    seq=int(payload["seq"]),
                )

                grouped.setdefault(chunk.section_id, []).append((chunk, payload))

        except Exception as e:

            logger.error(
                "Index rebuild failed",
                extra={"error": str(e)},
                exc_info=True,
            )

            return 0

        restored = []

        for section_id, rows in grouped.items():

            rows.sort(key=lambda row: row[0].position)

            chunks = [chunk for chunk, _ in rows]
            lead = rows[0][1]

            section = Section(
                section_id=section_id,
                tenant_id=chunks[0].tenant_id,
                type=chunks[0].section_type,
                title=chunks[0].section_title,
                content=lead.get("section_content") or " ".join(c.text for c in chunks),
                chunk_count=len(chunks),
                metadata=dict(lead.get("section_metadata") or {}),
                status=STATUS_COMPLETED,
                created_at=_parse_time(lead.get("created_at")),
                updated_at=_parse_time(lead.get("updated_at")),
            )

            restored.append((min(c.seq for c in chunks), section, chunks))

        if not restored:
            return 0

        # Oldest first, so listing order and tie-breaks survive the restart
        restored.sort(key=lambda item: item[0])

        all_chunks = []

        with self._lock:

            for _, section, chunks in restored:

                self._sections[section.section_id] = section
                self._section_chunks[section.section_id] = [c.chunk_id for c in chunks]

                for chunk in chunks:
                    self._chunks[chunk.chunk_id] = chunk

                all_chunks.extend(chunks)

            self._seq = itertools.count(max(c.seq for c in all_chunks) + 1)

        if self._text_index is not None:
            self._text_index.add_chunks(all_chunks)

        logger.info(
            "Sections restored from index",
            extra={"sections": len(restored), "chunks": len(all_chunks)},
        )

        return len(restored)

    # ============================================================
    # READS
    # ============================================================

    def get_section(self, tenant_id: str, section_id: str) -> Section:

        with self._lock:
            return self._owned(tenant_id, section_id)

    def list_sections(
        self,
        tenant_id: str,
        skip: int = 0,
        limit: int = 50,
        section_type: Optional[str] = None,
    ) -> List[Section]:
        """Visible sections, newest first."""

        with self._lock:

            sections = [
                s for s in self._sections.values()
                if s.tenant_id == tenant_id and s.visible
                and (section_type is None or s.type == section_type)
            ]

        sections.reverse()

        return sections[skip:skip + limit]

    def count_sections(self, tenant_id: str) -> int:
        """All sections, pending included, that count against the plan."""

        with self._lock:
            return sum(1 for s in self._sections.values() if s.tenant_id == tenant_id)

    def get_chunks(self, tenant_id: str, chunk_ids: Sequence[str]) -> Dict[str, Chunk]:
        """Visible chunks of this tenant, keyed by id. Unknown ids are skipped."""

        found = {}

        with self._lock:

            for chunk_id in chunk_ids:

                chunk = self._chunks.get(chunk_id)

                if chunk is None or chunk.tenant_id != tenant_id:
                    continue

                section = self._sections.get(chunk.section_id)

                if section is not None and section.visible:
                    found[chunk_id] = chunk

        return found

    def iter_chunks(
        self,
        tenant_id: str,
        section_type: Optional[str] = None,
    ) -> Iterator[Chunk]:
        """Visible chunks of this tenant in insertion order."""

        with self._lock:

            chunks = [
                chunk for chunk in self._chunks.values()
                if chunk.tenant_id == tenant_id
                and (section_type is None or chunk.section_type == section_type)
                and self._sections[chunk.section_id].visible
            ]

        chunks.sort(key=lambda c: c.seq)

        return iter(chunks)

    def section_chunks(self, tenant_id: str, section_id: str) -> List[Chunk]:

        with self._lock:
            self._owned(tenant_id, section_id)
            chunks = [self._chunks[cid] for cid in self._section_chunks[section_id]]

        return sorted(chunks, key=lambda c: c.position)

    def stats(self, tenant_id: str) -> dict:

        with self._lock:

            sections = [
                s for s in self._sections.values()
                if s.tenant_id == tenant_id and s.visible
            ]

        return {
            "total_sections": len(sections),
            "total_chunks": sum(s.chunk_count for s in sections),
            "sections_by_type": dict(Counter(s.type for s in sections)),
        }
