# tenantrag/memory/records.py

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from tenantrag.models import utcnow


STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"


@dataclass
class Section:
    section_id: str
    tenant_id: str
    type: str
    title: str
    content: str
    chunk_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def visible(self) -> bool:
        return self.status == STATUS_COMPLETED


@dataclass
class Chunk:
    chunk_id: str
    section_id: str
    tenant_id: str
    position: int
    text: str
    embedding: np.ndarray
    section_title: str
    section_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    # global insertion order, assigned by the store
    seq: int = 0


@dataclass
class Passage:
    """One ranked search result."""
    chunk_id: str
    section_id: str
    title: str
    type: str
    text: str
    score: float
    seq: int = 0

    @classmethod
    def from_chunk(cls, chunk: Chunk, score: float) -> "Passage":
        return cls(
            chunk_id=chunk.chunk_id,
            section_id=chunk.section_id,
            title=chunk.section_title,
            type=chunk.section_type,
            text=chunk.text,
            score=score,
            seq=chunk.seq,
        )


@dataclass
class PreparedSection:
    """A validated, chunked and embedded section awaiting storage."""
    type: str
    title: str
    content: str
    chunks: List[str]
    embeddings: np.ndarray
    metadata: Dict[str, Any] = field(default_factory=dict)
    section_id: Optional[str] = None
