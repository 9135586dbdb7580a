from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from tenantrag.config import PLANS, SEARCH_LIMIT, SIMILARITY_THRESHOLD


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# TENANTS
# ============================================================

class PlanLimits(BaseModel):
    """Quota limits. A pure function of the plan tier."""
    api_calls_per_month: int
    sections_per_tenant: int
    tokens_per_request: int
    requests_per_minute: int
    requests_per_hour: int

    @classmethod
    def for_plan(cls, plan: str) -> "PlanLimits":
        return cls(**PLANS[plan]["limits"])


class ApiKeyRecord(BaseModel):
    key_hash: str
    name: str
    created_at: datetime = Field(default_factory=utcnow)
    last_used: Optional[datetime] = None


class Tenant(BaseModel):
    tenant_id: str
    name: str
    email: str
    business_name: str
    plan: str
    limits: PlanLimits
    api_keys: List[ApiKeyRecord] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class TenantContext:
    """
    Per-request tenant identity and limits.

    Passed explicitly through every call; never stored in module state.
    """
    tenant_id: str
    limits: PlanLimits
    business_name: str = ""

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantContext":
        return cls(
            tenant_id=tenant.tenant_id,
            limits=tenant.limits,
            business_name=tenant.business_name,
        )


class TenantInfo(BaseModel):
    """Public view of a tenant (no key hashes)."""
    tenant_id: str
    name: str
    email: str
    business_name: str
    plan: str
    limits: PlanLimits

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantInfo":
        return cls(
            tenant_id=tenant.tenant_id,
            name=tenant.name,
            email=tenant.email,
            business_name=tenant.business_name,
            plan=tenant.plan,
            limits=tenant.limits,
        )


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    business_name: Optional[str] = Field(None, max_length=200)
    plan: str = "free"
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class RegisterResponse(BaseModel):
    tenant: TenantInfo
    api_key: str


class UpdateTenantRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    business_name: Optional[str] = Field(None, max_length=200)
    metadata: Optional[Dict[str, Any]] = None


class ChangePlanRequest(BaseModel):
    plan: str


class CreateApiKeyRequest(BaseModel):
    name: str = Field("API Key", max_length=100)


class CreateApiKeyResponse(BaseModel):
    api_key: str
    name: str


class RevokeApiKeyRequest(BaseModel):
    """Either the raw key or the `id` shown by the key listing."""
    api_key: Optional[str] = Field(None, min_length=1)
    key_id: Optional[str] = Field(None, min_length=8, max_length=64)

    @model_validator(mode="after")
    def exactly_one_reference(self):
        if (self.api_key is None) == (self.key_id is None):
            raise ValueError("Provide exactly one of api_key or key_id")
        return self


class ApiKeyInfo(BaseModel):
    id: str
    name: str
    hint: str
    created_at: datetime
    last_used: Optional[datetime] = None


# ============================================================
# SECTIONS
# ============================================================

class SectionInput(BaseModel):
    """A section submitted for ingestion."""
    type: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=200)
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RegisterSectionsRequest(BaseModel):
    sections: List[SectionInput] = Field(..., min_length=1, max_length=50)


class SectionResult(BaseModel):
    section_id: str
    type: str
    title: str
    chunk_count: int
    status: str


class IngestResult(BaseModel):
    sections_created: int
    chunks_created: int
    sections: List[SectionResult]


class SectionInfo(BaseModel):
    section_id: str
    type: str
    title: str
    chunk_count: int
    status: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    content: Optional[str] = None


class ListSectionsResponse(BaseModel):
    sections: List[SectionInfo]
    total: int
    skip: int
    limit: int


class UpdateSectionRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class DeleteSectionResponse(BaseModel):
    section_id: str
    chunks_deleted: int


class StatsResponse(BaseModel):
    total_sections: int
    total_chunks: int
    sections_by_type: Dict[str, int]


# ============================================================
# QUERIES
# ============================================================

class PassageInfo(BaseModel):
    section_id: str
    title: str
    type: str
    text: str
    score: float = Field(..., ge=0.0, le=1.0)


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000)
    limit: int = Field(SEARCH_LIMIT, ge=1, le=50)
    min_score: float = Field(SIMILARITY_THRESHOLD, ge=0.0, le=1.0)
    section_type: Optional[str] = None

    @field_validator("query")
    @classmethod
    def validate_query(cls, v):
        if not v.strip():
            raise ValueError("Query cannot be empty or only whitespace")
        return v.strip()


class SearchResponse(BaseModel):
    passages: List[PassageInfo]
    tier: str


class ChatRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000)
    session_id: Optional[str] = Field(None, max_length=100)
    include_metadata: bool = False

    @field_validator("query")
    @classmethod
    def validate_query(cls, v):
        if not v.strip():
            raise ValueError("Query cannot be empty or only whitespace")
        return v.strip()


class SourceInfo(BaseModel):
    section_id: str
    title: str
    type: str
    score: float


class ChatResponse(BaseModel):
    answer: str
    confidence: str
    sources: List[SourceInfo]
    tier: str
    metadata: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    status: str
    embedder: Dict[str, Any]
    vector_index: bool
    text_index: bool
    kv_store: bool
