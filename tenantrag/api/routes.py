import logging
import time

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from tenantrag.errors import AuthenticationError, NotFoundError
from tenantrag.memory.records import Section
from tenantrag.models import (
    ApiKeyInfo,
    ChangePlanRequest,
    ChatRequest,
    ChatResponse,
    CreateApiKeyRequest,
    CreateApiKeyResponse,
    DeleteSectionResponse,
    HealthResponse,
    IngestResult,
    ListSectionsResponse,
    PassageInfo,
    RegisterRequest,
    RegisterResponse,
    RegisterSectionsRequest,
    RevokeApiKeyRequest,
    SearchRequest,
    SearchResponse,
    SectionInfo,
    StatsResponse,
    Tenant,
    TenantContext,
    TenantInfo,
    UpdateSectionRequest,
    UpdateTenantRequest,
)
from tenantrag.observability.metrics import metrics_tracker
from tenantrag.observability.posthog_client import posthog_client
from tenantrag.services import Services
from tenantrag.workflow.orchestrator import QueryOptions


logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================
# DEPENDENCIES
# ============================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_tenant(
    x_api_key: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> Tenant:

    if not x_api_key:
        raise AuthenticationError(
            "API key is required. Provide it in the X-API-Key header."
        )

    try:
        return services.directory.resolve_by_api_key(x_api_key)
    except NotFoundError:
        logger.info("Authentication failed", extra={"reason": "unknown_api_key"})
        raise AuthenticationError("Invalid API key")


def get_context(tenant: Tenant = Depends(get_tenant)) -> TenantContext:
    return TenantContext.from_tenant(tenant)


def enforce_quota(
    request: Request,
    response: Response,
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
) -> TenantContext:
    """Admission check; runs before any query endpoint body."""

    admission = services.orchestrator.admit(ctx)

    if not admission.allowed:

        metrics_tracker.record_denial(admission.reason)

        posthog_client.track_admission_denied(
            tenant_id=ctx.tenant_id,
            request_id=request.state.request_id,
            window=admission.reason,
        )

        admission.raise_for_denial()

    if admission.remaining_minute is not None:
        response.headers["X-RateLimit-Limit-Minute"] = str(ctx.limits.requests_per_minute)
        response.headers["X-RateLimit-Remaining-Minute"] = str(admission.remaining_minute)
        response.headers["X-RateLimit-Limit-Hour"] = str(ctx.limits.requests_per_hour)
        response.headers["X-RateLimit-Remaining-Hour"] = str(admission.remaining_hour)

    return ctx


def _section_info(section: Section, with_content: bool = False) -> SectionInfo:

    return SectionInfo(
        section_id=section.section_id,
        type=section.type,
        title=section.title,
        chunk_count=section.chunk_count,
        status=section.status,
        metadata=section.metadata,
        created_at=section.created_at,
        updated_at=section.updated_at,
        content=section.content if with_content else None,
    )


# ============================================================
# HEALTH / METRICS
# ============================================================

@router.get("/health", response_model=HealthResponse)
def health_check(services: Services = Depends(get_services)):

    vector_ok = services.vector_index is not None and services.vector_index.health_check()

    return HealthResponse(
        status="healthy",
        embedder=services.embedder.health_check(),
        vector_index=vector_ok,
        text_index=services.text_index is not None,
        kv_store=services.kv_store.ping(),
    )


@router.get("/metrics")
def get_metrics():
    return metrics_tracker.get_metrics()


# ============================================================
# TENANTS
# ============================================================

@router.post("/tenants/register", response_model=RegisterResponse, status_code=201)
def register_tenant(payload: RegisterRequest, services: Services = Depends(get_services)):

    tenant, api_key = services.directory.register(
        name=payload.name,
        email=payload.email,
        business_name=payload.business_name,
        plan=payload.plan,
        metadata=payload.metadata,
    )

    return RegisterResponse(tenant=TenantInfo.from_tenant(tenant), api_key=api_key)


@router.get("/tenants/me", response_model=TenantInfo)
def get_me(tenant: Tenant = Depends(get_tenant)):
    return TenantInfo.from_tenant(tenant)


@router.patch("/tenants/me", response_model=TenantInfo)
def update_me(
    payload: UpdateTenantRequest,
    tenant: Tenant = Depends(get_tenant),
    services: Services = Depends(get_services),
):

    updated = services.directory.update_profile(
        tenant.tenant_id,
        name=payload.name,
        business_name=payload.business_name,
        metadata=payload.metadata,
    )

    return TenantInfo.from_tenant(updated)


@router.put("/tenants/me/plan", response_model=TenantInfo)
def change_plan(
    payload: ChangePlanRequest,
    tenant: Tenant = Depends(get_tenant),
    services: Services = Depends(get_services),
):

    updated = services.directory.change_plan(tenant.tenant_id, payload.plan)

    return TenantInfo.from_tenant(updated)


@router.get("/tenants/me/usage")
def get_usage(
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
):

    usage = services.ledger.usage(ctx.tenant_id, ctx.limits)
    usage["sections"] = services.orchestrator.count_sections(ctx)
    usage["sections_per_tenant"] = ctx.limits.sections_per_tenant

    return usage


@router.get("/tenants/me/api-keys", response_model=List[ApiKeyInfo])
def list_api_keys(tenant: Tenant = Depends(get_tenant), services: Services = Depends(get_services)):
    return services.directory.list_api_keys(tenant.tenant_id)


@router.post("/tenants/me/api-keys", response_model=CreateApiKeyResponse, status_code=201)
def create_api_key(
    payload: CreateApiKeyRequest,
    tenant: Tenant = Depends(get_tenant),
    services: Services = Depends(get_services),
):

    api_key = services.directory.create_api_key(tenant.tenant_id, payload.name)

    return CreateApiKeyResponse(api_key=api_key, name=payload.name)


@router.post("/tenants/me/api-keys/revoke", status_code=204)
def revoke_api_key(
    payload: RevokeApiKeyRequest,
    tenant: Tenant = Depends(get_tenant),
    services: Services = Depends(get_services),
):
    services.directory.revoke_api_key(
        tenant.tenant_id,
        api_key=payload.api_key,
        key_id=payload.key_id,
    )


@router.delete("/tenants/me", status_code=204)
def delete_me(tenant: Tenant = Depends(get_tenant), services: Services = Depends(get_services)):
    services.directory.delete_tenant(tenant.tenant_id)


# ============================================================
# SECTIONS
# ============================================================

@router.post("/data/sections", response_model=IngestResult, status_code=201)
def register_sections(
    payload: RegisterSectionsRequest,
    request: Request,
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
):

    start_time = time.time()

    result = services.orchestrator.ingest(ctx, payload.sections)

    posthog_client.track_ingest(
        tenant_id=ctx.tenant_id,
        request_id=request.state.request_id,
        sections=result.sections_created,
        chunks=result.chunks_created,
        latency=time.time() - start_time,
    )

    return result


@router.get("/data/sections", response_model=ListSectionsResponse)
def list_sections(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    section_type: Optional[str] = Query(None, alias="type"),
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
):

    sections = services.orchestrator.list_sections(ctx, skip, limit, section_type)

    return ListSectionsResponse(
        sections=[_section_info(s) for s in sections],
        total=services.orchestrator.stats(ctx)["total_sections"],
        skip=skip,
        limit=limit,
    )


@router.get("/data/sections/{section_id}", response_model=SectionInfo)
def get_section(
    section_id: str,
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
):
    return _section_info(services.orchestrator.get_section(ctx, section_id), with_content=True)


@router.put("/data/sections/{section_id}", response_model=SectionInfo)
def update_section(
    section_id: str,
    payload: UpdateSectionRequest,
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
):

    section = services.orchestrator.update_section(
        ctx,
        section_id,
        title=payload.title,
        content=payload.content,
        metadata=payload.metadata,
    )

    return _section_info(section, with_content=True)


@router.delete("/data/sections/{section_id}", response_model=DeleteSectionResponse)
def delete_section(
    section_id: str,
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
):

    deleted = services.orchestrator.delete_section(ctx, section_id)

    return DeleteSectionResponse(section_id=section_id, chunks_deleted=deleted)


@router.get("/data/stats", response_model=StatsResponse)
def get_stats(ctx: TenantContext = Depends(get_context), services: Services = Depends(get_services)):
    return StatsResponse(**services.orchestrator.stats(ctx))


# ============================================================
# QUERIES
# ============================================================

@router.post("/chat/search", response_model=SearchResponse)
def search(
    payload: SearchRequest,
    request: Request,
    ctx: TenantContext = Depends(enforce_quota),
    services: Services = Depends(get_services),
):

    start_time = time.time()

    result = services.orchestrator.query(
        ctx,
        payload.query,
        options=QueryOptions(
            limit=payload.limit,
            min_score=payload.min_score,
            section_type=payload.section_type,
        ),
    )

    metrics_tracker.record_search(result.tier)

    posthog_client.track_query(
        tenant_id=ctx.tenant_id,
        request_id=request.state.request_id,
        tier=result.tier,
        results=len(result.passages),
        top_score=result.top_score,
        latency=time.time() - start_time,
    )

    return SearchResponse(
        passages=[
            PassageInfo(
                section_id=p.section_id,
                title=p.title,
                type=p.type,
                text=p.text,
                score=p.score,
            )
            for p in result.passages
        ],
        tier=result.tier,
    )


@router.post("/chat/query", response_model=ChatResponse)
def chat_query(
    payload: ChatRequest,
    request: Request,
    ctx: TenantContext = Depends(enforce_quota),
    services: Services = Depends(get_services),
):

    start_time = time.time()

    result = services.orchestrator.ask(
        ctx,
        payload.query,
        session_id=payload.session_id,
        include_metadata=payload.include_metadata,
    )

    metrics_tracker.record_search(result["tier"])

    posthog_client.track_query(
        tenant_id=ctx.tenant_id,
        request_id=request.state.request_id,
        tier=result["tier"],
        results=len(result["sources"]),
        top_score=result["sources"][0]["score"] if result["sources"] else None,
        latency=time.time() - start_time,
    )

    return ChatResponse(**result)


@router.delete("/chat/sessions/{session_id}", status_code=204)
def clear_session(
    session_id: str,
    ctx: TenantContext = Depends(get_context),
    services: Services = Depends(get_services),
):
    services.orchestrator.clear_session(ctx, session_id)
