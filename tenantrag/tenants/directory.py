# tenantrag/tenants/directory.py

"""
Tenant directory with read-through caching.

Two cache entries per tenant, both in the shared key-value store:

• apikey:{sha256(key)} → tenant id   (API_KEY_CACHE_TTL)
• tenant:{tenant id}   → profile JSON (TENANT_CACHE_TTL)

Every mutation invalidates the affected entries before returning, so
a plan change is visible to the very next admission decision. Cache
failures are logged and treated as misses.

The tenant documents live in the same store under tenantdb:* keys,
written without expiry.
"""

import hashlib
import logging
import secrets
import threading
import uuid

from typing import Callable, List, Optional

from tenantrag.config import (
    API_KEY_CACHE_TTL,
    DEFAULT_PLAN,
    PLANS,
    TENANT_CACHE_TTL,
)
from tenantrag.db.kv_store import KeyValueStore
from tenantrag.errors import (
    InvalidPlanError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from tenantrag.models import (
    ApiKeyInfo,
    ApiKeyRecord,
    PlanLimits,
    Tenant,
    utcnow,
)

logger = logging.getLogger(__name__)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return f"sk_{secrets.token_urlsafe(24)}"


def generate_tenant_id() -> str:
    return f"ten_{uuid.uuid4().hex[:21]}"


def _tenant_key(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def _api_key_key(key_hash: str) -> str:
    return f"apikey:{key_hash}"


def _record_key(tenant_id: str) -> str:
    return f"tenantdb:tenant:{tenant_id}"


def _email_index_key(email: str) -> str:
    return f"tenantdb:email:{email}"


def _key_hash_index_key(key_hash: str) -> str:
    return f"tenantdb:keyhash:{key_hash}"


class TenantRepository:
    """
    Tenant documents in the key-value store, written without expiry.

    Backed by Redis, tenants outlive the process. Email and API-key
    lookups go through index keys kept next to the documents. Store
    errors propagate: this is the record of truth, not a cache.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._lock = threading.Lock()

    def _load(self, tenant_id: str) -> Optional[Tenant]:

        raw = self._store.get(_record_key(tenant_id))

        return Tenant.model_validate_json(raw) if raw else None

    def _save(self, tenant: Tenant) -> None:
        self._store.set(_record_key(tenant.tenant_id), tenant.model_dump_json())

    def insert(self, tenant: Tenant) -> None:

        with self._lock:

            if self._store.get(_email_index_key(tenant.email)):
                raise ValidationError("Email already registered")

            self._save(tenant)
            self._store.set(_email_index_key(tenant.email), tenant.tenant_id)

            for record in tenant.api_keys:
                self._store.set(_key_hash_index_key(record.key_hash), tenant.tenant_id)

    def find_by_id(self, tenant_id: str) -> Optional[Tenant]:
        return self._load(tenant_id)

    def find_by_key_hash(self, key_hash: str) -> Optional[Tenant]:

        tenant_id = self._store.get(_key_hash_index_key(key_hash))

        if not tenant_id:
            return None

        tenant = self._load(tenant_id)

        if tenant is None or not tenant.is_active:
            return None

        if not any(k.key_hash == key_hash for k in tenant.api_keys):
            return None

        return tenant

    def update(self, tenant_id: str, mutate: Callable[[Tenant], None]) -> Tenant:
        """Apply `mutate` to the active tenant document and write it back."""

        with self._lock:

            tenant = self._load(tenant_id)

            if tenant is None or not tenant.is_active:
                raise NotFoundError("Tenant not found")

            before = {k.key_hash for k in tenant.api_keys}

            mutate(tenant)
            tenant.updated_at = utcnow()

            after = {k.key_hash for k in tenant.api_keys}

            self._save(tenant)

            for key_hash in after - before:
                self._store.set(_key_hash_index_key(key_hash), tenant_id)

            for key_hash in before - after:
                self._store.delete(_key_hash_index_key(key_hash))

            return tenant


class TenantDirectory:

    def __init__(self, repository: TenantRepository, cache: KeyValueStore):
        self._repository = repository
        self._cache = cache

    # ============================================================
    # CACHE HELPERS (fail-miss)
    # ============================================================

    def _cache_get(self, key: str) -> Optional[str]:
        try:
            return self._cache.get(key)
        except StoreUnavailableError as e:
            logger.warning("Tenant cache read failed", extra={"error": str(e)})
            return None

    def _cache_set(self, key: str, value: str, ttl: int) -> None:
        try:
            self._cache.set(key, value, ttl)
        except StoreUnavailableError as e:
            logger.warning("Tenant cache write failed", extra={"error": str(e)})

    def _invalidate(self, *keys: str) -> None:
        for key in keys:
            try:
                self._cache.delete(key)
            except StoreUnavailableError as e:
                logger.error(
                    "Tenant cache invalidation failed",
                    extra={"error": str(e)},
                )

    # ============================================================
    # RESOLUTION
    # ============================================================

    def resolve_by_id(self, tenant_id: str) -> Tenant:

        cached = self._cache_get(_tenant_key(tenant_id))

        if cached:
            tenant = Tenant.model_validate_json(cached)
            if tenant.is_active:
                return tenant

        tenant = self._repository.find_by_id(tenant_id)

        if tenant is None or not tenant.is_active:
            raise NotFoundError("Tenant not found")

        self._cache_set(_tenant_key(tenant_id), tenant.model_dump_json(), TENANT_CACHE_TTL)

        return tenant

    def resolve_by_api_key(self, api_key: str) -> Tenant:

        key_hash = hash_api_key(api_key)

        cached_id = self._cache_get(_api_key_key(key_hash))

        if cached_id:

            try:
                tenant = self.resolve_by_id(cached_id)
            except NotFoundError:
                tenant = None

            if tenant is not None and any(k.key_hash == key_hash for k in tenant.api_keys):
                return tenant

            self._invalidate(_api_key_key(key_hash))

        tenant = self._repository.find_by_key_hash(key_hash)

        if tenant is None:
            raise NotFoundError("Invalid API key")

        def touch(row: Tenant):
            for record in row.api_keys:
                if record.key_hash == key_hash:
                    record.last_used = utcnow()

        tenant = self._repository.update(tenant.tenant_id, touch)

        self._invalidate(_tenant_key(tenant.tenant_id))
        self._cache_set(_api_key_key(key_hash), tenant.tenant_id, API_KEY_CACHE_TTL)

        return tenant

    # ============================================================
    # MUTATIONS
    # ============================================================

    def register(
        self,
        name: str,
        email: str,
        business_name: Optional[str] = None,
        plan: str = DEFAULT_PLAN,
        metadata: Optional[dict] = None,
    ):
        """Create a tenant. Returns (tenant, raw API key); the key is shown once."""

        if plan not in PLANS:
            raise InvalidPlanError(f"Invalid plan: {plan}")

        api_key = generate_api_key()

        tenant = Tenant(
            tenant_id=generate_tenant_id(),
            name=name,
            email=email.lower(),
            business_name=business_name or name,
            plan=plan,
            limits=PlanLimits.for_plan(plan),
            api_keys=[ApiKeyRecord(key_hash=hash_api_key(api_key), name="Default Key")],
            metadata=metadata or {},
        )

        self._repository.insert(tenant)

        logger.info("Tenant registered", extra={"tenant_id": tenant.tenant_id})

        return tenant, api_key

    def update_profile(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        business_name: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Tenant:

        def apply(row: Tenant):
            if name:
                row.name = name
            if business_name:
                row.business_name = business_name
            if metadata is not None:
                row.metadata = metadata

        tenant = self._repository.update(tenant_id, apply)

        self._invalidate(_tenant_key(tenant_id))

        logger.info("Tenant updated", extra={"tenant_id": tenant_id})

        return tenant

    def change_plan(self, tenant_id: str, plan: str) -> Tenant:

        if plan not in PLANS:
            raise InvalidPlanError(f"Invalid plan: {plan}")

        limits = PlanLimits.for_plan(plan)

        def apply(row: Tenant):
            row.plan = plan
            row.limits = limits

        tenant = self._repository.update(tenant_id, apply)

        self._invalidate(_tenant_key(tenant_id))

        logger.info("Plan changed", extra={"tenant_id": tenant_id, "plan": plan})

        return tenant

    def create_api_key(self, tenant_id: str, name: str = "API Key") -> str:

        api_key = generate_api_key()
        record = ApiKeyRecord(key_hash=hash_api_key(api_key), name=name)

        self._repository.update(tenant_id, lambda row: row.api_keys.append(record))

        self._invalidate(_tenant_key(tenant_id))

        logger.info("API key created", extra={"tenant_id": tenant_id})

        return api_key

    def revoke_api_key(
        self,
        tenant_id: str,
        api_key: Optional[str] = None,
        key_id: Optional[str] = None,
    ) -> None:
        """Revoke by raw key, or by the `id` prefix shown in list_api_keys."""

        if api_key is not None:
            wanted, exact = hash_api_key(api_key), True
        elif key_id:
            wanted, exact = key_id.lower(), False
        else:
            raise ValidationError("API key or key id is required")

        revoked = []

        def apply(row: Tenant):
            found = [
                k for k in row.api_keys
                if (k.key_hash == wanted if exact else k.key_hash.startswith(wanted))
            ]
            if not found:
                raise NotFoundError("API key not found")
            if len(found) > 1:
                raise ValidationError("Key id matches more than one API key")
            revoked.append(found[0].key_hash)
            row.api_keys = [k for k in row.api_keys if k.key_hash != found[0].key_hash]

        self._repository.update(tenant_id, apply)

        self._invalidate(_api_key_key(revoked[0]), _tenant_key(tenant_id))

        logger.info("API key revoked", extra={"tenant_id": tenant_id})

    def list_api_keys(self, tenant_id: str) -> List[ApiKeyInfo]:

        tenant = self.resolve_by_id(tenant_id)

        return [
            ApiKeyInfo(
                id=record.key_hash[:8],
                name=record.name,
                hint=f"...{record.key_hash[-4:]}",
                created_at=record.created_at,
                last_used=record.last_used,
            )
            for record in tenant.api_keys
        ]

    def delete_tenant(self, tenant_id: str) -> None:
        """Soft delete. The row stays with status "deleted"."""

        def apply(row: Tenant):
            row.status = "deleted"
            row.deleted_at = utcnow()

        tenant = self._repository.update(tenant_id, apply)

        self._invalidate(
            _tenant_key(tenant_id),
            *(_api_key_key(k.key_hash) for k in tenant.api_keys),
        )

        logger.info("Tenant deleted", extra={"tenant_id": tenant_id})
