# tenantrag/quota/ledger.py

"""
Per-tenant admission control.

Three fixed-window counters gate every query:

• minute - epoch // 60, expires after 60 s
• hour   - epoch // 3600, expires after 3600 s
• month  - UTC calendar month, expires after 60 days

Counting relies solely on the store's atomic increment; no locks are
held here. Store failures fail open: the request is admitted and the
error logged, since quotas are a soft control.
"""

import logging
import time

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from tenantrag.config import (
    HOUR_WINDOW_SECONDS,
    MINUTE_WINDOW_SECONDS,
    MONTH_BUCKET_TTL_SECONDS,
)
from tenantrag.db.kv_store import KeyValueStore
from tenantrag.errors import (
    QuotaExceededError,
    RateLimitedError,
    StoreUnavailableError,
)
from tenantrag.models import PlanLimits

logger = logging.getLogger(__name__)


WINDOW_MINUTE = "minute"
WINDOW_HOUR = "hour"
WINDOW_MONTH = "month"


def minute_key(tenant_id: str, now: float) -> str:
    return f"ratelimit:{tenant_id}:minute:{int(now) // MINUTE_WINDOW_SECONDS}"


def hour_key(tenant_id: str, now: float) -> str:
    return f"ratelimit:{tenant_id}:hour:{int(now) // HOUR_WINDOW_SECONDS}"


def month_key(tenant_id: str, now: float) -> str:
    month = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m")
    return f"usage:{tenant_id}:month:{month}"


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None
    used: Optional[int] = None
    limit: Optional[int] = None
    # remaining requests per window, for rate-limit headers
    remaining_minute: Optional[int] = None
    remaining_hour: Optional[int] = None

    def raise_for_denial(self) -> None:

        if self.allowed:
            return

        if self.reason == WINDOW_MONTH:
            raise QuotaExceededError(
                f"Monthly limit of {self.limit} API calls exceeded. "
                f"Please upgrade your plan.",
                used=self.used,
                limit=self.limit,
            )

        raise RateLimitedError(
            f"Rate limit: {self.limit} requests per {self.reason}",
            retry_after=self.retry_after,
        )


class QuotaLedger:

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    def _check_window(self, key: str, limit: int, ttl: int, window: str, retry_after: int):

        count = self._store.incr_with_expiry(key, ttl)

        if count > limit:
            return count, Admission(
                allowed=False,
                reason=window,
                retry_after=retry_after,
                used=count,
                limit=limit,
            )

        return count, None

    def admit(self, tenant_id: str, limits: PlanLimits) -> Admission:
        """Count one request against every window; deny on the first exceeded."""

        now = self._clock()

        try:

            minute_count, denial = self._check_window(
                minute_key(tenant_id, now),
                limits.requests_per_minute,
                MINUTE_WINDOW_SECONDS,
                WINDOW_MINUTE,
                MINUTE_WINDOW_SECONDS,
            )
            if denial:
                return self._denied(tenant_id, denial)

            hour_count, denial = self._check_window(
                hour_key(tenant_id, now),
                limits.requests_per_hour,
                HOUR_WINDOW_SECONDS,
                WINDOW_HOUR,
                HOUR_WINDOW_SECONDS,
            )
            if denial:
                return self._denied(tenant_id, denial)

            key = month_key(tenant_id, now)
            used = int(self._store.get(key) or 0)

            if used >= limits.api_calls_per_month:
                return self._denied(
                    tenant_id,
                    Admission(
                        allowed=False,
                        reason=WINDOW_MONTH,
                        used=used,
                        limit=limits.api_calls_per_month,
                    ),
                )

            self._store.incr_with_expiry(key, MONTH_BUCKET_TTL_SECONDS)

        except StoreUnavailableError as e:

            logger.error(
                "Quota store unavailable, admitting request",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )

            return Admission(allowed=True)

        return Admission(
            allowed=True,
            remaining_minute=max(0, limits.requests_per_minute - minute_count),
            remaining_hour=max(0, limits.requests_per_hour - hour_count),
        )

    def _denied(self, tenant_id: str, admission: Admission) -> Admission:

        logger.info(
            "Request denied by quota",
            extra={
                "tenant_id": tenant_id,
                "window": admission.reason,
                "used": admission.used,
                "limit": admission.limit,
            },
        )

        return admission

    def usage(self, tenant_id: str, limits: PlanLimits) -> dict:
        """Current counters next to their limits. Missing counters read as 0."""

        now = self._clock()

        def read(key: str) -> Optional[int]:
            try:
                return int(self._store.get(key) or 0)
            except StoreUnavailableError as e:
                logger.warning("Usage read failed", extra={"error": str(e)})
                return None

        return {
            "requests_this_minute": read(minute_key(tenant_id, now)),
            "requests_per_minute": limits.requests_per_minute,
            "requests_this_hour": read(hour_key(tenant_id, now)),
            "requests_per_hour": limits.requests_per_hour,
            "calls_this_month": read(month_key(tenant_id, now)),
            "api_calls_per_month": limits.api_calls_per_month,
        }
