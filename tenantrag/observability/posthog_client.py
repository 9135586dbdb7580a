# tenantrag/observability/posthog_client.py

"""
PostHog product analytics.

- Tenant id is the distinct id, request id travels as a property
- Disabled unless POSTHOG_API_KEY is set
- Never raises into the request path
"""

import os
import logging
from typing import Optional, Dict, Any

from posthog import Posthog


logger = logging.getLogger(__name__)


class PostHogClient:

    def __init__(self, api_key: Optional[str] = None, host: Optional[str] = None):

        self._enabled = False
        self._client: Optional[Posthog] = None

        api_key = api_key or os.getenv("POSTHOG_API_KEY")
        host = host or os.getenv("POSTHOG_HOST", "https://app.posthog.com")

        if not api_key:
            logger.info("PostHog disabled: POSTHOG_API_KEY not set")
            return

        try:

            self._client = Posthog(
                project_api_key=api_key,
                host=host,
                timeout=5,
                flush_interval=1,
            )

            self._enabled = True

            logger.info("PostHog client initialized", extra={"host": host})

        except Exception as e:

            logger.error(
                "PostHog initialization failed",
                extra={"error": str(e)}
            )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _track(
        self,
        distinct_id: str,
        event: str,
        properties: Optional[Dict[str, Any]] = None,
    ):

        if not self._enabled or not self._client:
            return

        try:

            self._client.capture(
                distinct_id=distinct_id,
                event=event,
                properties=properties or {},
            )

        except Exception as e:

            logger.warning(
                "PostHog tracking failed",
                extra={"event": event, "error": str(e)},
            )

    def track_ingest(
        self,
        tenant_id: str,
        request_id: str,
        sections: int,
        chunks: int,
        latency: float,
    ):

        self._track(
            tenant_id,
            "sections_ingested",
            {
                "request_id": request_id,
                "sections": sections,
                "chunks": chunks,
                "latency_seconds": latency,
            },
        )

    def track_query(
        self,
        tenant_id: str,
        request_id: str,
        tier: str,
        results: int,
        top_score: Optional[float],
        latency: float,
    ):

        self._track(
            tenant_id,
            "query_answered",
            {
                "request_id": request_id,
                "tier": tier,
                "results": results,
                "top_score": top_score,
                "latency_seconds": latency,
            },
        )

    def track_admission_denied(self, tenant_id: str, request_id: str, window: str):

        self._track(
            tenant_id,
            "admission_denied",
            {"request_id": request_id, "window": window},
        )

    def track_error(
        self,
        distinct_id: str,
        error_type: str,
        error_message: str,
        endpoint: str,
    ):

        self._track(
            distinct_id,
            "system_error",
            {
                "error_type": error_type,
                "error_message": error_message,
                "endpoint": endpoint,
            },
        )

    def shutdown(self):

        if self._client is not None:
            try:
                self._client.shutdown()
            except Exception as e:
                logger.warning("PostHog shutdown failed", extra={"error": str(e)})


posthog_client = PostHogClient()
