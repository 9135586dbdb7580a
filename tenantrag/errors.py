# tenantrag/errors.py

"""
Error taxonomy shared by every layer.

Each error carries the HTTP status the API layer renders it with, so
services raise domain errors and never import FastAPI.
"""

from typing import Any, Dict, Optional


class TenantRAGError(Exception):

    status_code = 500
    error = "Internal error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# ============================================================
# CALLER-FIXABLE
# ============================================================

class ValidationError(TenantRAGError):
    status_code = 400
    error = "Validation error"


class EmptyInputError(ValidationError):
    """Chunking produced no spans."""


class EmptyContentError(ValidationError):
    """A submitted section has no usable content."""


class InvalidPlanError(ValidationError):
    pass


class AuthenticationError(TenantRAGError):
    status_code = 401
    error = "Unauthorized"


class NotFoundError(TenantRAGError):
    status_code = 404
    error = "Not found"


# ============================================================
# LIMITS
# ============================================================

class QuotaExceededError(TenantRAGError):

    status_code = 429
    error = "Quota exceeded"

    def __init__(self, message: str, used: int, limit: int):
        super().__init__(message, {"used": used, "limit": limit})
        self.used = used
        self.limit = limit


class RateLimitedError(TenantRAGError):

    status_code = 429
    error = "Rate limit exceeded"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


# ============================================================
# INFRASTRUCTURE
# ============================================================

class UpstreamUnavailableError(TenantRAGError):
    status_code = 503
    error = "Upstream unavailable"


class EmbeddingUnavailableError(UpstreamUnavailableError):
    pass


class StoreUnavailableError(UpstreamUnavailableError):
    """Counter store or cache backend failed."""


class RetrievalError(TenantRAGError):
    error = "Retrieval failed"
