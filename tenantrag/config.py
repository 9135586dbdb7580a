"""
Configuration for the multi-tenant section Q&A service.

This file centralizes all tunable parameters for ingestion, retrieval,
admission control and caching. Every value can be overridden through
an environment variable of the same name.
"""

import os


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ========== CHUNKING ==========

CHUNK_SIZE = _env_int("CHUNK_SIZE", 500)  # words per chunk
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 50)  # words shared by neighbours


# ========== EMBEDDING CONFIGURATION ==========

# "openai" uses the embeddings API, "hash" the deterministic stand-in.
# Falls back to "hash" when no OPENAI_API_KEY is present.
EMBEDDING_BACKEND = os.getenv("EMBEDDING_BACKEND", "openai")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSION = _env_int("EMBEDDING_DIMENSION", 768)
EMBEDDING_BATCH_SIZE = _env_int("EMBEDDING_BATCH_SIZE", 32)
EMBEDDING_MAX_WORKERS = _env_int("EMBEDDING_MAX_WORKERS", 4)

# Retry policy for the model-backed embedder
EMBEDDING_MAX_ATTEMPTS = _env_int("EMBEDDING_MAX_ATTEMPTS", 3)
EMBEDDING_BACKOFF_SECONDS = _env_float("EMBEDDING_BACKOFF_SECONDS", 1.0)
EMBEDDING_BACKOFF_MAX_SECONDS = _env_float("EMBEDDING_BACKOFF_MAX_SECONDS", 8.0)


# ========== RETRIEVAL CONFIGURATION ==========

SEARCH_LIMIT = _env_int("SEARCH_LIMIT", 5)
SIMILARITY_THRESHOLD = _env_float("SIMILARITY_THRESHOLD", 0.70)

# Vector tier asks the index for limit * factor candidates
CANDIDATE_FACTOR = _env_int("CANDIDATE_FACTOR", 2)

TEXT_INDEX_ENABLED = _env_bool("TEXT_INDEX_ENABLED", True)

# Keyword tier scoring. Each occurrence of a query keyword adds
# KEYWORD_HIT_WEIGHT, capped at 1.0; results at or below
# KEYWORD_MIN_SCORE are dropped. No length normalization.
KEYWORD_HIT_WEIGHT = _env_float("KEYWORD_HIT_WEIGHT", 0.15)
KEYWORD_MIN_SCORE = _env_float("KEYWORD_MIN_SCORE", 0.1)
KEYWORD_MIN_LENGTH = 3


# ========== STORAGE BACKENDS ==========

REDIS_URL = os.getenv("REDIS_URL")  # None → in-process store

QDRANT_URL = os.getenv("QDRANT_URL")  # None → local in-memory mode
QDRANT_API_KEY = os.getenv("QDRANT_API_KEY")
QDRANT_COLLECTION = os.getenv("QDRANT_COLLECTION", "tenant_chunks")


# ========== CACHING ==========

TENANT_CACHE_TTL = _env_int("TENANT_CACHE_TTL", 3600)
API_KEY_CACHE_TTL = _env_int("API_KEY_CACHE_TTL", 300)

SESSION_HISTORY_TTL = _env_int("SESSION_HISTORY_TTL", 3600)
SESSION_HISTORY_MAX_MESSAGES = _env_int("SESSION_HISTORY_MAX_MESSAGES", 20)

# In-process store: drop expired keys once every N writes
MEMORY_STORE_SWEEP_INTERVAL = _env_int("MEMORY_STORE_SWEEP_INTERVAL", 100)


# ========== QUOTA WINDOWS ==========

MINUTE_WINDOW_SECONDS = 60
HOUR_WINDOW_SECONDS = 3600

# Long enough to outlive any calendar month
MONTH_BUCKET_TTL_SECONDS = 60 * 24 * 3600


# ========== PLANS ==========

DEFAULT_PLAN = "free"

PLANS = {
    "free": {
        "price": 0,
        "limits": {
            "api_calls_per_month": 1000,
            "sections_per_tenant": 10,
            "tokens_per_request": 2000,
            "requests_per_minute": 10,
            "requests_per_hour": 100,
        },
    },
    "pro": {
        "price": 29,
        "limits": {
            "api_calls_per_month": 10000,
            "sections_per_tenant": 100,
            "tokens_per_request": 4000,
            "requests_per_minute": 30,
            "requests_per_hour": 500,
        },
    },
    "enterprise": {
        "price": 299,
        "limits": {
            "api_calls_per_month": 100000,
            "sections_per_tenant": 1000,
            "tokens_per_request": 8000,
            "requests_per_minute": 100,
            "requests_per_hour": 2000,
        },
    },
}


# ========== LLM CONFIGURATION ==========

LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.7)
LLM_MAX_TOKENS = 2048  # hard ceiling regardless of plan


# ========== LOGGING ==========

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE")  # None → stdout only
