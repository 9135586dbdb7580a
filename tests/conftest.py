# tests/conftest.py
import pytest
from fastapi.testclient import TestClient
import sys
import os

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from qdrant_client import QdrantClient

from tenantrag.db.kv_store import MemoryStore
from tenantrag.memory.embedder import HashEmbedder
from tenantrag.memory.qdrant_client import QdrantVectorDB
from tenantrag.models import PlanLimits, SectionInput, TenantContext
from tenantrag.services import build_services

TEST_DIMENSION = 64

# Mid-minute, mid-hour, mid-month (2023-11-14 22:13:20 UTC)
FIXED_NOW = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source shared by the store and the ledger."""

    def __init__(self, now: float = FIXED_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(autouse=True)
def no_external_services(monkeypatch):
    """
    Keep every test offline.

    Without these keys the app selects hash embeddings, passage-only
    answers, the in-process store and local Qdrant.
    """
    for name in ("OPENAI_API_KEY", "POSTHOG_API_KEY", "REDIS_URL", "QDRANT_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def embedder():
    return HashEmbedder(dimension=TEST_DIMENSION)


@pytest.fixture
def vector_index():
    return QdrantVectorDB(
        dim=TEST_DIMENSION,
        collection="test_chunks",
        client=QdrantClient(location=":memory:"),
    )


@pytest.fixture
def make_services(kv_store, embedder, vector_index, clock):
    """
    Factory for a fully wired, offline service graph.

    Keyword arguments override the defaults, e.g.
    make_services(text_index_enabled=False).
    """
    def _make(**overrides):
        options = {
            "kv_store": kv_store,
            "embedder": embedder,
            "vector_index": vector_index,
            "clock": clock,
        }
        options.update(overrides)
        return build_services(**options)

    return _make


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def free_limits():
    return PlanLimits.for_plan("free")


@pytest.fixture
def tenant_ctx(free_limits):
    return TenantContext(tenant_id="ten_alpha", limits=free_limits, business_name="Alpha Shop")


@pytest.fixture
def other_ctx(free_limits):
    return TenantContext(tenant_id="ten_beta", limits=free_limits, business_name="Beta Store")


@pytest.fixture
def sample_sections():
    """Small knowledge base for a shop."""
    return [
        SectionInput(
            type="faq",
            title="Shipping Policy",
            content=(
                "We offer free shipping on all orders over $50. "
                "Standard shipping takes 3-5 business days."
            ),
        ),
        SectionInput(
            type="policy",
            title="Returns",
            content="Returns are accepted within 30 days of delivery with a receipt.",
        ),
        SectionInput(
            type="faq",
            title="Opening Hours",
            content="Our store is open Monday to Friday from 9am to 6pm.",
        ),
    ]


@pytest.fixture
def client(services):
    """
    FastAPI test client over an isolated service graph.

    Used to make requests to the API in tests.
    """
    from tenantrag.main import create_app

    return TestClient(create_app(services))


@pytest.fixture
def register_tenant(client):
    """
    Register a tenant through the API and return (tenant, headers).

    Helper fixture that handles the registration process.
    """
    counter = {"n": 0}

    def _register(plan: str = "free"):
        counter["n"] += 1
        response = client.post(
            "/tenants/register",
            json={
                "name": f"Tenant {counter['n']}",
                "email": f"owner{counter['n']}@example.com",
                "plan": plan,
            },
        )
        assert response.status_code == 201, f"Registration failed: {response.json()}"
        data = response.json()
        return data["tenant"], {"X-API-Key": data["api_key"]}

    return _register
