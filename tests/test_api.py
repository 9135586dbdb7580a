# tests/test_api.py
import pytest

SECTIONS = [
    {
        "type": "faq",
        "title": "Shipping Policy",
        "content": "We offer free shipping on all orders over $50. Standard shipping takes 3-5 business days.",
    },
    {
        "type": "policy",
        "title": "Returns",
        "content": "Returns are accepted within 30 days of delivery with a receipt.",
    },
]


def _create_sections(client, headers, sections=SECTIONS):
    response = client.post("/data/sections", json={"sections": sections}, headers=headers)
    assert response.status_code == 201, response.json()
    return response.json()


class TestHealthEndpoint:
    """Test the /health and /metrics endpoints."""

    def test_health_check(self, client):
        """Health check works without any tenant."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["embedder"]["provider"] == "hash"
        assert data["vector_index"] is True
        assert data["kv_store"] is True

    def test_metrics(self, client, register_tenant):
        _, headers = register_tenant()
        _create_sections(client, headers)
        client.post("/chat/search", json={"query": "standard shipping"}, headers=headers)

        data = client.get("/metrics").json()

        assert data["total_requests"] > 0
        assert data["searches_by_tier"].get("text", 0) >= 1

    def test_request_id_header(self, client):
        assert client.get("/health").headers["X-Request-ID"]


class TestAuthentication:

    def test_missing_key(self, client):
        response = client.get("/tenants/me")

        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

    def test_invalid_key(self, client):
        response = client.get("/tenants/me", headers={"X-API-Key": "sk_bogus"})
        assert response.status_code == 401

    def test_valid_key(self, client, register_tenant):
        tenant, headers = register_tenant()

        response = client.get("/tenants/me", headers=headers)

        assert response.status_code == 200
        assert response.json()["tenant_id"] == tenant["tenant_id"]


class TestTenantEndpoints:

    def test_register_defaults(self, client, register_tenant):
        tenant, headers = register_tenant()

        assert tenant["plan"] == "free"
        assert tenant["limits"]["requests_per_minute"] == 10
        assert headers["X-API-Key"].startswith("sk_")

    def test_register_invalid_email(self, client):
        response = client.post("/tenants/register", json={"name": "X", "email": "not-an-email"})
        assert response.status_code == 422

    def test_register_duplicate_email(self, client):
        body = {"name": "X", "email": "dup@example.com"}
        client.post("/tenants/register", json=body)

        response = client.post("/tenants/register", json=body)

        assert response.status_code == 400
        assert response.json()["message"] == "Email already registered"

    def test_update_profile(self, client, register_tenant):
        _, headers = register_tenant()

        response = client.patch("/tenants/me", json={"business_name": "Corner Shop"}, headers=headers)

        assert response.status_code == 200
        assert client.get("/tenants/me", headers=headers).json()["business_name"] == "Corner Shop"

    def test_change_plan(self, client, register_tenant):
        _, headers = register_tenant()

        response = client.put("/tenants/me/plan", json={"plan": "pro"}, headers=headers)

        assert response.status_code == 200
        assert response.json()["limits"]["sections_per_tenant"] == 100
        assert client.get("/tenants/me", headers=headers).json()["plan"] == "pro"

    def test_change_to_unknown_plan(self, client, register_tenant):
        _, headers = register_tenant()

        response = client.put("/tenants/me/plan", json={"plan": "platinum"}, headers=headers)

        assert response.status_code == 400

    def test_api_key_lifecycle(self, client, register_tenant):
        _, headers = register_tenant()

        created = client.post("/tenants/me/api-keys", json={"name": "CI"}, headers=headers)
        assert created.status_code == 201
        new_headers = {"X-API-Key": created.json()["api_key"]}

        keys = client.get("/tenants/me/api-keys", headers=new_headers).json()
        assert [k["name"] for k in keys] == ["Default Key", "CI"]

        revoked = client.post(
            "/tenants/me/api-keys/revoke", json={"api_key": headers["X-API-Key"]}, headers=new_headers
        )
        assert revoked.status_code == 204

        assert client.get("/tenants/me", headers=headers).status_code == 401
        assert client.get("/tenants/me", headers=new_headers).status_code == 200

    def test_revoke_lost_key_by_id(self, client, register_tenant):
        _, headers = register_tenant()
        client.post("/tenants/me/api-keys", json={"name": "Lost"}, headers=headers)

        keys = client.get("/tenants/me/api-keys", headers=headers).json()
        lost_id = next(k["id"] for k in keys if k["name"] == "Lost")

        revoked = client.post(
            "/tenants/me/api-keys/revoke", json={"key_id": lost_id}, headers=headers
        )

        assert revoked.status_code == 204
        names = [k["name"] for k in client.get("/tenants/me/api-keys", headers=headers).json()]
        assert names == ["Default Key"]

    def test_revoke_needs_one_reference(self, client, register_tenant):
        _, headers = register_tenant()

        response = client.post("/tenants/me/api-keys/revoke", json={}, headers=headers)

        assert response.status_code == 422

    def test_delete_tenant(self, client, register_tenant):
        _, headers = register_tenant()

        assert client.delete("/tenants/me", headers=headers).status_code == 204
        assert client.get("/tenants/me", headers=headers).status_code == 401

    def test_usage(self, client, register_tenant):
        _, headers = register_tenant()
        _create_sections(client, headers)
        client.post("/chat/search", json={"query": "shipping"}, headers=headers)

        usage = client.get("/tenants/me/usage", headers=headers).json()

        assert usage["requests_this_minute"] == 1
        assert usage["calls_this_month"] == 1
        assert usage["sections"] == 2
        assert usage["sections_per_tenant"] == 10


class TestSectionEndpoints:

    def test_create_and_list(self, client, register_tenant):
        _, headers = register_tenant()

        created = _create_sections(client, headers)

        assert created["sections_created"] == 2
        assert created["chunks_created"] == 2

        listing = client.get("/data/sections", headers=headers).json()
        assert listing["total"] == 2
        assert [s["title"] for s in listing["sections"]] == ["Returns", "Shipping Policy"]
        assert listing["sections"][0]["content"] is None

    def test_list_by_type(self, client, register_tenant):
        _, headers = register_tenant()
        _create_sections(client, headers)

        listing = client.get("/data/sections", params={"type": "policy"}, headers=headers).json()

        assert [s["title"] for s in listing["sections"]] == ["Returns"]

    def test_get_update_delete(self, client, register_tenant):
        _, headers = register_tenant()
        section_id = _create_sections(client, headers)["sections"][1]["section_id"]

        fetched = client.get(f"/data/sections/{section_id}", headers=headers).json()
        assert fetched["content"] == SECTIONS[1]["content"]

        updated = client.put(
            f"/data/sections/{section_id}",
            json={"title": "Refunds", "content": "Refunds within 14 days."},
            headers=headers,
        ).json()
        assert updated["title"] == "Refunds"
        assert updated["content"] == "Refunds within 14 days."
        assert updated["chunk_count"] == 1

        deleted = client.delete(f"/data/sections/{section_id}", headers=headers).json()
        assert deleted == {"section_id": section_id, "chunks_deleted": 1}

        assert client.get(f"/data/sections/{section_id}", headers=headers).status_code == 404

    def test_other_tenant_cannot_read(self, client, register_tenant):
        _, owner = register_tenant()
        _, intruder = register_tenant()
        section_id = _create_sections(client, owner)["sections"][0]["section_id"]

        assert client.get(f"/data/sections/{section_id}", headers=intruder).status_code == 404
        assert client.delete(f"/data/sections/{section_id}", headers=intruder).status_code == 404

    def test_empty_content(self, client, register_tenant):
        _, headers = register_tenant()

        response = client.post(
            "/data/sections",
            json={"sections": [{"type": "faq", "title": "Blank", "content": "  "}]},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"

    def test_section_limit(self, client, register_tenant):
        _, headers = register_tenant()
        many = [{"type": "faq", "title": f"S{i}", "content": f"content number {i}"} for i in range(9)]
        _create_sections(client, headers, many)

        response = client.post("/data/sections", json={"sections": many[:2]}, headers=headers)

        assert response.status_code == 429
        assert response.json()["details"] == {"used": 9, "limit": 10}
        assert client.get("/data/stats", headers=headers).json()["total_sections"] == 9

    def test_stats(self, client, register_tenant):
        _, headers = register_tenant()
        _create_sections(client, headers)

        stats = client.get("/data/stats", headers=headers).json()

        assert stats == {
            "total_sections": 2,
            "total_chunks": 2,
            "sections_by_type": {"faq": 1, "policy": 1},
        }


class TestQueryEndpoints:

    def test_search(self, client, register_tenant):
        _, headers = register_tenant()
        _create_sections(client, headers)

        response = client.post("/chat/search", json={"query": "standard shipping"}, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "text"
        assert data["passages"][0]["title"] == "Shipping Policy"
        assert response.headers["X-RateLimit-Limit-Minute"] == "10"
        assert response.headers["X-RateLimit-Remaining-Minute"] == "9"

    def test_search_isolated(self, client, register_tenant):
        _, owner = register_tenant()
        _, other = register_tenant()
        _create_sections(client, owner)

        data = client.post("/chat/search", json={"query": "free shipping"}, headers=other).json()

        assert data == {"passages": [], "tier": "none"}

    def test_blank_query(self, client, register_tenant):
        _, headers = register_tenant()

        response = client.post("/chat/search", json={"query": "   "}, headers=headers)

        assert response.status_code == 422

    def test_chat_query_without_model(self, client, register_tenant):
        _, headers = register_tenant()
        _create_sections(client, headers)

        response = client.post(
            "/chat/query",
            json={"query": "free shipping", "session_id": "s1", "include_metadata": True},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["answer"].startswith("Here is the most relevant information I found:")
        assert data["sources"][0]["title"] == "Shipping Policy"
        assert data["metadata"]["search_results_count"] >= 1

        assert client.delete("/chat/sessions/s1", headers=headers).status_code == 204

    def test_chat_query_no_information(self, client, register_tenant):
        _, headers = register_tenant()

        data = client.post("/chat/query", json={"query": "what is this"}, headers=headers).json()

        assert data["confidence"] == "low"
        assert data["tier"] == "none"
        assert data["sources"] == []

    def test_rate_limited(self, client, register_tenant):
        _, headers = register_tenant()

        for _ in range(10):
            assert client.post("/chat/search", json={"query": "hi there"}, headers=headers).status_code == 200

        response = client.post("/chat/search", json={"query": "hi there"}, headers=headers)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"] == "Rate limit exceeded"

    def test_upgrade_lifts_rate_limit(self, client, register_tenant):
        _, headers = register_tenant()

        for _ in range(11):
            client.post("/chat/search", json={"query": "hi there"}, headers=headers)

        client.put("/tenants/me/plan", json={"plan": "pro"}, headers=headers)

        response = client.post("/chat/search", json={"query": "hi there"}, headers=headers)

        assert response.status_code == 200

    def test_section_management_not_rate_limited(self, client, register_tenant):
        _, headers = register_tenant()

        for _ in range(15):
            assert client.get("/data/stats", headers=headers).status_code == 200


@pytest.mark.parametrize("path", ["/chat/search", "/chat/query"])
def test_query_endpoints_require_key(client, path):
    assert client.post(path, json={"query": "hello"}).status_code == 401
