# tests/test_answer.py
import pytest

from tenantrag.memory.records import Passage
from tenantrag.prompts.system_prompts import (
    INSUFFICIENT_INFORMATION_ANSWER,
    NO_MODEL_ANSWER_PREFIX,
)
from tenantrag.workflow.answer import compose_answer, confidence_label, estimate_tokens
from tenantrag.workflow.session import SessionHistory


class RecordingCompletionClient:
    """Captures the prompt instead of calling a model."""

    def __init__(self, answer="Orders over $50 ship free."):
        self.answer = answer
        self.calls = []

    def complete(self, system_prompt, history, user_prompt, max_tokens):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "history": history,
                "user_prompt": user_prompt,
                "max_tokens": max_tokens,
            }
        )
        return self.answer


def _passage(score, title="Shipping Policy", text="Free shipping over $50."):
    return Passage(
        chunk_id="c1",
        section_id="sec_1",
        title=title,
        type="faq",
        text=text,
        score=score,
    )


class TestHelpers:

    @pytest.mark.parametrize(
        "score,label",
        [(0.95, "high"), (0.86, "high"), (0.85, "medium"), (0.71, "medium"), (0.70, "low"), (0.1, "low")],
    )
    def test_confidence_label(self, score, label):
        assert confidence_label(score) == label

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestComposeAnswer:

    def test_no_passages_skips_model(self):
        client = RecordingCompletionClient()

        result = compose_answer("anything?", [], "none", "Shop", 2000, completion_client=client)

        assert result["answer"] == INSUFFICIENT_INFORMATION_ANSWER
        assert result["confidence"] == "low"
        assert result["sources"] == []
        assert client.calls == []

    def test_prompt_and_token_cap(self):
        client = RecordingCompletionClient()
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

        result = compose_answer(
            "Is shipping free?",
            [_passage(0.9)],
            "vector",
            "Alpha Shop",
            tokens_per_request=8000,
            completion_client=client,
            history=history,
        )

        call = client.calls[0]
        assert call["max_tokens"] == 2048
        assert "Alpha Shop" in call["system_prompt"]
        assert "Free shipping over $50." in call["user_prompt"]
        assert call["history"] == history
        assert result["answer"] == "Orders over $50 ship free."
        assert result["confidence"] == "high"
        assert result["sources"][0]["section_id"] == "sec_1"

    def test_plan_token_limit_below_ceiling(self):
        client = RecordingCompletionClient()

        compose_answer("q", [_passage(0.8)], "vector", "Shop", 1000, completion_client=client)

        assert client.calls[0]["max_tokens"] == 1000

    def test_without_model_returns_passages(self):
        result = compose_answer("q", [_passage(0.75)], "text", "Shop", 2000)

        assert result["answer"].startswith(NO_MODEL_ANSWER_PREFIX)
        assert "Free shipping over $50." in result["answer"]
        assert result["confidence"] == "medium"

    def test_metadata(self):
        result = compose_answer(
            "q", [_passage(0.6), _passage(0.4)], "keyword", "Shop", 2000, include_metadata=True
        )

        assert result["metadata"]["search_results_count"] == 2
        assert result["metadata"]["average_score"] == pytest.approx(0.5)
        assert result["metadata"]["tokens_used"] > 0
        assert result["confidence"] == "low"


class TestSessionHistory:

    def test_append_and_cap(self, kv_store):
        sessions = SessionHistory(kv_store, max_messages=4)

        for i in range(3):
            sessions.append("t1", "s1", f"q{i}", f"a{i}")

        history = sessions.get("t1", "s1")

        assert [m["content"] for m in history] == ["q1", "a1", "q2", "a2"]

    def test_sessions_scoped_by_tenant(self, kv_store):
        sessions = SessionHistory(kv_store)
        sessions.append("t1", "shared-id", "q", "a")

        assert sessions.get("t2", "shared-id") == []

    def test_expiry(self, kv_store, clock):
        sessions = SessionHistory(kv_store, ttl=3600)
        sessions.append("t1", "s1", "q", "a")

        clock.advance(3600)

        assert sessions.get("t1", "s1") == []

    def test_clear(self, kv_store):
        sessions = SessionHistory(kv_store)
        sessions.append("t1", "s1", "q", "a")

        sessions.clear("t1", "s1")

        assert sessions.get("t1", "s1") == []


class TestAsk:

    def test_exchange_recorded(self, make_services, tenant_ctx, sample_sections):
        client = RecordingCompletionClient()
        services = make_services(completion_client=client)
        services.orchestrator.ingest(tenant_ctx, sample_sections)

        services.orchestrator.ask(tenant_ctx, "free shipping", session_id="s1")
        services.orchestrator.ask(tenant_ctx, "standard shipping", session_id="s1")

        # second call sees the first exchange
        assert len(client.calls[1]["history"]) == 2
        assert client.calls[1]["history"][0]["content"] == "free shipping"

    def test_unanswered_not_recorded(self, make_services, tenant_ctx, kv_store):
        services = make_services(completion_client=RecordingCompletionClient())

        result = services.orchestrator.ask(tenant_ctx, "nothing indexed", session_id="s1")

        assert result["tier"] == "none"
        assert SessionHistory(kv_store).get(tenant_ctx.tenant_id, "s1") == []
