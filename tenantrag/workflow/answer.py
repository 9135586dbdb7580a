# tenantrag/workflow/answer.py
import math
from typing import Dict, List, Optional

from tenantrag.config import LLM_MAX_TOKENS
from tenantrag.memory.records import Passage
from tenantrag.prompts.prompt_builder import (
    build_context,
    build_system_prompt,
    build_user_prompt,
)
from tenantrag.prompts.system_prompts import (
    INSUFFICIENT_INFORMATION_ANSWER,
    NO_MODEL_ANSWER_PREFIX,
)

HIGH_CONFIDENCE = 0.85
MEDIUM_CONFIDENCE = 0.70


def estimate_tokens(text: str) -> int:
    """Rough approximation: four characters per token."""
    return math.ceil(len(text) / 4)


def confidence_label(average_score: float) -> str:
    if average_score > HIGH_CONFIDENCE:
        return "high"
    if average_score > MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def compose_answer(
    query: str,
    passages: List[Passage],
    tier: str,
    business_name: str,
    tokens_per_request: int,
    completion_client=None,
    history: Optional[List[Dict[str, str]]] = None,
    include_metadata: bool = False,
) -> Dict:
    """
    Turn retrieved passages into an answer.

    Empty passages short-circuit to a fixed "not enough information"
    answer without calling the model. Without a completion client the
    top passages are returned verbatim.
    """
    if not passages:
        return {
            "answer": INSUFFICIENT_INFORMATION_ANSWER,
            "confidence": "low",
            "sources": [],
            "tier": tier,
            "metadata": None,
        }

    context = build_context(passages)

    if completion_client is None:
        answer = f"{NO_MODEL_ANSWER_PREFIX}\n\n{context}"
    else:
        answer = completion_client.complete(
            system_prompt=build_system_prompt(business_name),
            history=history or [],
            user_prompt=build_user_prompt(query, context),
            max_tokens=min(tokens_per_request, LLM_MAX_TOKENS),
        )

    average_score = sum(p.score for p in passages) / len(passages)

    result = {
        "answer": answer,
        "confidence": confidence_label(average_score),
        "sources": [
            {
                "section_id": p.section_id,
                "title": p.title,
                "type": p.type,
                "score": p.score,
            }
            for p in passages
        ],
        "tier": tier,
        "metadata": None,
    }

    if include_metadata:
        result["metadata"] = {
            "search_results_count": len(passages),
            "average_score": average_score,
            "tokens_used": estimate_tokens(context + query + answer),
        }

    return result
