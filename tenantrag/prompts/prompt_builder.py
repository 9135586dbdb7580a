# tenantrag/prompts/prompt_builder.py

from typing import Sequence

from tenantrag.memory.records import Passage
from tenantrag.prompts.system_prompts import (
    ASSISTANT_SYSTEM_PROMPT,
    USER_PROMPT_TEMPLATE,
)


def build_context(passages: Sequence[Passage]) -> str:
    """Numbered context block, one entry per passage."""

    return "\n\n".join(
        f"[{i}] {passage.title}: {passage.text}"
        for i, passage in enumerate(passages, 1)
    )


def build_system_prompt(business_name: str) -> str:
    return ASSISTANT_SYSTEM_PROMPT.format(business_name=business_name or "this business")


def build_user_prompt(query: str, context: str) -> str:
    return USER_PROMPT_TEMPLATE.format(context=context, query=query)
