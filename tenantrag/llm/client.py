# tenantrag/llm/client.py
import logging
import os
from typing import Dict, List, Optional

import openai
import tenacity
from openai import OpenAI

from tenantrag.config import LLM_MODEL, LLM_TEMPERATURE
from tenantrag.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class CompletionClient:
    """
    Client for the OpenAI chat completions API.

    The only contract the rest of the system relies on is
    `complete(system_prompt, history, user_prompt, max_tokens) -> str`.
    """

    def __init__(
        self,
        model: str = LLM_MODEL,
        client: Optional[OpenAI] = None,
        max_attempts: int = 3,
    ):
        """
        Args:
            model: OpenAI model to use
            client: preconfigured OpenAI client (reads OPENAI_API_KEY otherwise)
            max_attempts: tries per completion, exponential backoff between
        """
        if client is None and not os.getenv("OPENAI_API_KEY"):
            raise ValueError(
                "OPENAI_API_KEY environment variable not set. "
                "Please set it before running the application."
            )

        self.client = client or OpenAI()
        self.model = model

        self._retrying = tenacity.Retrying(
            retry=tenacity.retry_if_exception_type(
                (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)
            ),
            stop=tenacity.stop_after_attempt(max_attempts),
            wait=tenacity.wait_exponential(multiplier=1, max=8),
            reraise=True,
        )

    def complete(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        user_prompt: str,
        max_tokens: int,
    ) -> str:
        """
        Generate an answer.

        Raises:
            UpstreamUnavailableError: the API call failed after retries
        """
        messages = [
            {"role": "system", "content": system_prompt},
            *history,
            {"role": "user", "content": user_prompt},
        ]

        try:
            response = self._retrying.copy()(
                self.client.chat.completions.create,
                model=self.model,
                messages=messages,
                temperature=LLM_TEMPERATURE,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            logger.error("Completion failed", extra={"model": self.model, "error": str(e)})
            raise UpstreamUnavailableError(f"OpenAI API call failed: {e}") from e

        return response.choices[0].message.content or "I couldn't generate a response."


def build_completion_client() -> Optional[CompletionClient]:
    """None when no API key is configured; answers then fall back to passages."""

    if not os.getenv("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY not set, answer generation disabled")
        return None

    return CompletionClient()
