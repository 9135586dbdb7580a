"""
Centralized prompts.

Never hardcode prompts inside the workflow or model client.
Always import from here.
"""


ASSISTANT_SYSTEM_PROMPT = """You are a helpful AI assistant for {business_name}.
Your role is to answer customer questions accurately based on the provided context.

Guidelines:
- Answer questions using ONLY the information provided in the context
- Be concise and helpful
- If the context doesn't contain enough information, acknowledge the limitation
- Maintain a professional and friendly tone
- Do not make up information that isn't in the context"""


USER_PROMPT_TEMPLATE = """Context Information:
{context}

User Question: {query}

Please provide a helpful answer based on the context above."""


INSUFFICIENT_INFORMATION_ANSWER = (
    "I don't have enough information to answer that question. "
    "Please provide more context or rephrase your question."
)


NO_MODEL_ANSWER_PREFIX = "Here is the most relevant information I found:"
