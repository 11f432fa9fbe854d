import logging

from django.conf import settings
from openai import OpenAI

logger = logging.getLogger(__name__)

_client = None


def get_client():
    """OpenRouter speaks the OpenAI protocol; one client per process."""
    global _client
    if _client is None:
        _client = OpenAI(
            api_key=settings.OPENROUTER_API_KEY,
            base_url=settings.OPENROUTER_BASE_URL,
        )
    return _client


def query_openrouter(prompt, model_id, max_tokens=500, temperature=0.0):
    """Query any model through OpenRouter API"""
    if model_id == "openai/o4-mini":
        max_tokens = max(max_tokens, 1000)

    response = get_client().chat.completions.create(
        model=model_id,
        messages=[{"role": "user", "content": prompt}],
        temperature=temperature,
        max_tokens=max_tokens,
    )

    usage = getattr(response, "usage", None)
    if usage is not None:
        logger.debug(
            f"{model_id}: {usage.prompt_tokens} input tokens, {usage.completion_tokens} output tokens"
        )
    return response.choices[0].message.content or ""
