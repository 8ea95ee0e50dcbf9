"""Shared LLM client: OpenRouter through the OpenAI-compatible API."""
import json
import re
import time
import logging
from typing import Any, Dict, Type, TypeVar

from openai import OpenAI
from pydantic import BaseModel, ValidationError

from app.config import settings
from app.errors import LLMOutputError

logger = logging.getLogger(__name__)

client = OpenAI(
    api_key=settings.OPENROUTER_API_KEY or "not-configured",
    base_url=settings.OPENROUTER_BASE_URL,
)

DEFAULT_MODEL = settings.LLM_MODEL

# Regex to strip <think>…</think> blocks from reasoning models (DeepSeek R1, etc.)
_THINK_RE = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

STRICT_JSON_INSTRUCTION = (
    "\n\nIMPORTANT: your previous answer could not be parsed. Respond with ONE valid JSON "
    "object only, matching the requested fields exactly. No markdown, no commentary."
)

T = TypeVar("T", bound=BaseModel)


def _strip_think_tags(text: str) -> str:
    """Remove <think>…</think> reasoning blocks that R1 models prepend."""
    return _THINK_RE.sub("", text).strip()


def call_llm(prompt: str, max_tokens: int = 2048, model: str = None) -> str:
    """Call the LLM with a single user prompt and return the text response."""
    used_model = model or DEFAULT_MODEL
    prompt_preview = prompt[:120].replace("\n", " ")
    logger.info("LLM call → model=%s  max_tokens=%d  prompt='%s…'", used_model, max_tokens, prompt_preview)

    t0 = time.perf_counter()
    try:
        response = client.chat.completions.create(
            model=used_model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        raw = response.choices[0].message.content or ""
        elapsed = time.perf_counter() - t0

        usage = response.usage
        tokens_info = ""
        if usage:
            tokens_info = f"  tokens(in={usage.prompt_tokens}, out={usage.completion_tokens})"

        logger.info(
            "LLM done ← %.1fs  raw_len=%d  clean_len=%d%s",
            elapsed, len(raw), len(_strip_think_tags(raw)), tokens_info,
        )
        logger.debug("LLM raw response (first 300 chars): %s", raw[:300])

        return _strip_think_tags(raw)

    except Exception as e:
        elapsed = time.perf_counter() - t0
        logger.error("LLM error after %.1fs: %s: %s", elapsed, type(e).__name__, e)
        raise


def parse_json_response(text: str) -> Dict[str, Any]:
    """Pull a JSON object out of an LLM answer.

    Handles ```json fences and stray prose around the object by falling back
    to the span between the first '{' and the last '}'.
    """
    cleaned = _FENCE_RE.sub("", _strip_think_tags(text).strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        data = json.loads(cleaned[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def call_llm_json(prompt: str, schema: Type[T], max_tokens: int = 2048, llm=None) -> T:
    """Call the LLM and validate its answer against ``schema``.

    One retry with a stricter instruction; a second malformed answer raises
    LLMOutputError. ``llm`` defaults to :func:`call_llm`.
    """
    llm = llm or call_llm
    last_error: Exception = None
    for attempt, text in enumerate((prompt, prompt + STRICT_JSON_INSTRUCTION), start=1):
        raw = llm(text, max_tokens)
        try:
            return schema.model_validate(parse_json_response(raw))
        except (ValueError, ValidationError) as e:
            last_error = e
            logger.warning("LLM output for %s rejected (attempt %d): %s", schema.__name__, attempt, e)
    raise LLMOutputError(f"{schema.__name__}: malformed output after retry: {last_error}")
