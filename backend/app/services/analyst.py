from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from functools import lru_cache
from threading import BoundedSemaphore
from typing import Any, Dict, Optional, Protocol

from openai import OpenAI, OpenAIError

from ..core.config import get_settings

logger = logging.getLogger(__name__)

# Keeps prompts inside the model's context window even for large sessions
MAX_CONTEXT_CHARS = 24_000

SYSTEM_PROMPT = (
    "You are a market analyst. Using only the JSON context provided, produce a JSON object "
    "with keys: summary (string), confidence (0-100 integer), key_insights (list of strings), "
    "risk_factors (list of strings), opportunities (list of strings), outlook "
    "(one of 'bullish', 'bearish', 'neutral'). If a data source is missing, say so instead "
    "of guessing."
)

REQUIRED_KEYS = ("summary", "confidence")


class ComputationError(RuntimeError):
    """The long-running computation failed or produced an unusable result."""


class DeepAnalyzer(Protocol):
    def analyze(
        self,
        subject: str,
        context: Dict[str, Any],
        request: Dict[str, Any],
        timeout: float,
    ) -> Dict[str, Any]:
        ...


_llm_semaphore: BoundedSemaphore | None = None


def _get_semaphore() -> BoundedSemaphore:
    """
    Lazy-initialised global semaphore for limiting concurrent LLM calls.
    """
    global _llm_semaphore
    if _llm_semaphore is None:
        settings = get_settings()
        _llm_semaphore = BoundedSemaphore(settings.LLM_MAX_CONCURRENCY)
    return _llm_semaphore


@contextmanager
def limit_llm_concurrency():
    """
    Bound concurrent calls to the LLM provider within this process.
    """
    sem = _get_semaphore()
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


@lru_cache(maxsize=1)
def get_llm_client() -> OpenAI:
    """
    Shared OpenAI-compatible client.

    - If OPENROUTER_API_KEY is set, route requests via OpenRouter.
    - Otherwise use the standard OpenAI API with OPENAI_API_KEY.
    """
    settings = get_settings()

    if settings.OPENROUTER_API_KEY:
        return OpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=settings.OPENROUTER_API_KEY.strip(),
            default_headers={
                "HTTP-Referer": settings.FRONTEND_ORIGIN or "http://localhost:3000",
                "X-Title": "Analysis Pipeline",
            },
        )

    if settings.OPENAI_API_KEY:
        return OpenAI(api_key=settings.OPENAI_API_KEY.strip())

    raise ComputationError(
        "No LLM API key configured. Set either OPENAI_API_KEY or OPENROUTER_API_KEY."
    )


def format_context(subject: str, context: Dict[str, Any]) -> str:
    """
    Render the aggregated phase context as a prompt section, listing which
    sources are present so the model can call out gaps.
    """
    available = sorted(k for k, v in context.items() if v)
    body = json.dumps(context, default=str, sort_keys=True)
    if len(body) > MAX_CONTEXT_CHARS:
        body = body[:MAX_CONTEXT_CHARS] + " …(truncated)"
    return (
        f"# Analysis context for {subject}\n"
        f"Available sources: {', '.join(available) or 'none'}\n\n"
        f"{body}"
    )


class OpenAIAnalyzer:
    """Single structured-output chat completion over the session context."""

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None) -> None:
        self._client = client
        self.model = model or get_settings().LLM_MODEL

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_llm_client()
        return self._client

    def analyze(
        self,
        subject: str,
        context: Dict[str, Any],
        request: Dict[str, Any],
        timeout: float,
    ) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": format_context(subject, context)},
        ]
        if request.get("question"):
            messages.append({"role": "user", "content": str(request["question"])})

        try:
            with limit_llm_concurrency():
                resp = self.client.with_options(timeout=timeout, max_retries=0).chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format={"type": "json_object"},
                )
        except OpenAIError as e:
            raise ComputationError(f"LLM request failed: {e}") from e

        content = (resp.choices[0].message.content or "").strip() if resp.choices else ""
        return parse_analysis(content, model=self.model)


def parse_analysis(content: str, *, model: Optional[str] = None) -> Dict[str, Any]:
    """Validate the model's JSON answer; anything unusable is a ComputationError."""
    if not content:
        raise ComputationError("LLM returned an empty response")
    try:
        parsed = json.loads(content)
    except ValueError as e:
        raise ComputationError("LLM response was not valid JSON") from e
    if not isinstance(parsed, dict):
        raise ComputationError("LLM response was not a JSON object")
    missing = [k for k in REQUIRED_KEYS if k not in parsed]
    if missing:
        raise ComputationError(f"LLM response missing keys: {', '.join(missing)}")

    try:
        parsed["confidence"] = max(0, min(100, int(parsed["confidence"])))
    except (TypeError, ValueError) as e:
        raise ComputationError("LLM response had a non-numeric confidence") from e
    if model:
        parsed["model_used"] = model
    return parsed


def get_analyzer() -> DeepAnalyzer:
    return OpenAIAnalyzer()
