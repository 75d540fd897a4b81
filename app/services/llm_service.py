"""
Luna Assessment — LLM Collaborator

Thin async wrapper around Gemini used for three things: generating a
personalised question set, writing the qualitative narrative for an
analysis, and phrasing a follow-up question.  Its output is always treated
as untrusted free text.

Failure model:
    * No API key configured      -> ``LLMUnavailableError`` immediately
    * Transient API errors       -> tenacity retry with exponential backoff
    * Any other per-model error  -> next model in the chain
    * Whole call over the budget -> ``LLMUnavailableError`` (timeout)
Callers catch these and switch to their deterministic path.

Model fallback chain:
    gemini-3-pro-preview -> gemini-3-flash-preview -> gemini-2.5-flash
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Optional

import google.generativeai as genai
import structlog
from json_repair import repair_json
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import get_settings
from app.exceptions import LLMResponseFormatError, LLMUnavailableError

logger = structlog.get_logger("luna.llm_service")

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


def _is_retryable_api_error(exc: BaseException) -> bool:
    """Return True for rate-limit and transient server-side Gemini errors."""
    exc_str = str(exc).lower()
    exc_type = type(exc).__name__.lower()

    if "429" in exc_str or "resource_exhausted" in exc_str:
        return True
    if "500" in exc_str or "503" in exc_str or "internal" in exc_str:
        return True
    if "resourceexhausted" in exc_type or "serviceunavailable" in exc_type:
        return True
    return False


@dataclass(frozen=True)
class LLMCompletion:
    text: str
    model: str


# ──────────────────────────────────────────────────────────────────────────────
# Response extraction
# ──────────────────────────────────────────────────────────────────────────────

def extract_json_array(text: Optional[str]) -> list[Any]:
    """Return the JSON array spanning the first ``[`` to the last ``]``.

    Prose before and after the array is ignored.  No repair is attempted:
    a truncated or malformed array is rejected so the caller can fall back.

    Raises
    ------
    LLMResponseFormatError
        If no array is present or the slice is not valid JSON.
    """
    if not text or not text.strip():
        raise LLMResponseFormatError("Empty response text")

    start = text.find("[")
    end = text.rfind("]")
    if start < 0 or end <= start:
        raise LLMResponseFormatError(f"No JSON array in response. Preview: {text[:120]}")

    try:
        parsed = json.loads(text[start : end + 1])
    except (json.JSONDecodeError, TypeError) as exc:
        raise LLMResponseFormatError(f"Malformed JSON array: {exc}") from exc

    if not isinstance(parsed, list):
        raise LLMResponseFormatError("Extracted JSON is not an array")
    return parsed


def parse_json_object(text: Optional[str]) -> dict[str, Any]:
    """Parse a JSON object from free text using several strategies.

    Pipeline:
    1. Direct ``json.loads``
    2. Markdown code-fence extraction
    3. Slice from the first ``{`` to the last ``}``
    4. ``json_repair`` on the full text, then on the brace slice

    Raises
    ------
    LLMResponseFormatError
        If no strategy yields a JSON object.
    """
    if not text or not text.strip():
        raise LLMResponseFormatError("Empty response text")

    cleaned = text.strip()
    candidates: list[str] = [cleaned]

    fence = _FENCE_PATTERN.search(cleaned)
    if fence:
        candidates.append(fence.group(1).strip())

    first_brace = cleaned.find("{")
    last_brace = cleaned.rfind("}")
    brace_slice = None
    if first_brace >= 0 and last_brace > first_brace:
        brace_slice = cleaned[first_brace : last_brace + 1]
        candidates.append(brace_slice)

    for candidate in candidates:
        try:
            result = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(result, dict):
            return result

    for candidate in filter(None, (cleaned, brace_slice)):
        try:
            result = json.loads(repair_json(candidate))
        except Exception as exc:
            logger.debug("json_repair_failed", error=str(exc))
            continue
        if isinstance(result, dict):
            logger.info("json_parsed_via_json_repair", original_preview=cleaned[:80])
            return result

    raise LLMResponseFormatError(f"No JSON object in response. Preview: {cleaned[:200]}")


# ──────────────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────────────

class LLMService:
    """Gemini access with a model fallback chain and a hard time budget."""

    def __init__(self) -> None:
        settings = get_settings()
        self._enabled = settings.llm_enabled
        self._timeout = settings.LLM_TIMEOUT_SECONDS
        self._max_attempts = settings.LLM_MAX_ATTEMPTS
        self._model_chain: list[str] = [
            settings.GEMINI_MODEL_PRIMARY,
            settings.GEMINI_MODEL_FALLBACK,
            settings.GEMINI_MODEL_STABLE,
        ]

        if self._enabled:
            genai.configure(api_key=settings.GEMINI_API_KEY)

        logger.info(
            "llm_service_initialised",
            enabled=self._enabled,
            model_chain=self._model_chain,
            timeout_seconds=self._timeout,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def model_chain(self) -> list[str]:
        return list(self._model_chain)

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        expect_json: bool = False,
    ) -> LLMCompletion:
        """Send one prompt and return the first non-empty completion.

        Parameters
        ----------
        prompt:
            The user prompt.
        system_prompt:
            Optional system instruction for the model.
        max_tokens, temperature:
            Generation parameters.
        expect_json:
            Ask Gemini for an ``application/json`` response.  The caller
            still validates whatever comes back.

        Raises
        ------
        LLMUnavailableError
            When the service is disabled, the time budget is exceeded, or
            every model in the chain fails.
        """
        if not self._enabled:
            raise LLMUnavailableError("GEMINI_API_KEY is not configured")

        config_kwargs: dict[str, Any] = {
            "max_output_tokens": max_tokens,
            "temperature": temperature,
        }
        if expect_json:
            config_kwargs["response_mime_type"] = "application/json"
        generation_config = genai.GenerationConfig(**config_kwargs)

        try:
            return await asyncio.wait_for(
                self._complete_with_fallback(prompt, system_prompt, generation_config),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("llm_call_timeout", timeout_seconds=self._timeout)
            raise LLMUnavailableError(
                f"LLM call exceeded {self._timeout}s budget"
            ) from exc

    async def _complete_with_fallback(
        self,
        prompt: str,
        system_prompt: Optional[str],
        generation_config: Any,
    ) -> LLMCompletion:
        last_exception: Optional[BaseException] = None

        for model_name in self._model_chain:
            try:
                text = await self._call_gemini_with_retry(
                    model_name, prompt, system_prompt, generation_config
                )
                return LLMCompletion(text=text, model=model_name)
            except Exception as exc:
                last_exception = exc
                logger.warning(
                    "llm_model_fallback",
                    failed_model=model_name,
                    error=str(exc),
                )

        raise LLMUnavailableError(f"All models exhausted. Last error: {last_exception}")

    async def _call_gemini_with_retry(
        self,
        model_name: str,
        prompt: str,
        system_prompt: Optional[str],
        generation_config: Any,
    ) -> str:
        """Call one Gemini model, retrying transient API errors."""
        model = genai.GenerativeModel(model_name, system_instruction=system_prompt)

        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable_api_error),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=8),
            reraise=True,
        ):
            with attempt:
                logger.debug(
                    "llm_call_attempt",
                    model=model_name,
                    attempt_number=attempt.retry_state.attempt_number,
                )
                response = await model.generate_content_async(
                    prompt,
                    generation_config=generation_config,
                )
                if not response.candidates:
                    raise ValueError(
                        f"Gemini returned no candidates for model {model_name}. "
                        f"Prompt feedback: {response.prompt_feedback}"
                    )
                text = response.text
                if not text or not text.strip():
                    raise ValueError(f"Gemini returned empty text for model {model_name}")
                return text

        raise LLMUnavailableError(f"No attempt completed for model {model_name}")
