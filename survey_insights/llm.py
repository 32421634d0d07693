"""
Model invocation and JSON payload handling.

`ModelInvoker` is the contract the pipeline depends on:

    invoke(system_prompt, user_prompt, options) -> ModelResponse(text, tokens_used, model)

`OpenAIModelInvoker` implements it with the chat completions API in JSON
mode. SDK errors are re-raised as `LLMError` with messages that keep the
transient-failure vocabulary (rate limit, timeout, connection) so that the
queue can classify them.

`parse_json_payload()` extracts the JSON object between the first "{" and the
last "}" of a raw completion; `check_required_fields()` enforces the analysis
type's top-level key.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable

import openai
import structlog

from survey_insights.error_handling import LLMError, OutputValidationError
from survey_insights.settings import LLMSettings

_logger = structlog.get_logger()

MAX_LLM_RESPONSE_SIZE = 64000


@dataclass(frozen=True)
class InvocationOptions:
    model: str
    max_tokens: int = 4000
    temperature: float = 0.3

    @classmethod
    def from_settings(cls, settings: LLMSettings) -> "InvocationOptions":
        return cls(model=settings.model, max_tokens=settings.max_tokens, temperature=settings.temperature)


@dataclass(frozen=True)
class ModelResponse:
    text: str
    tokens_used: int
    model: str
    elapsed_ms: float = 0.0


class ModelInvoker(ABC):
    @abstractmethod
    def invoke(self, system_prompt: str, user_prompt: str, options: InvocationOptions) -> ModelResponse:
        ...


class OpenAIModelInvoker(ModelInvoker):
    """Chat completions in JSON mode via the openai SDK (OpenAI or Azure)."""

    def __init__(self, client: Any):
        self._client = client

    def invoke(self, system_prompt: str, user_prompt: str, options: InvocationOptions) -> ModelResponse:
        start = time.perf_counter()
        try:
            response = self._client.chat.completions.create(
                model=options.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )
        except openai.RateLimitError as exc:
            raise LLMError(f"rate limit exceeded: {exc}", {"model": options.model}) from exc
        except openai.APITimeoutError as exc:
            raise LLMError(f"timeout calling model: {exc}", {"model": options.model}) from exc
        except openai.APIConnectionError as exc:
            raise LLMError(f"connection error calling model: {exc}", {"model": options.model}) from exc
        except openai.InternalServerError as exc:
            raise LLMError(f"temporary model service failure: {exc}", {"model": options.model}) from exc
        except openai.OpenAIError as exc:
            raise LLMError(f"model call failed: {exc}", {"model": options.model}) from exc

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0) if usage else 0
        completion_tokens = getattr(usage, "completion_tokens", 0) if usage else 0
        total_tokens = getattr(usage, "total_tokens", None) if usage else None
        _logger.info(
            "llm.chat.complete",
            model=options.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            elapsed_ms=elapsed_ms,
        )

        content = response.choices[0].message.content or ""
        return ModelResponse(
            text=content,
            tokens_used=total_tokens if total_tokens is not None else prompt_tokens + completion_tokens,
            model=getattr(response, "model", None) or options.model,
            elapsed_ms=elapsed_ms,
        )


def parse_json_payload(text: str) -> Dict[str, Any]:
    """
    Parse the JSON object embedded in a completion.

    Raises:
        OutputValidationError: no object found, invalid JSON, or not an object
    """
    if len(text) > MAX_LLM_RESPONSE_SIZE:
        _logger.warning(
            "llm.response_truncated",
            original_size=len(text),
            truncated_to=MAX_LLM_RESPONSE_SIZE,
        )
        text = text[:MAX_LLM_RESPONSE_SIZE]

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise OutputValidationError("Model response is not valid JSON: no object found",
                                    {"preview": text[:100]})
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise OutputValidationError(f"Model response is not valid JSON: {exc.msg}",
                                    {"preview": text[:100]}) from exc
    if not isinstance(data, dict):
        raise OutputValidationError("Model response must be a JSON object")
    return data


def _is_blank(value: Any) -> bool:
    # Empty lists and objects are valid (nothing found); null, "", 0 and false are not.
    if value is None:
        return True
    if isinstance(value, (str, bool, int, float)):
        return not value
    return False


def check_required_fields(data: Dict[str, Any], fields: Iterable[str]) -> None:
    missing = [f for f in fields if _is_blank(data.get(f))]
    if missing:
        raise OutputValidationError(
            f"Model response missing required fields: {', '.join(missing)}",
            {"missing": missing},
        )
