from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from xlai.utils.env import read_float_env, read_int_env
from xlai.utils.errors import UpstreamError
from xlai.utils.logging import get_logger
from xlai.utils.observability import get_metrics

log = get_logger(__name__)

_DEFAULT_BASE = "https://api.openai.com/v1"
_DEFAULT_CHAT_MODEL = "gpt-4o-mini"


class CompletionError(UpstreamError):
    """Raised when the completion service cannot produce a usable reply."""


class CompletionConfigError(CompletionError):
    """Raised when completion credentials are missing."""


def _base_url() -> str:
    return os.getenv("OPENAI_BASE", _DEFAULT_BASE).rstrip("/")


def _api_key() -> str | None:
    return os.getenv("OPENAI_API_KEY")


def completions_enabled() -> bool:
    return bool(_api_key())


def _headers() -> Dict[str, str]:
    key = _api_key()
    if not key:
        raise CompletionConfigError("OPENAI_API_KEY is not configured")
    return {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}


def _default_model() -> str:
    return os.getenv("OPENAI_MODEL", _DEFAULT_CHAT_MODEL)


def request_timeout_seconds() -> float:
    return read_float_env("OPENAI_TIMEOUT_SECONDS", 20.0, minimum=0.1)


def _max_attempts() -> int:
    return read_int_env("OPENAI_MAX_ATTEMPTS", 2)


def _backoff_min_seconds() -> float:
    return read_float_env("OPENAI_BACKOFF_MIN_SECONDS", 0.5)


def _backoff_max_seconds() -> float:
    return read_float_env("OPENAI_BACKOFF_MAX_SECONDS", 4.0)


def _extract_content(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content.strip() if isinstance(content, str) else ""


async def _post_completion(payload: Dict[str, Any]) -> str:
    timeout = request_timeout_seconds()
    max_attempts = _max_attempts()
    backoff_min = _backoff_min_seconds()
    backoff_max = max(backoff_min, _backoff_max_seconds())
    metrics = get_metrics()
    async with httpx.AsyncClient(timeout=timeout) as client:
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=backoff_min, max=backoff_max),
            stop=stop_after_attempt(max_attempts),
            retry=retry_if_exception_type(httpx.HTTPError),
            reraise=True,
        ):
            attempt_number = attempt.retry_state.attempt_number
            if attempt_number > 1:
                metrics.increment_counter("completion_retry::attempt")
                log.warning("completion_retry", attempt=attempt_number, max_attempts=max_attempts)
            with attempt:
                response = await client.post(f"{_base_url()}/chat/completions", headers=_headers(), json=payload)
                response.raise_for_status()
                return _extract_content(response.json())
    return ""


async def chat(
    prompt: str,
    *,
    system_message: str,
    temperature: float = 0.3,
    max_tokens: int | None = None,
    stop: Sequence[str] | None = None,
    model: str | None = None,
    response_format: Dict[str, Any] | None = None,
) -> str:
    """Run one chat completion and return the first choice's text.

    Any transport failure, timeout, or empty reply is raised as CompletionError so
    that callers can decide whether to fail open or surface a safe error.
    """

    if not completions_enabled():
        log.warning("completion_disabled", msg="OPENAI_API_KEY is missing")
        raise CompletionConfigError("OPENAI_API_KEY is not configured")

    payload: Dict[str, Any] = {
        "model": model or _default_model(),
        "messages": [
            {"role": "system", "content": system_message},
            {"role": "user", "content": prompt},
        ],
        "temperature": temperature,
    }
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    if stop:
        payload["stop"] = list(stop)
    if response_format is not None:
        payload["response_format"] = response_format

    metrics = get_metrics()
    # whole-call budget across retries; a timeout counts as an upstream failure
    budget = request_timeout_seconds() * max(_max_attempts(), 1)
    try:
        content = await asyncio.wait_for(_post_completion(payload), timeout=budget)
    except asyncio.TimeoutError as exc:
        metrics.increment_counter("completion_error::timeout")
        raise CompletionError("completion request timed out") from exc
    except httpx.HTTPError as exc:
        metrics.increment_counter("completion_error::transport")
        raise CompletionError(f"completion request failed: {exc}") from exc
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        metrics.increment_counter("completion_error::payload")
        raise CompletionError("completion response was malformed") from exc
    if not content:
        metrics.increment_counter("completion_error::empty")
        raise CompletionError("completion response was empty")
    metrics.increment_counter("completion::success")
    return content
