from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from xlai.utils import completions
from xlai.utils.errors import UpstreamError, ValidationError
from xlai.utils.logging import get_logger
from xlai.utils.observability import get_metrics, time_phase
from xlai.utils.prompt_catalog import normalize_tone, render_rephrase_system_prompt

log = get_logger(__name__)

REPHRASE_TEMPERATURE = 0.3
REPHRASE_MAX_TOKENS = 220
REPHRASE_FALLBACK_MESSAGE = "XL AI couldn't suggest a rewrite right now. Please try again."

CompletionFn = Callable[..., Awaitable[str]]

_QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"), ("‘", "’"))


def _default_completion(*args, **kwargs) -> Awaitable[str]:
    # resolved at call time so tests can patch completions.chat
    return completions.chat(*args, **kwargs)


def clean_suggestion(raw: str) -> str:
    text = raw.strip()
    for opening, closing in _QUOTE_PAIRS:
        if len(text) >= 2 and text.startswith(opening) and text.endswith(closing):
            text = text[1:-1].strip()
            break
    return text


@dataclass
class ToneRewriteClient:
    """Ask the completion service for one tone-adjusted rewrite of a message."""

    completion: CompletionFn = field(default=_default_completion)

    async def rephrase(self, text: str | None, tone: str | None, *, rewrite_strength: str | None = None) -> str:
        if not text or not text.strip():
            raise ValidationError("Missing text")
        effective_tone = normalize_tone(tone)
        metrics = get_metrics()
        try:
            with time_phase(metrics, "rephrase"):
                raw = await self.completion(
                    text.strip(),
                    system_message=render_rephrase_system_prompt(effective_tone, rewrite_strength),
                    temperature=REPHRASE_TEMPERATURE,
                    max_tokens=REPHRASE_MAX_TOKENS,
                )
        except UpstreamError as exc:
            metrics.increment_counter("rephrase::upstream_error")
            log.warning("rephrase_upstream_error", tone=effective_tone, error=str(exc))
            raise UpstreamError(str(exc), public_message=REPHRASE_FALLBACK_MESSAGE) from exc
        suggestion = clean_suggestion(raw or "")
        if not suggestion:
            metrics.increment_counter("rephrase::empty")
            log.warning("rephrase_empty_suggestion", tone=effective_tone)
            raise UpstreamError("completion returned an empty rewrite", public_message=REPHRASE_FALLBACK_MESSAGE)
        log.info("rephrase_complete", tone=effective_tone, chars=len(suggestion))
        return suggestion
