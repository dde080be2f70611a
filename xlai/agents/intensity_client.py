from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from xlai.schemas.models import IntensityAnalysis
from xlai.utils import completions
from xlai.utils.errors import UpstreamError
from xlai.utils.logging import get_logger
from xlai.utils.observability import get_metrics, time_phase
from xlai.utils.prompt_catalog import INTENSITY_SYSTEM_PROMPT, render_intensity_user_prompt

log = get_logger(__name__)

INTENSITY_TEMPERATURE = 0.2
INTENSITY_MAX_TOKENS = 260
INTENSITY_LABELS = ("low", "medium", "high")
DEFAULT_EMOTION = "neutral"

CompletionFn = Callable[..., Awaitable[str]]


def _default_completion(*args, **kwargs) -> Awaitable[str]:
    return completions.chat(*args, **kwargs)


def label_from_score(score: float | None) -> str:
    if score is None or (isinstance(score, float) and math.isnan(score)):
        return "low"
    if score < 0.4:
        return "low"
    if score < 0.7:
        return "medium"
    return "high"


@dataclass(frozen=True)
class IntensityResult:
    analysis: IntensityAnalysis
    suggestion: str = ""
    degraded: bool = False


def safe_default() -> IntensityResult:
    return IntensityResult(
        analysis=IntensityAnalysis(intensity=0.0, label="low", primary_emotion=DEFAULT_EMOTION),
        suggestion="",
        degraded=True,
    )


def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_intensity_payload(raw: str) -> IntensityResult:
    """Parse the classifier's JSON reply; raises ValueError when it is unusable."""

    data: Any = json.loads(_strip_code_fence(raw))
    if not isinstance(data, dict):
        raise ValueError("intensity payload is not an object")
    score_raw = data.get("intensity")
    if isinstance(score_raw, bool) or not isinstance(score_raw, (int, float)):
        raise ValueError("intensity score missing")
    score = float(score_raw)
    if math.isnan(score):
        raise ValueError("intensity score is NaN")
    score = min(max(score, 0.0), 1.0)
    label = str(data.get("label") or "").strip().lower()
    if label not in INTENSITY_LABELS:
        label = label_from_score(score)
    emotion = data.get("primaryEmotion") or data.get("primary_emotion")
    emotion = str(emotion).strip().lower() if emotion else DEFAULT_EMOTION
    suggestion = data.get("suggestion")
    return IntensityResult(
        analysis=IntensityAnalysis(intensity=score, label=label, primary_emotion=emotion or DEFAULT_EMOTION),
        suggestion=suggestion.strip() if isinstance(suggestion, str) else "",
    )


@dataclass
class IntensityClassifier:
    """Score the emotional charge of a message.

    The classifier fails open: any upstream problem yields a low-intensity
    default so a broken classifier never blocks sending.
    """

    completion: CompletionFn = field(default=_default_completion)

    async def analyze(
        self,
        text: str | None,
        *,
        tone: str | None = None,
        emotion: str | None = None,
        rewrite_strength: str | None = None,
    ) -> IntensityResult:
        if not text or not text.strip():
            return safe_default()
        metrics = get_metrics()
        try:
            with time_phase(metrics, "intensity"):
                raw = await self.completion(
                    render_intensity_user_prompt(
                        text.strip(), tone=tone, emotion=emotion, rewrite_strength=rewrite_strength
                    ),
                    system_message=INTENSITY_SYSTEM_PROMPT,
                    temperature=INTENSITY_TEMPERATURE,
                    max_tokens=INTENSITY_MAX_TOKENS,
                    response_format={"type": "json_object"},
                )
        except UpstreamError as exc:
            metrics.increment_counter("intensity::fail_open")
            log.warning("intensity_fail_open", reason="upstream", error=str(exc))
            return safe_default()
        try:
            result = parse_intensity_payload(raw)
        except ValueError as exc:
            metrics.increment_counter("intensity::fail_open")
            log.warning("intensity_fail_open", reason="unparsable", error=str(exc), raw=raw[:200])
            return safe_default()
        log.info(
            "intensity_scored",
            intensity=result.analysis.intensity,
            label=result.analysis.label,
            emotion=result.analysis.primary_emotion,
        )
        return result
