"""Predictive pause: hold back a high-intensity message behind a countdown.

Idle -> Analyzing -> Calm (proceed) | PausePrompt -> apply suggestion,
send anyway (after the countdown) or cancel -> Idle.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from xlai.agents.intensity_client import IntensityResult
from xlai.schemas.models import PauseDecision

PAUSE_COUNTDOWN_SECONDS = 15.0
DEFAULT_COACH_MODE = "soft"
COACH_MODE_THRESHOLDS = {
    "soft": 0.85,
    "high": 0.70,
}


class PauseFlowError(RuntimeError):
    """Raised when an action is not allowed in the current pause state."""


class PauseState(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    CALM = "calm"
    PAUSE_PROMPT = "pause_prompt"


def normalize_coach_mode(mode: str | None) -> str:
    raw = (mode or "").strip().lower()
    return raw if raw in COACH_MODE_THRESHOLDS else DEFAULT_COACH_MODE


def pause_threshold(mode: str | None) -> float:
    return COACH_MODE_THRESHOLDS[normalize_coach_mode(mode)]


def pause_decision(intensity: float, mode: str | None) -> PauseDecision:
    coach_mode = normalize_coach_mode(mode)
    threshold = COACH_MODE_THRESHOLDS[coach_mode]
    return PauseDecision(required=intensity > threshold, threshold=threshold, coach_mode=coach_mode)


@dataclass(frozen=True)
class PauseOutcome:
    final_text: str
    original_text: str | None
    used_suggestion: bool
    was_pause_taken: bool
    intensity_score: float | None
    pre_send_emotion: str | None


class PredictivePause:
    def __init__(
        self,
        coach_mode: str | None = DEFAULT_COACH_MODE,
        *,
        countdown_seconds: float = PAUSE_COUNTDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.coach_mode = normalize_coach_mode(coach_mode)
        self.countdown_seconds = countdown_seconds
        self._clock = clock
        self._reset()

    def _reset(self) -> None:
        self.state = PauseState.IDLE
        self.raw_text: str | None = None
        self.emotion: str | None = None
        self.result: IntensityResult | None = None
        self._prompt_started_at: float | None = None

    @property
    def threshold(self) -> float:
        return COACH_MODE_THRESHOLDS[self.coach_mode]

    def begin(self, text: str, *, emotion: str | None = None) -> PauseState:
        if self.state is not PauseState.IDLE:
            raise PauseFlowError(f"cannot start analysis from {self.state.value}")
        if not text or not text.strip():
            raise PauseFlowError("nothing to send")
        self.raw_text = text.strip()
        self.emotion = emotion
        self.state = PauseState.ANALYZING
        return self.state

    def resolve(self, result: IntensityResult) -> PauseState:
        if self.state is not PauseState.ANALYZING:
            raise PauseFlowError(f"no analysis in progress ({self.state.value})")
        self.result = result
        if pause_decision(result.analysis.intensity, self.coach_mode).required:
            self.state = PauseState.PAUSE_PROMPT
            self._prompt_started_at = self._clock()
        else:
            self.state = PauseState.CALM
        return self.state

    def seconds_remaining(self) -> float:
        if self.state is not PauseState.PAUSE_PROMPT or self._prompt_started_at is None:
            return 0.0
        elapsed = self._clock() - self._prompt_started_at
        return max(self.countdown_seconds - elapsed, 0.0)

    def can_send_anyway(self) -> bool:
        return self.state is PauseState.PAUSE_PROMPT and self.seconds_remaining() <= 0.0

    @property
    def suggestion(self) -> str:
        if self.result is not None and self.result.suggestion:
            return self.result.suggestion
        return self.raw_text or ""

    def proceed(self) -> PauseOutcome:
        if self.state is not PauseState.CALM:
            raise PauseFlowError(f"cannot proceed directly from {self.state.value}")
        return self._finish(final_text=self.raw_text or "", used_suggestion=False, paused=False)

    def apply_suggestion(self) -> PauseOutcome:
        if self.state is not PauseState.PAUSE_PROMPT:
            raise PauseFlowError(f"no pause prompt is open ({self.state.value})")
        used = bool(self.result and self.result.suggestion)
        return self._finish(final_text=self.suggestion, used_suggestion=used, paused=True)

    def send_anyway(self) -> PauseOutcome:
        if self.state is not PauseState.PAUSE_PROMPT:
            raise PauseFlowError(f"no pause prompt is open ({self.state.value})")
        if not self.can_send_anyway():
            raise PauseFlowError(f"send anyway is locked for {self.seconds_remaining():.0f}s")
        return self._finish(final_text=self.raw_text or "", used_suggestion=False, paused=True)

    def cancel(self) -> None:
        self._reset()

    def _finish(self, *, final_text: str, used_suggestion: bool, paused: bool) -> PauseOutcome:
        outcome = PauseOutcome(
            final_text=final_text,
            original_text=self.raw_text,
            used_suggestion=used_suggestion,
            was_pause_taken=paused,
            intensity_score=self.result.analysis.intensity if self.result else None,
            pre_send_emotion=self.emotion,
        )
        self._reset()
        return outcome
