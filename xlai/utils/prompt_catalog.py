"""Fixed instruction prompts for tone rewrites and intensity scoring."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

DEFAULT_TONE = "calm"
DEFAULT_REWRITE_STRENGTH = "low"

TONES = ("calm", "professional", "lowkey")
REWRITE_STRENGTHS = ("low", "medium", "high")

_TONE_ALIASES = {
    "low-key": "lowkey",
    "low_key": "lowkey",
    "low key": "lowkey",
}


@dataclass(frozen=True)
class TonePrompt:
    tone: str
    label: str
    instruction: str


_TONE_PROMPTS: Dict[str, TonePrompt] = {
    "calm": TonePrompt(
        tone="calm",
        label="Calm",
        instruction=(
            "Rewrite the user's message so it sounds calm, steady and kind. "
            "Lower the heat without hiding what the user needs to say."
        ),
    ),
    "professional": TonePrompt(
        tone="professional",
        label="Professional",
        instruction=(
            "Rewrite the user's message in a clear, respectful, professional tone "
            "suitable for a colleague. Keep it direct and free of blame."
        ),
    ),
    "lowkey": TonePrompt(
        tone="lowkey",
        label="Low-key",
        instruction=(
            "Rewrite the user's message so it sounds relaxed, casual and low-key, "
            "like a friendly text. Keep it short."
        ),
    ),
}

_STRENGTH_NOTES = {
    "low": "Make the smallest edits that achieve the tone.",
    "medium": "You may restructure sentences to achieve the tone.",
    "high": "You may rewrite freely as long as the meaning is preserved.",
}

_REWRITE_RULES = (
    "Preserve the original meaning and intent; do not introduce new facts or new emotional content. "
    "Keep a similar length unless a small edit improves clarity. "
    "Do not mention that you are an AI or a coach. "
    "Return ONLY the rewritten message text with no preamble, quotes, advice or follow-up questions."
)

INTENSITY_SYSTEM_PROMPT = """
You are XL AI, an emotionally intelligent communication assistant.

Your tasks:
1) Estimate the emotional intensity of the user's message from 0.0 (very calm) to 1.0 (very intense).
2) Provide a short label: "low", "medium", or "high".
3) Name the primary emotion in one lowercase word (for example "anger", "frustration", "sadness", "anxiety", "neutral").
4) Produce ONE rewritten version of the message in the "suggestion" field. It MUST contain ONLY the rewritten
   message text: no advice, no coaching, no explanations. Match the requested tone and preserve the meaning.

Return ONLY a JSON object with exactly this shape and no other commentary:
{
  "intensity": number,
  "label": "low" | "medium" | "high",
  "primaryEmotion": string,
  "suggestion": string
}
""".strip()


def normalize_tone(tone: str | None) -> str:
    """Map any requested tone onto the closed tone set, defaulting to calm."""

    raw = (tone or "").strip().lower()
    raw = _TONE_ALIASES.get(raw, raw)
    return raw if raw in _TONE_PROMPTS else DEFAULT_TONE


def normalize_rewrite_strength(strength: str | None) -> str:
    raw = (strength or "").strip().lower()
    return raw if raw in REWRITE_STRENGTHS else DEFAULT_REWRITE_STRENGTH


def tone_prompt(tone: str | None) -> TonePrompt:
    return _TONE_PROMPTS[normalize_tone(tone)]


def render_rephrase_system_prompt(tone: str | None, rewrite_strength: str | None = None) -> str:
    prompt = tone_prompt(tone)
    strength = normalize_rewrite_strength(rewrite_strength)
    return " ".join([prompt.instruction, _STRENGTH_NOTES[strength], _REWRITE_RULES])


def render_intensity_user_prompt(
    text: str,
    *,
    tone: str | None = None,
    emotion: str | None = None,
    rewrite_strength: str | None = None,
) -> str:
    return "\n".join(
        [
            f"Tone preference: {tone_prompt(tone).label.lower()}",
            f"User emotion chip: {emotion or 'none'}",
            f"Rewrite strength: {normalize_rewrite_strength(rewrite_strength)}",
            "",
            "Message:",
            f'"{text}"',
        ]
    )
