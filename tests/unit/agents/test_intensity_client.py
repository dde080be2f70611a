import asyncio
import json

import pytest

from xlai.agents.intensity_client import (
    IntensityClassifier,
    label_from_score,
    parse_intensity_payload,
    safe_default,
)
from xlai.utils import completions
from xlai.utils.observability import get_metrics


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


def _reply(payload: object):
    async def completion(prompt, **kwargs):
        return payload if isinstance(payload, str) else json.dumps(payload)

    return completion


def test_label_from_score_boundaries():
    assert label_from_score(None) == "low"
    assert label_from_score(0.0) == "low"
    assert label_from_score(0.39) == "low"
    assert label_from_score(0.4) == "medium"
    assert label_from_score(0.69) == "medium"
    assert label_from_score(0.7) == "high"
    assert label_from_score(1.0) == "high"


def test_analyze_parses_classifier_reply():
    classifier = IntensityClassifier(
        completion=_reply(
            {"intensity": 0.82, "label": "high", "primaryEmotion": "Anger", "suggestion": "I'm upset about this."}
        )
    )

    result = asyncio.run(classifier.analyze("You ALWAYS do this!!", tone="calm", emotion="angry"))

    assert result.analysis.intensity == 0.82
    assert result.analysis.label == "high"
    assert result.analysis.primary_emotion == "anger"
    assert result.suggestion == "I'm upset about this."
    assert result.degraded is False


def test_analyze_requests_json_output():
    calls: list[dict] = []

    async def completion(prompt, **kwargs):
        calls.append(kwargs)
        return json.dumps({"intensity": 0.1})

    asyncio.run(IntensityClassifier(completion=completion).analyze("hi"))

    assert calls[0]["response_format"] == {"type": "json_object"}


def test_out_of_range_score_is_clamped_and_label_derived():
    result = parse_intensity_payload(json.dumps({"intensity": 1.7, "label": "extreme"}))
    assert result.analysis.intensity == 1.0
    assert result.analysis.label == "high"
    assert result.analysis.primary_emotion == "neutral"


def test_code_fenced_reply_is_accepted():
    raw = '```json\n{"intensity": 0.5, "primaryEmotion": "worry"}\n```'
    result = parse_intensity_payload(raw)
    assert result.analysis.label == "medium"
    assert result.analysis.primary_emotion == "worry"


def test_upstream_failure_fails_open():
    async def failing(prompt, **kwargs):
        raise completions.CompletionError("boom")

    result = asyncio.run(IntensityClassifier(completion=failing).analyze("I hate this"))

    assert result.analysis.intensity == 0.0
    assert result.analysis.label == "low"
    assert result.analysis.primary_emotion == "neutral"
    assert result.degraded is True
    assert get_metrics().snapshot()["counters"]["intensity::fail_open"] == 1.0


def test_unparsable_reply_fails_open():
    result = asyncio.run(IntensityClassifier(completion=_reply("not json at all")).analyze("hey"))
    assert result == safe_default()


def test_missing_score_fails_open():
    result = asyncio.run(IntensityClassifier(completion=_reply({"label": "high"})).analyze("hey"))
    assert result.analysis.intensity == 0.0
    assert result.degraded is True


def test_empty_text_skips_the_classifier():
    async def never(prompt, **kwargs):  # pragma: no cover
        raise AssertionError("classifier should not be called")

    result = asyncio.run(IntensityClassifier(completion=never).analyze("   "))
    assert result.analysis.label == "low"


def test_missing_api_key_fails_open(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    result = asyncio.run(IntensityClassifier().analyze("why would you do that"))
    assert result.analysis.intensity == 0.0
    assert result.degraded is True
