import json
from datetime import UTC, datetime

import pytest

from xlai import cli
from xlai.agents.intensity_client import IntensityClassifier
from xlai.agents.message_agent import MessageService
from xlai.agents.rephrase_client import REPHRASE_FALLBACK_MESSAGE
from xlai.utils.errors import UpstreamError
from xlai.utils.message_store import MessageStore


@pytest.fixture
def service(tmp_path, monkeypatch):
    service = MessageService(
        MessageStore(tmp_path / "cli.sqlite"),
        clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )
    service.seed_demo()
    monkeypatch.setattr(cli, "get_message_service", lambda: service)
    return service


def _classify_as(monkeypatch, score: float, suggestion: str = "Can we talk about this later?") -> None:
    async def completion(prompt, **kwargs):
        return json.dumps({"intensity": score, "primaryEmotion": "anger", "suggestion": suggestion})

    monkeypatch.setattr(cli, "IntensityClassifier", lambda: IntensityClassifier(completion=completion))


def _printed(out: str) -> list[str]:
    # drop structured log lines, keep what the command printed
    return [line for line in out.splitlines() if line.strip() and not line.startswith("{")]


def _answers(monkeypatch, *answers: str) -> list[str]:
    prompts: list[str] = []
    queue = list(answers)

    def fake_input(prompt=""):
        prompts.append(prompt)
        return queue.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    return prompts


def test_calm_message_is_sent_directly(service, monkeypatch, capsys):
    _classify_as(monkeypatch, 0.2)

    cli.main(["compose", "see you at 6", "--conversation", "user_A__user_B", "--recipient", "user_B"])

    messages = service.list_messages("user_A__user_B")
    assert [m.final_text for m in messages] == ["see you at 6"]
    assert messages[0].was_pause_taken is False
    assert "Sent" in capsys.readouterr().out


def test_intense_message_can_take_the_suggestion(service, monkeypatch):
    _classify_as(monkeypatch, 0.95)
    _answers(monkeypatch, "u")

    cli.main(["compose", "YOU NEVER LISTEN", "--conversation", "user_A__user_B", "--emotion", "angry"])

    message = service.list_messages("user_A__user_B")[0]
    assert message.final_text == "Can we talk about this later?"
    assert message.original_text == "YOU NEVER LISTEN"
    assert message.used_suggestion is True
    assert message.was_pause_taken is True
    assert message.pre_send_emotion == "angry"


def test_send_anyway_waits_for_countdown(service, monkeypatch, capsys):
    _classify_as(monkeypatch, 0.95)
    _answers(monkeypatch, "s", "c")

    cli.main(["compose", "whatever", "--conversation", "user_A__user_C", "--countdown", "60"])

    assert service.list_messages("user_A__user_C") == []
    out = capsys.readouterr().out
    assert "unlocks in" in out
    assert "Message discarded." in out


def test_send_anyway_after_countdown_keeps_draft(service, monkeypatch):
    _classify_as(monkeypatch, 0.95)
    _answers(monkeypatch, "x", "s")

    cli.main(["compose", "whatever", "--conversation", "user_A__user_C", "--countdown", "0"])

    message = service.list_messages("user_A__user_C")[0]
    assert message.final_text == "whatever"
    assert message.was_pause_taken is True
    assert message.used_suggestion is False


def test_encrypted_compose_stores_only_ciphertext(service, monkeypatch, capsys):
    _classify_as(monkeypatch, 0.1)

    cli.main(["compose", "secret plans", "--conversation", "user_A__user_D", "--encrypt"])

    message = service.list_messages("user_A__user_D")[0]
    assert message.final_text is None
    assert message.original_text is None
    assert message.ciphertext and "secret" not in message.ciphertext

    capsys.readouterr()
    cli.main(["messages", "--conversation", "user_A__user_D", "--decrypt"])
    assert "secret plans" in capsys.readouterr().out


def test_contacts_and_previews(service, monkeypatch, capsys):
    service.send_message("user_A__user_B", "user_A", "user_B", "hey Alex")

    cli.main(["contacts"])
    out = capsys.readouterr().out
    assert "user_B | Alex | active | user_A__user_B" in out
    assert "user_C | Jordan | idle" in out

    cli.main(["previews"])
    assert "hey Alex" in capsys.readouterr().out


def test_sweep_and_seed_commands(service, capsys):
    cli.main(["seed"])
    assert "Seeded 0 demo users." in capsys.readouterr().out
    cli.main(["sweep"])
    assert "Deleted 0 expired messages." in capsys.readouterr().out


def test_encrypt_decrypt_commands(capsys):
    cli.main(["encrypt", "hello"])
    envelope = _printed(capsys.readouterr().out)[-1]
    cli.main(["decrypt", envelope])
    assert _printed(capsys.readouterr().out) == ["hello"]


def test_invalid_conversation_prints_error_instead_of_traceback(service, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["messages", "--conversation", "   "])

    assert excinfo.value.code == 1
    assert _printed(capsys.readouterr().out) == ["Missing conversationId"]


def test_database_failure_prints_safe_message(service, monkeypatch, capsys):
    def broken():
        raise UpstreamError("database error: disk I/O error")

    monkeypatch.setattr(service.store, "list_users", broken)

    with pytest.raises(SystemExit):
        cli.main(["contacts"])

    assert _printed(capsys.readouterr().out) == [UpstreamError.default_message]


def test_rephrase_without_api_key_prints_fallback(monkeypatch, capsys):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(SystemExit):
        cli.main(["rephrase", "just answer me"])

    assert _printed(capsys.readouterr().out) == [REPHRASE_FALLBACK_MESSAGE]
