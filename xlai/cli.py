from __future__ import annotations

import argparse
import asyncio
import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List

import yaml
import uvicorn

from xlai.agents.intensity_client import IntensityClassifier
from xlai.agents.message_agent import MessageMetadata, get_message_service
from xlai.agents.pause_flow import (
    COACH_MODE_THRESHOLDS,
    PAUSE_COUNTDOWN_SECONDS,
    PauseFlowError,
    PauseState,
    PredictivePause,
)
from xlai.agents.rephrase_client import ToneRewriteClient
from xlai.pipelines.retention import RetentionSweeper
from xlai.schemas.models import StoredMessage
from xlai.utils.demo_cipher import DemoCipher
from xlai.utils.env import load_env_file
from xlai.utils.errors import XLAIError
from xlai.utils.logging import get_logger
from xlai.utils.message_store import DEMO_OWNER_ID
from xlai.utils.prompt_catalog import TONES

load_env_file()
log = get_logger(__name__)


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    sections = {
        "openai": {
            "base": "OPENAI_BASE",
            "model": "OPENAI_MODEL",
            "timeout_seconds": "OPENAI_TIMEOUT_SECONDS",
            "max_attempts": "OPENAI_MAX_ATTEMPTS",
        },
        "database": {"url": "DATABASE_URL"},
        "auth": {"rate_limit": "API_RATE_LIMIT", "rate_window": "API_RATE_WINDOW"},
        "retention": {"hours": "XLAI_RETENTION_HOURS", "sweep_interval_seconds": "XLAI_SWEEP_INTERVAL_SECONDS"},
        "coach": {"mode": "XLAI_COACH_MODE"},
    }
    for section, env_map in sections.items():
        block = config.get(section) or {}
        for key, env_var in env_map.items():
            value = block.get(key)
            if value is not None and value != "":
                os.environ[env_var] = str(value)

    for section, key in (("openai", "api_key"), ("auth", "jwt_secret")):
        if (config.get(section) or {}).get(key):
            log.warning("config_secret_ignored", section=section, key=key, msg="Use .env for secrets")


def _message_text(message: StoredMessage, cipher: DemoCipher | None) -> str:
    if message.ciphertext is not None:
        return cipher.decrypt(message.ciphertext) if cipher else message.ciphertext
    return message.final_text or ""


def _print_messages(messages: List[StoredMessage], cipher: DemoCipher | None) -> None:
    for message in messages:
        stamp = message.created_at.isoformat(timespec="seconds")
        flags = []
        if message.was_pause_taken:
            flags.append("paused")
        if message.used_suggestion:
            flags.append("suggestion")
        suffix = f" ({', '.join(flags)})" if flags else ""
        print(f"[{stamp}] {message.conversation_id} {message.sender_id}: {_message_text(message, cipher)}{suffix}")


def cmd_seed(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    created = get_message_service().seed_demo()
    print(f"Seeded {created} demo users.")


def cmd_sweep(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    deleted = RetentionSweeper(get_message_service()).run_once()
    print(f"Deleted {deleted} expired messages.")


def cmd_messages(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    service = get_message_service()
    messages = service.list_messages(args.conversation)
    if not messages:
        print("No messages in the last 24 hours.")
        return
    _print_messages(messages, DemoCipher() if args.decrypt else None)


def cmd_previews(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    latest = get_message_service().latest_per_conversation()
    if not latest:
        print("No conversations with recent messages.")
        return
    _print_messages(latest, DemoCipher() if args.decrypt else None)


def cmd_contacts(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    for contact in get_message_service().contacts(args.user):
        print(f"{contact.id} | {contact.name} | {contact.status} | {contact.conversation_id}")


def cmd_rephrase(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    suggestion = asyncio.run(ToneRewriteClient().rephrase(args.text, args.tone, rewrite_strength=args.strength))
    print(suggestion)


def _choose_pause_action(flow: PredictivePause) -> str:
    suggestion = flow.suggestion
    print(f"This message reads as intense ({flow.result.analysis.label}). Take a breath before sending.")
    print(f"Suggested: {suggestion}")
    while True:
        remaining = flow.seconds_remaining()
        hint = "send anyway" if remaining <= 0 else f"send anyway in {remaining:.0f}s"
        choice = input(f"[u]se suggestion / [s] {hint} / [c]ancel: ").strip().lower()
        if choice in {"u", "s", "c"}:
            if choice == "s" and not flow.can_send_anyway():
                print(f"Send anyway unlocks in {flow.seconds_remaining():.0f}s.")
                continue
            return choice
        print("Please answer u, s or c.")


def cmd_compose(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    service = get_message_service()
    flow = PredictivePause(args.coach_mode, countdown_seconds=args.countdown)
    try:
        flow.begin(args.text, emotion=args.emotion)
    except PauseFlowError as exc:
        print(str(exc))
        return
    result = asyncio.run(IntensityClassifier().analyze(args.text, tone=args.tone, emotion=args.emotion))
    state = flow.resolve(result)
    log.info("compose_analyzed", intensity=result.analysis.intensity, state=state.value)

    if state is PauseState.CALM:
        outcome = flow.proceed()
    else:
        choice = _choose_pause_action(flow)
        if choice == "c":
            flow.cancel()
            print("Message discarded.")
            return
        try:
            outcome = flow.apply_suggestion() if choice == "u" else flow.send_anyway()
        except PauseFlowError as exc:
            print(str(exc))
            return

    content = outcome.final_text
    metadata = MessageMetadata.from_outcome(outcome)
    if args.encrypt:
        content = DemoCipher().encrypt(outcome.final_text)
        # plaintext draft is not kept next to ciphertext
        metadata = replace(MessageMetadata.from_outcome(outcome, encrypted=True), original_text=None)
    stored = service.send_message(args.conversation, args.sender, args.recipient, content, metadata)
    print(f"Sent {stored.id} at {stored.created_at.isoformat(timespec='seconds')}: {outcome.final_text}")


def cmd_encrypt(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    print(DemoCipher().encrypt(args.text))


def cmd_decrypt(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    print(DemoCipher().decrypt(args.envelope))


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="XL AI messaging CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_seed = sub.add_parser("seed", help="Create the demo users and conversations")
    p_seed.set_defaults(func=cmd_seed)

    p_sweep = sub.add_parser("sweep", help="Delete messages older than the retention window")
    p_sweep.set_defaults(func=cmd_sweep)

    p_msgs = sub.add_parser("messages", help="List unexpired messages of a conversation, oldest first")
    p_msgs.add_argument("--conversation", required=True)
    p_msgs.add_argument("--decrypt", action="store_true", help="Decrypt demo cipher envelopes")
    p_msgs.set_defaults(func=cmd_messages)

    p_prev = sub.add_parser("previews", help="Show the latest message of each conversation")
    p_prev.add_argument("--decrypt", action="store_true")
    p_prev.set_defaults(func=cmd_previews)

    p_contacts = sub.add_parser("contacts", help="List contacts for a user")
    p_contacts.add_argument("--user", default=DEMO_OWNER_ID)
    p_contacts.set_defaults(func=cmd_contacts)

    p_reph = sub.add_parser("rephrase", help="Ask XL AI for a tone-adjusted rewrite")
    p_reph.add_argument("text")
    p_reph.add_argument("--tone", default="calm", help=f"One of {', '.join(TONES)}")
    p_reph.add_argument("--strength", default="low", choices=["low", "medium", "high"])
    p_reph.set_defaults(func=cmd_rephrase)

    p_comp = sub.add_parser("compose", help="Send a message through the predictive pause flow")
    p_comp.add_argument("text")
    p_comp.add_argument("--conversation", required=True)
    p_comp.add_argument("--sender", default=DEMO_OWNER_ID)
    p_comp.add_argument("--recipient")
    p_comp.add_argument("--tone", default="calm")
    p_comp.add_argument("--emotion")
    p_comp.add_argument("--coach-mode", dest="coach_mode", default="soft", choices=sorted(COACH_MODE_THRESHOLDS))
    p_comp.add_argument("--countdown", type=float, default=PAUSE_COUNTDOWN_SECONDS)
    p_comp.add_argument("--encrypt", action="store_true", help="Store the demo cipher envelope instead of plaintext")
    p_comp.set_defaults(func=cmd_compose)

    p_enc = sub.add_parser("encrypt", help="Wrap text in the demo cipher envelope")
    p_enc.add_argument("text")
    p_enc.set_defaults(func=cmd_encrypt)

    p_dec = sub.add_parser("decrypt", help="Open a demo cipher envelope")
    p_dec.add_argument("envelope")
    p_dec.set_defaults(func=cmd_decrypt)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="xlai.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")))
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: List[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _load_config(args.config)
    _apply_config(config)
    try:
        args.func(args, config)
    except XLAIError as exc:
        log.warning("cli_command_failed", command=args.cmd, error_type=type(exc).__name__, error=str(exc))
        print(exc.public_message)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
