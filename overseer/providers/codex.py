"""Adapter for the OpenAI Codex CLI (``codex exec``)."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Optional

from overseer.providers.base import ProviderAdapter
from overseer.providers.parser import RecordKind, RecordUpdate, coerce_number
from overseer.providers.types import (
    InvocationMode,
    InvocationRequest,
    ProviderType,
    TokenUsage,
)

_AGENT_MESSAGE_TYPES = {"agent_message", "assistant_message"}


def _codex_usage(usage: Any) -> Optional[TokenUsage]:
    if not isinstance(usage, Mapping):
        return None
    cached = usage.get("cached_input_tokens")
    reasoning = usage.get("reasoning_output_tokens")
    return TokenUsage(
        input=int(coerce_number(usage.get("input_tokens"))),
        output=int(coerce_number(usage.get("output_tokens"))),
        cache_read=int(coerce_number(cached)) if cached is not None else None,
        reasoning=int(coerce_number(reasoning)) if reasoning is not None else None,
    )


def _error_message(record: Mapping[str, Any]) -> str:
    error = record.get("error")
    if isinstance(error, Mapping) and isinstance(error.get("message"), str):
        return error["message"]
    message = record.get("message")
    return message if isinstance(message, str) else "codex reported an error"


def normalize_codex_record(record: Mapping[str, Any]) -> list[RecordUpdate]:
    """Map ``codex exec --json`` events onto canonical records."""

    record_type = record.get("type")
    if record_type == "thread.started":
        thread_id = record.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            return [RecordUpdate(kind=RecordKind.SESSION, session_id=thread_id)]
        return []
    if record_type == "item.completed":
        item = record.get("item")
        if not isinstance(item, Mapping):
            return []
        if item.get("type") in _AGENT_MESSAGE_TYPES and isinstance(item.get("text"), str):
            return [RecordUpdate(kind=RecordKind.TEXT, text=item["text"])]
        return []
    if record_type == "turn.completed":
        return [
            RecordUpdate(
                kind=RecordKind.RESULT,
                token_usage=_codex_usage(record.get("usage")),
            )
        ]
    if record_type in {"turn.failed", "error"}:
        return [
            RecordUpdate(
                kind=RecordKind.RESULT,
                text=_error_message(record),
                success=False,
            )
        ]
    return []


class CodexAdapter(ProviderAdapter):
    """Headless ``codex exec --json``; interactive runs ``codex exec`` on a pty."""

    provider_type = ProviderType.CODEX
    binary = "codex"
    install_hint = "npm install -g @openai/codex"
    supported_modes = frozenset({InvocationMode.HEADLESS, InvocationMode.INTERACTIVE})
    credential_env = ("OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_ORG_ID", "CODEX_HOME")
    session_pattern = re.compile(r"session id:\s*(?P<session>[0-9A-Za-z][0-9A-Za-z-]+)", re.I)

    @classmethod
    def build_args(
        cls, request: InvocationRequest, session_id: Optional[str] = None
    ) -> list[str]:
        args = ["exec"]
        if request.mode is InvocationMode.HEADLESS:
            args.append("--json")
        else:
            args += ["--color", "never"]
        args += ["--full-auto", "--skip-git-repo-check"]
        if request.model:
            args += ["--model", request.model]
        # "-" reads the prompt from stdin.
        args.append("-")
        return args

    @staticmethod
    def normalize_record(record: Mapping[str, Any]) -> list[RecordUpdate]:
        return normalize_codex_record(record)
