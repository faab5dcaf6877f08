"""Adapter for the OpenCode CLI (``opencode run``)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

from overseer.providers.base import ProviderAdapter
from overseer.providers.parser import (
    RecordKind,
    RecordNormalizer,
    RecordUpdate,
    coerce_number,
)
from overseer.providers.types import InvocationRequest, ProviderType, TokenUsage


def _optional_count(value: Any) -> Optional[int]:
    return int(coerce_number(value)) if value is not None else None


def _opencode_usage(tokens: Any) -> Optional[TokenUsage]:
    if not isinstance(tokens, Mapping):
        return None
    cache = tokens.get("cache") if isinstance(tokens.get("cache"), Mapping) else {}
    return TokenUsage(
        input=int(coerce_number(tokens.get("input"))),
        output=int(coerce_number(tokens.get("output"))),
        cache_read=_optional_count(tokens.get("cacheRead", cache.get("read"))),
        cache_write=_optional_count(tokens.get("cacheWrite", cache.get("write"))),
        reasoning=_optional_count(tokens.get("reasoning")),
    )


class OpencodeNormalizer:
    """Stateful normalizer: duration is the gap between start and finish timestamps."""

    def __init__(self) -> None:
        self.started_at: Optional[float] = None

    def __call__(self, record: Mapping[str, Any]) -> list[RecordUpdate]:
        record_type = record.get("type")
        part = record.get("part") if isinstance(record.get("part"), Mapping) else {}
        session_id = record.get("sessionID") or part.get("sessionID")
        session_id = session_id if isinstance(session_id, str) and session_id else None

        if record_type == "step_start":
            timestamp = record.get("timestamp")
            if self.started_at is None and isinstance(timestamp, (int, float)):
                self.started_at = float(timestamp)
            if session_id:
                return [RecordUpdate(kind=RecordKind.SESSION, session_id=session_id)]
            return []
        if record_type == "text":
            text = part.get("text")
            if isinstance(text, str):
                return [RecordUpdate(kind=RecordKind.TEXT, text=text, append=True)]
            return []
        if record_type == "step_finish" and part.get("reason") == "stop":
            finished = record.get("timestamp")
            duration = None
            if self.started_at is not None and isinstance(finished, (int, float)):
                duration = max(float(finished) - self.started_at, 0.0)
            return [
                RecordUpdate(
                    kind=RecordKind.RESULT,
                    session_id=session_id,
                    cost=part.get("cost"),
                    duration_ms=duration,
                    token_usage=_opencode_usage(part.get("tokens")),
                )
            ]
        if record_type == "error":
            error = record.get("error")
            message = None
            if isinstance(error, Mapping):
                data = error.get("data")
                if isinstance(data, Mapping) and isinstance(data.get("message"), str):
                    message = data["message"]
                elif isinstance(error.get("message"), str):
                    message = error["message"]
            return [
                RecordUpdate(
                    kind=RecordKind.RESULT,
                    text=message or "opencode reported an error",
                    session_id=session_id,
                    success=False,
                )
            ]
        return []


class OpencodeAdapter(ProviderAdapter):
    """``opencode run --format json`` with the prompt piped on stdin."""

    provider_type = ProviderType.OPENCODE
    binary = "opencode"
    install_hint = "npm install -g opencode"
    credential_env = (
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
        "OPENROUTER_API_KEY",
        "OPENCODE_CONFIG",
    )

    @classmethod
    def build_args(
        cls, request: InvocationRequest, session_id: Optional[str] = None
    ) -> list[str]:
        args = ["run", "--format", "json"]
        if request.model:
            args += ["--model", request.model]
        return args

    def create_normalizer(self) -> RecordNormalizer:
        return OpencodeNormalizer()
