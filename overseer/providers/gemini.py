"""Adapter for the Google Gemini CLI (``gemini``)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

from overseer.providers.base import ProviderAdapter
from overseer.providers.parser import RecordKind, RecordUpdate, coerce_number
from overseer.providers.types import InvocationRequest, ProviderType, TokenUsage


def _gemini_usage(stats: Any) -> Optional[TokenUsage]:
    if not isinstance(stats, Mapping):
        return None
    cached = stats.get("cached")
    return TokenUsage(
        input=int(coerce_number(stats.get("input_tokens", stats.get("input")))),
        output=int(coerce_number(stats.get("output_tokens", stats.get("output")))),
        cache_read=int(coerce_number(cached)) if cached is not None else None,
    )


def normalize_gemini_record(record: Mapping[str, Any]) -> list[RecordUpdate]:
    """Map ``--output-format stream-json`` events (or a ``json`` blob) onto canonical records."""

    record_type = record.get("type")
    session_id = record.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        session_id = None

    if record_type is None and "response" in record:
        response = record.get("response")
        error = record.get("error")
        return [
            RecordUpdate(
                kind=RecordKind.RESULT,
                text=response if isinstance(response, str) else None,
                session_id=session_id,
                success=not error,
            )
        ]
    if record_type == "init":
        if session_id:
            return [RecordUpdate(kind=RecordKind.SESSION, session_id=session_id)]
        return []
    if record_type == "message":
        content = record.get("content")
        if record.get("role") != "assistant" or not isinstance(content, str):
            return []
        return [
            RecordUpdate(
                kind=RecordKind.TEXT, text=content, append=bool(record.get("delta"))
            )
        ]
    if record_type == "result":
        stats = record.get("stats")
        status = record.get("status")
        error = record.get("error")
        message = error.get("message") if isinstance(error, Mapping) else None
        return [
            RecordUpdate(
                kind=RecordKind.RESULT,
                text=message if status == "error" and isinstance(message, str) else None,
                session_id=session_id,
                duration_ms=stats.get("duration_ms") if isinstance(stats, Mapping) else None,
                success=status != "error",
                token_usage=_gemini_usage(stats),
            )
        ]
    return []


class GeminiAdapter(ProviderAdapter):
    """Headless ``gemini --output-format stream-json`` with the prompt on stdin."""

    provider_type = ProviderType.GEMINI
    binary = "gemini"
    install_hint = "npm install -g @google/gemini-cli"
    credential_env = (
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "GOOGLE_CLOUD_PROJECT",
        "GOOGLE_CLOUD_LOCATION",
        "GOOGLE_APPLICATION_CREDENTIALS",
        "GOOGLE_GENAI_USE_VERTEXAI",
    )

    @classmethod
    def build_args(
        cls, request: InvocationRequest, session_id: Optional[str] = None
    ) -> list[str]:
        args = ["--output-format", "stream-json", "--yolo"]
        if request.model:
            args += ["--model", request.model]
        return args

    @staticmethod
    def normalize_record(record: Mapping[str, Any]) -> list[RecordUpdate]:
        return normalize_gemini_record(record)
