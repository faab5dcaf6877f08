"""Turn raw agent CLI output into a normalized :class:`AgentResult`.

Two parsers live here:

``StreamParser``
    Incremental JSON Lines parser. Chunks may split a record anywhere; the
    incomplete tail is buffered until the next chunk (or :meth:`finish`).
    Lines that are not JSON are skipped. Each vendor plugs in a
    *normalizer* that maps its record shapes onto three canonical kinds:
    ``result`` (authoritative), ``session`` and ``text`` (side channel).

``TranscriptParser``
    Used for pseudo-terminal sessions, where output is terminal text rather
    than JSON. It strips escape sequences, watches for the provider's
    "session started" line and keeps the transcript as the result text.

Neither parser performs I/O.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Pattern

from overseer.providers.errors import ErrorKind, ProviderError
from overseer.providers.process import try_parse_json
from overseer.providers.types import AgentResult, TokenUsage

__all__ = [
    "RecordKind",
    "RecordNormalizer",
    "RecordUpdate",
    "StreamParser",
    "TranscriptParser",
    "coerce_number",
    "normalize_stream_json_record",
    "parse_stream",
    "strip_ansi",
]

_DECODER = json.JSONDecoder()
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"  # two-character escapes
)
_PARTIAL_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?)?\Z")
_MAX_CARRY = 256
_SCAN_WINDOW = 4096


class RecordKind(str, Enum):
    RESULT = "result"
    SESSION = "session"
    TEXT = "text"


@dataclass(frozen=True)
class RecordUpdate:
    """One canonical fact extracted from a vendor record."""

    kind: RecordKind
    text: Optional[str] = None
    session_id: Optional[str] = None
    cost: Any = None
    duration_ms: Any = None
    success: bool = True
    token_usage: Optional[TokenUsage] = None
    append: bool = False


RecordNormalizer = Callable[[Mapping[str, Any]], Iterable[RecordUpdate]]


def coerce_number(value: Any) -> float:
    """Return ``value`` as a float, or ``0.0`` when it is missing or not numeric."""

    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _session_value(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text).replace("\r\n", "\n").replace("\r", "\n")


def _clean_carry(text: str) -> str:
    return strip_ansi(_PARTIAL_ESCAPE_RE.sub("", text))


def _claude_usage(usage: Any) -> Optional[TokenUsage]:
    if not isinstance(usage, Mapping):
        return None
    return TokenUsage(
        input=int(coerce_number(usage.get("input_tokens"))),
        output=int(coerce_number(usage.get("output_tokens"))),
        cache_read=_optional_int(usage.get("cache_read_input_tokens")),
        cache_write=_optional_int(usage.get("cache_creation_input_tokens")),
    )


def _assistant_text(message: Any) -> Optional[str]:
    if not isinstance(message, Mapping):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None
    pieces = [
        block.get("text", "")
        for block in content
        if isinstance(block, Mapping)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    return "".join(pieces) if pieces else None


def normalize_stream_json_record(record: Mapping[str, Any]) -> list[RecordUpdate]:
    """Normalizer for ``--output-format stream-json`` (claude, cursor agent)."""

    updates: list[RecordUpdate] = []
    record_type = record.get("type")
    session_id = _session_value(record.get("session_id"))

    if record_type == "result":
        result_text = record.get("result")
        cost = record.get("total_cost_usd")
        if cost is None:
            cost = record.get("cost")
        subtype = record.get("subtype")
        failed = bool(record.get("is_error")) or (
            isinstance(subtype, str) and subtype != "success"
        )
        updates.append(
            RecordUpdate(
                kind=RecordKind.RESULT,
                text=result_text if isinstance(result_text, str) else None,
                session_id=session_id,
                cost=cost,
                duration_ms=record.get("duration_ms"),
                success=not failed,
                token_usage=_claude_usage(record.get("usage")),
            )
        )
        return updates

    if session_id:
        updates.append(RecordUpdate(kind=RecordKind.SESSION, session_id=session_id))
    if record_type == "assistant":
        text = _assistant_text(record.get("message"))
        if text:
            updates.append(RecordUpdate(kind=RecordKind.TEXT, text=text))
    return updates


class StreamParser:
    """Incremental JSON Lines parser producing one :class:`AgentResult`."""

    ready = True

    def __init__(
        self,
        normalizer: RecordNormalizer = normalize_stream_json_record,
        *,
        provider: Optional[str] = None,
    ) -> None:
        self._normalizer = normalizer
        self._provider = provider
        self._pending = ""
        self._raw: list[str] = []
        self._records = 0
        self._last_line = ""
        self._session_id: Optional[str] = None
        self._text_parts: list[str] = []
        self._result: Optional[RecordUpdate] = None
        self._result_text: Optional[str] = None

    @property
    def record_count(self) -> int:
        return self._records

    @property
    def session_id(self) -> Optional[str]:
        if self._result is not None and self._result.session_id:
            return self._result.session_id
        return self._session_id

    @property
    def has_result(self) -> bool:
        return self._result is not None

    @property
    def raw_output(self) -> str:
        return "".join(self._raw)

    def feed(self, chunk: str) -> None:
        if not chunk:
            return
        self._raw.append(chunk)
        self._pending += chunk
        if "\n" not in self._pending:
            return
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._consume_line(line)

    def finish(self, exit_code: int, *, stderr: str = "") -> AgentResult:
        """Close the stream and build the result, raising :class:`ProviderError`."""

        if self._pending:
            self._consume_line(self._pending)
            self._pending = ""

        raw = self.raw_output
        if self._records == 0 and raw.strip():
            self._consume_blob(raw)

        label = self._provider or "provider"
        if exit_code != 0:
            raise ProviderError(
                ErrorKind.NON_ZERO_EXIT,
                f"{label} exited with code {exit_code}",
                provider=self._provider,
                stdout=raw,
                stderr=stderr,
                exit_code=exit_code,
            )
        if self._records == 0:
            raise ProviderError(
                ErrorKind.PARSE_FAILURE,
                f"{label} produced no parsable JSON records",
                provider=self._provider,
                stdout=raw,
                stderr=stderr,
                exit_code=exit_code,
            )

        if self._result is None:
            text = "".join(self._text_parts) or self._last_line
            return AgentResult(
                success=True,
                result=text,
                session_id=self._session_id,
                record_count=self._records,
                provider=self._provider,
            )

        result = self._result
        return AgentResult(
            success=result.success,
            result=self._result_text or "",
            cost=coerce_number(result.cost),
            duration_ms=int(coerce_number(result.duration_ms)),
            session_id=self.session_id,
            record_count=self._records,
            provider=self._provider,
            token_usage=result.token_usage,
        )

    def _consume_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        self._last_line = stripped
        index = 0
        length = len(stripped)
        while index < length:
            while index < length and stripped[index].isspace():
                index += 1
            if index >= length:
                break
            try:
                value, index = _DECODER.raw_decode(stripped, index)
            except (ValueError, RecursionError):
                break
            self._consume_value(value)

    def _consume_blob(self, raw: str) -> None:
        value = try_parse_json(raw.strip())
        if value is not None:
            self._consume_value(value)

    def _consume_value(self, value: Any) -> None:
        if isinstance(value, list):
            for item in value:
                if isinstance(item, Mapping):
                    self._apply(item)
        elif isinstance(value, Mapping):
            self._apply(value)

    def _apply(self, record: Mapping[str, Any]) -> None:
        self._records += 1
        for update in self._normalizer(record):
            if update.kind is RecordKind.RESULT:
                self._result = update
                self._result_text = (
                    update.text if update.text is not None else "".join(self._text_parts)
                )
            elif update.kind is RecordKind.SESSION:
                if update.session_id:
                    self._session_id = update.session_id
            elif update.text is not None:
                if update.append:
                    self._text_parts.append(update.text)
                else:
                    self._text_parts = [update.text]


def parse_stream(
    chunks: Iterable[str],
    exit_code: int = 0,
    *,
    normalizer: RecordNormalizer = normalize_stream_json_record,
    stderr: str = "",
    provider: Optional[str] = None,
) -> AgentResult:
    """Parse a complete sequence of output chunks in one call."""

    parser = StreamParser(normalizer, provider=provider)
    for chunk in chunks:
        parser.feed(chunk)
    return parser.finish(exit_code, stderr=stderr)


class TranscriptParser:
    """Collects terminal output and captures the session identifier."""

    def __init__(
        self,
        session_pattern: Optional[Pattern[str]] = None,
        *,
        session_id: Optional[str] = None,
        ready_on_output: bool = False,
        provider: Optional[str] = None,
    ) -> None:
        self._pattern = session_pattern
        self._session_id = session_id
        self._ready_on_output = ready_on_output
        self._provider = provider
        self._parts: list[str] = []
        self._scan = ""
        self._carry = ""
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def record_count(self) -> int:
        return 0

    @property
    def raw_output(self) -> str:
        return "".join(self._parts) + _clean_carry(self._carry)

    def feed(self, chunk: str) -> None:
        if not chunk:
            return
        text = self._carry + chunk
        self._carry = ""
        # Terminal reads can end inside an escape sequence or between \r and \n.
        partial = _PARTIAL_ESCAPE_RE.search(text)
        if partial is not None and len(text) - partial.start() <= _MAX_CARRY:
            text, self._carry = text[: partial.start()], text[partial.start() :]
        elif text.endswith("\r"):
            text, self._carry = text[:-1], "\r"
        if text:
            self._append(strip_ansi(text))

    def _append(self, text: str) -> None:
        self._parts.append(text)
        if self._ready_on_output and text.strip():
            self._ready = True
        if self._pattern is None:
            return
        if self._session_id is not None and self._ready:
            return
        self._scan = (self._scan + text)[-_SCAN_WINDOW:]
        match = self._pattern.search(self._scan)
        if match is None:
            return
        captured = match.groupdict().get("session") or match.group(0)
        if self._session_id is None:
            self._session_id = captured.strip()
        self._ready = True

    def finish(self, exit_code: int, *, stderr: str = "") -> AgentResult:
        if self._carry:
            carry, self._carry = self._carry, ""
            self._append(_clean_carry(carry))
        transcript = self.raw_output
        if exit_code != 0:
            label = self._provider or "provider"
            raise ProviderError(
                ErrorKind.NON_ZERO_EXIT,
                f"{label} exited with code {exit_code}",
                provider=self._provider,
                stdout=transcript,
                stderr=stderr,
                exit_code=exit_code,
            )
        return AgentResult(
            success=True,
            result=transcript.strip(),
            session_id=self._session_id,
            record_count=0,
            provider=self._provider,
        )
