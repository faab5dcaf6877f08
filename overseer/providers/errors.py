"""Typed failures raised by the provider invocation core."""

from __future__ import annotations

from enum import Enum
from typing import Optional

__all__ = [
    "ErrorKind",
    "ProviderError",
    "UnknownProviderError",
    "UnsupportedModeError",
]

_PREVIEW_CHARS = 500


class ErrorKind(str, Enum):
    """Terminal failure classes of an invocation."""

    TIMEOUT = "timeout"
    STALL = "stall"
    NON_ZERO_EXIT = "non_zero_exit"
    PARSE_FAILURE = "parse_failure"
    BINARY_NOT_FOUND = "binary_not_found"
    KILLED = "killed"


class ProviderError(RuntimeError):
    """Terminal invocation failure carrying the output captured so far."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        provider: Optional[str] = None,
        stdout: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
        elapsed_ms: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        install_hint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.elapsed_ms = elapsed_ms
        self.timeout_seconds = timeout_seconds
        self.install_hint = install_hint

    @property
    def partial_output(self) -> str:
        return self.stdout

    @property
    def user_message(self) -> str:
        """Actionable one-paragraph description for people, not stack traces."""

        label = self.provider or "provider"
        elapsed = _format_elapsed(self.elapsed_ms)
        if self.kind is ErrorKind.TIMEOUT:
            budget = _format_seconds(self.timeout_seconds)
            return (
                f"{label} did not finish within its time budget "
                f"(ran {elapsed} of {budget}). Raise the timeout or split the task."
            )
        if self.kind is ErrorKind.STALL:
            window = _format_seconds(self.timeout_seconds)
            return (
                f"{label} produced no output for {window} and was stopped after {elapsed}. "
                "The agent may be waiting for input or stuck on a network call."
            )
        if self.kind is ErrorKind.NON_ZERO_EXIT:
            detail = _preview(self.stderr) or _preview(self.stdout) or "no output"
            return f"{label} exited with code {self.exit_code}: {detail}"
        if self.kind is ErrorKind.PARSE_FAILURE:
            detail = _preview(self.stdout) or "(empty)"
            return f"{label} output could not be parsed as JSON. Output preview: {detail}"
        if self.kind is ErrorKind.BINARY_NOT_FOUND:
            hint = f" Install: {self.install_hint}" if self.install_hint else ""
            return f"{self.message.rstrip('.')}.{hint}"
        return f"{label} was cancelled after {elapsed}; the process has been stopped."

    def __str__(self) -> str:
        return self.message


class UnknownProviderError(ValueError):
    """Raised when an identifier names no registered provider."""

    def __init__(self, provider: str, valid: list[str]) -> None:
        self.provider = provider
        self.valid = sorted(valid)
        super().__init__(
            f"Unknown provider: {provider}. Valid providers: {', '.join(self.valid)}"
        )


class UnsupportedModeError(ValueError):
    """Raised before spawning when a provider cannot run in the requested mode."""


def _preview(text: str) -> str:
    stripped = (text or "").strip()
    if len(stripped) <= _PREVIEW_CHARS:
        return stripped
    return stripped[:_PREVIEW_CHARS] + "..."


def _format_elapsed(elapsed_ms: Optional[int]) -> str:
    if elapsed_ms is None:
        return "an unknown time"
    return f"{elapsed_ms / 1000:.1f}s"


def _format_seconds(seconds: Optional[float]) -> str:
    if seconds is None:
        return "the configured window"
    return f"{seconds:g}s"
