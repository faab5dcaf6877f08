"""Value types shared by the provider adapters, parser and harness."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Optional

__all__ = [
    "AgentResult",
    "DEFAULT_GRACE_PERIOD_SECONDS",
    "InvocationMode",
    "InvocationRequest",
    "ProviderType",
    "TokenUsage",
]

DEFAULT_GRACE_PERIOD_SECONDS = 5.0


class ProviderType(str, Enum):
    """Agent CLI vendors Overseer knows how to drive."""

    CLAUDE = "claude"
    CODEX = "codex"
    CURSOR = "cursor"
    GEMINI = "gemini"
    OPENCODE = "opencode"

    @classmethod
    def from_string(cls, raw: str) -> "ProviderType":
        """Normalize ``raw`` into a :class:`ProviderType`.

        Raises ``ValueError`` for identifiers that name no provider.
        """

        normalized = (raw or "").strip().lower()
        for provider in cls:
            if normalized == provider.value:
                return provider
        raise ValueError(normalized)


class InvocationMode(str, Enum):
    """How a provider session is driven."""

    HEADLESS = "headless"
    INTERACTIVE = "interactive"
    CHAT = "chat"

    @property
    def uses_terminal(self) -> bool:
        return self is not InvocationMode.HEADLESS


@dataclass(frozen=True)
class InvocationRequest:
    """Everything one invocation needs; owned by the call that issues it."""

    prompt: str
    provider: ProviderType
    model: Optional[str] = None
    mode: InvocationMode = InvocationMode.HEADLESS
    working_directory: Optional[Path] = None
    hard_timeout_seconds: float = 1800.0
    stall_timeout_seconds: Optional[float] = None
    extra_context: Optional[str] = None
    grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS
    env_overrides: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.hard_timeout_seconds <= 0:
            raise ValueError("hard_timeout_seconds must be positive")
        if self.stall_timeout_seconds is not None and self.stall_timeout_seconds <= 0:
            raise ValueError("stall_timeout_seconds must be positive when set")
        if self.grace_period_seconds < 0:
            raise ValueError("grace_period_seconds must not be negative")
        object.__setattr__(
            self, "env_overrides", MappingProxyType(dict(self.env_overrides))
        )

    def full_prompt(self) -> str:
        """Return the prompt with any extra context prepended."""

        context = (self.extra_context or "").strip()
        if not context:
            return self.prompt
        return f"{context}\n\n{self.prompt}"


@dataclass(frozen=True)
class TokenUsage:
    """Token usage breakdown; not every vendor reports every field."""

    input: int = 0
    output: int = 0
    cache_read: Optional[int] = None
    cache_write: Optional[int] = None
    reasoning: Optional[int] = None


@dataclass(frozen=True)
class AgentResult:
    """Normalized outcome of a finished invocation."""

    success: bool
    result: str
    cost: float = 0.0
    duration_ms: int = 0
    session_id: Optional[str] = None
    record_count: int = 0
    provider: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
