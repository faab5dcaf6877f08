"""Shared invocation logic for vendor adapters.

Subclasses describe their binary declaratively (name, flags, credential
variables, record normalizer) and :class:`ProviderAdapter` turns an
:class:`InvocationRequest` into a supervised subprocess.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Optional, Pattern

from overseer.logging import get_logger
from overseer.providers.errors import UnsupportedModeError
from overseer.providers.harness import PipeTransport, SupervisionHarness, Transport
from overseer.providers.parser import (
    RecordNormalizer,
    RecordUpdate,
    StreamParser,
    TranscriptParser,
    normalize_stream_json_record,
)
from overseer.providers.types import AgentResult, InvocationMode, InvocationRequest, ProviderType

__all__ = ["BASE_ENV_KEYS", "PreparedInvocation", "ProviderAdapter", "filter_environment"]

logger = get_logger(__name__)

BASE_ENV_KEYS = frozenset(
    {
        "PATH",
        "HOME",
        "USER",
        "LOGNAME",
        "SHELL",
        "TERM",
        "COLORTERM",
        "LANG",
        "TMPDIR",
        "TZ",
        "SSL_CERT_FILE",
        "SSL_CERT_DIR",
        "NODE_EXTRA_CA_CERTS",
        "REQUESTS_CA_BUNDLE",
        "HTTP_PROXY",
        "HTTPS_PROXY",
        "NO_PROXY",
        "http_proxy",
        "https_proxy",
        "no_proxy",
    }
)
_BASE_ENV_PREFIXES = ("LC_", "XDG_")
_NEVER_FORWARD = ("CLAUDECODE",)


def filter_environment(
    environ: Mapping[str, str], extra_keys: tuple[str, ...] = ()
) -> dict[str, str]:
    """Keep only allow-listed variables from ``environ``."""

    allowed = BASE_ENV_KEYS.union(extra_keys)
    return {
        key: value
        for key, value in environ.items()
        if key in allowed or key.startswith(_BASE_ENV_PREFIXES)
    }


@dataclass
class PreparedInvocation:
    """A fully built command plus the harness that will supervise it."""

    argv: list[str]
    env: dict[str, str]
    prompt: str
    harness: SupervisionHarness
    cwd: Optional[Path] = None
    session_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    async def run(self) -> AgentResult:
        return await self.harness.run(
            self.argv, env=self.env, cwd=self.cwd, prompt=self.prompt
        )


class ProviderAdapter:
    """Base class for one vendor CLI."""

    provider_type: ClassVar[ProviderType]
    binary: ClassVar[str]
    install_hint: ClassVar[str] = ""
    supported_modes: ClassVar[frozenset[InvocationMode]] = frozenset(
        {InvocationMode.HEADLESS}
    )
    credential_env: ClassVar[tuple[str, ...]] = ()
    session_pattern: ClassVar[Optional[Pattern[str]]] = None

    def __init__(self, executable: Optional[str] = None) -> None:
        self.executable = executable or self.binary

    @property
    def name(self) -> str:
        return self.provider_type.value

    @classmethod
    def build_args(
        cls, request: InvocationRequest, session_id: Optional[str] = None
    ) -> list[str]:
        raise NotImplementedError

    @classmethod
    def build_env(
        cls, request: InvocationRequest, environ: Optional[Mapping[str, str]] = None
    ) -> dict[str, str]:
        env = filter_environment(
            os.environ if environ is None else environ, cls.credential_env
        )
        env.update(request.env_overrides)
        if request.mode.uses_terminal:
            env.setdefault("TERM", "xterm-256color")
        for key in _NEVER_FORWARD:
            env.pop(key, None)
        return env

    @staticmethod
    def normalize_record(record: Mapping[str, Any]) -> list[RecordUpdate]:
        return normalize_stream_json_record(record)

    def create_normalizer(self) -> RecordNormalizer:
        """Return the record normalizer for one output stream."""

        return self.normalize_record

    @classmethod
    def prompt_for(cls, request: InvocationRequest) -> str:
        return request.full_prompt()

    def check_mode(self, request: InvocationRequest) -> None:
        if request.mode not in self.supported_modes:
            supported = ", ".join(sorted(mode.value for mode in self.supported_modes))
            raise UnsupportedModeError(
                f"{self.name} does not support {request.mode.value} mode "
                f"(supported: {supported})"
            )

    def new_session_id(self, request: InvocationRequest) -> Optional[str]:
        return None

    def create_parser(self, request: InvocationRequest, session_id: Optional[str]):
        if request.mode is InvocationMode.HEADLESS:
            return StreamParser(self.create_normalizer(), provider=self.name)
        return TranscriptParser(
            self.session_pattern,
            session_id=session_id,
            ready_on_output=session_id is not None or self.session_pattern is None,
            provider=self.name,
        )

    def create_transport(self, request: InvocationRequest) -> Transport:
        if request.mode is InvocationMode.HEADLESS:
            return PipeTransport()
        from overseer.providers.pty_transport import PtyTransport

        if request.mode is InvocationMode.CHAT:
            return PtyTransport(mirror=True, prompt_via_pipe=False)
        return PtyTransport(mirror=False, prompt_via_pipe=True)

    def prepare(self, request: InvocationRequest) -> PreparedInvocation:
        """Validate ``request`` and build everything needed to run it."""

        if request.provider is not self.provider_type:
            raise ValueError(
                f"{self.name} adapter cannot run a {request.provider.value} request"
            )
        self.check_mode(request)
        cwd = request.working_directory
        if cwd is not None and not Path(cwd).is_dir():
            raise ValueError(f"working directory does not exist: {cwd}")
        session_id = self.new_session_id(request)
        argv = [self.executable, *self.build_args(request, session_id)]
        harness = SupervisionHarness(
            self.create_parser(request, session_id),
            hard_timeout_seconds=request.hard_timeout_seconds,
            stall_timeout_seconds=request.stall_timeout_seconds,
            grace_period_seconds=request.grace_period_seconds,
            transport=self.create_transport(request),
            provider=self.name,
            install_hint=self.install_hint,
            detect_stalls=request.mode is not InvocationMode.CHAT,
        )
        return PreparedInvocation(
            argv=argv,
            env=self.build_env(request),
            prompt=self.prompt_for(request),
            harness=harness,
            cwd=request.working_directory,
            session_id=session_id,
            metadata={"mode": request.mode.value, "model": request.model},
        )

    async def invoke(self, request: InvocationRequest) -> AgentResult:
        prepared = self.prepare(request)
        logger.debug(
            "Invoking %s in %s mode (model=%s)",
            self.name,
            request.mode.value,
            request.model or "<default>",
        )
        return await prepared.run()
