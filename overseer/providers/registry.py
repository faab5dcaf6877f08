"""Provider lookup table, binary probing and provider selection."""

from __future__ import annotations

import os
import shutil
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Optional, Union

from overseer.logging import get_logger
from overseer.providers.base import PreparedInvocation, ProviderAdapter
from overseer.providers.claude import ClaudeAdapter
from overseer.providers.codex import CodexAdapter
from overseer.providers.cursor import CursorAdapter
from overseer.providers.errors import ErrorKind, ProviderError, UnknownProviderError
from overseer.providers.gemini import GeminiAdapter
from overseer.providers.opencode import OpencodeAdapter
from overseer.providers.types import (
    AgentResult,
    InvocationMode,
    InvocationRequest,
    ProviderType,
)

__all__ = [
    "AUTO_DETECT_ORDER",
    "BinaryAvailabilityCache",
    "PROVIDER_ENV_VAR",
    "ProviderDescriptor",
    "REGISTRY",
    "auto_detect_provider",
    "binary_cache",
    "get_adapter",
    "get_descriptor",
    "get_install_instructions",
    "invoke",
    "is_binary_available",
    "prepare",
    "select_provider",
    "validate_provider",
]

logger = get_logger(__name__)

PROVIDER_ENV_VAR = "OVERSEER_PROVIDER"

ProviderRef = Union[str, ProviderType]


@dataclass(frozen=True)
class ProviderDescriptor:
    """Read-only capability record for one provider."""

    provider: ProviderType
    binary: str
    build_args: Callable[..., list[str]]
    build_env: Callable[..., dict[str, str]]
    supported_modes: frozenset[InvocationMode]
    install_hint: str
    adapter_cls: type[ProviderAdapter]
    auto_detect: bool = True

    @classmethod
    def from_adapter(
        cls, adapter_cls: type[ProviderAdapter], *, auto_detect: bool = True
    ) -> "ProviderDescriptor":
        return cls(
            provider=adapter_cls.provider_type,
            binary=adapter_cls.binary,
            build_args=adapter_cls.build_args,
            build_env=adapter_cls.build_env,
            supported_modes=adapter_cls.supported_modes,
            install_hint=adapter_cls.install_hint,
            adapter_cls=adapter_cls,
            auto_detect=auto_detect,
        )


REGISTRY: Mapping[ProviderType, ProviderDescriptor] = MappingProxyType(
    {
        ProviderType.CLAUDE: ProviderDescriptor.from_adapter(ClaudeAdapter),
        ProviderType.CODEX: ProviderDescriptor.from_adapter(CodexAdapter),
        ProviderType.CURSOR: ProviderDescriptor.from_adapter(
            CursorAdapter, auto_detect=False
        ),
        ProviderType.GEMINI: ProviderDescriptor.from_adapter(GeminiAdapter),
        ProviderType.OPENCODE: ProviderDescriptor.from_adapter(OpencodeAdapter),
    }
)

AUTO_DETECT_ORDER: tuple[ProviderType, ...] = (
    ProviderType.CLAUDE,
    ProviderType.OPENCODE,
    ProviderType.CODEX,
    ProviderType.GEMINI,
)


class BinaryAvailabilityCache:
    """Process-wide memo of PATH lookups, filled lazily once per name."""

    def __init__(self, which: Callable[[str], Optional[str]] = shutil.which) -> None:
        self._which = which
        self._paths: dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def lookup(self, name: str) -> Optional[str]:
        with self._lock:
            if name not in self._paths:
                self._paths[name] = self._which(name)
            return self._paths[name]

    def is_available(self, name: str) -> bool:
        return self.lookup(name) is not None

    def reset(self) -> None:
        with self._lock:
            self._paths.clear()


binary_cache = BinaryAvailabilityCache()


def is_binary_available(name: str) -> bool:
    """Return whether ``name`` resolves to an executable; cached per process."""

    if not name:
        return False
    return binary_cache.is_available(name)


def get_descriptor(provider: ProviderRef) -> ProviderDescriptor:
    if isinstance(provider, ProviderType):
        return REGISTRY[provider]
    try:
        provider_type = ProviderType.from_string(provider)
    except ValueError as exc:
        raise UnknownProviderError(
            str(provider), [item.value for item in REGISTRY]
        ) from exc
    return REGISTRY[provider_type]


def get_install_instructions(provider: ProviderRef) -> str:
    return get_descriptor(provider).install_hint


def _binary_not_found(descriptor: ProviderDescriptor, binary: str) -> ProviderError:
    name = descriptor.provider.value
    return ProviderError(
        ErrorKind.BINARY_NOT_FOUND,
        f"Provider '{name}' is not available. Binary '{binary}' not found in PATH.",
        provider=name,
        install_hint=descriptor.install_hint,
    )


def validate_provider(
    provider: ProviderRef, *, executable: Optional[str] = None
) -> ProviderDescriptor:
    """Fail before any spawn when the provider's binary cannot be found."""

    descriptor = get_descriptor(provider)
    binary = executable or descriptor.binary
    if not is_binary_available(binary):
        raise _binary_not_found(descriptor, binary)
    return descriptor


def auto_detect_provider(
    binaries: Optional[Mapping[str, str]] = None,
) -> Optional[ProviderDescriptor]:
    """Return the first installed provider in :data:`AUTO_DETECT_ORDER`."""

    binaries = binaries or {}
    for provider in AUTO_DETECT_ORDER:
        descriptor = REGISTRY[provider]
        binary = binaries.get(provider.value) or descriptor.binary
        if descriptor.auto_detect and is_binary_available(binary):
            logger.debug("Auto-detected provider %s", provider.value)
            return descriptor
    return None


def select_provider(
    explicit: Optional[ProviderRef] = None,
    env_override: Optional[str] = None,
    configured: Optional[ProviderRef] = None,
    *,
    auto_detect: bool = True,
    binaries: Optional[Mapping[str, str]] = None,
) -> ProviderDescriptor:
    """Resolve a provider: explicit, then environment, then configuration, then PATH.

    ``env_override`` defaults to ``$OVERSEER_PROVIDER``. ``binaries`` maps a
    provider id to a binary that replaces the default name. A named provider
    is validated with :func:`validate_provider`; when nothing is named and no
    binary is found, the error lists install instructions for every
    auto-detectable provider.
    """

    binaries = binaries or {}
    if env_override is None:
        env_override = os.getenv(PROVIDER_ENV_VAR) or None
    for source, candidate in (
        ("argument", explicit),
        ("environment", env_override),
        ("configuration", configured),
    ):
        if candidate is None or (isinstance(candidate, str) and not candidate.strip()):
            continue
        logger.debug("Provider %s selected from %s", candidate, source)
        descriptor = get_descriptor(candidate)
        return validate_provider(
            descriptor.provider, executable=binaries.get(descriptor.provider.value)
        )

    if auto_detect:
        descriptor = auto_detect_provider(binaries)
        if descriptor is not None:
            return descriptor

    hints = "; ".join(
        f"{provider.value}: {REGISTRY[provider].install_hint}"
        for provider in AUTO_DETECT_ORDER
    )
    raise ProviderError(
        ErrorKind.BINARY_NOT_FOUND,
        "No agent CLI found in PATH",
        install_hint=hints,
    )


def get_adapter(
    provider: ProviderRef, *, executable: Optional[str] = None
) -> ProviderAdapter:
    return get_descriptor(provider).adapter_cls(executable=executable)


def prepare(
    request: InvocationRequest, *, executable: Optional[str] = None
) -> PreparedInvocation:
    """Validate the binary and build the invocation without starting it."""

    validate_provider(request.provider, executable=executable)
    return get_adapter(request.provider, executable=executable).prepare(request)


async def invoke(
    request: InvocationRequest, *, executable: Optional[str] = None
) -> AgentResult:
    """Validate, spawn and supervise ``request``; the one-call entry point."""

    return await prepare(request, executable=executable).run()
