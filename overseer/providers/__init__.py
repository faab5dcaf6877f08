"""Provider invocation and process supervision for agent CLIs."""

from overseer.providers.base import PreparedInvocation, ProviderAdapter
from overseer.providers.claude import ClaudeAdapter
from overseer.providers.codex import CodexAdapter
from overseer.providers.cursor import CursorAdapter
from overseer.providers.errors import (
    ErrorKind,
    ProviderError,
    UnknownProviderError,
    UnsupportedModeError,
)
from overseer.providers.gemini import GeminiAdapter
from overseer.providers.harness import HarnessState, SupervisionHarness
from overseer.providers.opencode import OpencodeAdapter
from overseer.providers.parser import StreamParser, TranscriptParser, parse_stream
from overseer.providers.process import (
    create_stall_detector,
    create_timeout,
    kill_process_gracefully,
    try_parse_json,
)
from overseer.providers.registry import (
    REGISTRY,
    ProviderDescriptor,
    auto_detect_provider,
    binary_cache,
    get_adapter,
    get_install_instructions,
    invoke,
    is_binary_available,
    select_provider,
    validate_provider,
)
from overseer.providers.types import (
    AgentResult,
    InvocationMode,
    InvocationRequest,
    ProviderType,
    TokenUsage,
)

__all__ = [
    "AgentResult",
    "ClaudeAdapter",
    "CodexAdapter",
    "CursorAdapter",
    "ErrorKind",
    "GeminiAdapter",
    "HarnessState",
    "InvocationMode",
    "InvocationRequest",
    "OpencodeAdapter",
    "PreparedInvocation",
    "ProviderAdapter",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderType",
    "REGISTRY",
    "StreamParser",
    "SupervisionHarness",
    "TokenUsage",
    "TranscriptParser",
    "UnknownProviderError",
    "UnsupportedModeError",
    "auto_detect_provider",
    "binary_cache",
    "create_stall_detector",
    "create_timeout",
    "get_adapter",
    "get_install_instructions",
    "invoke",
    "is_binary_available",
    "kill_process_gracefully",
    "parse_stream",
    "select_provider",
    "try_parse_json",
    "validate_provider",
]
