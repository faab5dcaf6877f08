"""Adapter for the Claude Code CLI (``claude``)."""

from __future__ import annotations

import uuid
from typing import Optional

from overseer.providers.base import ProviderAdapter
from overseer.providers.types import InvocationMode, InvocationRequest, ProviderType


class ClaudeAdapter(ProviderAdapter):
    """``claude -p`` streams JSONL; interactive and chat run it on a pty."""

    provider_type = ProviderType.CLAUDE
    binary = "claude"
    install_hint = "npm install -g @anthropic-ai/claude-code"
    supported_modes = frozenset(
        {InvocationMode.HEADLESS, InvocationMode.INTERACTIVE, InvocationMode.CHAT}
    )
    credential_env = (
        "ANTHROPIC_API_KEY",
        "ANTHROPIC_AUTH_TOKEN",
        "ANTHROPIC_BASE_URL",
        "ANTHROPIC_MODEL",
        "CLAUDE_CONFIG_DIR",
        "CLAUDE_CODE_USE_BEDROCK",
        "CLAUDE_CODE_USE_VERTEX",
        "AWS_PROFILE",
        "AWS_REGION",
        "CLOUD_ML_REGION",
    )

    @classmethod
    def build_args(
        cls, request: InvocationRequest, session_id: Optional[str] = None
    ) -> list[str]:
        if request.mode is InvocationMode.HEADLESS:
            args = [
                "-p",
                "--output-format",
                "stream-json",
                "--verbose",
                "--dangerously-skip-permissions",
            ]
        else:
            args = ["-p"] if request.mode is InvocationMode.INTERACTIVE else []
            args += ["--permission-mode", "bypassPermissions"]
            if session_id:
                args += ["--session-id", session_id]
        if request.model:
            args += ["--model", request.model]
        context = (request.extra_context or "").strip()
        if context:
            args += ["--append-system-prompt", context]
        return args

    @classmethod
    def prompt_for(cls, request: InvocationRequest) -> str:
        # Extra context travels as --append-system-prompt instead.
        return request.prompt

    def new_session_id(self, request: InvocationRequest) -> Optional[str]:
        if request.mode is InvocationMode.HEADLESS:
            return None
        return str(uuid.uuid4())
