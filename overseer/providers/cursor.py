"""Adapter for the Cursor agent CLI (``agent``)."""

from __future__ import annotations

from typing import Optional

from overseer.providers.base import ProviderAdapter
from overseer.providers.types import InvocationRequest, ProviderType


class CursorAdapter(ProviderAdapter):
    """``agent -p --output-format stream-json``; records follow the claude shape."""

    provider_type = ProviderType.CURSOR
    binary = "agent"
    install_hint = "Download from cursor.com and install cursor-agent"
    credential_env = ("CURSOR_API_KEY",)

    @classmethod
    def build_args(
        cls, request: InvocationRequest, session_id: Optional[str] = None
    ) -> list[str]:
        # --force lets the agent write files without asking.
        args = ["-p", "--output-format", "stream-json", "--force"]
        if request.model:
            args += ["--model", request.model]
        return args
