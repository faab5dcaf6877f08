"""Timer and process helpers shared by every provider adapter.

Nothing in here knows about a particular vendor binary. The timers are
plain ``loop.call_later`` handles owned by whoever creates them; a handle
that is cancelled is dropped from the loop's schedule, so an invocation
that finishes early never leaves a pending timer behind.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Callable, Optional

from overseer.logging import get_logger

__all__ = [
    "EscalationOutcome",
    "StallDetector",
    "TimeoutTimer",
    "create_stall_detector",
    "create_timeout",
    "kill_process_gracefully",
    "try_parse_json",
]

logger = get_logger(__name__)


class StallDetector:
    """Fire ``on_stall`` once if :meth:`touch` is not called for ``threshold`` seconds."""

    def __init__(
        self,
        threshold: float,
        on_stall: Callable[[], None],
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        if threshold <= 0:
            raise ValueError("stall threshold must be positive")
        self.threshold = float(threshold)
        self._on_stall = on_stall
        self._loop = loop or asyncio.get_running_loop()
        self._last_activity = self._loop.time()
        self._fired = False
        self._cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = self._loop.call_later(
            self.threshold, self._check
        )

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def active(self) -> bool:
        return not (self._fired or self._cancelled)

    def touch(self) -> None:
        if not self.active:
            return
        self._last_activity = self._loop.time()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _check(self) -> None:
        self._handle = None
        if not self.active:
            return
        idle = self._loop.time() - self._last_activity
        if idle >= self.threshold:
            self._fired = True
            self._on_stall()
            return
        # Touched since arming; wait out the remainder of the window.
        self._handle = self._loop.call_later(self.threshold - idle, self._check)


def create_stall_detector(
    threshold: float,
    on_stall: Callable[[], None],
    *,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> StallDetector:
    """Arm a :class:`StallDetector`; must be called with a running loop."""

    return StallDetector(threshold, on_stall, loop=loop)


class TimeoutTimer:
    """Cancellable awaitable that completes ``seconds`` after creation."""

    def __init__(
        self, seconds: float, *, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> None:
        self.seconds = float(seconds)
        self._loop = loop or asyncio.get_running_loop()
        self.future: asyncio.Future[None] = self._loop.create_future()
        self._handle: Optional[asyncio.TimerHandle] = self._loop.call_later(
            max(self.seconds, 0.0), self._fire
        )

    @property
    def fired(self) -> bool:
        return self.future.done() and not self.future.cancelled()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self.future.done():
            self.future.cancel()

    def _fire(self) -> None:
        self._handle = None
        if not self.future.done():
            self.future.set_result(None)

    def __await__(self):
        return self.future.__await__()


def create_timeout(
    seconds: float, *, loop: Optional[asyncio.AbstractEventLoop] = None
) -> TimeoutTimer:
    """Return a :class:`TimeoutTimer`; call ``cancel()`` once it is no longer needed."""

    return TimeoutTimer(seconds, loop=loop)


class EscalationOutcome(str, Enum):
    """How a process ended up stopped by :func:`kill_process_gracefully`."""

    ALREADY_EXITED = "already_exited"
    TERMINATED = "terminated"
    KILLED = "killed"


async def kill_process_gracefully(
    process: asyncio.subprocess.Process, escalation_seconds: float = 5.0
) -> EscalationOutcome:
    """Send SIGTERM, then SIGKILL after ``escalation_seconds``; return once exited."""

    if process.returncode is not None:
        return EscalationOutcome.ALREADY_EXITED

    try:
        process.terminate()
    except ProcessLookupError:
        await process.wait()
        return EscalationOutcome.ALREADY_EXITED

    try:
        await asyncio.wait_for(process.wait(), timeout=max(escalation_seconds, 0.0))
        return EscalationOutcome.TERMINATED
    except asyncio.TimeoutError:
        pass

    logger.warning(
        "Process %s ignored SIGTERM for %.1fs; sending SIGKILL",
        process.pid,
        escalation_seconds,
    )
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()
    return EscalationOutcome.KILLED


def try_parse_json(text: Any, default: Any = None) -> Any:
    """Parse ``text`` as JSON, returning ``default`` instead of raising."""

    if not isinstance(text, (str, bytes, bytearray)):
        return default
    try:
        return json.loads(text)
    except (ValueError, RecursionError):  # JSONDecodeError and UnicodeDecodeError included
        return default
