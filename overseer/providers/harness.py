"""Supervise one agent CLI subprocess from spawn to confirmed exit.

A :class:`SupervisionHarness` owns exactly one invocation. It spawns the
process through a transport (pipes here, a pseudo-terminal in
:mod:`overseer.providers.pty_transport`), delivers the prompt, feeds every
output chunk to a parser and races four events against each other:

* process exit
* the hard timeout (absolute, never reset by output)
* the stall detector (reset by every output chunk)
* external cancellation

The first event decides the terminal path. Exit wins a tie. Every
non-exit path goes through :func:`kill_process_gracefully`, and the harness
only returns or raises once the process is confirmed gone.
"""

from __future__ import annotations

import asyncio
import codecs
import dataclasses
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol, Sequence

from overseer.logging import get_logger
from overseer.providers.errors import ErrorKind, ProviderError
from overseer.providers.process import (
    EscalationOutcome,
    StallDetector,
    TimeoutTimer,
    create_stall_detector,
    create_timeout,
    kill_process_gracefully,
)
from overseer.providers.types import DEFAULT_GRACE_PERIOD_SECONDS, AgentResult

__all__ = [
    "HarnessState",
    "OutputParser",
    "PipeTransport",
    "RunningInvocation",
    "SupervisionHarness",
    "Transport",
]

logger = get_logger(__name__)

_READ_SIZE = 4096
_DRAIN_SECONDS = 2.0


class HarnessState(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETING = "completing"
    TIMING_OUT = "timing_out"
    STALLING = "stalling"
    TERMINATING = "terminating"
    DONE = "done"


class OutputParser(Protocol):
    """What the harness needs from a parser."""

    @property
    def ready(self) -> bool: ...

    @property
    def raw_output(self) -> str: ...

    def feed(self, chunk: str) -> None: ...

    def finish(self, exit_code: int, *, stderr: str = "") -> AgentResult: ...


ChunkCallback = Callable[[str], None]


class Transport(Protocol):
    """How a process is started, fed its prompt and read from."""

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Mapping[str, str]],
        cwd: Optional[Path],
    ) -> asyncio.subprocess.Process: ...

    async def send_prompt(
        self, process: asyncio.subprocess.Process, prompt: str
    ) -> None: ...

    def start_pumps(
        self,
        process: asyncio.subprocess.Process,
        on_stdout: ChunkCallback,
        on_stderr: ChunkCallback,
    ) -> list[asyncio.Task]: ...

    def close(self) -> None: ...


async def _pump(stream: Optional[asyncio.StreamReader], callback: ChunkCallback) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_READ_SIZE)
        if not data:
            break
        text = decoder.decode(data)
        if text:
            callback(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        callback(tail)


class PipeTransport:
    """Plain pipes: prompt on stdin, JSONL on stdout, diagnostics on stderr."""

    async def spawn(self, argv, *, env, cwd):
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
        )

    async def send_prompt(self, process, prompt):
        stdin = process.stdin
        if stdin is None:
            return
        try:
            if prompt:
                stdin.write(prompt.encode("utf-8"))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The process exited before reading; its exit status tells the story.
            logger.debug("stdin closed before the prompt was fully written")
        finally:
            stdin.close()

    def start_pumps(self, process, on_stdout, on_stderr):
        return [
            asyncio.ensure_future(_pump(process.stdout, on_stdout)),
            asyncio.ensure_future(_pump(process.stderr, on_stderr)),
        ]

    def close(self) -> None:
        return None


@dataclass
class RunningInvocation:
    """Mutable state of the one process a harness supervises."""

    process: asyncio.subprocess.Process
    started_at: float
    last_output_at: float
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    escalation: Optional[EscalationOutcome] = None

    @property
    def stdout_text(self) -> str:
        return "".join(self.stdout)

    @property
    def stderr_text(self) -> str:
        return "".join(self.stderr)

    def elapsed_ms(self, now: float) -> int:
        return int(round((now - self.started_at) * 1000))


class SupervisionHarness:
    """Single-use supervisor for one agent CLI invocation."""

    def __init__(
        self,
        parser: OutputParser,
        *,
        hard_timeout_seconds: float,
        stall_timeout_seconds: Optional[float] = None,
        grace_period_seconds: float = DEFAULT_GRACE_PERIOD_SECONDS,
        transport: Optional[Transport] = None,
        provider: Optional[str] = None,
        install_hint: Optional[str] = None,
        detect_stalls: bool = True,
    ) -> None:
        if hard_timeout_seconds <= 0:
            raise ValueError("hard_timeout_seconds must be positive")
        self.parser = parser
        self.transport: Transport = transport or PipeTransport()
        self.hard_timeout_seconds = float(hard_timeout_seconds)
        self.stall_timeout_seconds = stall_timeout_seconds if detect_stalls else None
        self.grace_period_seconds = grace_period_seconds
        self.provider = provider
        self.install_hint = install_hint
        self.state = HarnessState.SPAWNING
        self.transitions: list[tuple[HarnessState, HarnessState]] = []
        self.invocation: Optional[RunningInvocation] = None
        self._log = get_logger(__name__, metadata={"provider": provider or "unknown"})
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_future: Optional[asyncio.Future[None]] = None
        self._cancel_requested = False
        self._stall_future: Optional[asyncio.Future[None]] = None
        self._stall: Optional[StallDetector] = None
        self._started = False

    @property
    def label(self) -> str:
        return self.provider or "provider"

    def cancel(self) -> None:
        """Request termination; safe to call from signal handlers and other tasks."""

        self._cancel_requested = True
        future = self._cancel_future
        if future is None or future.done():
            return
        if self._loop is not None:
            self._loop.call_soon_threadsafe(_resolve, future)

    async def run(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        prompt: str = "",
    ) -> AgentResult:
        if self._started:
            raise RuntimeError("a SupervisionHarness runs exactly one invocation")
        self._started = True

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._cancel_future = loop.create_future()
        if self._cancel_requested:
            self._cancel_future.set_result(None)
        self._stall_future = loop.create_future()

        self._log.info(
            "Launching %s (cwd=%s, timeout=%ss, stall=%s)",
            shlex.join(argv),
            cwd or ".",
            self.hard_timeout_seconds,
            f"{self.stall_timeout_seconds}s" if self.stall_timeout_seconds else "off",
        )

        if cwd is not None and not Path(cwd).is_dir():
            self._transition(HarnessState.DONE)
            raise ValueError(f"working directory does not exist: {cwd}")

        started_at = loop.time()
        try:
            process = await self.transport.spawn(argv, env=env, cwd=cwd)
        except FileNotFoundError as exc:
            self.transport.close()
            self._transition(HarnessState.DONE)
            raise ProviderError(
                ErrorKind.BINARY_NOT_FOUND,
                f"{self.label} binary not found: {argv[0]}",
                provider=self.provider,
                install_hint=self.install_hint,
            ) from exc

        invocation = RunningInvocation(
            process=process, started_at=started_at, last_output_at=started_at
        )
        self.invocation = invocation
        hard_timeout: Optional[TimeoutTimer] = None
        exit_task: Optional[asyncio.Task] = None
        prompt_task: Optional[asyncio.Task] = None
        pumps: list[asyncio.Task] = []

        try:
            hard_timeout = create_timeout(self.hard_timeout_seconds)
            pumps = self.transport.start_pumps(process, self._on_stdout, self._on_stderr)

            # Prompt delivery can block on a child that never reads stdin.
            prompt_task = asyncio.ensure_future(self.transport.send_prompt(process, prompt))
            await asyncio.wait(
                {prompt_task, hard_timeout.future, self._cancel_future},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not prompt_task.done():
                prompt_task.cancel()
                await asyncio.wait({prompt_task})
            elif not prompt_task.cancelled():
                prompt_task.result()

            if prompt_task.cancelled() and process.returncode is None:
                self._cancel_stall()
                raise await self._terminate(
                    invocation, pumps, self._interrupt_kind(hard_timeout)
                )
            self._transition(HarnessState.RUNNING)

            self._maybe_arm_stall()
            exit_task = asyncio.ensure_future(process.wait())

            await asyncio.wait(
                {
                    exit_task,
                    hard_timeout.future,
                    self._stall_future,
                    self._cancel_future,
                },
                return_when=asyncio.FIRST_COMPLETED,
            )
            hard_timeout.cancel()
            self._cancel_stall()

            if exit_task.done() or process.returncode is not None:
                return await self._complete(invocation, pumps)
            raise await self._terminate(invocation, pumps, self._interrupt_kind(hard_timeout))
        except asyncio.CancelledError:
            if process.returncode is None:
                self._log.warning("%s invocation cancelled; stopping process", self.label)
                await self._escalate(invocation)
            self._transition(HarnessState.DONE)
            raise
        finally:
            if hard_timeout is not None:
                hard_timeout.cancel()
            self._cancel_stall()
            if exit_task is not None and not exit_task.done():
                exit_task.cancel()
            if prompt_task is not None and not prompt_task.done():
                prompt_task.cancel()
            if process.returncode is None:
                await self._escalate(invocation)
                self._transition(HarnessState.DONE)
            for task in pumps:
                if not task.done():
                    task.cancel()
            self.transport.close()

    def _on_stdout(self, chunk: str) -> None:
        invocation = self.invocation
        if invocation is not None and self._loop is not None:
            invocation.last_output_at = self._loop.time()
            invocation.stdout.append(chunk)
        self.parser.feed(chunk)
        if self._stall is not None:
            self._stall.touch()
        elif self.state is HarnessState.RUNNING:
            self._maybe_arm_stall()

    def _on_stderr(self, chunk: str) -> None:
        invocation = self.invocation
        if invocation is not None:
            invocation.stderr.append(chunk)
            if self._loop is not None:
                invocation.last_output_at = self._loop.time()
        if self._stall is not None:
            self._stall.touch()

    def _interrupt_kind(self, hard_timeout: TimeoutTimer) -> ErrorKind:
        """Pick the terminal path for a run that did not exit by itself."""

        if self._cancel_future is not None and self._cancel_future.done():
            return ErrorKind.KILLED
        if hard_timeout.fired:
            self._transition(HarnessState.TIMING_OUT)
            return ErrorKind.TIMEOUT
        self._transition(HarnessState.STALLING)
        return ErrorKind.STALL

    def _maybe_arm_stall(self) -> None:
        if self._stall is not None or not self.stall_timeout_seconds:
            return
        if not self.parser.ready:
            return
        self._log.debug("Arming stall detector (%ss)", self.stall_timeout_seconds)
        self._stall = create_stall_detector(self.stall_timeout_seconds, self._on_stall)

    def _on_stall(self) -> None:
        if self._stall_future is not None and not self._stall_future.done():
            self._stall_future.set_result(None)

    def _cancel_stall(self) -> None:
        if self._stall is not None:
            self._stall.cancel()

    async def _drain(self, pumps: list[asyncio.Task]) -> None:
        if not pumps:
            return
        _, pending = await asyncio.wait(pumps, timeout=_DRAIN_SECONDS)
        if pending:
            self._log.debug("Output still open %.1fs after exit; detaching", _DRAIN_SECONDS)
            for task in pending:
                task.cancel()

    async def _complete(
        self, invocation: RunningInvocation, pumps: list[asyncio.Task]
    ) -> AgentResult:
        process = invocation.process
        exit_code = await process.wait()
        await self._drain(pumps)
        elapsed_ms = invocation.elapsed_ms(asyncio.get_running_loop().time())
        try:
            result = self.parser.finish(exit_code, stderr=invocation.stderr_text)
        except ProviderError as exc:
            exc.provider = exc.provider or self.provider
            exc.elapsed_ms = elapsed_ms
            exc.stderr = exc.stderr or invocation.stderr_text
            self._transition(HarnessState.DONE)
            self._log.warning("%s failed: %s", self.label, exc.message)
            raise

        self._transition(HarnessState.COMPLETING)
        if result.duration_ms == 0:
            result = dataclasses.replace(result, duration_ms=elapsed_ms)
        if result.provider is None and self.provider:
            result = dataclasses.replace(result, provider=self.provider)
        self._transition(HarnessState.DONE)
        self._log.info(
            "%s finished in %.1fs (success=%s, records=%d)",
            self.label,
            elapsed_ms / 1000,
            result.success,
            result.record_count,
        )
        return result

    async def _terminate(
        self,
        invocation: RunningInvocation,
        pumps: list[asyncio.Task],
        kind: ErrorKind,
    ) -> ProviderError:
        loop = asyncio.get_running_loop()
        elapsed_ms = invocation.elapsed_ms(loop.time())
        if kind is ErrorKind.TIMEOUT:
            budget: Optional[float] = self.hard_timeout_seconds
            message = (
                f"{self.label} timed out after {elapsed_ms / 1000:.1f}s "
                f"(limit {self.hard_timeout_seconds:g}s)"
            )
        elif kind is ErrorKind.STALL:
            budget = self.stall_timeout_seconds
            message = f"{self.label} produced no output for {budget:g}s"
        else:
            budget = None
            message = f"{self.label} invocation was cancelled"
        self._log.warning("%s; terminating pid %s", message, invocation.process.pid)

        await self._escalate(invocation)
        await self._drain(pumps)
        self._transition(HarnessState.DONE)
        return ProviderError(
            kind,
            message,
            provider=self.provider,
            stdout=invocation.stdout_text,
            stderr=invocation.stderr_text,
            exit_code=invocation.process.returncode,
            elapsed_ms=elapsed_ms,
            timeout_seconds=budget,
        )

    async def _escalate(self, invocation: RunningInvocation) -> None:
        if self.state is not HarnessState.TERMINATING:
            self._transition(HarnessState.TERMINATING)
        invocation.escalation = await kill_process_gracefully(
            invocation.process, self.grace_period_seconds
        )
        self._log.debug(
            "pid %s stopped (%s)", invocation.process.pid, invocation.escalation.value
        )

    def _transition(self, new_state: HarnessState) -> None:
        if new_state is self.state:
            return
        self.transitions.append((self.state, new_state))
        self._log.debug("%s: %s -> %s", self.label, self.state.value, new_state.value)
        self.state = new_state


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)
