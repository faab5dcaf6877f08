"""Pseudo-terminal transport for interactive and chat sessions.

Agent CLIs change behaviour when stdout is not a terminal: they skip the
session banner and, for full-screen tools, refuse to start at all. This
transport hands the child the slave side of a pty and reads the master
side from the event loop.

* ``interactive`` sessions keep stdin as a pipe so the prompt is written
  and closed exactly as in headless mode; only output goes through the pty.
* ``chat`` sessions give the child the pty for stdin as well, mirror its
  output to the caller's terminal and forward keystrokes back, with the
  caller's terminal in raw mode until :meth:`PtyTransport.close`.

POSIX only.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import sys
from typing import Optional

from overseer.logging import get_logger

__all__ = ["PtyTransport"]

logger = get_logger(__name__)

_READ_SIZE = 4096


class PtyTransport:
    """Run a child on a pseudo-terminal; one instance per invocation."""

    def __init__(
        self,
        *,
        mirror: bool = False,
        prompt_via_pipe: bool = True,
        submit: str = "\r",
        rows: int = 40,
        columns: int = 120,
    ) -> None:
        if sys.platform == "win32":
            raise RuntimeError("pseudo-terminal sessions require a POSIX platform")
        self.mirror = mirror
        self.prompt_via_pipe = prompt_via_pipe
        self.submit = submit
        self.rows = rows
        self.columns = columns
        self._master: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stdin_fd: Optional[int] = None
        self._saved_tty: Optional[list] = None
        self._closed = False

    @property
    def master_fd(self) -> Optional[int]:
        return self._master

    async def spawn(self, argv, *, env, cwd):
        import pty

        self._loop = asyncio.get_running_loop()
        master, slave = pty.openpty()
        self._set_window_size(master)
        os.set_blocking(master, False)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if self.prompt_via_pipe else slave,
                stdout=slave,
                stderr=slave,
                env=dict(env) if env is not None else None,
                cwd=str(cwd) if cwd is not None else None,
                start_new_session=True,
            )
        except BaseException:
            os.close(master)
            raise
        finally:
            # Only the child keeps the slave open, so EOF on master means it is gone.
            os.close(slave)
        self._master = master
        return process

    async def send_prompt(self, process, prompt):
        if self.prompt_via_pipe:
            stdin = process.stdin
            if stdin is None:
                return
            try:
                if prompt:
                    stdin.write(prompt.encode("utf-8"))
                    await stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("stdin closed before the prompt was fully written")
            finally:
                stdin.close()
            return
        if prompt and self._master is not None:
            await self._write_master((prompt + self.submit).encode("utf-8"))

    async def _write_master(self, data: bytes) -> None:
        """Write to the non-blocking master, yielding while the pty is full."""

        loop = asyncio.get_running_loop()
        view = memoryview(data)
        while view and self._master is not None:
            master = self._master
            try:
                written = os.write(master, view)
            except BlockingIOError:
                writable = loop.create_future()
                loop.add_writer(master, _resolve, writable)
                try:
                    await writable
                finally:
                    loop.remove_writer(master)
                continue
            except OSError:
                logger.debug("terminal closed before the prompt was fully written")
                return
            view = view[written:]

    def start_pumps(self, process, on_stdout, on_stderr):
        tasks = [asyncio.ensure_future(self._read_master(on_stdout))]
        if self.mirror:
            self._forward_stdin()
        return tasks

    def close(self) -> None:
        """Restore the caller's terminal and release the pty; idempotent."""

        if self._closed:
            return
        self._closed = True
        loop = self._loop
        if self._stdin_fd is not None:
            if loop is not None:
                loop.remove_reader(self._stdin_fd)
            self._restore_tty()
            self._stdin_fd = None
        if self._master is not None:
            if loop is not None and not loop.is_closed():
                loop.remove_reader(self._master)
                loop.remove_writer(self._master)
            os.close(self._master)
            self._master = None

    async def _read_master(self, on_stdout) -> None:
        master = self._master
        if master is None:
            return
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[bytes] = asyncio.Queue()

        def readable() -> None:
            try:
                data = os.read(master, _READ_SIZE)
            except BlockingIOError:
                return
            except OSError:
                # Linux reports EIO once the last slave descriptor is closed.
                data = b""
            if not data:
                loop.remove_reader(master)
            queue.put_nowait(data)

        loop.add_reader(master, readable)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await queue.get()
                if not data:
                    break
                if self.mirror:
                    self._echo(data)
                text = decoder.decode(data)
                if text:
                    on_stdout(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                on_stdout(tail)
        finally:
            if self._master is not None:
                loop.remove_reader(master)

    def _echo(self, data: bytes) -> None:
        stream = sys.stdout
        buffer = getattr(stream, "buffer", None)
        if buffer is not None:
            buffer.write(data)
        else:
            stream.write(data.decode("utf-8", errors="replace"))
        stream.flush()

    def _forward_stdin(self) -> None:
        if self._loop is None or self._master is None:
            return
        try:
            fd = sys.stdin.fileno()
        except (AttributeError, ValueError, OSError):
            return
        if not os.isatty(fd):
            return
        import termios
        import tty

        self._saved_tty = termios.tcgetattr(fd)
        tty.setraw(fd)
        self._stdin_fd = fd
        master = self._master

        def forward() -> None:
            data = os.read(fd, 1024)
            if data and self._master is not None:
                try:
                    os.write(master, data)
                except BlockingIOError:
                    logger.debug("terminal input buffer full; dropped %d bytes", len(data))

        self._loop.add_reader(fd, forward)

    def _restore_tty(self) -> None:
        if self._saved_tty is None or self._stdin_fd is None:
            return
        import termios

        termios.tcsetattr(self._stdin_fd, termios.TCSADRAIN, self._saved_tty)
        self._saved_tty = None

    def _set_window_size(self, fd: int) -> None:
        import fcntl
        import struct
        import termios

        rows, columns = self.rows, self.columns
        if self.mirror:
            size = os.get_terminal_size(sys.__stdout__.fileno()) if _stdout_is_tty() else None
            if size is not None:
                rows, columns = size.lines, size.columns
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, columns, 0, 0))


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


def _stdout_is_tty() -> bool:
    stream = sys.__stdout__
    if stream is None:
        return False
    try:
        return os.isatty(stream.fileno())
    except (AttributeError, ValueError, OSError):
        return False
