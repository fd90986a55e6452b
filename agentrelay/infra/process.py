"""Child process launching: plain pipes or a pseudo-terminal."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections import deque

from agentrelay.errors import SpawnError
from agentrelay.models.agent import CommandSpec

logger = logging.getLogger(__name__)

READ_CHUNK = 65536
STDERR_TAIL_LINES = 50
PTY_COLUMNS = 200
PTY_ROWS = 50


class ChildProcess:
    """A running child behind one output channel and one input channel.

    In pipe mode output is stdout and stderr is drained separately into a
    bounded tail. In pty mode both share the terminal.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int | None = None,
        reader: asyncio.StreamReader | None = None,
        transport: asyncio.BaseTransport | None = None,
    ) -> None:
        self._proc = proc
        self._master_fd = master_fd
        self._transport = transport
        self._reader = reader if reader is not None else proc.stdout
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task | None = None
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr())

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def is_running(self) -> bool:
        return self._proc.returncode is None

    @property
    def uses_pty(self) -> bool:
        return self._master_fd is not None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def read(self) -> bytes:
        """Next chunk of output, or ``b""`` at end of stream."""
        if self._reader is None:
            return b""
        try:
            return await self._reader.read(READ_CHUNK)
        except OSError:
            # Linux raises EIO on the pty master once the child side closes
            if self.uses_pty:
                return b""
            raise

    async def write(self, data: bytes) -> None:
        if self._master_fd is not None:
            await self._write_pty(data)
            return
        if self._proc.stdin is None:
            raise BrokenPipeError("child stdin is not available")
        self._proc.stdin.write(data)
        await self._proc.stdin.drain()

    async def close_input(self) -> None:
        if self._master_fd is not None or self._proc.stdin is None:
            return
        self._proc.stdin.close()
        try:
            await self._proc.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stdin already closed by child %s", self.pid)

    async def wait(self) -> int:
        code = await self._proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task
        return code

    def terminate(self) -> None:
        if self.is_running:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        if self.is_running:
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass

    async def stop(self, grace: float = 5.0) -> int:
        """Terminate, wait up to ``grace`` seconds, then kill."""
        if self.is_running:
            self.terminate()
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Child %s did not stop gracefully, killing...", self.pid)
                self.kill()
        code = await self.wait()
        self.release()
        return code

    def release(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

    async def _write_pty(self, data: bytes) -> None:
        """Write all of ``data`` to the non-blocking pty master."""
        view = memoryview(data)
        while view:
            if self._master_fd is None:
                raise BrokenPipeError("pty master is closed")
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                await self._wait_writable(self._master_fd)
                continue
            view = view[written:]

    async def _wait_writable(self, fd: int) -> None:
        loop = asyncio.get_running_loop()
        ready = loop.create_future()

        def on_writable() -> None:
            if not ready.done():
                ready.set_result(None)

        loop.add_writer(fd, on_writable)
        try:
            await ready
        finally:
            loop.remove_writer(fd)

    async def _drain_stderr(self) -> None:
        assert self._proc.stderr is not None
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.debug("child %s stderr: %s", self.pid, text)
                self._stderr_tail.append(text)


class ProcessLauncher:
    """Spawns child processes described by a ``CommandSpec``."""

    def locate(self, program: str) -> str:
        """Resolve the executable on PATH or raise ``SpawnError``."""
        path = shutil.which(program)
        if path is None:
            raise SpawnError(f"Executable not found: {program}")
        return path

    async def spawn(self, command: CommandSpec) -> ChildProcess:
        env = os.environ.copy()
        if command.env:
            env.update(command.env)

        try:
            if command.use_pty:
                child = await self._spawn_pty(command, env)
            else:
                proc = await asyncio.create_subprocess_exec(
                    command.program,
                    *command.args,
                    cwd=command.cwd,
                    env=env,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
                child = ChildProcess(proc)
        except OSError as e:
            raise SpawnError(f"Failed to launch {command.program}: {e}") from e

        logger.info("Spawned %s (pid=%s, pty=%s)", command.program, child.pid, command.use_pty)
        return child

    async def _spawn_pty(self, command: CommandSpec, env: dict[str, str]) -> ChildProcess:
        import pty

        master_fd, slave_fd = pty.openpty()
        _set_window_size(slave_fd)
        try:
            proc = await asyncio.create_subprocess_exec(
                command.program,
                *command.args,
                cwd=command.cwd,
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        # closefd=False: ChildProcess.release owns the master descriptor
        pipe = os.fdopen(master_fd, "rb", buffering=0, closefd=False)
        transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
        return ChildProcess(proc, master_fd=master_fd, reader=reader, transport=transport)


def _set_window_size(fd: int) -> None:
    """Give the terminal a wide window so replies are not hard-wrapped."""
    import fcntl
    import struct
    import termios

    try:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", PTY_ROWS, PTY_COLUMNS, 0, 0))
    except OSError:
        logger.debug("Could not set pty window size", exc_info=True)
