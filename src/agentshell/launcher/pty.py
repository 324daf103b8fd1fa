from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from pathlib import Path

from agentshell.config import LauncherConfig
from agentshell.errors import ResizeFailedError, SpawnFailedError, WriteFailedError
from agentshell.launcher.base import (
    ExitCallback,
    LaunchResult,
    Launcher,
    OutputCallback,
    ProcessHandle,
    ResolvedCommand,
    build_session_args,
)
from agentshell.launcher.detector import BinaryDetector, CommandSpec, DetectedBinary, build_command
from agentshell.state.sessions import RunConfig

logger = logging.getLogger(__name__)

READ_SIZE = 65536
MAX_PENDING_WRITE = 1 << 20


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _make_controlling_tty() -> None:
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess(ProcessHandle):
    def __init__(self, process: asyncio.subprocess.Process, master_fd: int) -> None:
        self._process = process
        self._master_fd = master_fd
        self._loop = asyncio.get_running_loop()
        self._reading = False
        self._writing = False
        self._pending = bytearray()
        self._closed = False
        self._waiter: asyncio.Task[None] | None = None
        self._on_output: OutputCallback | None = None
        self._on_exit: ExitCallback | None = None

    @property
    def pid(self) -> int:
        return int(self._process.pid or 0)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def attach(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        self._on_output = on_output
        self._on_exit = on_exit
        self._loop.add_reader(self._master_fd, self._on_readable)
        self._reading = True
        self._waiter = self._loop.create_task(self._wait())

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False

    def _on_readable(self) -> bool:
        try:
            chunk = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return False
        except OSError:
            # EIO once the child side of the terminal is gone.
            chunk = b""
        if not chunk:
            self._stop_reading()
            return False
        if self._on_output is not None:
            self._on_output(chunk)
        return True

    async def _wait(self) -> None:
        exit_code = await self._process.wait()
        # Drain what the child wrote right before exiting.
        while self._reading and self._on_readable():
            pass
        self._close()
        if self._on_exit is not None:
            self._on_exit(exit_code)

    def _close(self) -> None:
        self._stop_reading()
        self._stop_writing()
        self._pending.clear()
        if not self._closed:
            self._closed = True
            os.close(self._master_fd)

    def write(self, data: str) -> None:
        """Queue ``data`` for the terminal; never blocks the event loop.

        Bytes the terminal cannot take right away are flushed when the master
        becomes writable. Input that would overflow the queue is rejected whole.
        """
        if self._closed:
            raise WriteFailedError("terminal is closed")
        payload = data.encode("utf-8")
        if len(self._pending) + len(payload) > MAX_PENDING_WRITE:
            raise WriteFailedError(
                f"terminal input queue is full ({len(self._pending)} bytes pending)"
            )
        if self._pending:
            self._pending.extend(payload)
            return
        try:
            written = os.write(self._master_fd, payload)
        except BlockingIOError:
            written = 0
        except OSError as exc:
            raise WriteFailedError(str(exc)) from exc
        if written < len(payload):
            self._pending.extend(payload[written:])
            self._start_writing()

    @property
    def pending_write_bytes(self) -> int:
        return len(self._pending)

    def _start_writing(self) -> None:
        if not self._writing:
            self._loop.add_writer(self._master_fd, self._on_writable)
            self._writing = True

    def _stop_writing(self) -> None:
        if self._writing:
            self._loop.remove_writer(self._master_fd)
            self._writing = False

    def _on_writable(self) -> None:
        try:
            written = os.write(self._master_fd, self._pending)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.warning(
                "Dropping %d bytes of terminal input: %s",
                len(self._pending),
                exc,
                extra={"pid": self.pid},
            )
            self._pending.clear()
            written = 0
        del self._pending[:written]
        if not self._pending:
            self._stop_writing()

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            raise ResizeFailedError(f"invalid terminal size {cols}x{rows}")
        if self._closed:
            raise ResizeFailedError("terminal is closed")
        try:
            _set_winsize(self._master_fd, cols=cols, rows=rows)
        except OSError as exc:
            raise ResizeFailedError(str(exc)) from exc

    def kill(self, sig: int = signal.SIGKILL) -> None:
        if self._process.returncode is not None:
            return
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            self._process.send_signal(sig)


async def spawn_pty(
    spec: CommandSpec,
    *,
    cwd: Path,
    cols: int,
    rows: int,
    term: str,
) -> PtyProcess:
    env = os.environ.copy()
    env["TERM"] = term
    try:
        master_fd, slave_fd = pty.openpty()
    except OSError as exc:
        raise SpawnFailedError(f"Failed to open a pseudo-terminal: {exc}") from exc
    try:
        _set_winsize(master_fd, cols=cols, rows=rows)
        os.set_blocking(master_fd, False)
        process = await asyncio.create_subprocess_exec(
            spec.command,
            *spec.arguments,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=str(cwd),
            env=env,
            close_fds=True,
            preexec_fn=_make_controlling_tty,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        os.close(master_fd)
        raise SpawnFailedError(f"Failed to spawn {spec.command}: {exc}") from exc
    finally:
        os.close(slave_fd)
    return PtyProcess(process, master_fd)


class PtyLauncher(Launcher):
    def __init__(self, config: LauncherConfig, detector: BinaryDetector | None = None) -> None:
        self.config = config
        self.detector = detector or BinaryDetector(config.binary, cache=not config.development)

    async def launch(
        self,
        instance_id: str,
        working_directory: Path,
        session_id: str | None,
        run_config: RunConfig | None = None,
    ) -> LaunchResult:
        argv, bound_session_id = build_session_args(
            session_id,
            debug_flags=self.config.debug_flags(),
            run_config=run_config,
        )
        if run_config and run_config.command and run_config.command != self.config.binary:
            detected = DetectedBinary(path=run_config.command, version="unknown", source="run-config")
            spec = CommandSpec(command=run_config.command, arguments=tuple(argv), use_shell=False)
        else:
            detected = await self.detector.detect(working_directory)
            spec = build_command(detected, argv)

        handle = await spawn_pty(
            spec,
            cwd=working_directory,
            cols=self.config.cols,
            rows=self.config.rows,
            term=self.config.term,
        )
        logger.info(
            "Spawned %s",
            spec.command,
            extra={"instance_id": instance_id, "session_id": bound_session_id, "pid": handle.pid},
        )
        return LaunchResult(
            handle=handle,
            session_id=bound_session_id,
            resolved=ResolvedCommand(
                command=spec.command,
                arguments=spec.arguments,
                use_shell=spec.use_shell,
                executable_path=detected.path,
                version=detected.version,
                source=detected.source,
            ),
        )
