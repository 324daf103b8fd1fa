from __future__ import annotations

import signal
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentshell.state.sessions import RunConfig

OutputCallback = Callable[[bytes], None]
ExitCallback = Callable[[int | None], None]


def generate_session_id() -> str:
    return str(uuid.uuid4())


def build_session_args(
    session_id: str | None,
    *,
    debug_flags: list[str] | None = None,
    run_config: RunConfig | None = None,
) -> tuple[list[str], str]:
    """Return the agent argument vector and the session id it binds to.

    Restoring resumes ``session_id``; otherwise a new id is generated and
    passed with ``--session-id``. Run-config arguments replace the generated
    ones, but a resume pair is always kept in front when restoring.
    """
    debug = list(debug_flags or [])
    if session_id:
        base = ["--resume", session_id, *debug]
        bound_id = session_id
    else:
        bound_id = generate_session_id()
        base = ["--session-id", bound_id, *debug]

    if run_config and run_config.args:
        if session_id:
            return ["--resume", session_id, *run_config.args, *debug], bound_id
        return [*base, *run_config.args], bound_id
    return base, bound_id


@dataclass(slots=True, frozen=True)
class ResolvedCommand:
    command: str
    arguments: tuple[str, ...]
    use_shell: bool
    executable_path: str
    version: str
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "arguments": list(self.arguments),
            "use_shell": self.use_shell,
            "path": self.executable_path,
            "version": self.version,
            "source": self.source,
        }


class ProcessHandle(ABC):
    """A running terminal-backed subprocess."""

    @property
    @abstractmethod
    def pid(self) -> int: ...

    @abstractmethod
    def attach(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        """Start delivering output chunks and the final exit code."""

    @abstractmethod
    def write(self, data: str) -> None:
        """Write to the terminal; raises WriteFailedError."""

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal geometry; raises ResizeFailedError."""

    @abstractmethod
    def kill(self, sig: int = signal.SIGKILL) -> None:
        """Signal the process group. A process that is already gone is not an error."""


@dataclass(slots=True)
class LaunchResult:
    handle: ProcessHandle
    session_id: str
    resolved: ResolvedCommand

    @property
    def pid(self) -> int:
        return self.handle.pid


class Launcher(ABC):
    @abstractmethod
    async def launch(
        self,
        instance_id: str,
        working_directory: Path,
        session_id: str | None,
        run_config: RunConfig | None = None,
    ) -> LaunchResult:
        """Spawn the agent; raises BinaryNotFoundError or SpawnFailedError."""
