from __future__ import annotations


class AgentShellError(RuntimeError):
    """Base class for instance lifecycle failures."""

    code = "agent_shell_error"

    def __init__(self, message: str, *, instance_id: str | None = None) -> None:
        super().__init__(message)
        self.instance_id = instance_id


class BinaryNotFoundError(AgentShellError):
    """Raised when no agent executable could be located."""

    code = "binary_not_found"


class SpawnFailedError(AgentShellError):
    """Raised when the OS refuses to spawn the agent process."""

    code = "spawn_failed"


class DuplicateInstanceError(AgentShellError):
    code = "duplicate_instance"


class InstanceNotFoundError(AgentShellError):
    code = "instance_not_found"


class WriteFailedError(AgentShellError):
    code = "write_failed"


class ResizeFailedError(AgentShellError):
    code = "resize_failed"
