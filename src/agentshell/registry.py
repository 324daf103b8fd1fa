from __future__ import annotations

from agentshell.errors import DuplicateInstanceError
from agentshell.launcher.base import ProcessHandle


class InstanceRegistry:
    """Live process handles keyed by instance id.

    Only mutates its own map: it never spawns, signals or kills a process.
    """

    def __init__(self) -> None:
        self._handles: dict[str, ProcessHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._handles

    def register(self, instance_id: str, handle: ProcessHandle) -> None:
        if instance_id in self._handles:
            raise DuplicateInstanceError(
                f"Instance already running: {instance_id}", instance_id=instance_id
            )
        self._handles[instance_id] = handle

    def get(self, instance_id: str) -> ProcessHandle | None:
        return self._handles.get(instance_id)

    def has(self, instance_id: str) -> bool:
        return instance_id in self._handles

    def remove(self, instance_id: str, handle: ProcessHandle | None = None) -> bool:
        """Drop an entry; with ``handle`` given, only if it is still the registered one."""
        current = self._handles.get(instance_id)
        if current is None:
            return False
        if handle is not None and current is not handle:
            return False
        del self._handles[instance_id]
        return True

    def list_all(self) -> dict[str, ProcessHandle]:
        return dict(self._handles)

    def detach_all(self) -> list[str]:
        detached = list(self._handles)
        self._handles.clear()
        return detached
