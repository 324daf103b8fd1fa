from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

RestorationStatus = Literal["retrying", "failed", "success", "all-failed"]


@dataclass(slots=True, frozen=True)
class OutputEvent:
    instance_id: str
    data: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "output",
            "instance_id": self.instance_id,
            "data": self.data.decode("utf-8", errors="replace"),
        }


@dataclass(slots=True, frozen=True)
class ExitEvent:
    instance_id: str
    exit_code: int | None

    def to_dict(self) -> dict[str, Any]:
        return {"event": "exit", "instance_id": self.instance_id, "exit_code": self.exit_code}


@dataclass(slots=True, frozen=True)
class RestorationStatusEvent:
    instance_id: str
    status: RestorationStatus
    attempt_number: int
    total_attempts: int
    session_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event": "restoration_status",
            "instance_id": self.instance_id,
            "status": self.status,
            "attempt_number": self.attempt_number,
            "total_attempts": self.total_attempts,
        }
        if self.session_id is not None:
            payload["session_id"] = self.session_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


EngineEvent = OutputEvent | ExitEvent | RestorationStatusEvent
EventHook = Callable[[EngineEvent], None]
