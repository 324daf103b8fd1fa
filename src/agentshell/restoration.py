from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from agentshell.events import RestorationStatus, RestorationStatusEvent


class RestorationState(str, Enum):
    FRESH = "fresh"
    RESTORING = "restoring"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(slots=True, frozen=True)
class FailureOutcome:
    events: tuple[RestorationStatusEvent, ...]
    next_session_id: str | None = None


@dataclass(slots=True, frozen=True)
class SuccessOutcome:
    session_id: str
    event: RestorationStatusEvent


@dataclass(slots=True)
class RestorationMachine:
    """Restoration progress for one instance.

    Pure state: the engine feeds it signals and performs the effects it asks
    for (kill, relaunch, persist, notify). Timers live outside.
    """

    instance_id: str
    chain: tuple[str, ...] = ()
    state: RestorationState = RestorationState.FRESH
    attempt: int = 0
    success_recorded: bool = False
    killing_for_retry: bool = False
    history: list[RestorationState] = field(default_factory=list)

    @classmethod
    def start(cls, instance_id: str, chain: tuple[str, ...] | list[str]) -> RestorationMachine:
        chain = tuple(chain)
        state = RestorationState.RESTORING if chain else RestorationState.FRESH
        return cls(instance_id=instance_id, chain=chain, state=state, history=[state])

    @property
    def total_attempts(self) -> int:
        return len(self.chain)

    @property
    def restoring(self) -> bool:
        return self.state is RestorationState.RESTORING

    @property
    def current_session_id(self) -> str | None:
        if not self.chain:
            return None
        return self.chain[self.attempt]

    def _move(self, state: RestorationState) -> None:
        self.state = state
        self.history.append(state)

    def _status(
        self,
        status: RestorationStatus,
        *,
        attempt: int,
        session_id: str | None = None,
        error: str | None = None,
    ) -> RestorationStatusEvent:
        return RestorationStatusEvent(
            instance_id=self.instance_id,
            status=status,
            attempt_number=attempt + 1,
            total_attempts=self.total_attempts,
            session_id=session_id,
            error=error,
        )

    def on_failure(self) -> FailureOutcome | None:
        """The agent reported the current session id as unknown."""
        if self.state is not RestorationState.RESTORING or self.killing_for_retry:
            return None

        failed = self._status("failed", attempt=self.attempt, session_id=self.current_session_id)
        next_attempt = self.attempt + 1
        if next_attempt < self.total_attempts:
            self.killing_for_retry = True
            next_session_id = self.chain[next_attempt]
            retrying = self._status("retrying", attempt=next_attempt, session_id=next_session_id)
            return FailureOutcome(events=(failed, retrying), next_session_id=next_session_id)

        self._move(RestorationState.EXHAUSTED)
        exhausted = self._status("all-failed", attempt=self.attempt)
        return FailureOutcome(events=(failed, exhausted))

    def begin_retry(self) -> str:
        """Advance to the next candidate once the backoff has elapsed."""
        if not self.killing_for_retry:
            raise RuntimeError(f"No retry pending for {self.instance_id}")
        self.attempt += 1
        self.killing_for_retry = False
        self._move(RestorationState.RESTORING)
        return self.chain[self.attempt]

    def relaunch_failed(self, error: str) -> RestorationStatusEvent:
        self.killing_for_retry = False
        self._move(RestorationState.EXHAUSTED)
        return self._status("all-failed", attempt=self.attempt, error=error)

    def on_success(self) -> SuccessOutcome | None:
        """The agent printed its welcome banner; only the first one counts."""
        if self.success_recorded or self.killing_for_retry:
            return None
        if self.state is RestorationState.FRESH:
            self.success_recorded = True
            return None
        if self.state is not RestorationState.RESTORING:
            return None

        self.success_recorded = True
        session_id = self.current_session_id or ""
        self._move(RestorationState.SUCCEEDED)
        event = self._status("success", attempt=self.attempt, session_id=session_id)
        return SuccessOutcome(session_id=session_id, event=event)
