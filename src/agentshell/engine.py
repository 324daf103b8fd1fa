from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentshell.config import RestorationConfig
from agentshell.errors import (
    AgentShellError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    ResizeFailedError,
    SpawnFailedError,
    WriteFailedError,
)
from agentshell.events import EngineEvent, EventHook, ExitEvent, OutputEvent
from agentshell.launcher.base import Launcher, LaunchResult, ProcessHandle
from agentshell.registry import InstanceRegistry
from agentshell.restoration import RestorationMachine
from agentshell.router import OutputRouter, RestorationSignal, SignalKind
from agentshell.scanner import SessionFileScanner
from agentshell.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from agentshell.state.sessions import RunConfig, SessionRecord, SessionStore, SessionStoreError

logger = logging.getLogger(__name__)

PERSIST_RETRY_SECONDS = 0.5


@dataclass(slots=True)
class OperationResult:
    success: bool
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def failed(cls, exc: AgentShellError) -> OperationResult:
        return cls(success=False, error=str(exc), error_code=exc.code)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
            payload["error_code"] = self.error_code
        return payload


@dataclass(slots=True)
class StartResult(OperationResult):
    pid: int | None = None
    session_id: str | None = None
    resolved_info: dict[str, Any] | None = None
    restored: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = OperationResult.to_dict(self)
        if self.success:
            payload.update(
                {
                    "pid": self.pid,
                    "session_id": self.session_id,
                    "resolved_info": self.resolved_info,
                    "restored": self.restored,
                }
            )
        return payload


@dataclass(slots=True, frozen=True)
class InstanceInfo:
    instance_id: str
    pid: int
    working_directory: str
    name: str | None
    restoration_state: str
    session_id: str | None


@dataclass(slots=True)
class InstanceContext:
    instance_id: str
    working_directory: Path
    name: str | None
    run_config: RunConfig | None
    machine: RestorationMachine
    handle: ProcessHandle | None = None
    router: OutputRouter | None = None
    session_id: str | None = None
    settled: bool = False
    pending_success: bool = False
    stopping: bool = False
    timers: list[TimerHandle] = field(default_factory=list)


class InstanceEngine:
    """Starts, supervises and restores agent instances.

    Everything here runs on one event loop. Continuations look their instance
    up again by id and check that the handle they were created for is still
    the current one before acting.
    """

    def __init__(
        self,
        launcher: Launcher,
        store: SessionStore,
        *,
        scheduler: Scheduler | None = None,
        scanner: SessionFileScanner | None = None,
        registry: InstanceRegistry | None = None,
        restoration: RestorationConfig | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.launcher = launcher
        self.store = store
        self.scheduler = scheduler or AsyncioScheduler()
        self.scanner = scanner
        self.registry = registry or InstanceRegistry()
        self.restoration = restoration or RestorationConfig()
        self.event_hook = event_hook
        self._contexts: dict[str, InstanceContext] = {}
        self._launching: set[str] = set()
        self._persist_pending = False

    def _emit(self, event: EngineEvent) -> None:
        if self.event_hook is None:
            return
        try:
            self.event_hook(event)
        except Exception:
            logger.exception("Event hook failed", extra={"instance_id": event.instance_id})

    def _persist(self) -> None:
        # Runs on the event loop: a busy lock is retried later, never waited on.
        try:
            self.store.save_to_disk(lock_timeout=0.0)
        except SessionStoreError as exc:
            logger.warning("Session store busy, retrying: %s", exc)
            if not self._persist_pending:
                self._persist_pending = True
                self.scheduler.call_later(PERSIST_RETRY_SECONDS, self._retry_persist)
        except OSError:
            logger.exception("Failed to persist session store")

    def _retry_persist(self) -> None:
        self._persist_pending = False
        self._persist()

    @staticmethod
    def _launch_error(instance_id: str, exc: Exception) -> AgentShellError:
        if isinstance(exc, AgentShellError):
            return exc
        logger.exception("Unexpected launch error", extra={"instance_id": instance_id})
        return SpawnFailedError(str(exc) or type(exc).__name__, instance_id=instance_id)

    def context(self, instance_id: str) -> InstanceContext | None:
        return self._contexts.get(instance_id)

    async def start_instance(
        self,
        instance_id: str,
        working_directory: str | Path,
        name: str | None = None,
        run_config: RunConfig | None = None,
    ) -> StartResult:
        if self.registry.has(instance_id) or instance_id in self._launching:
            return StartResult.failed(
                DuplicateInstanceError(
                    f"Instance already running: {instance_id}", instance_id=instance_id
                )
            )

        chain = self.store.get_session_with_fallbacks(instance_id).fallbacks
        ctx = InstanceContext(
            instance_id=instance_id,
            working_directory=Path(working_directory),
            name=name,
            run_config=run_config,
            machine=RestorationMachine.start(instance_id, chain),
        )
        self._contexts[instance_id] = ctx
        restored = ctx.machine.restoring
        try:
            result = await self._launch(ctx, ctx.machine.current_session_id)
        except Exception as exc:
            error = self._launch_error(instance_id, exc)
            if self._contexts.get(instance_id) is ctx:
                del self._contexts[instance_id]
            logger.warning("Start failed: %s", error, extra={"instance_id": instance_id})
            return StartResult.failed(error)

        return StartResult(
            success=True,
            pid=result.pid,
            session_id=result.session_id,
            resolved_info=result.resolved.to_dict(),
            restored=restored,
        )

    async def start_preserved(self) -> dict[str, StartResult]:
        """Start every stored session flagged for auto-start."""
        results: dict[str, StartResult] = {}
        for record in self.store.preserved_sessions():
            if self.registry.has(record.instance_id):
                continue
            results[record.instance_id] = await self.start_instance(
                record.instance_id,
                record.working_directory,
                record.instance_name,
                record.run_config,
            )
        return results

    async def _launch(self, ctx: InstanceContext, session_id: str | None) -> LaunchResult:
        instance_id = ctx.instance_id
        self._launching.add(instance_id)
        try:
            result = await self.launcher.launch(
                instance_id, ctx.working_directory, session_id, ctx.run_config
            )
        finally:
            self._launching.discard(instance_id)

        handle = result.handle
        try:
            self.registry.register(instance_id, handle)
        except DuplicateInstanceError:
            handle.kill()
            raise

        ctx.handle = handle
        ctx.session_id = result.session_id
        ctx.settled = False
        ctx.pending_success = False
        ctx.router = OutputRouter(
            instance_id,
            sink=lambda data: self._emit(OutputEvent(instance_id, data)),
            on_activity=lambda: self.store.touch(instance_id),
        )
        handle.attach(
            lambda chunk: self._on_output(instance_id, handle, chunk),
            lambda exit_code: self._on_exit(instance_id, handle, exit_code),
        )
        ctx.timers.append(
            self.scheduler.call_later(
                self.restoration.settle_seconds, lambda: self._settle(instance_id, handle)
            )
        )
        self._record_launch(ctx, result.session_id)
        logger.info(
            "Instance launched (%s)",
            ctx.machine.state.value,
            extra={
                "instance_id": instance_id,
                "session_id": result.session_id,
                "attempt": ctx.machine.attempt,
                "pid": result.pid,
            },
        )
        return result

    def _record_launch(self, ctx: InstanceContext, session_id: str) -> None:
        record = self.store.get(ctx.instance_id)
        if record is None:
            record = SessionRecord(
                instance_id=ctx.instance_id,
                working_directory=str(ctx.working_directory),
                session_id=session_id,
            )
            self.store.set(ctx.instance_id, record)
        elif not ctx.machine.chain:
            self.store.update_session_id(ctx.instance_id, session_id)
        record.working_directory = str(ctx.working_directory)
        if ctx.name is not None:
            record.instance_name = ctx.name
        if ctx.run_config is not None:
            record.run_config = ctx.run_config
        record.should_auto_start = True
        self.store.touch(ctx.instance_id)
        self._persist()

    def _current(self, instance_id: str, handle: ProcessHandle) -> InstanceContext | None:
        ctx = self._contexts.get(instance_id)
        if ctx is None or ctx.handle is not handle:
            return None
        return ctx

    def _on_output(self, instance_id: str, handle: ProcessHandle, chunk: bytes) -> None:
        try:
            ctx = self._current(instance_id, handle)
            if ctx is None or ctx.router is None:
                return
            for item in ctx.router.feed(chunk):
                self._dispatch(ctx, item)
        except Exception:
            logger.exception("Output handling failed", extra={"instance_id": instance_id})

    def _dispatch(self, ctx: InstanceContext, item: RestorationSignal) -> None:
        if ctx.stopping or ctx.handle is None:
            return
        if item.kind is SignalKind.FAILURE:
            self._on_failure(ctx)
        elif not ctx.settled:
            ctx.pending_success = True
        else:
            self._on_success(ctx)

    def _settle(self, instance_id: str, handle: ProcessHandle) -> None:
        ctx = self._current(instance_id, handle)
        if ctx is None:
            return
        ctx.settled = True
        if ctx.pending_success and not ctx.stopping:
            ctx.pending_success = False
            self._on_success(ctx)

    def _on_failure(self, ctx: InstanceContext) -> None:
        outcome = ctx.machine.on_failure()
        if outcome is None:
            return
        for event in outcome.events:
            self._emit(event)
        if outcome.next_session_id is None:
            logger.warning(
                "All %d session candidates failed",
                ctx.machine.total_attempts,
                extra={"instance_id": ctx.instance_id},
            )
            return

        handle = ctx.handle
        ctx.handle = None
        if handle is not None:
            self.registry.remove(ctx.instance_id, handle)
            try:
                handle.kill()
            except OSError:
                logger.exception("Kill for retry failed", extra={"instance_id": ctx.instance_id})
        logger.info(
            "Retrying with next session candidate",
            extra={
                "instance_id": ctx.instance_id,
                "session_id": outcome.next_session_id,
                "attempt": ctx.machine.attempt + 1,
            },
        )
        ctx.timers.append(
            self.scheduler.call_later(
                self.restoration.retry_backoff_seconds,
                lambda: self._retry(ctx.instance_id, ctx),
            )
        )

    async def _retry(self, instance_id: str, ctx: InstanceContext) -> None:
        if self._contexts.get(instance_id) is not ctx or ctx.stopping:
            logger.debug("Dropping stale retry", extra={"instance_id": instance_id})
            return
        if not ctx.machine.killing_for_retry:
            return
        if self.registry.has(instance_id) or instance_id in self._launching:
            logger.debug("Instance restarted during backoff", extra={"instance_id": instance_id})
            return

        session_id = ctx.machine.begin_retry()
        try:
            await self._launch(ctx, session_id)
        except Exception as exc:
            error = self._launch_error(instance_id, exc)
            logger.warning("Relaunch failed: %s", error, extra={"instance_id": instance_id})
            if self._contexts.get(instance_id) is ctx:
                del self._contexts[instance_id]
            self._emit(ctx.machine.relaunch_failed(str(error)))

    def _on_success(self, ctx: InstanceContext) -> None:
        outcome = ctx.machine.on_success()
        if outcome is None:
            return
        if self.store.update_session_id(ctx.instance_id, outcome.session_id):
            self._persist()
        self._emit(outcome.event)
        restored_at = self.scheduler.time()
        ctx.timers.append(
            self.scheduler.call_later(
                self.restoration.scan_delay_seconds,
                lambda: self._reconcile(ctx.instance_id, ctx.working_directory, restored_at),
            )
        )

    async def _reconcile(self, instance_id: str, working_directory: Path, restored_at: float) -> None:
        if self.scanner is None:
            return
        newest = await asyncio.to_thread(self.scanner.find_newer, working_directory, restored_at)
        record = self.store.get(instance_id)
        if newest is None or record is None or newest == record.session_id:
            return
        logger.info(
            "Agent wrote to a different transcript, updating session id",
            extra={"instance_id": instance_id, "session_id": newest},
        )
        self.store.update_session_id(instance_id, newest)
        self._persist()

    def _on_exit(self, instance_id: str, handle: ProcessHandle, exit_code: int | None) -> None:
        try:
            ctx = self._current(instance_id, handle)
            if ctx is None or ctx.machine.killing_for_retry:
                return
            self._emit(ExitEvent(instance_id, exit_code))
            self.registry.remove(instance_id, handle)
            ctx.handle = None
            for timer in ctx.timers:
                timer.cancel()
            del self._contexts[instance_id]
            if self.store.set_auto_start(instance_id, False):
                self._persist()
            logger.info("Instance exited with %s", exit_code, extra={"instance_id": instance_id})
        except Exception:
            logger.exception("Exit handling failed", extra={"instance_id": instance_id})

    def send_input(self, instance_id: str, text: str) -> OperationResult:
        handle = self.registry.get(instance_id)
        if handle is None:
            return OperationResult.failed(
                InstanceNotFoundError(f"No instance running for {instance_id}", instance_id=instance_id)
            )
        try:
            handle.write(text)
        except WriteFailedError as exc:
            return OperationResult.failed(exc)
        except OSError as exc:
            return OperationResult.failed(WriteFailedError(str(exc), instance_id=instance_id))
        return OperationResult(success=True)

    def resize(self, instance_id: str, cols: int, rows: int) -> OperationResult:
        handle = self.registry.get(instance_id)
        if handle is None:
            return OperationResult.failed(
                InstanceNotFoundError(f"No instance running for {instance_id}", instance_id=instance_id)
            )
        try:
            handle.resize(cols, rows)
        except ResizeFailedError as exc:
            return OperationResult.failed(exc)
        except OSError as exc:
            return OperationResult.failed(ResizeFailedError(str(exc), instance_id=instance_id))
        return OperationResult(success=True)

    def stop(self, instance_id: str) -> OperationResult:
        """Interrupt now, force-kill after the grace window if still registered."""
        handle = self.registry.get(instance_id)
        if handle is None:
            return OperationResult.failed(
                InstanceNotFoundError(f"No instance running for {instance_id}", instance_id=instance_id)
            )
        ctx = self._contexts.get(instance_id)
        if ctx is not None:
            ctx.stopping = True
        try:
            handle.kill(signal.SIGINT)
        except OSError as exc:
            logger.warning("Interrupt failed: %s", exc, extra={"instance_id": instance_id})

        timer = self.scheduler.call_later(
            self.restoration.stop_grace_seconds,
            lambda: self._force_kill(instance_id, handle),
        )
        if ctx is not None:
            ctx.timers.append(timer)
        if self.store.set_auto_start(instance_id, False):
            self._persist()
        return OperationResult(success=True)

    def _force_kill(self, instance_id: str, handle: ProcessHandle) -> None:
        if self.registry.get(instance_id) is not handle:
            return
        logger.info("Grace window elapsed, killing", extra={"instance_id": instance_id})
        try:
            handle.kill(signal.SIGKILL)
        finally:
            self.registry.remove(instance_id, handle)

    def list_instances(self) -> list[InstanceInfo]:
        infos: list[InstanceInfo] = []
        for instance_id, handle in self.registry.list_all().items():
            ctx = self._contexts.get(instance_id)
            infos.append(
                InstanceInfo(
                    instance_id=instance_id,
                    pid=handle.pid,
                    working_directory=str(ctx.working_directory) if ctx else "",
                    name=ctx.name if ctx else None,
                    restoration_state=ctx.machine.state.value if ctx else "unknown",
                    session_id=ctx.session_id if ctx else None,
                )
            )
        return infos

    def instance_count(self) -> int:
        return len(self.registry)

    def detach_all(self) -> list[str]:
        """Forget every running instance without killing it, keeping it resumable."""
        instance_ids = list(self.registry.list_all())
        if not instance_ids:
            return []
        for instance_id in instance_ids:
            self.store.set_auto_start(instance_id, True)
            ctx = self._contexts.pop(instance_id, None)
            if ctx is not None:
                ctx.handle = None
                for timer in ctx.timers:
                    timer.cancel()
        self._persist()
        self.registry.detach_all()
        logger.info("Detached %d instances", len(instance_ids))
        return instance_ids
