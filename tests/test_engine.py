import asyncio
import json
import os
import signal
from pathlib import Path

from agentshell.config import RestorationConfig
from agentshell.engine import InstanceEngine
from agentshell.errors import BinaryNotFoundError, SpawnFailedError, WriteFailedError
from agentshell.events import ExitEvent, OutputEvent, RestorationStatusEvent
from agentshell.launcher.base import (
    Launcher,
    LaunchResult,
    ProcessHandle,
    ResolvedCommand,
    build_session_args,
)
from agentshell.restoration import RestorationState
from agentshell.scanner import SessionFileScanner
from agentshell.scheduler import Scheduler, TimerHandle, run_callback
from agentshell.state.sessions import RunConfig, SessionRecord, SessionStore

FAILURE = "No conversation found with session ID: {}\r\n"
WELCOME = "\x1b[1m Welcome to Claude Code \x1b[0m\r\n"


class FakeTimer(TimerHandle):
    def __init__(self, due: float, seq: int, callback) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler(Scheduler):
    def __init__(self, wall_clock: float = 1000.0) -> None:
        self.wall_clock = wall_clock
        self.now = 0.0
        self.timers: list[FakeTimer] = []
        self._seq = 0

    def call_later(self, delay: float, callback) -> TimerHandle:
        self._seq += 1
        timer = FakeTimer(self.now + delay, self._seq, callback)
        self.timers.append(timer)
        return timer

    def time(self) -> float:
        return self.wall_clock + self.now

    async def advance(self, seconds: float) -> None:
        target = round(self.now + seconds, 6)
        while True:
            due = [t for t in self.timers if not t.cancelled and round(t.due, 6) <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self.timers.remove(timer)
            self.now = max(self.now, timer.due)
            await run_callback(timer.callback)
        self.now = target


class FakeHandle(ProcessHandle):
    def __init__(self, pid: int, *, fail_write: bool = False, fail_resize: bool = False) -> None:
        self._pid = pid
        self.fail_write = fail_write
        self.fail_resize = fail_resize
        self.writes: list[str] = []
        self.sizes: list[tuple[int, int]] = []
        self.signals: list[int] = []
        self.on_output = None
        self.on_exit = None

    @property
    def pid(self) -> int:
        return self._pid

    def attach(self, on_output, on_exit) -> None:
        self.on_output = on_output
        self.on_exit = on_exit

    def write(self, data: str) -> None:
        if self.fail_write:
            raise WriteFailedError("terminal is closed")
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        if self.fail_resize:
            raise OSError("bad ioctl")
        self.sizes.append((cols, rows))

    def kill(self, sig: int = signal.SIGKILL) -> None:
        self.signals.append(sig)

    def emit(self, text: str) -> None:
        self.on_output(text.encode("utf-8"))

    def exit(self, code: int | None) -> None:
        self.on_exit(code)


class FakeLauncher(Launcher):
    def __init__(self) -> None:
        self.launches: list[tuple[str, str | None, list[str]]] = []
        self.handles: list[FakeHandle] = []
        self.errors: list[Exception] = []

    async def launch(self, instance_id, working_directory, session_id, run_config=None) -> LaunchResult:
        if self.errors:
            raise self.errors.pop(0)
        argv, bound = build_session_args(session_id, run_config=run_config)
        self.launches.append((instance_id, session_id, argv))
        handle = FakeHandle(pid=4000 + len(self.handles))
        self.handles.append(handle)
        return LaunchResult(
            handle=handle,
            session_id=bound,
            resolved=ResolvedCommand(
                command="/usr/local/bin/claude",
                arguments=tuple(argv),
                use_shell=False,
                executable_path="/usr/local/bin/claude",
                version="1.0.0",
                source="fallback",
            ),
        )


def _setup(tmp_path: Path, *, scanner: SessionFileScanner | None = None, hook=None):
    store = SessionStore(tmp_path / "state")
    launcher = FakeLauncher()
    scheduler = FakeScheduler()
    events: list = []

    def record(event) -> None:
        events.append(event)
        if hook is not None:
            hook(event)

    engine = InstanceEngine(
        launcher,
        store,
        scheduler=scheduler,
        scanner=scanner,
        restoration=RestorationConfig(),
        event_hook=record,
    )
    return engine, store, launcher, scheduler, events


def _statuses(events: list) -> list[RestorationStatusEvent]:
    return [event for event in events if isinstance(event, RestorationStatusEvent)]


def _seed(store: SessionStore, instance_id: str, session_id: str, previous: list[str], cwd: str = "/work") -> None:
    store.set(
        instance_id,
        SessionRecord(
            instance_id=instance_id,
            working_directory=cwd,
            session_id=session_id,
            previous_session_ids=list(previous),
        ),
    )


def test_fresh_start_binds_generated_session_without_status_events(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)

    async def scenario():
        result = await engine.start_instance("a", tmp_path, "Alpha")
        handle = launcher.handles[0]
        handle.emit(WELCOME)
        await scheduler.advance(0.2)
        handle.emit(FAILURE.format("whatever"))
        return result

    result = asyncio.run(scenario())

    assert result.success is True
    assert result.restored is False
    assert result.pid == 4000
    assert result.resolved_info["version"] == "1.0.0"
    _, session_arg, argv = launcher.launches[0]
    assert session_arg is None
    assert argv[:2] == ["--session-id", result.session_id]
    assert _statuses(events) == []
    assert any(isinstance(event, OutputEvent) for event in events)
    assert engine.context("a").machine.state is RestorationState.FRESH

    reloaded = SessionStore(tmp_path / "state")
    reloaded.load()
    record = reloaded.get("a")
    assert record.session_id == result.session_id
    assert record.instance_name == "Alpha"
    assert record.should_auto_start is True


def test_start_rejects_duplicate_instance(tmp_path: Path) -> None:
    engine, _, launcher, _, _ = _setup(tmp_path)

    async def scenario():
        first = await engine.start_instance("a", tmp_path)
        second = await engine.start_instance("a", tmp_path)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.success is True
    assert second.success is False
    assert second.error_code == "duplicate_instance"
    assert len(launcher.launches) == 1
    assert engine.instance_count() == 1


def test_every_candidate_failing_ends_exhausted(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)
    _seed(store, "a", "s1", ["s2", "s3"])

    async def scenario():
        result = await engine.start_instance("a", tmp_path)
        for index, session_id in enumerate(["s1", "s2", "s3"]):
            handle = launcher.handles[index]
            handle.emit(FAILURE.format(session_id))
            await scheduler.advance(1.0)
        return result

    result = asyncio.run(scenario())

    assert result.restored is True
    assert [session_id for _, session_id, _ in launcher.launches] == ["s1", "s2", "s3"]
    statuses = _statuses(events)
    assert [event.status for event in statuses if event.status == "retrying"] == ["retrying", "retrying"]
    assert [(event.attempt_number, event.session_id) for event in statuses if event.status == "retrying"] == [
        (2, "s2"),
        (3, "s3"),
    ]
    assert [event.status for event in statuses].count("all-failed") == 1
    assert statuses[-1].status == "all-failed"
    assert statuses[-1].total_attempts == 3
    assert engine.context("a").machine.state is RestorationState.EXHAUSTED
    assert launcher.handles[0].signals == [signal.SIGKILL]
    assert launcher.handles[2].signals == []
    assert engine.registry.get("a") is launcher.handles[2]


def test_success_after_failure_persists_working_candidate_once(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)
    _seed(store, "a", "s1", ["s2", "s3"])

    async def scenario():
        await engine.start_instance("a", tmp_path)
        launcher.handles[0].emit(FAILURE.format("s1"))
        await scheduler.advance(1.0)
        await scheduler.advance(0.1)
        handle = launcher.handles[1]
        handle.emit(WELCOME)
        handle.emit(WELCOME)

    asyncio.run(scenario())

    successes = [event for event in _statuses(events) if event.status == "success"]
    assert len(successes) == 1
    assert successes[0].session_id == "s2"
    assert successes[0].attempt_number == 2

    reloaded = SessionStore(tmp_path / "state")
    reloaded.load()
    record = reloaded.get("a")
    assert record.session_id == "s2"
    assert record.previous_session_ids == ["s1", "s3"]
    assert engine.context("a").machine.state is RestorationState.SUCCEEDED


def test_success_before_settle_is_reported_after_settle(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)
    _seed(store, "a", "s1", [])

    async def scenario():
        await engine.start_instance("a", tmp_path)
        launcher.handles[0].emit(WELCOME)
        before = list(_statuses(events))
        await scheduler.advance(0.1)
        return before

    before = asyncio.run(scenario())

    assert before == []
    assert [event.status for event in _statuses(events)] == ["success"]


def test_marker_split_across_chunks_is_detected(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)
    _seed(store, "a", "s1", ["s2"])

    async def scenario():
        await engine.start_instance("a", tmp_path)
        handle = launcher.handles[0]
        handle.emit("\x1b[31mNo conversation fo")
        handle.emit("und with session ID: s1\x1b[0m")

    asyncio.run(scenario())

    assert [event.status for event in _statuses(events)] == ["failed", "retrying"]


def test_exit_of_killed_process_during_retry_is_not_reported(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)
    _seed(store, "a", "s1", ["s2"])

    async def scenario():
        await engine.start_instance("a", tmp_path)
        first = launcher.handles[0]
        first.emit(FAILURE.format("s1"))
        first.exit(-9)
        await scheduler.advance(1.0)

    asyncio.run(scenario())

    assert not any(isinstance(event, ExitEvent) for event in events)
    assert engine.registry.get("a") is launcher.handles[1]


def test_exit_notifies_and_clears_auto_start(tmp_path: Path) -> None:
    engine, store, launcher, _, events = _setup(tmp_path)

    async def scenario():
        await engine.start_instance("a", tmp_path)
        launcher.handles[0].exit(0)

    asyncio.run(scenario())

    assert [event for event in events if isinstance(event, ExitEvent)] == [ExitEvent("a", 0)]
    assert engine.instance_count() == 0
    assert engine.context("a") is None
    reloaded = SessionStore(tmp_path / "state")
    reloaded.load()
    assert reloaded.get("a").should_auto_start is False


def test_stop_unknown_instance_fails(tmp_path: Path) -> None:
    engine, _, _, _, _ = _setup(tmp_path)

    result = engine.stop("missing")

    assert result.success is False
    assert result.error_code == "instance_not_found"


def test_stop_interrupts_then_force_kills_after_grace(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, _ = _setup(tmp_path)

    async def scenario():
        await engine.start_instance("a", tmp_path)
        result = engine.stop("a")
        handle = launcher.handles[0]
        await scheduler.advance(1.9)
        after_interrupt = list(handle.signals)
        await scheduler.advance(0.1)
        return result, after_interrupt

    result, after_interrupt = asyncio.run(scenario())

    assert result.success is True
    assert after_interrupt == [signal.SIGINT]
    assert launcher.handles[0].signals == [signal.SIGINT, signal.SIGKILL]
    assert engine.instance_count() == 0
    assert store.get("a").should_auto_start is False


def test_stop_skips_force_kill_when_process_exits_in_time(tmp_path: Path) -> None:
    engine, _, launcher, scheduler, events = _setup(tmp_path)

    async def scenario():
        await engine.start_instance("a", tmp_path)
        engine.stop("a")
        launcher.handles[0].exit(130)
        await scheduler.advance(5.0)

    asyncio.run(scenario())

    assert launcher.handles[0].signals == [signal.SIGINT]
    assert ExitEvent("a", 130) in events


def test_input_and_resize_report_failures_as_results(tmp_path: Path) -> None:
    engine, _, launcher, _, _ = _setup(tmp_path)

    async def scenario():
        await engine.start_instance("a", tmp_path)

    asyncio.run(scenario())
    handle = launcher.handles[0]

    assert engine.send_input("a", "hello\r").success is True
    assert handle.writes == ["hello\r"]
    assert engine.resize("a", 120, 40).success is True
    assert handle.sizes == [(120, 40)]

    assert engine.send_input("missing", "x").error_code == "instance_not_found"
    assert engine.resize("missing", 1, 1).error_code == "instance_not_found"

    handle.fail_write = True
    handle.fail_resize = True
    write_result = engine.send_input("a", "x")
    resize_result = engine.resize("a", 10, 10)
    assert write_result.to_dict() == {
        "success": False,
        "error": "terminal is closed",
        "error_code": "write_failed",
    }
    assert resize_result.error_code == "resize_failed"


def test_detach_all_keeps_processes_and_marks_auto_start(tmp_path: Path) -> None:
    engine, store, launcher, _, events = _setup(tmp_path)

    async def scenario():
        await engine.start_instance("a", tmp_path)
        await engine.start_instance("b", tmp_path)

    asyncio.run(scenario())
    store.set_auto_start("b", False)

    detached = engine.detach_all()

    assert sorted(detached) == ["a", "b"]
    assert engine.instance_count() == 0
    assert all(handle.signals == [] for handle in launcher.handles)
    assert engine.context("a") is None
    launcher.handles[0].exit(0)
    assert not any(isinstance(event, ExitEvent) for event in events)
    reloaded = SessionStore(tmp_path / "state")
    reloaded.load()
    assert sorted(record.instance_id for record in reloaded.preserved_sessions()) == ["a", "b"]
    assert engine.detach_all() == []


def test_reconcile_adopts_newest_transcript(tmp_path: Path) -> None:
    scanner = SessionFileScanner(tmp_path / "projects")
    engine, store, launcher, scheduler, _ = _setup(tmp_path, scanner=scanner)
    work = tmp_path / "work"
    work.mkdir()
    _seed(store, "a", "s1", [], cwd=str(work))
    project = scanner.project_dir(work)
    project.mkdir(parents=True)
    for name, mtime in [("s1", 900.0), ("fresh", 1005.0), ("older", 999.0)]:
        path = project / f"{name}.jsonl"
        path.write_text("{}\n", encoding="utf-8")
        os.utime(path, (mtime, mtime))

    async def scenario():
        await engine.start_instance("a", work)
        await scheduler.advance(0.1)
        launcher.handles[0].emit(WELCOME)
        await scheduler.advance(9.9)
        before = store.get("a").session_id
        await scheduler.advance(0.1)
        return before

    before = asyncio.run(scenario())

    assert before == "s1"
    record = store.get("a")
    assert record.session_id == "fresh"
    assert record.previous_session_ids == ["s1"]
    saved = json.loads((tmp_path / "state" / "sessions.json").read_text(encoding="utf-8"))
    assert saved["data"]["a"]["session_id"] == "fresh"


def test_pending_retry_is_dropped_after_manual_restart(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, _ = _setup(tmp_path)
    _seed(store, "a", "s1", ["s2"])

    async def scenario():
        await engine.start_instance("a", tmp_path)
        launcher.handles[0].emit(FAILURE.format("s1"))
        restarted = await engine.start_instance("a", tmp_path)
        await scheduler.advance(1.0)
        return restarted

    restarted = asyncio.run(scenario())

    assert restarted.success is True
    assert [session_id for _, session_id, _ in launcher.launches] == ["s1", "s1"]
    assert engine.registry.get("a") is launcher.handles[1]


def test_relaunch_error_reports_all_failed(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)
    _seed(store, "a", "s1", ["s2"])

    async def scenario():
        await engine.start_instance("a", tmp_path)
        launcher.errors.append(SpawnFailedError("fork failed"))
        launcher.handles[0].emit(FAILURE.format("s1"))
        await scheduler.advance(1.0)

    asyncio.run(scenario())

    final = _statuses(events)[-1]
    assert final.status == "all-failed"
    assert final.error == "fork failed"
    assert engine.context("a") is None
    assert engine.instance_count() == 0


def test_start_reports_missing_binary(tmp_path: Path) -> None:
    engine, store, launcher, _, _ = _setup(tmp_path)
    launcher.errors.append(BinaryNotFoundError("claude CLI not found"))

    result = asyncio.run(engine.start_instance("a", tmp_path))

    assert result.success is False
    assert result.error_code == "binary_not_found"
    assert result.to_dict() == {
        "success": False,
        "error": "claude CLI not found",
        "error_code": "binary_not_found",
    }
    assert engine.context("a") is None
    assert store.get("a") is None


def test_start_preserved_only_starts_flagged_sessions(tmp_path: Path) -> None:
    engine, store, launcher, _, _ = _setup(tmp_path)
    _seed(store, "a", "s1", [], cwd=str(tmp_path))
    _seed(store, "b", "s9", [], cwd=str(tmp_path))
    store.set_auto_start("a", True)
    store.get("a").run_config = RunConfig(args=["--model", "opus"])

    results = asyncio.run(engine.start_preserved())

    assert list(results) == ["a"]
    assert results["a"].restored is True
    assert launcher.launches == [("a", "s1", ["--resume", "s1", "--model", "opus"])]


def test_failing_event_hook_does_not_break_the_engine(tmp_path: Path) -> None:
    def explode(event) -> None:
        raise ValueError("listener bug")

    engine, store, launcher, scheduler, events = _setup(tmp_path, hook=explode)
    _seed(store, "a", "s1", ["s2"])

    async def scenario():
        result = await engine.start_instance("a", tmp_path)
        launcher.handles[0].emit(FAILURE.format("s1"))
        await scheduler.advance(1.0)
        return result

    result = asyncio.run(scenario())

    assert result.success is True
    assert len(launcher.launches) == 2
    assert [event.status for event in _statuses(events)] == ["failed", "retrying"]


def test_list_instances_describes_running_processes(tmp_path: Path) -> None:
    engine, store, _, _, _ = _setup(tmp_path)
    _seed(store, "a", "s1", [])

    asyncio.run(engine.start_instance("a", tmp_path, "Alpha"))

    [info] = engine.list_instances()
    assert info.instance_id == "a"
    assert info.name == "Alpha"
    assert info.session_id == "s1"
    assert info.restoration_state == "restoring"


def test_start_reports_unexpected_launch_error_as_spawn_failure(tmp_path: Path) -> None:
    engine, store, launcher, _, _ = _setup(tmp_path)
    launcher.errors.append(OSError(24, "out of pty devices"))

    result = asyncio.run(engine.start_instance("demo", tmp_path))

    assert result.success is False
    assert result.error_code == "spawn_failed"
    assert "out of pty devices" in result.error
    assert engine.context("demo") is None
    assert engine.instance_count() == 0


def test_relaunch_os_error_ends_restoration(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, events = _setup(tmp_path)
    _seed(store, "a", "s1", ["s2"])

    async def scenario():
        await engine.start_instance("a", tmp_path)
        launcher.errors.append(OSError(24, "out of pty devices"))
        launcher.handles[0].emit(FAILURE.format("s1"))
        await scheduler.advance(1.0)

    asyncio.run(scenario())

    assert [event.status for event in _statuses(events)] == ["failed", "retrying", "all-failed"]
    assert "out of pty devices" in _statuses(events)[-1].error
    assert engine.context("a") is None
    assert engine.instance_count() == 0


def test_busy_store_lock_is_retried_later(tmp_path: Path) -> None:
    engine, store, launcher, scheduler, _ = _setup(tmp_path)
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    lock = state_dir / ".lock"
    lock.write_text(str(os.getpid()), encoding="utf-8")

    async def scenario():
        result = await engine.start_instance("a", tmp_path)
        written_while_locked = store.state_file.exists()
        lock.unlink()
        await scheduler.advance(0.5)
        return result, written_while_locked

    result, written_while_locked = asyncio.run(scenario())

    assert result.success is True
    assert written_while_locked is False
    reloaded = SessionStore(state_dir)
    reloaded.load()
    assert reloaded.get("a").session_id == result.session_id
