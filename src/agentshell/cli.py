from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
import sys
import termios
import tty
from dataclasses import dataclass
from pathlib import Path

import click

from agentshell.config import AgentShellConfig, load_config, save_config
from agentshell.engine import InstanceEngine
from agentshell.events import (
    EngineEvent,
    EventHook,
    ExitEvent,
    OutputEvent,
    RestorationStatusEvent,
)
from agentshell.launcher.pty import PtyLauncher
from agentshell.logs import setup_logging
from agentshell.scanner import SessionFileScanner
from agentshell.state.sessions import RunConfig, SessionStore, SessionStoreError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: AgentShellConfig
    store: SessionStore


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    setup_logging(level=config.logging.level, json_lines=config.logging.json)
    store = SessionStore(
        config.sessions.resolve_state_dir(root),
        history_limit=config.sessions.history_limit,
    )
    try:
        store.load()
    except SessionStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(root=root, config_path=config_path, config=config, store=store)


def _build_engine(runtime: Runtime, event_hook: EventHook) -> InstanceEngine:
    sessions = runtime.config.sessions
    return InstanceEngine(
        launcher=PtyLauncher(runtime.config.launcher),
        store=runtime.store,
        scanner=SessionFileScanner(
            sessions.resolve_transcripts_dir(),
            suffix=sessions.transcript_suffix,
        ),
        restoration=runtime.config.restoration,
        event_hook=event_hook,
    )


def _describe_status(event: RestorationStatusEvent) -> str:
    message = f"[restore] {event.status} ({event.attempt_number}/{event.total_attempts})"
    if event.session_id:
        message += f" session {event.session_id}"
    if event.error:
        message += f": {event.error}"
    return message


def _sync_terminal_size(engine: InstanceEngine, instance_id: str) -> None:
    size = shutil.get_terminal_size()
    result = engine.resize(instance_id, size.columns, size.lines)
    if not result.success:
        logger.debug("Resize failed: %s", result.error, extra={"instance_id": instance_id})


async def _run_attached(
    runtime: Runtime,
    instance_id: str,
    working_directory: Path,
    name: str | None,
    run_config: RunConfig | None,
) -> int:
    loop = asyncio.get_running_loop()
    finished: asyncio.Future[int] = loop.create_future()

    def on_event(event: EngineEvent) -> None:
        if isinstance(event, OutputEvent):
            sys.stdout.buffer.write(event.data)
            sys.stdout.buffer.flush()
        elif isinstance(event, RestorationStatusEvent):
            click.echo(f"\r\n{_describe_status(event)}\r", err=True)
            if event.status == "all-failed" and event.error and not finished.done():
                finished.set_result(1)
        elif isinstance(event, ExitEvent) and not finished.done():
            finished.set_result(event.exit_code or 0)

    engine = _build_engine(runtime, on_event)
    result = await engine.start_instance(instance_id, working_directory, name, run_config)
    if not result.success:
        raise click.ClickException(result.error or "failed to start instance")

    stdin_fd = sys.stdin.fileno()
    saved_mode = None
    if os.isatty(stdin_fd):
        saved_mode = termios.tcgetattr(stdin_fd)
        tty.setraw(stdin_fd)
        _sync_terminal_size(engine, instance_id)
        loop.add_signal_handler(signal.SIGWINCH, _sync_terminal_size, engine, instance_id)

    def forward_input() -> None:
        data = os.read(stdin_fd, 4096)
        if data:
            engine.send_input(instance_id, data.decode("utf-8", errors="replace"))
        else:
            loop.remove_reader(stdin_fd)

    loop.add_reader(stdin_fd, forward_input)
    try:
        return await finished
    finally:
        loop.remove_reader(stdin_fd)
        if saved_mode is not None:
            loop.remove_signal_handler(signal.SIGWINCH)
            termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_mode)


@click.group()
def cli() -> None:
    """Run CLI agents in pseudo-terminals and resume their conversations."""


@cli.command("init")
@click.option("--binary", default=None, help="Agent executable name.")
@click.option("--config", "config_value", default="agentshell.toml", show_default=True)
def init_command(binary: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if binary:
        config.launcher.binary = binary
    save_config(config_path, config)
    state_dir = config.sessions.resolve_state_dir(root)
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Config: {config_path}")
    click.echo(f"Sessions: {state_dir}")
    click.echo(f"Agent binary: {config.launcher.binary}")


@cli.command("start")
@click.argument("instance_id")
@click.option("--cwd", "working_directory", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--name", default=None)
@click.option("--command", "command_override", default=None, help="Run this executable instead.")
@click.option("--arg", "extra_args", multiple=True, help="Extra agent argument (repeatable).")
@click.option("--config", "config_value", default="agentshell.toml", show_default=True)
def start_command(
    instance_id: str,
    working_directory: Path | None,
    name: str | None,
    command_override: str | None,
    extra_args: tuple[str, ...],
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    record = runtime.store.get(instance_id)
    if working_directory is None:
        working_directory = Path(record.working_directory) if record else root
    run_config = None
    if command_override or extra_args:
        run_config = RunConfig(command=command_override, args=list(extra_args))
    elif record is not None:
        run_config = record.run_config

    exit_code = asyncio.run(
        _run_attached(runtime, instance_id, working_directory.resolve(), name, run_config)
    )
    sys.exit(exit_code)


@cli.command("sessions")
@click.option("--config", "config_value", default="agentshell.toml", show_default=True)
def sessions_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    records = runtime.store.records()
    if not records:
        click.echo("No sessions stored.")
        return
    payload = {record.instance_id: record.to_dict() for record in records}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("forget")
@click.argument("instance_id")
@click.option("--config", "config_value", default="agentshell.toml", show_default=True)
def forget_command(instance_id: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    if not runtime.store.delete(instance_id):
        raise click.ClickException(f"No stored session for {instance_id}")
    runtime.store.save_to_disk()
    click.echo(f"Forgot session for {instance_id}")
