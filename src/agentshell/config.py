from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class LauncherConfig:
    binary: str = "claude"
    term: str = "xterm-256color"
    cols: int = 80
    rows: int = 30
    debug: bool = False
    development: bool = False

    def debug_flags(self) -> list[str]:
        if self.debug or os.environ.get("CLAUDE_DEBUG") == "true":
            return ["--debug"]
        return []


@dataclass(slots=True)
class RestorationConfig:
    retry_backoff_seconds: float = 1.0
    settle_seconds: float = 0.1
    scan_delay_seconds: float = 10.0
    stop_grace_seconds: float = 2.0


@dataclass(slots=True)
class SessionsConfig:
    state_dir: str = ".agentshell/sessions"
    transcripts_dir: str = "~/.claude/projects"
    transcript_suffix: str = ".jsonl"
    history_limit: int = 5

    def resolve_state_dir(self, root: Path) -> Path:
        path = Path(self.state_dir).expanduser()
        if not path.is_absolute():
            path = root / path
        return path.resolve()

    def resolve_transcripts_dir(self) -> Path:
        return Path(self.transcripts_dir).expanduser()


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass(slots=True)
class AgentShellConfig:
    launcher: LauncherConfig = field(default_factory=LauncherConfig)
    restoration: RestorationConfig = field(default_factory=RestorationConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AgentShellConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AgentShellConfig:
        return cls(
            launcher=LauncherConfig(**data.get("launcher", {})),
            restoration=RestorationConfig(**data.get("restoration", {})),
            sessions=SessionsConfig(**data.get("sessions", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "launcher": {
                "binary": self.launcher.binary,
                "term": self.launcher.term,
                "cols": self.launcher.cols,
                "rows": self.launcher.rows,
                "debug": self.launcher.debug,
                "development": self.launcher.development,
            },
            "restoration": {
                "retry_backoff_seconds": self.restoration.retry_backoff_seconds,
                "settle_seconds": self.restoration.settle_seconds,
                "scan_delay_seconds": self.restoration.scan_delay_seconds,
                "stop_grace_seconds": self.restoration.stop_grace_seconds,
            },
            "sessions": {
                "state_dir": self.sessions.state_dir,
                "transcripts_dir": self.sessions.transcripts_dir,
                "transcript_suffix": self.sessions.transcript_suffix,
                "history_limit": self.sessions.history_limit,
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AgentShellConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("launcher", "restoration", "sessions", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AgentShellConfig:
    if not path.exists():
        return AgentShellConfig.default()
    return AgentShellConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AgentShellConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
