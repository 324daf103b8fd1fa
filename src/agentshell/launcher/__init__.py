from agentshell.launcher.base import (
    LaunchResult,
    Launcher,
    ProcessHandle,
    ResolvedCommand,
    build_session_args,
    generate_session_id,
)
from agentshell.launcher.detector import (
    BinaryDetector,
    CommandSpec,
    DetectedBinary,
    build_command,
    source_for_path,
)

__all__ = [
    "BinaryDetector",
    "CommandSpec",
    "DetectedBinary",
    "LaunchResult",
    "Launcher",
    "ProcessHandle",
    "ResolvedCommand",
    "build_command",
    "build_session_args",
    "generate_session_id",
    "source_for_path",
]
