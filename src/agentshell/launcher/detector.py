from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path

from agentshell.errors import BinaryNotFoundError

logger = logging.getLogger(__name__)

VERSION_TIMEOUT_SECONDS = 5.0


@dataclass(slots=True, frozen=True)
class DetectedBinary:
    path: str
    version: str
    source: str


@dataclass(slots=True, frozen=True)
class CommandSpec:
    command: str
    arguments: tuple[str, ...]
    use_shell: bool


def _user_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


def source_for_path(path: str) -> str:
    normalized = path.replace("\\", "/")
    if "node_modules/.bin" in normalized:
        return "local"
    if ".nvm" in normalized:
        return "nvm"
    if ".bun" in normalized:
        return "bun-global"
    if "npm-global" in normalized or "npm/bin" in normalized:
        return "npm-global"
    return "fallback"


def build_command(detected: DetectedBinary, argv: list[str]) -> CommandSpec:
    """Shell and project-local installs run through a login shell so PATH hooks apply."""
    if detected.source in {"shell", "local"}:
        command_line = shlex.join([detected.path, *argv])
        return CommandSpec(command=_user_shell(), arguments=("-l", "-c", command_line), use_shell=True)
    return CommandSpec(command=detected.path, arguments=tuple(argv), use_shell=False)


class BinaryDetector:
    def __init__(self, binary: str = "claude", *, cache: bool = True) -> None:
        self.binary = binary
        self.cache = cache
        self._cached: DetectedBinary | None = None

    def clear_cache(self) -> None:
        self._cached = None

    def candidate_paths(self, working_directory: Path | None) -> list[Path]:
        home = Path.home()
        candidates = [Path.cwd() / "node_modules" / ".bin" / self.binary]
        if working_directory is not None:
            candidates.append(working_directory / "node_modules" / ".bin" / self.binary)
        candidates.extend(
            [
                Path("/usr/local/bin") / self.binary,
                Path("/opt/homebrew/bin") / self.binary,
                home / ".local" / "bin" / self.binary,
                home / ".npm-global" / "bin" / self.binary,
                home / ".bun" / "bin" / self.binary,
            ]
        )
        nvm_versions = Path(os.environ.get("NVM_DIR") or home / ".nvm") / "versions" / "node"
        if nvm_versions.is_dir():
            for version_dir in sorted(nvm_versions.iterdir()):
                candidates.append(version_dir / "bin" / self.binary)
        return candidates

    async def _run(self, *command: str, cwd: Path | None = None) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.debug("Could not run %s: %s", command[0], exc)
            return 127, ""
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), VERSION_TIMEOUT_SECONDS)
        except TimeoutError:
            process.kill()
            await process.wait()
            return 124, ""
        return process.returncode or 0, stdout.decode("utf-8", errors="replace")

    async def _detect_via_shell(self, working_directory: Path | None) -> DetectedBinary | None:
        quoted = shlex.quote(self.binary)
        script = f"which {quoted} && {quoted} --version"
        code, output = await self._run(_user_shell(), "-l", "-c", script, cwd=working_directory)
        if code != 0:
            return None
        lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
        if not lines or not Path(lines[0]).exists():
            return None
        source = source_for_path(lines[0])
        return DetectedBinary(
            path=lines[0],
            version=" ".join(lines[1:]) or "unknown",
            source="shell" if source == "fallback" else source,
        )

    async def _version_of(self, path: str) -> str:
        code, output = await self._run(path, "--version")
        if code != 0 or not output.strip():
            return "unknown"
        return output.strip()

    async def detect(self, working_directory: Path | None = None) -> DetectedBinary:
        if self.cache and self._cached is not None:
            return self._cached

        detected = await self._detect_via_shell(working_directory)
        if detected is None:
            for candidate in self.candidate_paths(working_directory):
                if candidate.is_file() and os.access(candidate, os.X_OK):
                    path = str(candidate)
                    detected = DetectedBinary(
                        path=path, version=await self._version_of(path), source=source_for_path(path)
                    )
                    break
        if detected is None:
            on_path = shutil.which(self.binary)
            if on_path:
                detected = DetectedBinary(
                    path=on_path, version=await self._version_of(on_path), source="fallback"
                )
        if detected is None:
            raise BinaryNotFoundError(f"{self.binary} CLI not found")

        logger.info("Detected %s at %s (%s)", self.binary, detected.path, detected.source)
        if self.cache:
            self._cached = detected
        return detected
