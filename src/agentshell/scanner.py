from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TRANSCRIPTS_DIR = Path("~/.claude/projects")


@dataclass(slots=True, frozen=True)
class TranscriptFile:
    session_id: str
    path: Path
    modified_at: float


class SessionFileScanner:
    """Finds the transcript the agent actually wrote to after a restoration.

    The agent may start a new transcript instead of appending to the one it
    was asked to resume; the newest transcript modified after the restoration
    is taken as the live session.
    """

    def __init__(
        self,
        transcripts_dir: Path = DEFAULT_TRANSCRIPTS_DIR,
        *,
        suffix: str = ".jsonl",
        separator: str = "-",
    ) -> None:
        self.transcripts_dir = transcripts_dir.expanduser()
        self.suffix = suffix
        self.separator = separator

    def project_dir(self, working_directory: str | Path) -> Path:
        name = str(working_directory)
        for sep in {os.sep, "/", os.altsep or "/"}:
            name = name.replace(sep, self.separator)
        return self.transcripts_dir / name

    def transcripts(self, working_directory: str | Path) -> list[TranscriptFile]:
        directory = self.project_dir(working_directory)
        if not directory.is_dir():
            return []
        found: list[TranscriptFile] = []
        for path in directory.iterdir():
            if not path.name.endswith(self.suffix) or not path.is_file():
                continue
            try:
                modified_at = path.stat().st_mtime
            except FileNotFoundError:
                continue
            found.append(
                TranscriptFile(
                    session_id=path.name[: -len(self.suffix)],
                    path=path,
                    modified_at=modified_at,
                )
            )
        return found

    def find_newer(self, working_directory: str | Path, since: float) -> str | None:
        """Session id of the newest transcript modified strictly after ``since``.

        Equal modification times are broken by file name, highest first.
        """
        candidates = [item for item in self.transcripts(working_directory) if item.modified_at > since]
        if not candidates:
            return None
        newest = max(candidates, key=lambda item: (item.modified_at, item.session_id))
        logger.debug("Newest transcript after %.3f: %s", since, newest.path)
        return newest.session_id
