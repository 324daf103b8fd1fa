from __future__ import annotations

import codecs
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

# Literal phrases printed by the agent CLI. Keep every marker here.
FAILURE_MARKER = "No conversation found with session ID:"
SUCCESS_MARKER = "Welcome to Claude Code"

ANSI_ESCAPE_PATTERN = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b[()*+#][0-9A-Za-z]"  # charset designation
    r"|\x1b[@-Z\\-_]"  # two-byte sequences
)
# An escape sequence cut off at the end of a chunk.
PARTIAL_ESCAPE_PATTERN = re.compile(r"\x1b(?:\][^\x07\x1b]*|\[[0-?]*[ -/]*|[()*+#])?\Z")
MAX_PARTIAL_ESCAPE = 256


class SignalKind(str, Enum):
    FAILURE = "failure"
    SUCCESS = "success"


MARKERS: dict[SignalKind, str] = {
    SignalKind.FAILURE: FAILURE_MARKER,
    SignalKind.SUCCESS: SUCCESS_MARKER,
}
LONGEST_MARKER = max(len(marker) for marker in MARKERS.values())


@dataclass(slots=True, frozen=True)
class RestorationSignal:
    kind: SignalKind
    instance_id: str


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", text)


def classify(text: str, *, min_end: int = 0) -> list[SignalKind]:
    """Return the markers found in plain ``text``, in order of appearance.

    Matches ending at or before ``min_end`` are skipped; they were already
    reported for the previous chunk.
    """
    found: list[tuple[int, SignalKind]] = []
    for kind, marker in MARKERS.items():
        start = text.find(marker)
        while start >= 0:
            if start + len(marker) > min_end:
                found.append((start, kind))
            start = text.find(marker, start + 1)
    return [kind for _, kind in sorted(found, key=lambda item: item[0])]


class OutputRouter:
    """Fans raw output to the display sink and scans it for restoration markers.

    A tail of the previous chunk's plain text is kept so a marker split across
    two chunks is still found.
    """

    def __init__(
        self,
        instance_id: str,
        sink: Callable[[bytes], None],
        *,
        on_activity: Callable[[], None] | None = None,
        window: int = LONGEST_MARKER,
    ) -> None:
        self.instance_id = instance_id
        self._sink = sink
        self._on_activity = on_activity
        self._window = max(window, LONGEST_MARKER)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_escape = ""
        self._tail = ""

    def feed(self, chunk: bytes) -> list[RestorationSignal]:
        self._sink(chunk)
        if self._on_activity is not None:
            self._on_activity()

        text = self._pending_escape + self._decoder.decode(chunk)
        self._pending_escape = ""
        partial = PARTIAL_ESCAPE_PATTERN.search(text)
        if partial is not None and len(text) - partial.start() <= MAX_PARTIAL_ESCAPE:
            self._pending_escape = text[partial.start() :]
            text = text[: partial.start()]

        scanned = self._tail + strip_ansi(text)
        kinds = classify(scanned, min_end=len(self._tail))
        self._tail = scanned[-self._window :]
        return [RestorationSignal(kind=kind, instance_id=self.instance_id) for kind in kinds]
