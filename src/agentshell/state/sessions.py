from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class SessionStoreError(RuntimeError):
    """Raised when session persistence fails."""


@dataclass(slots=True)
class RunConfig:
    command: str | None = None
    args: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"command": self.command, "args": list(self.args)}

    @classmethod
    def from_dict(cls, data: Any) -> RunConfig | None:
        if not isinstance(data, dict):
            return None
        args = data.get("args") or []
        return cls(
            command=data.get("command") or None,
            args=[str(item) for item in args] if isinstance(args, list) else [],
        )


@dataclass(slots=True)
class SessionRecord:
    instance_id: str
    working_directory: str
    session_id: str | None = None
    previous_session_ids: list[str] = field(default_factory=list)
    instance_name: str | None = None
    last_active: float = field(default_factory=time.time)
    run_config: RunConfig | None = None
    should_auto_start: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "working_directory": self.working_directory,
            "session_id": self.session_id,
            "previous_session_ids": list(self.previous_session_ids),
            "instance_name": self.instance_name,
            "last_active": self.last_active,
            "run_config": self.run_config.to_dict() if self.run_config else None,
            "should_auto_start": self.should_auto_start,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        previous = data.get("previous_session_ids") or []
        return cls(
            instance_id=str(data["instance_id"]),
            working_directory=str(data.get("working_directory") or ""),
            session_id=data.get("session_id") or None,
            previous_session_ids=[str(item) for item in previous if item],
            instance_name=data.get("instance_name"),
            last_active=float(data.get("last_active") or 0.0),
            run_config=RunConfig.from_dict(data.get("run_config")),
            should_auto_start=bool(data.get("should_auto_start", False)),
        )


@dataclass(slots=True, frozen=True)
class SessionFallbacks:
    current: str | None
    fallbacks: tuple[str, ...]


class SessionStore:
    """Per-instance session metadata kept in memory and flushed to one JSON file.

    Mutations only touch memory; callers persist with :meth:`save_to_disk`.
    """

    SCHEMA_VERSION = 1
    FILE_NAME = "sessions.json"

    def __init__(self, state_dir: Path, *, history_limit: int = 5) -> None:
        self.state_dir = state_dir
        self.history_limit = max(0, int(history_limit))
        self.state_file = state_dir / self.FILE_NAME
        self.lock_file = state_dir / ".lock"
        self._records: dict[str, SessionRecord] = {}
        self._revision = 0

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _lock_is_stale(self) -> bool:
        try:
            owner = int(self.lock_file.read_text(encoding="utf-8").strip() or "0")
        except (OSError, ValueError):
            return False
        if owner <= 0 or owner == os.getpid():
            return False
        try:
            os.kill(owner, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale():
                    logger.warning("Removing stale session store lock %s", self.lock_file)
                    try:
                        self.lock_file.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() - start >= timeout_seconds:
                    raise SessionStoreError("Timed out waiting for session store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def load(self) -> None:
        if not self.state_file.exists():
            self._records = {}
            return
        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SessionStoreError(f"Corrupt session store: {self.state_file}") from exc

        if isinstance(raw, dict) and "schema_version" in raw and "data" in raw:
            self._revision = int(raw.get("revision") or 0)
            payload = raw.get("data")
        else:
            payload = raw
        records: dict[str, SessionRecord] = {}
        if isinstance(payload, dict):
            for instance_id, item in payload.items():
                if not isinstance(item, dict):
                    continue
                item = {"instance_id": instance_id, **item}
                records[instance_id] = SessionRecord.from_dict(item)
        self._records = records
        logger.debug("Loaded %d session records from %s", len(records), self.state_file)

    def save_to_disk(self, *, lock_timeout: float = 3.0) -> None:
        """Write every record atomically.

        With ``lock_timeout=0`` a busy lock fails at once with SessionStoreError.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self._state_lock(lock_timeout):
            self._revision += 1
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": self._revision,
                "updated_at": self._utcnow_iso(),
                "data": {key: record.to_dict() for key, record in self._records.items()},
            }
            fd, tmp = tempfile.mkstemp(prefix=self.FILE_NAME + ".", dir=str(self.state_dir))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(envelope, handle, ensure_ascii=False, indent=2)
                os.replace(tmp, self.state_file)
            finally:
                if os.path.exists(tmp):
                    os.unlink(tmp)

    @property
    def revision(self) -> int:
        return self._revision

    def records(self) -> list[SessionRecord]:
        return list(self._records.values())

    def has_session(self, instance_id: str) -> bool:
        return instance_id in self._records

    def get(self, instance_id: str) -> SessionRecord | None:
        return self._records.get(instance_id)

    def set(self, instance_id: str, record: SessionRecord) -> None:
        record.instance_id = instance_id
        self._records[instance_id] = record

    def delete(self, instance_id: str) -> bool:
        return self._records.pop(instance_id, None) is not None

    def touch(self, instance_id: str, at: float | None = None) -> None:
        record = self._records.get(instance_id)
        if record is not None:
            record.last_active = time.time() if at is None else at

    def set_auto_start(self, instance_id: str, enabled: bool) -> bool:
        record = self._records.get(instance_id)
        if record is None:
            return False
        record.should_auto_start = enabled
        return True

    def preserved_sessions(self) -> list[SessionRecord]:
        return [record for record in self._records.values() if record.should_auto_start]

    def update_session_id(self, instance_id: str, new_session_id: str) -> bool:
        record = self._records.get(instance_id)
        if record is None:
            return False
        history = [item for item in record.previous_session_ids if item != new_session_id]
        if record.session_id and record.session_id != new_session_id:
            history.insert(0, record.session_id)
        record.previous_session_ids = history[: self.history_limit]
        record.session_id = new_session_id
        logger.info(
            "Updated session id (%d previous ids kept)",
            len(record.previous_session_ids),
            extra={"instance_id": instance_id, "session_id": new_session_id},
        )
        return True

    def get_session_with_fallbacks(self, instance_id: str) -> SessionFallbacks:
        record = self._records.get(instance_id)
        if record is None:
            return SessionFallbacks(current=None, fallbacks=())
        chain: list[str] = []
        if record.session_id:
            chain.append(record.session_id)
        for item in record.previous_session_ids:
            if item not in chain:
                chain.append(item)
        return SessionFallbacks(current=record.session_id, fallbacks=tuple(chain))
