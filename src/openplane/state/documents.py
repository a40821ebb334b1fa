from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """Raised when a state document cannot be locked or written."""


def _fsync_dir(dir_path: Path) -> None:
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Not every filesystem supports directory fsync.
        pass


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class JsonDocumentStore:
    """Whole-document JSON files wrapped in a versioned envelope.

    Every write rewrites the full document atomically while holding a lock
    file in the state directory. Reads never take the lock.
    """

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir
        self.lock_file = state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def path_for(self, document: str) -> Path:
        return self.state_dir / f"{document}.json"

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateStoreError(
                        f"Timed out waiting for state lock: {self.lock_file}"
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, document: str) -> Any:
        path = self.path_for(document)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state document %s", path)
            return None

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        # Bare payloads written before the envelope existed.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1 if raw_payload is not None else 0,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, document: str, default: Any | None = None) -> dict[str, Any]:
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(document), default_value)

    def get_json(self, document: str, default: Any | None = None) -> Any:
        return self.get_envelope(document, default=default).get("data")

    def _write_envelope(self, document: str, data: Any, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": self._utcnow_iso(),
            "data": data,
        }
        atomic_write_text(
            self.path_for(document),
            json.dumps(envelope, ensure_ascii=False, indent=2),
        )

    def set_json(self, document: str, data: Any) -> None:
        with self._state_lock():
            current = self.get_envelope(document)
            self._write_envelope(document, data, int(current.get("revision", 0)) + 1)

    def update_json(
        self,
        document: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        with self._state_lock():
            current = self.get_envelope(document, default=default_value)
            updated = updater(current.get("data", default_value))
            self._write_envelope(document, updated, int(current.get("revision", 0)) + 1)
        return updated
