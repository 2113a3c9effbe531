from __future__ import annotations

import logging
import os
import time
from pathlib import Path

from askhuman.artifact.format import (
    format_header,
    format_question_block,
    format_timestamp,
    normalize_line_endings,
)
from askhuman.errors import ArtifactIOError, LockContentionError

log = logging.getLogger("artifact")


class FileLock:
    """Advisory lock held by the existence of ``<path>.lock``.

    Acquisition uses create-exclusive semantics and never retries, except for
    a single retry after removing a lock older than ``stale_after_s``.
    """

    def __init__(self, path: Path, *, stale_after_s: float = 0.0):
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")
        self.stale_after_s = stale_after_s
        self._fd: int | None = None

    def _try_create(self) -> bool:
        try:
            self._fd = os.open(
                self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644
            )
        except FileExistsError:
            return False
        except OSError as e:
            raise ArtifactIOError(f"failed to create lock: {e}", path=self.lock_path) from e
        try:
            os.write(self._fd, str(os.getpid()).encode("ascii"))
        except OSError as e:
            self.release()
            raise ArtifactIOError(f"failed to write lock: {e}", path=self.lock_path) from e
        return True

    def _remove_if_stale(self) -> bool:
        if self.stale_after_s <= 0:
            return False
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < self.stale_after_s:
            return False
        log.warning(f"Removing stale lock {self.lock_path} (age {age:.0f}s)")
        self.lock_path.unlink(missing_ok=True)
        return True

    def acquire(self) -> None:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactIOError(
                f"failed to create directory: {e}", path=self.lock_path.parent
            ) from e
        if self._try_create():
            return
        if self._remove_if_stale() and self._try_create():
            return
        raise LockContentionError(self.lock_path)

    def release(self) -> None:
        fd = self._fd
        self._fd = None
        if fd is None:
            return
        try:
            os.close(fd)
        finally:
            self.lock_path.unlink(missing_ok=True)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class ArtifactStore:
    """Durable access to the shared ask file."""

    def __init__(self, path: Path, *, lock_stale_s: float = 0.0):
        self.path = Path(path)
        self.lock_stale_s = lock_stale_s

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise ArtifactIOError(f"failed to read file: {e}", path=self.path) from e

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise ArtifactIOError(f"failed to stat file: {e}", path=self.path) from e

    def write(self, text: str) -> None:
        """Replace the file contents atomically via a temporary sibling."""
        content = normalize_line_endings(text)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactIOError(f"failed to create directory: {e}", path=self.path.parent) from e

        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8", newline="\n") as f:
                f.write(content)
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise ArtifactIOError(f"failed to write file: {e}", path=self.path) from e

    def ensure_initialized(self) -> bool:
        """Create the file with an instructions header if it is missing."""
        if self.path.exists():
            return False
        self.write(format_header(self.path, format_timestamp()))
        log.info(f"Created ask file {self.path}")
        return True

    def append_question_block(
        self, question_id: str, question: str, context: str, timestamp: str
    ) -> None:
        with FileLock(self.path, stale_after_s=self.lock_stale_s):
            existing = self.read()
            self.write(
                existing + format_question_block(question_id, question, context, timestamp)
            )
