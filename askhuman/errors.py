"""Ask-human exceptions.

These exception types let callers (the HTTP layer, tests, embedding code)
react to failures by class instead of scraping strings. Each one carries the
values needed to diagnose it as attributes.
"""

from __future__ import annotations

from pathlib import Path


class AskHumanError(RuntimeError):
    """Base class for rendezvous engine errors."""


class InputValidationError(AskHumanError):
    """Question or context exceeds its configured size limit."""

    def __init__(self, field: str, *, size: int, limit: int):
        self.field = field
        self.size = int(size)
        self.limit = int(limit)
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"{self.field} too long: {self.size} bytes (max {self.limit})"


class TooManyPendingError(AskHumanError):
    """The pending registry is at capacity."""

    def __init__(self, pending: int, *, limit: int):
        self.pending = int(pending)
        self.limit = int(limit)
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"too many pending questions: {self.pending} pending (max {self.limit})"


class LockContentionError(AskHumanError):
    """The artifact append lock is already held."""

    def __init__(self, lock_path: Path | str):
        self.lock_path = Path(lock_path)
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"artifact is locked: {self.lock_path} already exists"


class ArtifactIOError(AskHumanError):
    """Reading, writing or renaming the artifact failed."""

    def __init__(self, message: str, *, path: Path | str | None = None):
        self.message = message
        self.path = Path(path) if path is not None else None
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.path is not None:
            return f"artifact access error: {self.message} ({self.path})"
        return f"artifact access error: {self.message}"


class ArtifactTooLargeError(ArtifactIOError):
    """The artifact grew past the configured ceiling."""

    def __init__(self, size: int, *, limit: int, path: Path | str | None = None):
        self.size = int(size)
        self.limit = int(limit)
        super().__init__(
            f"file size {self.size} bytes (max {self.limit})", path=path
        )


class QuestionTimeoutError(AskHumanError):
    """No answer arrived within the configured wait."""

    def __init__(self, question_id: str, *, timeout_s: float):
        self.question_id = question_id
        self.timeout_s = float(timeout_s)
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return (
            f"no answer received for question {self.question_id} "
            f"within {self.timeout_s:g}s"
        )


class ShutdownError(AskHumanError):
    """The process is stopping; not a caller mistake."""

    def __init__(self, message: str = "server is shutting down"):
        super().__init__(message)


class WatchInitError(AskHumanError):
    """The artifact location could not be watched."""

    def __init__(self, path: Path | str, *, detail: str | None = None):
        self.path = Path(path)
        self.detail = detail
        super().__init__(self.__str__())

    def __str__(self) -> str:
        detail = (self.detail or "").strip()
        if detail:
            return f"cannot watch {self.path}: {detail}"
        return f"cannot watch {self.path}"
