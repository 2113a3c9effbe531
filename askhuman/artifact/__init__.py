from __future__ import annotations

from .format import (
    PENDING_SENTINEL,
    find_answer,
    find_question_text,
    format_question_block,
    format_timestamp,
)
from .store import ArtifactStore, FileLock

__all__ = [
    "PENDING_SENTINEL",
    "ArtifactStore",
    "FileLock",
    "find_answer",
    "find_question_text",
    "format_question_block",
    "format_timestamp",
]
