"""Markdown layout of the shared ask file.

The file is an append-only sequence of question blocks separated by a
horizontal rule. A block starts with a ``### <id>`` header and carries
``**Timestamp:**``, ``**Question:**``, ``**Context:**`` and ``**Answer:**``
fields. The answer holds ``PENDING`` until a human replaces it.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

PENDING_SENTINEL = "PENDING"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_ANSWER_MARKER_RE = re.compile(r"^\*\*Answer:\*\*", re.IGNORECASE | re.MULTILINE)
_QUESTION_MARKER = "**Question:**"

# A block ends at the next header or at a horizontal rule line.
_BLOCK_END_RE = re.compile(r"^(?:###\s|---\s*$)", re.MULTILINE)

# Continuation lines of user text that would read as a header, a rule or an
# answer field. They get one leading space so only our own lines start that way.
_STRUCTURAL_LINE_RE = re.compile(r"(?<=\n)(?=###\s|---|\*\*Answer:\*\*)", re.IGNORECASE)


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def format_timestamp(when: datetime | None = None) -> str:
    return (when or datetime.now()).strftime(TIMESTAMP_FORMAT)


def escape_field(text: str) -> str:
    """Indent continuation lines that would otherwise end the block early."""
    return _STRUCTURAL_LINE_RE.sub(" ", text)


def format_question_block(
    question_id: str, question: str, context: str, timestamp: str
) -> str:
    question = escape_field(question)
    context = escape_field(context)
    return (
        f"\n---\n\n### {question_id}\n\n"
        f"**Timestamp:** {timestamp}  \n"
        f"**Question:** {question}  \n"
        f"**Context:** {context}  \n"
        f"**Answer:** {PENDING_SENTINEL}\n\n"
    )


def format_header(ask_file: Path, started: str) -> str:
    return (
        "# Ask Human Q&A Session\n\n"
        "This file is used by the ask-human server to pass questions from AI "
        "agents to a human.\n\n"
        "**Instructions:**\n"
        f"1. AI agents will add questions below with \"Answer: {PENDING_SENTINEL}\"\n"
        f"2. Replace \"{PENDING_SENTINEL}\" with your actual answer\n"
        "3. The AI will automatically pick up your response\n\n"
        f"**File:** {ask_file}\n"
        f"**Started:** {started}\n\n"
        "---\n\n"
    )


def _find_block(text: str, question_id: str) -> str | None:
    """Return the body of the block for question_id, header excluded."""
    header = re.compile(
        rf"^###[ \t]+{re.escape(question_id)}[ \t]*$", re.IGNORECASE | re.MULTILINE
    )
    match = header.search(text)
    if match is None:
        return None
    start = match.end()
    end_match = _BLOCK_END_RE.search(text, start + 1)
    end = end_match.start() if end_match else len(text)
    return text[start:end]


def find_answer(text: str, question_id: str) -> tuple[str, bool]:
    """Extract the human's answer for question_id.

    Returns (answer, True) once the answer field holds anything other than the
    pending sentinel, including an empty field. A missing block or a block
    without an answer field is a normal transient state and yields ("", False).
    """
    block = _find_block(normalize_line_endings(text or ""), question_id)
    if block is None:
        return "", False

    marker = _ANSWER_MARKER_RE.search(block)
    if marker is None:
        return "", False

    answer = block[marker.end():].strip()
    if answer.lower() == PENDING_SENTINEL.lower():
        return "", False
    return answer, True


def find_question_text(text: str, question_id: str) -> str:
    block = _find_block(normalize_line_endings(text or ""), question_id)
    if block is None:
        return ""
    for line in block.splitlines():
        if line.startswith(_QUESTION_MARKER):
            return line[len(_QUESTION_MARKER):].strip()
    return ""
