"""Pytest fixtures for ask-human tests."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

import pytest

from askhuman.config import RendezvousConfig


@pytest.fixture
def ask_file(tmp_path: Path) -> Path:
    return tmp_path / "ask_human.md"


@pytest.fixture
def fast_config(ask_file: Path) -> RendezvousConfig:
    """Short timeouts so wait-loop tests finish quickly."""
    return RendezvousConfig(
        ask_file=ask_file,
        timeout_s=5.0,
        max_question_bytes=1024,
        max_context_bytes=2048,
        max_pending=10,
        sweep_interval_s=60.0,
        poll_interval_s=0.05,
    )


def write_answer(path: Path, question_id: str, answer: str) -> None:
    """Simulate a human replacing PENDING in one question's block."""
    text = path.read_text(encoding="utf-8")
    pattern = re.compile(
        rf"(^###[ \t]+{re.escape(question_id)}[ \t]*\n.*?^\*\*Answer:\*\*[ \t]*)PENDING",
        re.DOTALL | re.MULTILINE,
    )
    updated, n = pattern.subn(lambda m: m.group(1) + answer, text, count=1)
    assert n == 1, f"no pending block for {question_id}"
    path.write_text(updated, encoding="utf-8")


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
