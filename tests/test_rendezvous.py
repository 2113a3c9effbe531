"""Tests for RendezvousCoordinator.ask and its bookkeeping."""

import asyncio
import dataclasses
import threading
from pathlib import Path

import pytest

from askhuman.artifact import ArtifactStore
from askhuman.config import RendezvousConfig
from askhuman.errors import (
    ArtifactIOError,
    ArtifactTooLargeError,
    InputValidationError,
    LockContentionError,
    QuestionTimeoutError,
    ShutdownError,
    TooManyPendingError,
)
from askhuman.rendezvous import RendezvousCoordinator, sanitize_input

from conftest import wait_for, write_answer


async def _start_ask(coord: RendezvousCoordinator, question: str, context: str = ""):
    """Start an ask in the background and return (task, question_id)."""
    before = set(coord.registry.snapshot())
    task = asyncio.ensure_future(coord.ask(question, context))
    await wait_for(lambda: len(set(coord.registry.snapshot()) - before) == 1 or task.done())
    if task.done():
        task.result()
    (question_id,) = set(coord.registry.snapshot()) - before
    return task, question_id


class FlakyStore(ArtifactStore):
    """Store whose first few reads fail like a half-saved file."""

    def __init__(self, path: Path, failures: int):
        super().__init__(path)
        self.failures = failures

    def read(self) -> str:
        if self.failures > 0:
            self.failures -= 1
            raise ArtifactIOError("temporarily unreadable", path=self.path)
        return super().read()


class ThreadRecordingStore(ArtifactStore):
    """Store that remembers which threads read it."""

    def __init__(self, path: Path):
        super().__init__(path)
        self.read_threads = set()

    def read(self) -> str:
        self.read_threads.add(threading.get_ident())
        return super().read()


class PreAnsweredStore(ArtifactStore):
    """Store that behaves as if the human answered during the append."""

    def append_question_block(self, question_id, question, context, timestamp):
        super().append_question_block(question_id, question, context, timestamp)
        write_answer(self.path, question_id, "already here")


class TestAskAnswered:
    @pytest.mark.asyncio
    async def test_pick_a_color(self, fast_config: RendezvousConfig):
        """The human's edit is returned to the caller."""
        coord = RendezvousCoordinator(fast_config)
        try:
            task, qid = await _start_ask(coord, "pick a color", "")
            assert qid.startswith("Q") and len(qid) == 9
            text = fast_config.ask_file.read_text()
            assert f"### {qid}" in text
            assert "**Answer:** PENDING" in text

            write_answer(fast_config.ask_file, qid, "  blue  ")
            assert await asyncio.wait_for(task, 5) == "blue"
            assert coord.registry.count() == 0
            assert not coord.notifier.is_subscribed(qid)
            assert coord.total_answered == 1
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_answer_via_file_notification(self, fast_config: RendezvousConfig):
        """With a slow poll, the watcher signal alone delivers the answer."""
        config = dataclasses.replace(fast_config, poll_interval_s=30.0, timeout_s=20.0)
        coord = RendezvousCoordinator(config)
        await coord.start()
        try:
            task, qid = await _start_ask(coord, "ship it?")
            # Let the watcher drain the events from our own append first.
            await asyncio.sleep(0.2)
            ArtifactStore(config.ask_file).write(
                config.ask_file.read_text().replace("**Answer:** PENDING", "**Answer:** yes")
            )
            assert await asyncio.wait_for(task, 10) == "yes"
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_answer_present_right_after_append(self, fast_config: RendezvousConfig):
        """An answer that lands before the first wait is picked up immediately."""
        config = dataclasses.replace(fast_config, poll_interval_s=30.0)
        coord = RendezvousCoordinator(config, store=PreAnsweredStore(config.ask_file))
        try:
            assert await asyncio.wait_for(coord.ask("q"), 5) == "already here"
            assert coord.registry.count() == 0
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_transient_read_errors_are_absorbed(self, fast_config: RendezvousConfig):
        """Read failures while waiting just mean 'check again later'."""
        store = FlakyStore(fast_config.ask_file, failures=0)
        coord = RendezvousCoordinator(fast_config, store=store)
        try:
            task, qid = await _start_ask(coord, "q")
            store.failures = 3
            write_answer(fast_config.ask_file, qid, "fine")
            assert await asyncio.wait_for(task, 5) == "fine"
            assert store.failures == 0
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_concurrent_asks_are_independent(self, fast_config: RendezvousConfig):
        """Each call gets its own id and its own answer."""
        coord = RendezvousCoordinator(fast_config)
        try:
            task1, qid1 = await _start_ask(coord, "first?")
            task2, qid2 = await _start_ask(coord, "second?")
            assert qid1 != qid2
            assert coord.registry.count() == 2

            write_answer(fast_config.ask_file, qid2, "two")
            assert await asyncio.wait_for(task2, 5) == "two"
            assert coord.registry.count() == 1
            assert not task1.done()

            write_answer(fast_config.ask_file, qid1, "one")
            assert await asyncio.wait_for(task1, 5) == "one"
            assert coord.registry.count() == 0
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_sweep_race_is_not_double_counted(self, fast_config: RendezvousConfig):
        """An entry swept mid-wait still resolves cleanly when answered."""
        coord = RendezvousCoordinator(fast_config)
        try:
            task, qid = await _start_ask(coord, "q")
            assert coord.registry.sweep_expired(0.0) == [qid]
            write_answer(fast_config.ask_file, qid, "late")
            assert await asyncio.wait_for(task, 5) == "late"
            assert coord.registry.count() == 0
        finally:
            await coord.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "context",
        [
            "a\n---\nb",
            "notes\n### Steps\n1. run it",
            "log\n**Answer:** not from the human",
        ],
    )
    async def test_markdown_in_context_keeps_block_intact(
        self, fast_config: RendezvousConfig, context: str
    ):
        """Rules, headings and answer-like lines in context still get answered."""
        coord = RendezvousCoordinator(fast_config)
        try:
            task, qid = await _start_ask(coord, "review this", context)
            await asyncio.sleep(0.1)
            assert not task.done()
            write_answer(fast_config.ask_file, qid, "blue")
            assert await asyncio.wait_for(task, 5) == "blue"
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_blank_answer_is_returned(self, fast_config: RendezvousConfig):
        """Clearing the answer field returns an empty reply instead of waiting."""
        coord = RendezvousCoordinator(fast_config)
        try:
            task, qid = await _start_ask(coord, "anything to add?")
            write_answer(fast_config.ask_file, qid, "")
            assert await asyncio.wait_for(task, 5) == ""
            assert coord.total_answered == 1
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_lone_surrogate_is_dropped(self, fast_config: RendezvousConfig):
        """Unencodable characters are removed rather than failing the write."""
        coord = RendezvousCoordinator(fast_config)
        try:
            task, qid = await _start_ask(coord, "bad \ud800 text", "ctx \udfff")
            text = fast_config.ask_file.read_text(encoding="utf-8")
            assert "**Question:** bad  text" in text
            write_answer(fast_config.ask_file, qid, "ok")
            assert await asyncio.wait_for(task, 5) == "ok"
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_answer_checks_read_off_the_event_loop(self, fast_config: RendezvousConfig):
        """Re-reading the ask file while waiting runs in a worker thread."""
        store = ThreadRecordingStore(fast_config.ask_file)
        coord = RendezvousCoordinator(fast_config, store=store)
        try:
            task, qid = await _start_ask(coord, "q")
            write_answer(fast_config.ask_file, qid, "done")
            assert await asyncio.wait_for(task, 5) == "done"
            assert store.read_threads
            assert threading.get_ident() not in store.read_threads
        finally:
            await coord.close()


class TestAskFailures:
    @pytest.mark.asyncio
    async def test_timeout(self, fast_config: RendezvousConfig):
        """No answer within the timeout raises and leaves no residue."""
        config = dataclasses.replace(fast_config, timeout_s=0.2)
        coord = RendezvousCoordinator(config)
        try:
            with pytest.raises(QuestionTimeoutError) as excinfo:
                await asyncio.wait_for(coord.ask("anyone?"), 5)
            assert excinfo.value.question_id.startswith("Q")
            assert excinfo.value.timeout_s == 0.2
            assert excinfo.value.question_id in str(excinfo.value)
            assert coord.registry.count() == 0
            assert coord.total_timed_out == 1
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_too_many_pending(self, fast_config: RendezvousConfig):
        """At capacity, a new ask is refused without touching the file."""
        config = dataclasses.replace(fast_config, max_pending=1)
        coord = RendezvousCoordinator(config)
        try:
            task, _ = await _start_ask(coord, "first")
            before = config.ask_file.read_text()
            with pytest.raises(TooManyPendingError) as excinfo:
                await coord.ask("second")
            assert excinfo.value.limit == 1
            assert config.ask_file.read_text() == before
            assert coord.registry.count() == 1
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_unwritable_location(self, tmp_path: Path, fast_config: RendezvousConfig):
        """A failed append surfaces ArtifactIOError and changes no counts."""
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        config = dataclasses.replace(fast_config, ask_file=blocker / "ask.md")
        coord = RendezvousCoordinator(config)
        try:
            with pytest.raises(ArtifactIOError):
                await coord.ask("hello?")
            assert coord.registry.count() == 0
            assert coord.notifier.subscriber_count() == 0
            assert coord.total_asked == 0
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_lock_contention(self, fast_config: RendezvousConfig):
        """A held append lock is reported to the caller."""
        coord = RendezvousCoordinator(fast_config)
        lock_path = fast_config.ask_file.with_name(fast_config.ask_file.name + ".lock")
        lock_path.write_text("1")
        try:
            with pytest.raises(LockContentionError):
                await coord.ask("hello?")
            assert coord.registry.count() == 0
            assert coord.notifier.subscriber_count() == 0
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_artifact_too_large(self, fast_config: RendezvousConfig):
        """An oversized ask file refuses new questions."""
        config = dataclasses.replace(fast_config, max_file_bytes=10)
        config.ask_file.write_text("x" * 100)
        coord = RendezvousCoordinator(config)
        try:
            with pytest.raises(ArtifactTooLargeError):
                await coord.ask("hello?")
            assert config.ask_file.read_text() == "x" * 100
            assert coord.notifier.subscriber_count() == 0
        finally:
            await coord.close()

    @pytest.mark.asyncio
    async def test_question_too_long(self, fast_config: RendezvousConfig):
        """Oversized questions are rejected before anything is written."""
        coord = RendezvousCoordinator(fast_config)
        with pytest.raises(InputValidationError) as excinfo:
            await coord.ask("x" * (fast_config.max_question_bytes + 1))
        assert excinfo.value.field == "Question"
        assert not fast_config.ask_file.exists()
        await coord.close()

    @pytest.mark.asyncio
    async def test_context_too_long(self, fast_config: RendezvousConfig):
        """Oversized context gets its own field in the error."""
        coord = RendezvousCoordinator(fast_config)
        with pytest.raises(InputValidationError) as excinfo:
            await coord.ask("ok", "y" * (fast_config.max_context_bytes + 1))
        assert excinfo.value.field == "Context"
        assert coord.registry.count() == 0
        await coord.close()


class TestShutdownAndCancel:
    @pytest.mark.asyncio
    async def test_close_releases_waiters(self, fast_config: RendezvousConfig):
        """Closing the coordinator ends every wait with ShutdownError."""
        config = dataclasses.replace(fast_config, poll_interval_s=30.0)
        coord = RendezvousCoordinator(config)
        task, _ = await _start_ask(coord, "still there?")
        await coord.close()
        with pytest.raises(ShutdownError):
            await asyncio.wait_for(task, 5)
        assert coord.registry.count() == 0
        assert coord.notifier.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_ask_after_close(self, fast_config: RendezvousConfig):
        """New questions are refused once shutdown started."""
        coord = RendezvousCoordinator(fast_config)
        await coord.close()
        with pytest.raises(ShutdownError):
            await coord.ask("hello?")
        assert not fast_config.ask_file.exists()

    @pytest.mark.asyncio
    async def test_caller_cancellation_cleans_up(self, fast_config: RendezvousConfig):
        """Cancelling the caller removes the entry and the subscription."""
        coord = RendezvousCoordinator(fast_config)
        try:
            task, qid = await _start_ask(coord, "q")
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert coord.registry.count() == 0
            assert not coord.notifier.is_subscribed(qid)
        finally:
            await coord.close()


class TestListingAndStats:
    @pytest.mark.asyncio
    async def test_list_pending_and_stats(self, fast_config: RendezvousConfig):
        """Pending questions are listed with their text; counters add up."""
        coord = RendezvousCoordinator(fast_config)
        try:
            assert coord.list_pending() == []
            assert coord.stats().answer_rate is None

            task1, qid1 = await _start_ask(coord, "older question")
            await asyncio.sleep(0.05)
            task2, qid2 = await _start_ask(coord, "newer question")

            pending = coord.list_pending()
            assert [p.id for p in pending] == [qid1, qid2]
            assert pending[0].question == "older question"

            write_answer(fast_config.ask_file, qid1, "done")
            await asyncio.wait_for(task1, 5)

            stats = coord.stats()
            assert stats.total_asked == 2
            assert stats.total_answered == 1
            assert stats.pending == 1
            assert stats.answer_rate == 50.0
            assert stats.file_size_bytes == fast_config.ask_file.stat().st_size
            assert stats.to_dict()["ask_file"] == str(fast_config.ask_file)

            task2.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task2
        finally:
            await coord.close()


class TestStartup:
    @pytest.mark.asyncio
    async def test_start_creates_ask_file(self, fast_config: RendezvousConfig):
        """Starting writes the instructions header for a new file."""
        coord = RendezvousCoordinator(fast_config)
        await coord.start()
        try:
            assert "Replace \"PENDING\"" in fast_config.ask_file.read_text()
            assert coord.notifier.running
        finally:
            await coord.close()
        assert not coord.notifier.running


class TestSanitizeInput:
    def test_strips_control_characters(self):
        """Control characters go, newlines and tabs stay."""
        assert sanitize_input("a\x00b\tc\nd\x1b", limit=100, field="Question") == "ab\tc\nd"

    def test_limit_counts_bytes(self):
        """Multi-byte characters count by their UTF-8 size."""
        with pytest.raises(InputValidationError) as excinfo:
            sanitize_input("é" * 3, limit=5, field="Question")
        assert excinfo.value.size == 6

    def test_lone_surrogates_are_stripped(self):
        """Unpaired surrogates are counted, then removed."""
        assert sanitize_input("a\ud800b", limit=100, field="Question") == "ab"
        with pytest.raises(InputValidationError):
            sanitize_input("\udfff", limit=2, field="Context")
