"""Rendezvous coordinator.

This is the single place that owns the "ask and wait" operation:
- validation and capacity checks (before any side effect)
- subscribing for change signals before the question is written
- the composite wait (shutdown, timeout, change signal, periodic check)
- cleanup of the pending entry and subscription on every exit

It depends only on ports, not on the concrete store or watcher.
"""

from __future__ import annotations

import asyncio
import logging
import unicodedata
import uuid
from dataclasses import asdict, dataclass

from askhuman.artifact import ArtifactStore, find_answer, find_question_text, format_timestamp
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
from askhuman.notifier import ChangeNotifier
from askhuman.ports import ArtifactStorePort, NotifierPort, SignalChannel
from askhuman.registry import PendingRegistry, RegistrySweeper

log = logging.getLogger("rendezvous")


@dataclass(frozen=True)
class PendingQuestion:
    id: str
    waiting_s: float
    question: str


@dataclass(frozen=True)
class RendezvousStats:
    total_asked: int
    total_answered: int
    total_timed_out: int
    pending: int
    answer_rate: float | None
    ask_file: str
    file_size_bytes: int
    max_pending: int
    timeout_s: float

    def to_dict(self) -> dict:
        return asdict(self)


def sanitize_input(text: str, *, limit: int, field: str) -> str:
    """Enforce the byte limit, then drop control characters except \\n and \\t.

    Lone surrogates cannot be written as UTF-8 and are dropped too.
    """
    size = len(text.encode("utf-8", "surrogatepass"))
    if size > limit:
        raise InputValidationError(field, size=size, limit=limit)
    return "".join(
        ch
        for ch in text
        if ch in "\n\t" or unicodedata.category(ch) not in ("Cc", "Cs")
    )


def _truncate(text: str, max_len: int = 100) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


class RendezvousCoordinator:
    def __init__(
        self,
        config: RendezvousConfig,
        *,
        store: ArtifactStorePort | None = None,
        notifier: NotifierPort | None = None,
        registry: PendingRegistry | None = None,
    ):
        self.config = config
        self.store = store or ArtifactStore(config.ask_file, lock_stale_s=config.lock_stale_s)
        self.notifier = notifier or ChangeNotifier(config.ask_file)
        self.registry = registry or PendingRegistry()
        self._sweeper = RegistrySweeper(self.registry, max_age_s=config.timeout_s)
        self._shutdown = asyncio.Event()

        self.total_asked = 0
        self.total_answered = 0
        self.total_timed_out = 0

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    async def start(self) -> None:
        """Create the ask file if needed, then start watching and sweeping.

        Raises WatchInitError if the file's directory cannot be watched.
        """
        self.store.ensure_initialized()
        self.notifier.start(self._shutdown)
        self._sweeper.start(interval_s=self.config.sweep_interval_s)

    async def close(self) -> None:
        """Release every waiter with ShutdownError and stop background tasks."""
        self._shutdown.set()
        await self._sweeper.stop()
        await self.notifier.close()

    def _new_question_id(self) -> str:
        while True:
            question_id = f"Q{uuid.uuid4().hex[:8]}"
            if not self.registry.contains(question_id) and not self.notifier.is_subscribed(
                question_id
            ):
                return question_id

    def _check_artifact_size(self) -> None:
        size = self.store.size()
        if size > self.config.max_file_bytes:
            raise ArtifactTooLargeError(
                size, limit=self.config.max_file_bytes, path=self.config.ask_file
            )

    async def _check_for_answer(self, question_id: str) -> str | None:
        try:
            content = await asyncio.to_thread(self.store.read)
        except ArtifactIOError as e:
            # The file can be briefly unreadable while an editor saves it.
            log.debug(f"Read failed while waiting for {question_id}: {e}")
            return None
        answer, found = find_answer(content, question_id)
        return answer if found else None

    def _timed_out(self, question_id: str) -> QuestionTimeoutError:
        self.registry.remove(question_id)
        self.total_timed_out += 1
        log.info(f"Question {question_id} timed out after {self.config.timeout_s:g}s")
        return QuestionTimeoutError(question_id, timeout_s=self.config.timeout_s)

    async def _wait_for_answer(self, question_id: str, subscription: SignalChannel) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.timeout_s
        poll_s = self.config.poll_interval_s

        shutdown_task = asyncio.ensure_future(self._shutdown.wait())
        signal_task: asyncio.Future = asyncio.ensure_future(subscription.wait())
        try:
            # The answer may already be there if it landed right after the append.
            answer = await self._check_for_answer(question_id)
            while answer is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._timed_out(question_id)

                done, _ = await asyncio.wait(
                    {shutdown_task, signal_task},
                    timeout=min(poll_s, remaining),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if shutdown_task in done:
                    self.registry.remove(question_id)
                    raise ShutdownError()
                if signal_task in done:
                    if subscription.closed:
                        # Nothing more will arrive; keep going on the periodic check.
                        signal_task = loop.create_future()
                    else:
                        signal_task = asyncio.ensure_future(subscription.wait())
                elif loop.time() >= deadline:
                    raise self._timed_out(question_id)

                answer = await self._check_for_answer(question_id)
            return answer
        finally:
            shutdown_task.cancel()
            signal_task.cancel()

    async def ask(self, question: str, context: str = "") -> str:
        """Write the question to the ask file and wait for the human's answer."""
        question = sanitize_input(
            question, limit=self.config.max_question_bytes, field="Question"
        )
        context = sanitize_input(
            context or "", limit=self.config.max_context_bytes, field="Context"
        )
        if self._shutdown.is_set():
            raise ShutdownError()
        pending = self.registry.count()
        if pending >= self.config.max_pending:
            raise TooManyPendingError(pending, limit=self.config.max_pending)

        question_id = self._new_question_id()
        # Subscribe before writing so a fast answer cannot slip past us.
        subscription = self.notifier.subscribe(question_id)
        try:
            self._check_artifact_size()
            self.store.append_question_block(
                question_id, question, context, format_timestamp()
            )
        except (ArtifactIOError, LockContentionError):
            self.notifier.unsubscribe(question_id)
            raise
        self.registry.register(question_id)
        self.total_asked += 1

        log.info(f"New question: {question_id}")
        log.info(f"   Question: {_truncate(question)}")
        log.info(f"   Context: {_truncate(context)}")
        log.info(f"   Edit {self.config.ask_file} and replace PENDING with your answer")

        try:
            answer = await self._wait_for_answer(question_id, subscription)
        except asyncio.CancelledError:
            log.info(f"Question {question_id} cancelled by caller")
            raise
        finally:
            self.registry.remove(question_id)
            self.notifier.unsubscribe(question_id)

        self.total_answered += 1
        log.info(f"Got answer for {question_id}")
        return answer

    def list_pending(self) -> list[PendingQuestion]:
        waiting = self.registry.snapshot()
        if not waiting:
            return []
        content = self.store.read()
        oldest_first = sorted(waiting.items(), key=lambda item: item[1], reverse=True)
        return [
            PendingQuestion(
                id=qid,
                waiting_s=round(waiting_s, 1),
                question=find_question_text(content, qid),
            )
            for qid, waiting_s in oldest_first
        ]

    def stats(self) -> RendezvousStats:
        try:
            file_size = self.store.size()
        except ArtifactIOError:
            file_size = 0
        answer_rate = None
        if self.total_asked:
            answer_rate = round(self.total_answered / self.total_asked * 100, 1)
        return RendezvousStats(
            total_asked=self.total_asked,
            total_answered=self.total_answered,
            total_timed_out=self.total_timed_out,
            pending=self.registry.count(),
            answer_rate=answer_rate,
            ask_file=str(self.config.ask_file),
            file_size_bytes=file_size,
            max_pending=self.config.max_pending,
            timeout_s=self.config.timeout_s,
        )
