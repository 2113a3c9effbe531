"""Change notifications for the ask file.

A watchdog observer watches the file's parent directory (the file itself may
not exist yet). Its thread forwards raw events to the event loop, where a
single watch task filters them down to writes/creations of the ask file and
wakes every subscriber.

Signals carry no payload. Subscribers re-read the file to learn what changed,
so a coalesced or lost signal only delays an answer until the next one (or
the waiter's own periodic check).
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from askhuman.errors import WatchInitError

log = logging.getLogger("notifier")

_HEALTH_CHECK_INTERVAL_S = 5.0


def _normalize(path: str | bytes | os.PathLike) -> str:
    return os.path.normcase(os.path.realpath(os.fsdecode(path)))


class Subscription:
    """Single-slot signal channel for one waiting question.

    Offering into a full slot is a no-op, so repeated signals coalesce.
    """

    def __init__(self, question_id: str):
        self.question_id = question_id
        self._slot: asyncio.Queue[None] = asyncio.Queue(maxsize=1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self) -> bool:
        if self._closed:
            return False
        try:
            self._slot.put_nowait(None)
        except asyncio.QueueFull:
            return False
        return True

    async def wait(self) -> bool:
        """Wait for a signal. Returns False once the subscription is closed."""
        if self._closed:
            return False
        await self._slot.get()
        return not self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._slot.put_nowait(None)
        except asyncio.QueueFull:
            pass


class _ForwardingHandler(FileSystemEventHandler):
    def __init__(self, forward):
        super().__init__()
        self._forward = forward

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._forward(event)


class ChangeNotifier:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._target = _normalize(self.path.absolute())
        self._watch_dir = self.path.absolute().parent

        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[FileSystemEvent] | None = None
        self._observer: Observer | None = None
        self._task: asyncio.Task | None = None

    # -- subscriptions -------------------------------------------------------

    def subscribe(self, question_id: str) -> Subscription:
        sub = Subscription(question_id)
        with self._lock:
            previous = self._subscriptions.get(question_id)
            self._subscriptions[question_id] = sub
        if previous is not None:
            previous.close()
        return sub

    def unsubscribe(self, question_id: str) -> bool:
        with self._lock:
            sub = self._subscriptions.pop(question_id, None)
        if sub is None:
            return False
        sub.close()
        return True

    def is_subscribed(self, question_id: str) -> bool:
        with self._lock:
            return question_id in self._subscriptions

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def notify_all(self) -> int:
        """Signal every subscriber without blocking. Returns how many took it."""
        with self._lock:
            subs = list(self._subscriptions.values())
        delivered = 0
        for sub in subs:
            if sub.offer():
                delivered += 1
        return delivered

    # -- watching ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _forward(self, item: FileSystemEvent) -> None:
        # Runs on the observer thread.
        loop = self._loop
        events = self._events
        if loop is None or events is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(events.put_nowait, item)
        except RuntimeError:
            # Loop closed between the check and the call.
            pass

    def _start_observer(self) -> Observer:
        observer = Observer()
        observer.schedule(
            _ForwardingHandler(self._forward), str(self._watch_dir), recursive=False
        )
        observer.start()
        return observer

    def _stop_observer(self) -> None:
        observer = self._observer
        self._observer = None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=2.0)
        except Exception as e:
            log.warning(f"Error while stopping file watcher: {e}")

    def start(self, stop_event: asyncio.Event | None = None) -> None:
        """Begin watching. Raises WatchInitError if the watch cannot be set up."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        try:
            self._observer = self._start_observer()
        except Exception as e:
            self._events = None
            raise WatchInitError(self._watch_dir, detail=str(e)) from e

        log.info(f"Watching {self._watch_dir} for changes to {self.path.name}")
        self._task = asyncio.create_task(self._watch_loop(stop_event or asyncio.Event()))

    def _matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        if event.event_type in (EVENT_TYPE_MODIFIED, EVENT_TYPE_CREATED):
            return _normalize(event.src_path) == self._target
        if event.event_type == EVENT_TYPE_MOVED:
            # Atomic saves land as a rename onto the ask file.
            dest = getattr(event, "dest_path", "")
            return bool(dest) and _normalize(dest) == self._target
        return False

    def _check_observer(self) -> None:
        observer = self._observer
        if observer is not None and observer.is_alive():
            return
        log.warning("File watcher stopped unexpectedly; restarting")
        self._stop_observer()
        try:
            self._observer = self._start_observer()
        except Exception as e:
            log.warning(f"File watcher restart failed, relying on polling: {e}")

    async def _watch_loop(self, stop_event: asyncio.Event) -> None:
        assert self._events is not None
        stop_task = asyncio.ensure_future(stop_event.wait())
        get_task: asyncio.Future | None = None
        try:
            while True:
                get_task = asyncio.ensure_future(self._events.get())
                done, _ = await asyncio.wait(
                    {get_task, stop_task},
                    timeout=_HEALTH_CHECK_INTERVAL_S,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if stop_task in done:
                    return
                if get_task not in done:
                    get_task.cancel()
                    self._check_observer()
                    continue

                item = get_task.result()
                if self._matches(item):
                    log.debug(f"{item.event_type} on {self.path.name}, notifying")
                    self.notify_all()
        except asyncio.CancelledError:
            pass
        finally:
            stop_task.cancel()
            if get_task is not None:
                get_task.cancel()
            self._stop_observer()

    async def close(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._stop_observer()
        self._events = None
