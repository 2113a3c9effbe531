"""Ports for the rendezvous coordinator.

These interfaces keep the coordinator independent of the concrete file store
and filesystem watcher, so either can be swapped (or faked in tests).
"""

from __future__ import annotations

import asyncio
from typing import Protocol


class ArtifactStorePort(Protocol):
    def read(self) -> str: ...

    def size(self) -> int: ...

    def ensure_initialized(self) -> bool: ...

    def append_question_block(
        self, question_id: str, question: str, context: str, timestamp: str
    ) -> None: ...


class SignalChannel(Protocol):
    @property
    def closed(self) -> bool: ...

    async def wait(self) -> bool: ...


class NotifierPort(Protocol):
    def subscribe(self, question_id: str) -> SignalChannel: ...

    def unsubscribe(self, question_id: str) -> bool: ...

    def is_subscribed(self, question_id: str) -> bool: ...

    def notify_all(self) -> int: ...

    def start(self, stop_event: asyncio.Event | None = None) -> None: ...

    async def close(self) -> None: ...
