"""Single-flight guard for the periodic actors (mailbox sync, queue producer, queue consumer)."""
from __future__ import annotations

import enum
import logging
import threading
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger("inboxpay.scheduling")


class ActorState(str, enum.Enum):
    idle = "idle"
    running = "running"


class ActorGuard:
    """Idle -> Running -> Idle. A trigger that finds the actor Running is skipped, not queued."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def state(self) -> ActorState:
        return ActorState.running if self.running else ActorState.idle

    @contextmanager
    def try_run(self) -> Iterator[bool]:
        acquired = self._lock.acquire(blocking=False)
        if not acquired:
            logger.info("actor busy, skipping trigger actor=%s", self.name)
            yield False
            return
        try:
            yield True
        finally:
            self._lock.release()
