"""In-process analysis queue.

A bounded FIFO of unanalyzed messages fed by a producer (storage scan) and
drained by a consumer (AnalysisEngine, small batches). Each actor has its own
ActorGuard, so a trigger that arrives while it is busy is skipped. Nothing is
persisted: a restart just lets the producer find the same unanalyzed rows.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from inboxpay.config import settings
from inboxpay.db import SessionLocal
from inboxpay.models import Email, utcnow
from inboxpay.scheduling import ActorGuard
from inboxpay.services.analysis import AnalysisEngine

logger = logging.getLogger("inboxpay.services.analysis_queue")


@dataclass
class QueueItem:
    message_id: int
    owner_id: int
    enqueued_at: datetime

    def to_dict(self) -> dict:
        return {"message_id": self.message_id, "owner_id": self.owner_id, "enqueued_at": self.enqueued_at.isoformat()}


@dataclass
class ProducerResult:
    ran: bool
    added: int = 0


@dataclass
class ConsumerResult:
    ran: bool
    processed: int = 0
    payments: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class AnalysisQueue:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        engine_factory: Callable[[Session], AnalysisEngine] = AnalysisEngine,
        max_size: int | None = None,
        producer_limit: int | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.engine_factory = engine_factory
        self.max_size = max_size or settings.ANALYSIS_QUEUE_MAX_SIZE
        self.producer_limit = producer_limit or settings.ANALYSIS_PRODUCER_PAGE_LIMIT
        self.batch_size = batch_size or settings.ANALYSIS_CONSUMER_BATCH_SIZE
        self._items: deque[QueueItem] = deque()
        self.producer_guard = ActorGuard("analysis_producer")
        self.consumer_guard = ActorGuard("analysis_consumer")

    def __len__(self) -> int:
        return len(self._items)

    def queued_ids(self) -> set[int]:
        return {i.message_id for i in self._items}

    def enqueue(self, pairs: Iterable[tuple[int, int]]) -> int:
        """Append (message_id, owner_id) pairs not already queued; stops when full."""
        queued = self.queued_ids()
        added = 0
        for message_id, owner_id in pairs:
            if message_id in queued:
                continue
            if len(self._items) >= self.max_size:
                logger.warning("analysis queue full max_size=%s dropped_from=%s", self.max_size, message_id)
                break
            self._items.append(QueueItem(message_id=message_id, owner_id=owner_id, enqueued_at=utcnow()))
            queued.add(message_id)
            added += 1
        return added

    def enqueue_messages(self, db: Session, message_ids: list[int], owner_id: int | None = None) -> int:
        stmt = select(Email.id, Email.user_id).where(Email.id.in_(message_ids))
        if owner_id is not None:
            stmt = stmt.where(Email.user_id == owner_id)
        rows = {mid: uid for mid, uid in db.execute(stmt).all()}
        # keep the caller's order
        return self.enqueue((mid, rows[mid]) for mid in message_ids if mid in rows)

    def clear(self) -> int:
        n = len(self._items)
        self._items.clear()
        logger.info("analysis queue cleared removed=%s", n)
        return n

    def status(self, peek: int = 10) -> dict:
        return {
            "size": len(self._items),
            "max_size": self.max_size,
            "producer_running": self.producer_guard.running,
            "consumer_running": self.consumer_guard.running,
            "producer_state": self.producer_guard.state.value,
            "consumer_state": self.consumer_guard.state.value,
            "next": [i.to_dict() for i in list(self._items)[:peek]],
        }

    def _produce(self, db: Session) -> int:
        queued = self.queued_ids()
        stmt = select(Email.id, Email.user_id).where(Email.analyzed_at.is_(None))
        if queued:
            stmt = stmt.where(Email.id.not_in(queued))
        rows = db.execute(stmt.order_by(Email.received_at.desc(), Email.id.desc()).limit(self.producer_limit)).all()
        return self.enqueue((mid, uid) for mid, uid in rows)

    async def run_producer(self) -> ProducerResult:
        with self.producer_guard.try_run() as acquired:
            if not acquired:
                return ProducerResult(ran=False)
            db = self.session_factory()
            try:
                added = self._produce(db)
            finally:
                db.close()
        if added:
            logger.info("analysis producer added=%s size=%s", added, len(self._items))
        return ProducerResult(ran=True, added=added)

    async def run_consumer(self) -> ConsumerResult:
        with self.consumer_guard.try_run() as acquired:
            if not acquired:
                return ConsumerResult(ran=False)
            result = ConsumerResult(ran=True)
            if not self._items:
                return result

            batch = [self._items.popleft() for _ in range(min(self.batch_size, len(self._items)))]
            db = self.session_factory()
            try:
                engine = self.engine_factory(db)
                for item in batch:
                    result.processed += 1
                    try:
                        report = await engine.analyze(item.message_id)
                    except Exception as e:
                        # no re-enqueue: a broken message would otherwise loop forever
                        db.rollback()
                        result.failed += 1
                        logger.warning("analysis consumer item failed message_id=%s error=%s", item.message_id, e)
                        continue
                    if report.is_payment:
                        result.payments += 1
            finally:
                db.close()

        logger.info(
            "analysis consumer processed=%s payments=%s failed=%s remaining=%s",
            result.processed,
            result.payments,
            result.failed,
            len(self._items),
        )
        return result


class QueueScheduler:
    """Runs the producer and consumer on fixed intervals inside the API's event loop."""

    def __init__(
        self,
        queue: AnalysisQueue,
        *,
        producer_interval: float | None = None,
        consumer_interval: float | None = None,
    ):
        self.queue = queue
        self.producer_interval = producer_interval or settings.ANALYSIS_PRODUCER_INTERVAL_SECONDS
        self.consumer_interval = consumer_interval or settings.ANALYSIS_CONSUMER_INTERVAL_SECONDS
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._loop("producer", self.queue.run_producer, self.producer_interval)),
            asyncio.create_task(self._loop("consumer", self.queue.run_consumer, self.consumer_interval)),
        ]
        logger.info(
            "analysis queue loops started producer_every=%ss consumer_every=%ss",
            self.producer_interval,
            self.consumer_interval,
        )

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("analysis queue loops stopped")

    async def _loop(self, name: str, fn, interval: float) -> None:
        while True:
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("analysis queue %s tick failed", name)
            await asyncio.sleep(interval)


analysis_queue = AnalysisQueue()
