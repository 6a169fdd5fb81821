import asyncio
from datetime import datetime

from inboxpay.models import Email, User
from inboxpay.services.analysis import AnalysisEngine
from inboxpay.services.analysis_queue import AnalysisQueue, QueueScheduler


def _queue(llm, **kwargs) -> AnalysisQueue:
    return AnalysisQueue(engine_factory=lambda s: AnalysisEngine(s, llm=llm), **kwargs)


def test_producer_enqueues_newest_unanalyzed_first_up_to_limit(db, email_factory, llm_factory):
    old = email_factory(received_at=datetime(2026, 1, 1))
    new = email_factory(received_at=datetime(2026, 9, 1))
    middle = email_factory(received_at=datetime(2026, 5, 1))
    email_factory(received_at=datetime(2026, 9, 2), analyzed_at=datetime(2026, 9, 3))
    queue = _queue(llm_factory(), producer_limit=2)

    first = asyncio.run(queue.run_producer())
    second = asyncio.run(queue.run_producer())
    third = asyncio.run(queue.run_producer())

    assert first.ran and first.added == 2
    assert second.added == 1
    assert third.added == 0
    assert [i["message_id"] for i in queue.status()["next"]] == [new.id, middle.id, old.id]


def test_consumer_drains_one_batch_and_does_not_requeue_failures(db, email_factory, llm_factory):
    ok = email_factory(subject="Paid", received_at=datetime(2026, 9, 3))
    broken = email_factory(subject="Broken", received_at=datetime(2026, 9, 2))
    rest = email_factory(subject="Later", received_at=datetime(2026, 9, 1))
    llm = llm_factory({"Paid": {"isPayment": True, "amount": 3, "merchant": "Cafe"}}, fail_subjects=["Broken"])
    queue = _queue(llm, batch_size=2)
    asyncio.run(queue.run_producer())

    result = asyncio.run(queue.run_consumer())

    assert result.to_dict() == {"ran": True, "processed": 2, "payments": 1, "failed": 1}
    assert len(queue) == 1
    assert queue.queued_ids() == {rest.id}
    db.expire_all()
    assert db.get(Email, ok.id).analyzed_at is not None
    assert db.get(Email, broken.id).analyzed_at is None


def test_consumer_on_empty_queue_is_a_noop(db, llm_factory):
    result = asyncio.run(_queue(llm_factory()).run_consumer())

    assert result.ran is True
    assert result.processed == 0


def test_busy_actor_skips_the_trigger(db, email_factory, llm_factory):
    email_factory()
    llm = llm_factory()
    queue = _queue(llm)

    with queue.producer_guard.try_run():
        skipped = asyncio.run(queue.run_producer())
    assert skipped.ran is False
    assert len(queue) == 0

    asyncio.run(queue.run_producer())
    with queue.consumer_guard.try_run():
        assert queue.status()["consumer_running"] is True
        skipped = asyncio.run(queue.run_consumer())
    assert skipped.ran is False
    assert llm.calls == []
    assert len(queue) == 1


def test_enqueue_dedupes_and_respects_max_size(llm_factory):
    queue = _queue(llm_factory(), max_size=3)

    assert queue.enqueue([(1, 1), (2, 1), (1, 1)]) == 2
    assert queue.enqueue([(2, 1), (3, 1), (4, 1), (5, 1)]) == 1
    assert len(queue) == 3
    assert queue.clear() == 3
    assert queue.status()["size"] == 0


def test_enqueue_messages_is_scoped_to_owner(db, user, email_factory, llm_factory):
    other = User(email="other@example.com")
    db.add(other)
    db.commit()
    mine = email_factory()
    theirs = email_factory(owner=other)
    queue = _queue(llm_factory())

    added = queue.enqueue_messages(db, [theirs.id, mine.id, 424242], owner_id=user.id)

    assert added == 1
    assert queue.queued_ids() == {mine.id}
    assert queue.status()["next"][0]["owner_id"] == user.id


def test_scheduler_runs_both_loops_until_stopped(db, llm_factory):
    queue = _queue(llm_factory())
    calls = {"producer": 0, "consumer": 0}

    async def producer():
        calls["producer"] += 1

    async def consumer():
        calls["consumer"] += 1
        raise RuntimeError("tick failure is logged, loop continues")

    queue.run_producer = producer
    queue.run_consumer = consumer
    scheduler = QueueScheduler(queue, producer_interval=0.01, consumer_interval=0.01)

    async def main():
        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.08)
        await scheduler.stop()

    asyncio.run(main())

    assert not scheduler.running
    assert calls["producer"] >= 2
    assert calls["consumer"] >= 2
