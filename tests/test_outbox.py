"""Outbox publisher and event dispatch tests, with an in-memory bus."""

import asyncio
import json
from types import SimpleNamespace

from aiokafka.structs import TopicPartition
from sqlalchemy import select

from nunaa.common.errors import StorageUnavailable
from nunaa.common.events import EventEnvelope, dispatch_event, process_batch
from nunaa.common.logging import account_id_ctx, event_id_ctx, log_context, trace_id_ctx
from nunaa.common.outbox import OutboxEvent, OutboxPublisher, enqueue_event


class FakeBus:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published = []

    async def publish(self, topic, event):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.published.append((topic, event))


def stage(session_factory, producer: str, event_type: str) -> str:
    event = EventEnvelope(event_type=event_type, aggregate_id="agg-1", payload={"account_id": "acc-1"})
    with session_factory() as db:
        enqueue_event(db, producer, "test", event)
        db.commit()
    return event.event_id


def statuses(session_factory) -> dict[str, str]:
    with session_factory() as db:
        rows = db.execute(select(OutboxEvent)).scalars().all()
    return {row.event_type: row.status for row in rows}


def test_publisher_ships_only_its_own_rows(session_factory):
    event_id = stage(session_factory, "billing", "billing.access.granted")
    stage(session_factory, "wallet", "wallet.transfer.completed")
    bus = FakeBus()

    sent = asyncio.run(OutboxPublisher(session_factory, "billing", bus=bus).publish_pending())

    assert sent == 1
    [(topic, event)] = bus.published
    assert topic == "billing.access.granted"
    assert event.event_id == event_id
    assert statuses(session_factory) == {
        "billing.access.granted": "SENT",
        "wallet.transfer.completed": "PENDING",
    }


def test_failed_publish_is_requeued(session_factory):
    stage(session_factory, "wallet", "wallet.exchange.completed")

    sent = asyncio.run(OutboxPublisher(session_factory, "wallet", bus=FakeBus(fail=True)).publish_pending())

    assert sent == 0
    assert statuses(session_factory) == {"wallet.exchange.completed": "PENDING"}
    assert asyncio.run(OutboxPublisher(session_factory, "wallet", bus=FakeBus()).publish_pending()) == 1


def test_dispatch_binds_log_context():
    event = EventEnvelope(event_type="billing.access.granted", aggregate_id="pay-1", payload={"account_id": "acc-9"})
    seen = {}

    async def handler(received):
        seen["account_id"] = account_id_ctx.get()
        seen["trace_id"] = trace_id_ctx.get()

    asyncio.run(dispatch_event("billing.access.granted", "test-group", event, handler))

    assert seen == {"account_id": "acc-9", "trace_id": event.trace_id}
    assert account_id_ctx.get() != "acc-9"


def test_log_context_restores_previous_values():
    with log_context(trace_id="outer", account_id="acc-1"):
        with log_context(trace_id="inner", event_id=None):
            assert (trace_id_ctx.get(), account_id_ctx.get()) == ("inner", "acc-1")
            assert event_id_ctx.get() == ""
        assert trace_id_ctx.get() == "outer"
    assert (trace_id_ctx.get(), account_id_ctx.get()) == ("", "")


class FakeConsumer:
    def __init__(self) -> None:
        self.commits = []
        self.seeks = []

    def seek(self, tp, offset):
        self.seeks.append((tp, offset))

    async def commit(self, offsets=None):
        self.commits.append(offsets)


def record(offset: int, account_id: str) -> SimpleNamespace:
    event = EventEnvelope(event_type="billing.access.granted", aggregate_id="pay-1", payload={"account_id": account_id})
    return SimpleNamespace(offset=offset, value=json.dumps(event.model_dump()).encode("utf-8"))


def test_handler_failure_is_not_committed():
    tp = TopicPartition("billing.access.granted", 0)
    consumer = FakeConsumer()
    handled = []

    async def handler(event):
        if event.payload["account_id"] == "acc-7":
            raise StorageUnavailable("db down")
        handled.append(event.payload["account_id"])

    batch = {tp: [record(6, "acc-6"), record(7, "acc-7"), record(8, "acc-8")]}
    clean = asyncio.run(process_batch(consumer, tp.topic, "referral", batch, handler))

    assert clean is False
    assert handled == ["acc-6"]
    assert consumer.seeks == [(tp, 7)]
    assert consumer.commits == [{tp: 7}]


def test_failure_on_first_message_commits_nothing():
    tp = TopicPartition("billing.access.granted", 0)
    consumer = FakeConsumer()

    async def handler(event):
        raise StorageUnavailable("db down")

    clean = asyncio.run(process_batch(consumer, tp.topic, "referral", {tp: [record(7, "acc-7")]}, handler))

    assert clean is False
    assert consumer.seeks == [(tp, 7)]
    assert consumer.commits == []


def test_undecodable_message_is_skipped():
    tp = TopicPartition("billing.access.granted", 1)
    consumer = FakeConsumer()
    handled = []

    async def handler(event):
        handled.append(event.payload["account_id"])

    batch = {tp: [SimpleNamespace(offset=3, value=b"not json"), record(4, "acc-4")]}
    clean = asyncio.run(process_batch(consumer, tp.topic, "referral", batch, handler))

    assert clean is True
    assert handled == ["acc-4"]
    assert consumer.seeks == []
    assert consumer.commits == [{tp: 5}]
