"""Kafka envelope + producer/consumer helpers.

Every cross-service side effect (access granted, transfer completed, ...)
travels in an `EventEnvelope`. Producers never publish directly: they write an
outbox row in the same unit of work and `OutboxPublisher` ships it.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from nunaa.common.config import settings
from nunaa.common.logging import log_context, logger
from nunaa.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    payload: dict[str, Any]


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


class KafkaBus:
    """Lazy Kafka producer wrapper used by outbox publishers."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def decode_event(raw: bytes) -> EventEnvelope:
    return EventEnvelope(**json.loads(raw.decode("utf-8")))


def _observe_queue_delay(topic: str, event: EventEnvelope) -> None:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    delay_seconds = max(
        0.0,
        (datetime.now(timezone.utc) - occurred_at.astimezone(timezone.utc)).total_seconds(),
    )
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def dispatch_event(topic: str, group_id: str, event: EventEnvelope, handler: EventHandler) -> None:
    """Run `handler` with the event's trace/account identifiers bound to the log context."""

    _observe_queue_delay(topic, event)
    with log_context(
        trace_id=event.trace_id,
        event_id=event.event_id,
        account_id=str(event.payload.get("account_id", "")),
    ):
        logger.info(
            "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
            topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        await handler(event)


async def process_batch(consumer, topic: str, group_id: str, results: dict, handler: EventHandler) -> bool:
    """Hand one `getmany` batch to `handler`, committing only what it finished.

    A message that fails to decode is logged and committed past. A handler
    failure stops its partition: the consumer seeks back to the failed
    offset so the next fetch redelivers it. Returns False when any partition
    stopped early.
    """

    offsets = {}
    clean = True
    for tp, messages in results.items():
        for msg in messages:
            try:
                event = decode_event(msg.value)
            except (ValueError, TypeError) as exc:
                logger.error("undecodable_event topic=%s group=%s offset=%s error=%s", topic, group_id, msg.offset, exc)
                offsets[tp] = msg.offset + 1
                continue
            try:
                await dispatch_event(topic, group_id, event, handler)
            except Exception as exc:
                logger.error(
                    "handler_error topic=%s group=%s offset=%s error=%s",
                    topic,
                    group_id,
                    msg.offset,
                    exc,
                )
                consumer.seek(tp, msg.offset)
                clean = False
                break
            offsets[tp] = msg.offset + 1
    if offsets:
        await consumer.commit(offsets)
    return clean


async def consume_forever(topic: str, group_id: str, handler: EventHandler) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Offsets are committed only up to the last handled message, so a handler
    failure (database down, say) is retried after
    `consumer_retry_backoff_seconds` instead of being skipped. Handlers are
    idempotent through the inbox table, which makes the redelivery safe.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                if not await process_batch(consumer, topic, group_id, results, handler):
                    await asyncio.sleep(settings.consumer_retry_backoff_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)
