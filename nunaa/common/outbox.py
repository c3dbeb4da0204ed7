"""Transactional outbox/inbox tables and the publisher loop.

All services share one store, so outbox rows carry the `producer` that wrote
them and each service's publisher only claims its own rows.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import DateTime, String, func, or_, select, update
from sqlalchemy.orm import Mapped, mapped_column

from nunaa.common.config import settings
from nunaa.common.db import Base, JSONPayload
from nunaa.common.events import EventEnvelope, KafkaBus
from nunaa.common.logging import logger
from nunaa.common.metrics import (
    duplicate_events_skipped_total,
    outbox_oldest_pending_age_seconds,
    outbox_pending_total,
)


class OutboxEvent(Base):
    """Events waiting to be published by the producing service."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    producer: Mapped[str] = mapped_column(String, index=True)
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONPayload)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class InboxEvent(Base):
    """Deduplication rows for consumed events, one per consuming service."""

    __tablename__ = "inbox_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_service: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def enqueue_event(db, producer: str, aggregate_type: str, event: EventEnvelope) -> OutboxEvent:
    """Stage `event` for publishing; it commits or rolls back with the caller's unit of work."""

    row = OutboxEvent(
        producer=producer,
        aggregate_type=aggregate_type,
        aggregate_id=event.aggregate_id,
        event_type=event.event_type,
        topic=event.event_type,
        payload=event.model_dump(),
    )
    db.add(row)
    return row


def inbox_seen(db, event_id: str, service_name: str, topic: str) -> bool:
    """Return True (and count the skip) when this service already handled `event_id`."""

    seen = db.get(InboxEvent, (event_id, service_name)) is not None
    if seen:
        logger.info("duplicate event skipped topic=%s event_id=%s", topic, event_id)
        duplicate_events_skipped_total.labels(service=service_name, topic=topic).inc()
    return seen


def mark_inbox(db, event_id: str, service_name: str) -> None:
    db.add(InboxEvent(event_id=event_id, consumed_by_service=service_name))


def claim_outbox_batch(db, producer: str, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim a batch of pending/stale rows of one producer for publishing."""

    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        db.execute(
            select(OutboxEvent.id)
            .where(
                OutboxEvent.producer == producer,
                or_(
                    OutboxEvent.status == "PENDING",
                    (OutboxEvent.status == "PROCESSING")
                    & (OutboxEvent.sent_at.is_not(None))
                    & (OutboxEvent.sent_at < stale_before),
                ),
            )
            .order_by(OutboxEvent.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    if not claim_ids:
        return []
    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id.in_(claim_ids))
        .values(status="PROCESSING", sent_at=now)
        .execution_options(synchronize_session=False)
    )
    rows = db.execute(
        select(OutboxEvent.id, OutboxEvent.topic, OutboxEvent.payload)
        .where(OutboxEvent.id.in_(claim_ids))
        .order_by(OutboxEvent.created_at)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


def requeue_outbox_event(db, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
        .execution_options(synchronize_session=False)
    )


def update_outbox_backlog_metrics(db, producer: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    now = datetime.now(timezone.utc)
    pending = (OutboxEvent.producer == producer, OutboxEvent.status.in_(("PENDING", "PROCESSING")))
    pending_count = db.execute(select(func.count()).select_from(OutboxEvent).where(*pending)).scalar_one()
    oldest_pending = db.execute(select(func.min(OutboxEvent.created_at)).where(*pending)).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=producer).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=producer).set(age_seconds)


class OutboxPublisher:
    """Claims a service's outbox rows and ships them to Kafka."""

    def __init__(self, session_factory, producer: str, bus: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.producer = producer
        self.bus = bus or KafkaBus()

    async def publish_pending(self, limit: int = 100) -> int:
        """Publish one claimed batch; failed rows go back to `PENDING`. Returns rows sent."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.producer, limit=limit)
            update_outbox_backlog_metrics(db, self.producer)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, row["id"])
                    update_outbox_backlog_metrics(db, self.producer)
                    db.commit()
                sent += 1
            except Exception as exc:
                logger.exception("%s outbox publish failed: %s", self.producer, exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, row["id"])
                    update_outbox_backlog_metrics(db, self.producer)
                    db.commit()
        return sent

    async def run_forever(self) -> None:
        """Continuously publish outbox rows until cancelled."""

        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("%s outbox loop error: %s", self.producer, exc)
            await asyncio.sleep(settings.outbox_poll_interval_seconds)
