"""
Transactional outbox.

Order, booking and payment changes add their event to ``outbox_events`` inside
the same transaction, so an event exists if and only if the change committed.
``OutboxRelay`` drains the table to RabbitMQ in the background.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base, utcnow
from .events import BaseEvent, deserialize_event
from .message_broker import MessageBroker

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxEvent(Base):
    """An event waiting for (or done with) delivery to the broker."""

    __tablename__ = "outbox_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(String(64), nullable=False, index=True)
    payload = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_outbox_events_status_created", "status", "created_at"),
    )


def enqueue_event(session: AsyncSession, event: BaseEvent) -> OutboxEvent:
    """Stage ``event`` in the caller's transaction. Nothing is flushed here."""
    row = OutboxEvent(
        id=uuid4(),
        event_id=event.event_id,
        event_type=event.event_type.value,
        aggregate_id=event.aggregate_id,
        payload=json.dumps(event.model_dump(mode="json")),
        status=OutboxStatus.PENDING.value,
        attempts=0,
        last_error=None,
        created_at=utcnow(),
        published_at=None,
    )
    session.add(row)
    logger.debug(f"Queued {event.event_type.value} event {event.event_id} for {event.aggregate_id}")
    return row


class OutboxRelay:
    """
    Polls pending outbox rows and publishes them in creation order.

    A row that fails ``max_attempts`` times is parked as FAILED until
    ``requeue_failed`` puts it back.
    """

    def __init__(
        self,
        session_factory,
        broker: MessageBroker,
        interval: float = 1.0,
        batch_size: int = 100,
        max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.interval = interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._task is not None:
            logger.warning("Outbox relay already running")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Outbox relay started")

    async def stop(self):
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Outbox relay stopped")

    async def _run(self):
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Outbox relay pass failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> int:
        """Publish one batch. Returns how many rows were delivered."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.status == OutboxStatus.PENDING.value)
                .order_by(OutboxEvent.created_at)
                .limit(self.batch_size)
            )
            rows = result.scalars().all()
            if not rows:
                return 0

            delivered = 0
            for row in rows:
                if await self._deliver(row):
                    delivered += 1
            await session.commit()

        logger.info(f"Outbox relay delivered {delivered}/{len(rows)} events")
        return delivered

    async def _deliver(self, row: OutboxEvent) -> bool:
        try:
            await self.broker.publish_event(deserialize_event(json.loads(row.payload)))
        except Exception as e:
            row.attempts += 1
            row.last_error = str(e)
            if row.attempts >= self.max_attempts:
                row.status = OutboxStatus.FAILED.value
                logger.error(f"Event {row.event_id} ({row.event_type}) gave up after {row.attempts} attempts: {e}")
            else:
                logger.warning(f"Event {row.event_id} ({row.event_type}) attempt {row.attempts} failed: {e}")
            return False

        row.status = OutboxStatus.PUBLISHED.value
        row.published_at = utcnow()
        return True

    async def requeue_failed(self, limit: int = 100) -> int:
        """Move parked FAILED rows back to PENDING with a fresh attempt budget."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.status == OutboxStatus.FAILED.value)
                .order_by(OutboxEvent.created_at)
                .limit(limit)
            )
            rows = result.scalars().all()
            for row in rows:
                row.status = OutboxStatus.PENDING.value
                row.attempts = 0
                row.last_error = None
            await session.commit()

        logger.info(f"Requeued {len(rows)} failed outbox events")
        return len(rows)
