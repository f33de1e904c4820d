"""
Transactional outbox for lifecycle events.

A product, shipment or transaction write and the event describing it
commit in one database transaction: the engine calls
``save_event_to_outbox`` before committing, and ``OutboxPublisher``
drains committed rows to the broker afterwards. A broker outage therefore
delays events but never loses or invents them.

Row states::

    pending --publish ok--> published
    pending --max_retries failures--> failed --retry_failed_messages--> pending
"""
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base
from .events import BaseEvent, deserialize_event
from .message_broker import MessageBroker

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    """Status of outbox messages."""
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    """One domain event waiting to be published."""

    __tablename__ = "outbox"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    event_id = Column(Uuid(as_uuid=True), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_type = Column(String(50), nullable=False)  # product / shipment / transaction
    aggregate_id = Column(Uuid(as_uuid=True), nullable=False)
    event_data = Column(Text, nullable=False)
    status = Column(String(20), default=OutboxStatus.PENDING.value, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
        Index("ix_outbox_aggregate", "aggregate_type", "aggregate_id"),
    )


class OutboxPublisher:
    """Background task that drains the outbox to the message broker."""

    def __init__(
        self,
        session_factory,
        message_broker: MessageBroker,
        poll_interval: int = 1,
        batch_size: int = 100,
        max_retries: int = 3
    ):
        """
        Args:
            session_factory: Async session factory for database access
            message_broker: Broker the events are published to
            poll_interval: Seconds to wait between polls
            batch_size: Rows fetched per poll, oldest first
            max_retries: Failed attempts before a row is marked failed
        """
        self.session_factory = session_factory
        self.message_broker = message_broker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start polling in the background."""
        if self.running:
            logger.warning("Outbox publisher already running")
            return

        self._task = asyncio.create_task(self._run())
        logger.info("Outbox publisher started")

    async def stop(self):
        """Cancel the polling task and wait for it to finish."""
        if not self.running:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        logger.info("Outbox publisher stopped")

    async def _run(self):
        while True:
            try:
                await self.publish_pending_messages()
            except Exception as e:
                # keep polling; the failed batch stays pending
                logger.error(f"Error in outbox publisher: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def publish_pending_messages(self) -> int:
        """Publish one batch of pending rows. Returns how many rows were attempted."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
            )
            messages = result.scalars().all()

            if not messages:
                return 0

            logger.info(f"Processing {len(messages)} pending outbox messages")

            for message in messages:
                await self._publish_one(message)

            await session.commit()
            return len(messages)

    async def _publish_one(self, message: OutboxMessage):
        message.last_attempt_at = datetime.utcnow()
        try:
            event = deserialize_event(json.loads(message.event_data))
            await self.message_broker.publish_event(event)
        except Exception as e:
            message.retry_count += 1
            message.error_message = str(e)

            if message.retry_count >= self.max_retries:
                message.status = OutboxStatus.FAILED.value
                logger.error(
                    f"Event {message.event_id} ({message.event_type}) failed "
                    f"{message.retry_count} times, marked as failed",
                    exc_info=True
                )
            else:
                logger.warning(
                    f"Publishing event {message.event_id} failed "
                    f"(attempt {message.retry_count}/{self.max_retries}): {str(e)}"
                )
            return

        message.status = OutboxStatus.PUBLISHED.value
        message.published_at = message.last_attempt_at
        logger.debug(f"Published event {message.event_id} from outbox")

    async def retry_failed_messages(self, limit: int = 100) -> int:
        """Move up to ``limit`` failed rows back to pending. Returns the number moved."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .order_by(OutboxMessage.created_at)
                .limit(limit)
            )
            messages = result.scalars().all()

            for message in messages:
                message.status = OutboxStatus.PENDING.value
                message.retry_count = 0
                message.error_message = None

            await session.commit()

        logger.info(f"Reset {len(messages)} failed messages for retry")
        return len(messages)


async def save_event_to_outbox(session: AsyncSession, event: BaseEvent):
    """
    Stage an event in the caller's transaction.

    Nothing is committed here; the row becomes visible to the publisher
    together with the lifecycle write it describes.
    """
    session.add(OutboxMessage(
        event_id=event.event_id,
        event_type=event.event_type.value,
        aggregate_type=event.event_type.value.split(".", 1)[0],
        aggregate_id=event.aggregate_id,
        event_data=json.dumps(event.model_dump(mode='json')),
        status=OutboxStatus.PENDING.value,
        retry_count=0,
        created_at=datetime.utcnow()
    ))

    logger.debug(f"Saved event {event.event_id} to outbox")
