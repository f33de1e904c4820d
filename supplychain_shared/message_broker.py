"""
RabbitMQ transport for lifecycle events.

Events go to one durable topic exchange, routed by their event type
(``product.status_changed``, ``shipment.delay_reported``, ...), so a
consumer can bind a single type or a whole aggregate with ``product.*``.
Deliveries that keep failing end up on the dead-letter queue.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "supplychain_events"
DEAD_LETTER_EXCHANGE_NAME = "supplychain_events_dlx"
DEAD_LETTER_QUEUE_NAME = "supplychain_dead_letter"
RETRY_HEADER = "x-retry-count"

EventHandler = Callable[[BaseEvent], Awaitable[Any]]


def _retry_count(message: aio_pika.IncomingMessage) -> int:
    if message.headers and RETRY_HEADER in message.headers:
        return int(message.headers[RETRY_HEADER])
    return 0


class MessageBroker:
    """Publishes and consumes lifecycle events over RabbitMQ."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None

    @property
    def is_connected(self) -> bool:
        return self.exchange is not None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Connect and declare the event and dead-letter topology."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()
        await self.channel.set_qos(prefetch_count=1)

        self.exchange = await self.channel.declare_exchange(
            EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        dead_letter_exchange = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )
        dead_letter_queue = await self.channel.declare_queue(
            DEAD_LETTER_QUEUE_NAME,
            durable=True,
            arguments={"x-queue-type": "quorum"}
        )
        await dead_letter_queue.bind(dead_letter_exchange, routing_key="dlq.#")

        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        if self.connection:
            await self.connection.close()
            self.exchange = None
            logger.info("Disconnected from RabbitMQ")

    @staticmethod
    def _build_message(event: BaseEvent) -> Message:
        return Message(
            body=json.dumps(event.model_dump(mode='json')).encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "aggregate_id": str(event.aggregate_id),
                "correlation_id": str(event.correlation_id),
                "actor_id": event.actor_id or "",
                "version": event.version,
            }
        )

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """
        Publish one event.

        Args:
            event: The event to publish
            routing_key: Optional routing key (defaults to event_type)

        Raises:
            RuntimeError: if ``connect`` has not completed
        """
        if not self.is_connected:
            raise RuntimeError("Message broker not connected")

        await self.exchange.publish(
            self._build_message(event),
            routing_key=routing_key or event.event_type.value
        )

        logger.info(
            f"Published event: {event.event_type.value} "
            f"(id={event.event_id}, aggregate={event.aggregate_id})"
        )

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: EventHandler,
        max_retries: int = 3
    ):
        """Consume one event type from a durable queue."""
        await self.subscribe_to_pattern(event_type.value, queue_name, handler, max_retries)

    async def subscribe_to_pattern(
        self,
        pattern: str,
        queue_name: str,
        handler: EventHandler,
        max_retries: int = 3
    ):
        """
        Consume every event whose routing key matches ``pattern``.

        Args:
            pattern: Routing key pattern (e.g. "shipment.*", "#")
            queue_name: Durable queue to bind and consume from
            handler: Coroutine called with the deserialized event
            max_retries: Redeliveries before the message is dead-lettered
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{pattern}",
                "x-queue-type": "quorum"
            }
        )
        await queue.bind(self.exchange, routing_key=pattern)

        async def on_message(message: aio_pika.IncomingMessage):
            async with message.process(requeue=False):
                try:
                    event = deserialize_event(json.loads(message.body.decode()))
                    logger.info(
                        f"Handling {event.event_type.value} for {event.aggregate_id} "
                        f"(retry={_retry_count(message)})"
                    )
                    await handler(event)
                except Exception as e:
                    logger.error(f"Error handling message on {queue_name}: {str(e)}", exc_info=True)
                    await self._redeliver(message, pattern, max_retries)

        await queue.consume(on_message)

        logger.info(f"Subscribed to '{pattern}' on queue {queue_name}")

    async def _redeliver(self, message: aio_pika.IncomingMessage, pattern: str, max_retries: int):
        """Republish with a bumped retry header; past the limit, reject to the dead-letter queue."""
        attempt = _retry_count(message) + 1

        if attempt > max_retries:
            logger.error(
                f"Giving up on event {message.headers.get('event_id')} after {max_retries} retries, "
                "dead-lettering"
            )
            # raising inside message.process() rejects without requeue
            raise RuntimeError("max retries exceeded")

        logger.info(f"Retrying event (attempt {attempt}/{max_retries})")

        headers = dict(message.headers or {})
        headers[RETRY_HEADER] = attempt

        await asyncio.sleep(min(2 ** attempt, 60))
        await self.exchange.publish(
            Message(
                body=message.body,
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type=message.content_type,
                headers=headers
            ),
            routing_key=message.routing_key or pattern
        )
