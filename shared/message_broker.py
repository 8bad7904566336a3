"""RabbitMQ publishing and consumption of commerce events."""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractIncomingMessage
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "commerce_events"
DEAD_LETTER_EXCHANGE_NAME = "commerce_events_dlx"
DEAD_LETTER_QUEUE_NAME = "commerce_dead_letter_queue"
RETRY_HEADER = "x-retry-count"

EventHandler = Callable[[BaseEvent], Awaitable[Any]]


class MessageBroker:
    """
    Topic exchange for commerce events, keyed by event type.

    Consumers get a durable quorum queue per subscription. A handler failure
    is redelivered with a growing delay; past ``max_retries`` the message is
    rejected into the dead letter exchange.
    """

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None

    @retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=2, max=10))
    async def connect(self):
        logger.info(f"Connecting to RabbitMQ at {self.rabbitmq_url.rsplit('@', 1)[-1]}")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()
        await self.channel.set_qos(prefetch_count=1)
        await self._declare_topology()
        logger.info("RabbitMQ connection ready")

    async def _declare_topology(self):
        self.exchange = await self.channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
        dead_letters = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME, ExchangeType.TOPIC, durable=True
        )
        queue = await self.channel.declare_queue(
            DEAD_LETTER_QUEUE_NAME, durable=True, arguments={"x-queue-type": "quorum"}
        )
        await queue.bind(dead_letters, routing_key="dlq.#")

    async def disconnect(self):
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """Publish ``event`` persistently; the routing key defaults to its event type."""
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        routing_key = routing_key or event.event_type.value
        message = Message(
            body=json.dumps(event.model_dump(mode="json")).encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            message_id=str(event.event_id),
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "correlation_id": str(event.correlation_id),
                "version": event.version,
            },
        )
        await self.exchange.publish(message, routing_key=routing_key)
        logger.info(f"Published {event.event_type.value} {event.event_id} (aggregate {event.aggregate_id})")

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: EventHandler,
        max_retries: int = 3,
    ):
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        routing_key = event_type.value
        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{routing_key}",
                "x-queue-type": "quorum",
            },
        )
        await queue.bind(self.exchange, routing_key=routing_key)

        async def on_message(message: AbstractIncomingMessage):
            async with message.process(requeue=False):
                attempt = int((message.headers or {}).get(RETRY_HEADER, 0))
                try:
                    event = deserialize_event(json.loads(message.body.decode()))
                    await handler(event)
                except Exception:
                    logger.exception(f"{queue_name} failed to handle {routing_key} (attempt {attempt + 1})")
                    if attempt >= max_retries:
                        logger.error(f"{queue_name}: {routing_key} {message.message_id} dead-lettered")
                        raise
                    await self._redeliver(message, routing_key, attempt + 1)
                else:
                    logger.info(f"{queue_name} handled {event.event_type.value} {event.event_id}")

        await queue.consume(on_message)
        logger.info(f"Queue {queue_name} subscribed to {routing_key}")

    async def _redeliver(self, message: AbstractIncomingMessage, routing_key: str, attempt: int):
        headers = dict(message.headers or {})
        headers[RETRY_HEADER] = attempt
        await asyncio.sleep(min(2 ** attempt, 60))
        await self.exchange.publish(
            Message(
                body=message.body,
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type=message.content_type,
                message_id=message.message_id,
                headers=headers,
            ),
            routing_key=routing_key,
        )
