import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import aio_pika
from aio_pika.abc import AbstractIncomingMessage

from common.config import mask_url

# Dedicated logger for this module; inherits level/format from root (configured in config.py)
logger = logging.getLogger("events")

# =============================================================================
# 1) Outbound message
# =============================================================================
@dataclass
class OutboundMessage:
    """
    One message for downstream consumers: a JSON body plus transport headers
    (originalFile, processedFileUrl, chunkIndex/totalChunks, ...).
    """
    body: Dict[str, Any]
    headers: Dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))


def now_iso() -> str:
    """
    Return a timezone-aware ISO-8601 UTC timestamp string, e.g.:
    "2025-10-26T20:15:23.742123+00:00"
    """
    return datetime.now(tz=timezone.utc).isoformat()


# A handler receives the raw AMQP message and decides when to ack()/nack().
Handler = Callable[[AbstractIncomingMessage], Awaitable[None]]

# =============================================================================
# 2) AMQP (RabbitMQ) transport
# =============================================================================
class AmqpTransport:
    """
    A single robust connection and channel per process.

    asyncio.Lock ensures only one coroutine initialises the connection;
    everyone else reuses the same channel afterwards. RobustConnection
    auto-reconnects if the broker restarts.
    """

    mode = "stream"

    def __init__(self, url: str, input_queue: str, output_queue: str, *, prefetch_count: int = 8):
        self.url = url
        self.input_queue = input_queue
        self.output_queue = output_queue
        self.prefetch_count = prefetch_count
        self._lock = asyncio.Lock()
        self._connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._channel: Optional[aio_pika.abc.AbstractChannel] = None

    async def _ensure_channel(self) -> aio_pika.abc.AbstractChannel:
        async with self._lock:
            # Fast path: if both connection and channel are alive, reuse them.
            if self._connection and not self._connection.is_closed:
                if self._channel and not self._channel.is_closed:
                    return self._channel

            # Slow path: connect to RabbitMQ
            logger.info("Connecting to RabbitMQ at %s", mask_url(self.url))
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            # prefetch bounds how many deliveries are in flight per consumer
            await self._channel.set_qos(prefetch_count=self.prefetch_count)
            return self._channel

    async def connect(self) -> None:
        channel = await self._ensure_channel()
        # declare_queue is idempotent
        await channel.declare_queue(self.input_queue, durable=True)
        await channel.declare_queue(self.output_queue, durable=True)

    async def close(self) -> None:
        try:
            if self._channel and not self._channel.is_closed:
                await self._channel.close()
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        except aio_pika.exceptions.AMQPError as e:
            logger.warning("Error while closing RabbitMQ connection: %s", e)

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------
    async def publish(self, message: OutboundMessage) -> None:
        """
        Serialise the body to JSON and publish it to the durable output queue.
        Durable queue + persistent messages survive broker restarts.
        """
        channel = await self._ensure_channel()
        amqp_message = aio_pika.Message(
            body=json.dumps(message.body, ensure_ascii=False).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message.message_id,
            timestamp=datetime.now(tz=timezone.utc),
            headers=message.headers,
        )
        # default exchange routes by exact queue name
        await channel.default_exchange.publish(amqp_message, routing_key=self.output_queue)
        logger.info("Published to %s id=%s headers=%s", self.output_queue, message.message_id, message.headers)

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------
    def binding(self, name: str, handler: Handler) -> "AmqpBinding":
        return AmqpBinding(name, self, handler)

    async def queue_depth(self) -> int:
        """Ready messages in the input queue (passive declare, never creates it)."""
        channel = await self._ensure_channel()
        queue = await channel.declare_queue(self.input_queue, passive=True)
        return queue.declaration_result.message_count

    async def pending(self) -> Dict[str, Any]:
        try:
            depth = await self.queue_depth()
            return {"mode": self.mode, "queueDepth": depth, "status": "ok"}
        except Exception as e:
            logger.warning("Queue depth query failed: %s", e)
            return {"mode": self.mode, "queueDepth": -1, "status": "unavailable", "reason": str(e)}


class AmqpBinding:
    """
    Consumption primitive for the input queue.

    resume() registers a consumer (basic.consume); pause() cancels it
    (basic.cancel). Once cancelled the broker stops delivering and every
    message not yet delivered stays in the queue. Deliveries already handed
    to the handler finish normally and are acked/nacked by it.
    """

    def __init__(self, name: str, transport: AmqpTransport, handler: Handler):
        self.name = name
        self._transport = transport
        self._handler = handler
        self._queue: Optional[aio_pika.abc.AbstractQueue] = None
        self._consumer_tag: Optional[str] = None

    async def _ensure_queue(self) -> aio_pika.abc.AbstractQueue:
        # robust queues re-declare and re-consume by themselves after a reconnect
        if self._queue is None:
            channel = await self._transport._ensure_channel()
            self._queue = await channel.declare_queue(self._transport.input_queue, durable=True)
        return self._queue

    async def resume(self) -> None:
        if self._consumer_tag is not None:
            return
        queue = await self._ensure_queue()
        self._consumer_tag = await queue.consume(self._handler, no_ack=False)
        logger.info("Binding %s consuming from %s (tag=%s)", self.name, queue.name, self._consumer_tag)

    async def pause(self) -> None:
        if self._consumer_tag is None:
            return
        queue = await self._ensure_queue()
        await queue.cancel(self._consumer_tag)
        logger.info("Binding %s stopped consuming (tag=%s)", self.name, self._consumer_tag)
        self._consumer_tag = None

    async def status(self) -> str:
        return "running" if self._consumer_tag is not None else "stopped"
