"""Message broker connections used by the gateway and the worker.

Each process owns one broker instance holding exactly one connection and one
channel. Channel operations are serialised through a single lock because
several job handlers publish, ack and nack concurrently.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPException

from housie.orchestrator.errors import ServiceConnectionError

LOGGER = structlog.get_logger(__name__)


class Delivery(Protocol):
    body: bytes
    delivery_tag: Any


Handler = Callable[[Any], Awaitable[None]]
ConnectionLostCallback = Callable[[ServiceConnectionError], None]


class Broker(Protocol):
    async def connect(self) -> None: ...

    def on_connection_lost(self, callback: ConnectionLostCallback) -> None: ...

    async def declare_queue(self, queue: str) -> None: ...

    async def publish(self, queue: str, payload: bytes) -> None: ...

    async def consume(self, queue: str, handler: Handler, prefetch: int) -> str: ...

    async def cancel(self, consumer_tag: str) -> None: ...

    async def ack(self, delivery: Any) -> None: ...

    async def nack(self, delivery: Any, *, requeue: bool) -> None: ...

    async def close(self) -> None: ...


@dataclass
class AmqpDelivery:
    """Incoming AMQP message exposing the broker-neutral delivery fields."""

    message: AbstractIncomingMessage

    @property
    def body(self) -> bytes:
        return self.message.body

    @property
    def delivery_tag(self) -> Any:
        return self.message.delivery_tag


class AmqpBroker:
    """RabbitMQ connection backed by aio-pika.

    Connection failures are not retried here; they surface as
    ``ServiceConnectionError`` so an external supervisor restarts the process.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._queues: Dict[str, AbstractQueue] = {}
        self._consumers: Dict[str, AbstractQueue] = {}
        self._lock = asyncio.Lock()
        self._lost_callbacks: List[ConnectionLostCallback] = []
        self._closing = False

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None or self._channel.is_closed:
            raise ServiceConnectionError("Broker channel is not open")
        return self._channel

    def on_connection_lost(self, callback: ConnectionLostCallback) -> None:
        self._lost_callbacks.append(callback)

    def _connection_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if self._closing:
            return
        LOGGER.error("broker_connection_lost", error=str(exc) if exc is not None else None)
        error = ServiceConnectionError("RabbitMQ connection lost", cause=exc)
        for callback in self._lost_callbacks:
            callback(error)

    async def connect(self) -> None:
        self._closing = False
        try:
            self._connection = await aio_pika.connect(self._url)
            self._channel = await self._connection.channel()
        except (AMQPException, OSError) as exc:
            raise ServiceConnectionError("Could not connect to RabbitMQ", cause=exc) from exc
        self._connection.close_callbacks.add(self._connection_closed)
        LOGGER.info("broker_connected")

    async def _queue(self, name: str) -> AbstractQueue:
        if name not in self._queues:
            channel = self._require_channel()
            self._queues[name] = await channel.declare_queue(name, durable=True)
        return self._queues[name]

    async def declare_queue(self, queue: str) -> None:
        async with self._lock:
            try:
                await self._queue(queue)
            except AMQPException as exc:
                raise ServiceConnectionError(f"Could not declare queue {queue}", cause=exc) from exc

    async def publish(self, queue: str, payload: bytes) -> None:
        message = aio_pika.Message(
            body=payload,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            content_type="application/json",
        )
        async with self._lock:
            try:
                await self._queue(queue)
                await self._require_channel().default_exchange.publish(message, routing_key=queue)
            except (AMQPException, OSError) as exc:
                raise ServiceConnectionError(f"Could not publish to {queue}", cause=exc) from exc

    async def consume(self, queue: str, handler: Handler, prefetch: int) -> str:
        async def _on_message(message: AbstractIncomingMessage) -> None:
            await handler(AmqpDelivery(message))

        async with self._lock:
            try:
                await self._require_channel().set_qos(prefetch_count=prefetch)
                amqp_queue = await self._queue(queue)
                consumer_tag = await amqp_queue.consume(_on_message, no_ack=False)
            except AMQPException as exc:
                raise ServiceConnectionError(f"Could not consume from {queue}", cause=exc) from exc
        self._consumers[consumer_tag] = amqp_queue
        LOGGER.info("broker_consuming", queue=queue, prefetch=prefetch)
        return consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        amqp_queue = self._consumers.pop(consumer_tag, None)
        if amqp_queue is None:
            return
        async with self._lock:
            try:
                await amqp_queue.cancel(consumer_tag)
            except (AMQPException, OSError) as exc:
                raise ServiceConnectionError("Could not cancel consumer", cause=exc) from exc

    async def ack(self, delivery: AmqpDelivery) -> None:
        async with self._lock:
            try:
                await delivery.message.ack()
            except (AMQPException, OSError) as exc:
                raise ServiceConnectionError("Could not acknowledge message", cause=exc) from exc

    async def nack(self, delivery: AmqpDelivery, *, requeue: bool) -> None:
        async with self._lock:
            try:
                await delivery.message.nack(requeue=requeue)
            except (AMQPException, OSError) as exc:
                raise ServiceConnectionError("Could not reject message", cause=exc) from exc

    async def close(self) -> None:
        self._closing = True
        async with self._lock:
            if self._channel is not None and not self._channel.is_closed:
                await self._channel.close()
            self._channel = None
            if self._connection is not None:
                await self._connection.close()
                self._connection = None
            self._queues.clear()
        LOGGER.info("broker_closed")


@dataclass
class InMemoryDelivery:
    body: bytes
    delivery_tag: int
    queue: str
    redelivered: bool = False


@dataclass
class _Consumer:
    tag: str
    queue: str
    handler: Handler
    slots: asyncio.Semaphore
    task: Optional["asyncio.Task[None]"] = None
    handlers: Set["asyncio.Task[None]"] = field(default_factory=set)


class InMemoryBroker:
    """In-process broker with prefetch, ack and requeue semantics.

    Used for local runs and tests. Published messages are kept in
    ``published``; messages rejected without requeue land in ``dropped``.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, "asyncio.Queue[InMemoryDelivery]"] = {}
        self._consumers: Dict[str, _Consumer] = {}
        self._unacked: Dict[int, Tuple[InMemoryDelivery, _Consumer]] = {}
        self._tags = itertools.count(1)
        self._lock = asyncio.Lock()
        self._connected = False
        self._lost_callbacks: List[ConnectionLostCallback] = []
        self.published: List[Tuple[str, bytes]] = []
        self.dropped: List[InMemoryDelivery] = []

    def _ensure_open(self) -> None:
        if not self._connected:
            raise ServiceConnectionError("Broker is not connected")

    def _get_queue(self, name: str) -> "asyncio.Queue[InMemoryDelivery]":
        return self._queues.setdefault(name, asyncio.Queue())

    async def connect(self) -> None:
        self._connected = True

    def on_connection_lost(self, callback: ConnectionLostCallback) -> None:
        self._lost_callbacks.append(callback)

    def lose_connection(self, cause: Optional[BaseException] = None) -> None:
        """Drop the connection as a network failure would."""
        self._connected = False
        error = ServiceConnectionError("Broker connection lost", cause=cause)
        for callback in self._lost_callbacks:
            callback(error)

    async def declare_queue(self, queue: str) -> None:
        self._ensure_open()
        self._get_queue(queue)

    async def publish(self, queue: str, payload: bytes) -> None:
        async with self._lock:
            self._ensure_open()
            delivery = InMemoryDelivery(body=payload, delivery_tag=next(self._tags), queue=queue)
            self._get_queue(queue).put_nowait(delivery)
            self.published.append((queue, payload))

    async def consume(self, queue: str, handler: Handler, prefetch: int) -> str:
        self._ensure_open()
        consumer = _Consumer(
            tag=f"ctag-{next(self._tags)}",
            queue=queue,
            handler=handler,
            slots=asyncio.Semaphore(prefetch),
        )
        consumer.task = asyncio.create_task(self._dispatch(consumer))
        self._consumers[consumer.tag] = consumer
        return consumer.tag

    async def _dispatch(self, consumer: _Consumer) -> None:
        source = self._get_queue(consumer.queue)
        while True:
            await consumer.slots.acquire()
            delivery = await source.get()
            self._unacked[delivery.delivery_tag] = (delivery, consumer)
            task = asyncio.create_task(consumer.handler(delivery))
            consumer.handlers.add(task)
            task.add_done_callback(consumer.handlers.discard)
            task.add_done_callback(_log_handler_failure)

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None or consumer.task is None:
            return
        consumer.task.cancel()
        try:
            await consumer.task
        except asyncio.CancelledError:
            pass

    def _settle(self, delivery: InMemoryDelivery) -> None:
        entry = self._unacked.pop(delivery.delivery_tag, None)
        if entry is None:
            raise ValueError(f"Unknown delivery tag {delivery.delivery_tag}")
        entry[1].slots.release()

    async def ack(self, delivery: InMemoryDelivery) -> None:
        async with self._lock:
            self._ensure_open()
            self._settle(delivery)

    async def nack(self, delivery: InMemoryDelivery, *, requeue: bool) -> None:
        async with self._lock:
            self._ensure_open()
            self._settle(delivery)
            if requeue:
                delivery.redelivered = True
                self._get_queue(delivery.queue).put_nowait(delivery)
            else:
                self.dropped.append(delivery)

    def pending(self, queue: str) -> int:
        """Number of messages waiting in the queue."""
        return self._get_queue(queue).qsize()

    @property
    def unacked(self) -> int:
        return len(self._unacked)

    async def wait_idle(self, queue: str, *, poll_interval: float = 0.01) -> None:
        """Block until the queue is empty and every delivery is settled."""
        while self.pending(queue) or self._unacked:
            await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        for tag in list(self._consumers):
            await self.cancel(tag)
        async with self._lock:
            self._connected = False


def _log_handler_failure(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("delivery_handler_failed", error=str(exc), exc_info=exc)
