"""Message broker abstraction for RabbitMQ.

Queues are addressed directly through the default exchange (routing key equals
the queue name). Every work queue is declared durable and dead-lettered to a
paired ``<purpose>_dlq`` queue. Consumers own that topology; producers only
declare passively and fail loudly when a queue is missing.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, Optional, Type, TypeVar

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue, AbstractRobustConnection
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry, stop_after_attempt, wait_exponential

from .events import BaseEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseEvent)


def dead_letter_queue_name(queue_name: str) -> str:
    """Return the dead-letter queue paired with a work queue."""
    if queue_name.endswith("_queue"):
        return queue_name[: -len("_queue")] + "_dlq"
    return f"{queue_name}_dlq"


def dead_letter_arguments(queue_name: str) -> Dict[str, Any]:
    return {
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": dead_letter_queue_name(queue_name),
    }


async def declare_work_queue(channel: AbstractChannel, queue_name: str) -> AbstractQueue:
    """Declare a work queue and its dead-letter queue. Idempotent for identical arguments."""
    await channel.declare_queue(
        dead_letter_queue_name(queue_name),
        durable=True,
        exclusive=False,
        auto_delete=False,
    )
    return await channel.declare_queue(
        queue_name,
        durable=True,
        exclusive=False,
        auto_delete=False,
        arguments=dead_letter_arguments(queue_name),
    )


class BrokerConnection:
    """Process-scoped RabbitMQ connection; channels are opened per producer call or consumer."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractRobustConnection] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Establish connection to RabbitMQ."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        if self.connection and not self.connection.is_closed:
            await self.connection.close()
            logger.info("Disconnected from RabbitMQ")
        self.connection = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    @asynccontextmanager
    async def channel(self, prefetch_count: Optional[int] = None) -> AsyncIterator[AbstractChannel]:
        """Open a channel for the duration of the block and always close it."""
        if not self.connection:
            raise RuntimeError("Message broker not connected")

        channel = await self.connection.channel()
        try:
            if prefetch_count:
                await channel.set_qos(prefetch_count=prefetch_count)
            yield channel
        finally:
            if not channel.is_closed:
                await channel.close()

    async def __aenter__(self) -> "BrokerConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info):
        await self.disconnect()


class MessageProducer:
    """Publishes envelopes to named queues."""

    def __init__(self, connection: BrokerConnection):
        self.connection = connection

    async def publish(self, event: BaseEvent, queue_name: str):
        """
        Publish an envelope to an existing work queue.

        Args:
            event: The envelope to publish
            queue_name: Target queue (also the routing key)
        """
        message = Message(
            body=event.to_json(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "version": event.version,
            },
        )

        try:
            async with self.connection.channel() as channel:
                await channel.declare_queue(queue_name, passive=True)
                await channel.default_exchange.publish(message, routing_key=queue_name)
        except Exception as e:
            logger.error(f"Error publishing {event.event_type.value} to {queue_name}: {str(e)}", exc_info=True)
            raise

        logger.info(f"Published event {event.event_type.value} to {queue_name}")


class ConsumerChannelLost(RuntimeError):
    """Raised when a consumer's channel closes while it is still meant to be running."""


class DurableConsumer(Generic[E]):
    """
    Pulls one envelope type off one queue and hands it to a handler.

    A message is acknowledged only after the handler returns. Messages that
    cannot be deserialized, and messages whose handler raises, are rejected
    without requeue so the broker moves them to the dead-letter queue; the
    loop then carries on with the next message. A failed ack or reject is
    logged and skipped, the broker redelivers whatever stays unacknowledged.
    A lost channel is re-opened with backoff until the stop event is set.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        queue_name: str,
        event_type: Type[E],
        handler: Callable[[E], Awaitable[Any]],
        prefetch_count: int = 1,
        poll_interval: float = 1.0,
        name: Optional[str] = None,
        retry_min_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        self.connection = connection
        self.queue_name = queue_name
        self.event_type = event_type
        self.handler = handler
        self.prefetch_count = prefetch_count
        self.poll_interval = poll_interval
        self.name = name or queue_name
        self.retry_min_delay = retry_min_delay
        self.retry_max_delay = retry_max_delay

    async def run(self, stop_event: asyncio.Event):
        """Consume until `stop_event` is set; the message in hand is always finished first."""

        async def pause(delay: float):
            # Backoff sleeps end early on shutdown
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        def log_restart(retry_state: RetryCallState):
            logger.error(
                f"{self.name} consumer on {self.queue_name} interrupted: "
                f"{retry_state.outcome.exception()}; restarting in "
                f"{retry_state.next_action.sleep:.1f}s",
                exc_info=retry_state.outcome.exception(),
            )

        retrying = AsyncRetrying(
            stop=lambda retry_state: stop_event.is_set(),
            wait=wait_exponential(multiplier=1, min=self.retry_min_delay, max=self.retry_max_delay),
            sleep=pause,
            before_sleep=log_restart,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.consume(stop_event)
        except RetryError as e:
            logger.warning(
                f"{self.name} consumer stopped while reconnecting: {e.last_attempt.exception()}"
            )

        logger.info(f"{self.name} consumer stopped")

    async def consume(self, stop_event: asyncio.Event):
        """Run one channel's receive loop; raises ConsumerChannelLost if the channel closes under it."""
        async with self.connection.channel(prefetch_count=self.prefetch_count) as channel:
            queue = await declare_work_queue(channel, self.queue_name)
            logger.info(
                f"{self.name} consumer listening on {self.queue_name} "
                f"(prefetch={self.prefetch_count})"
            )

            # Deliveries are bounded by the prefetch count, so the inbox stays small
            inbox: asyncio.Queue = asyncio.Queue()
            consumer_tag = await queue.consume(inbox.put)
            try:
                while not stop_event.is_set():
                    if channel.is_closed:
                        raise ConsumerChannelLost(f"Channel for {self.queue_name} closed")
                    try:
                        message = await asyncio.wait_for(inbox.get(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        continue

                    await self.process_message(message)
            finally:
                if not channel.is_closed:
                    await queue.cancel(consumer_tag)

    async def process_message(self, message: AbstractIncomingMessage) -> bool:
        """Handle one delivery. Returns True when acknowledged, False otherwise."""
        try:
            event = self.event_type.from_json(message.body)
        except Exception as e:
            logger.error(
                f"{self.name}: undecodable message (delivery_tag={message.delivery_tag}): {str(e)}"
            )
            await self._settle(message, ack=False)
            return False

        try:
            await self.handler(event)
        except Exception as e:
            logger.error(
                f"{self.name}: error processing {event.event_type.value} "
                f"(delivery_tag={message.delivery_tag}): {str(e)}",
                exc_info=True,
            )
            await self._settle(message, ack=False)
            return False

        if not await self._settle(message, ack=True):
            return False
        logger.debug(f"{self.name}: acknowledged delivery_tag={message.delivery_tag}")
        return True

    async def _settle(self, message: AbstractIncomingMessage, ack: bool) -> bool:
        try:
            if ack:
                await message.ack()
            else:
                await message.reject(requeue=False)
        except Exception as e:
            action = "ack" if ack else "reject"
            logger.error(
                f"{self.name}: could not {action} delivery_tag={message.delivery_tag}: {str(e)}",
                exc_info=True,
            )
            return False
        return True


class DeadLetterQueue:
    """Inspection and replay of a work queue's dead letters."""

    def __init__(self, connection: BrokerConnection, queue_name: str):
        self.connection = connection
        self.queue_name = queue_name
        self.dead_letter_name = dead_letter_queue_name(queue_name)

    async def peek(self, limit: int = 100) -> list[Dict[str, Any]]:
        """Return up to `limit` dead letters without removing them."""
        messages = []
        async with self.connection.channel() as channel:
            queue = await channel.declare_queue(self.dead_letter_name, passive=True)
            for _ in range(limit):
                message = await queue.get(no_ack=False, fail=False)
                if not message:
                    break

                try:
                    body = json.loads(message.body.decode())
                except ValueError:
                    body = message.body.decode(errors="replace")

                messages.append({
                    "body": body,
                    "headers": dict(message.headers) if message.headers else {},
                    "routing_key": message.routing_key,
                })
            # Closing the channel returns the unacknowledged messages to the queue
        return messages

    async def replay(self, limit: int = 100) -> int:
        """Move up to `limit` dead letters back onto the work queue."""
        replayed = 0
        async with self.connection.channel() as channel:
            queue = await channel.declare_queue(self.dead_letter_name, passive=True)
            await channel.declare_queue(self.queue_name, passive=True)

            for _ in range(limit):
                message = await queue.get(no_ack=False, fail=False)
                if not message:
                    break

                headers = {
                    k: v for k, v in (message.headers or {}).items() if k != "x-death"
                }
                await channel.default_exchange.publish(
                    Message(
                        body=message.body,
                        delivery_mode=DeliveryMode.PERSISTENT,
                        content_type=message.content_type,
                        headers=headers,
                    ),
                    routing_key=self.queue_name,
                )
                await message.ack()
                replayed += 1

        logger.info(f"Replayed {replayed} messages from {self.dead_letter_name} to {self.queue_name}")
        return replayed
