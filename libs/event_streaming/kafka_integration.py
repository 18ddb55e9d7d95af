"""
Kafka consumer pool for SelfMonitor services
One long-lived consumer per topic, manual commits, at-least-once delivery
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from kafka import KafkaConsumer
from kafka.errors import KafkaError

logger = logging.getLogger(__name__)

MessageHandler = Callable[["ConsumedMessage"], Awaitable[None]]
ConsumerFactory = Callable[[str], Any]


class BrokerUnavailableError(RuntimeError):
    """Raised when the consumer pool cannot be established at startup."""


@dataclass(frozen=True)
class ConsumedMessage:
    """A raw record handed to the message handler, before any decoding."""
    topic: str
    partition: int
    offset: int
    value: bytes
    key: Optional[str] = None
    timestamp_ms: Optional[int] = None

    def describe(self, max_payload_chars: int = 256) -> str:
        """Short human-readable context for log lines."""
        payload = self.value.decode("utf-8", errors="replace")
        if len(payload) > max_payload_chars:
            payload = payload[:max_payload_chars] + "..."
        return f"{self.topic}[{self.partition}]@{self.offset} payload={payload!r}"


@dataclass
class TopicStats:
    handled: int = 0
    retried: int = 0
    read_errors: int = 0
    last_offset: Dict[int, int] = field(default_factory=dict)


def build_kafka_consumer(topic: str,
                         *,
                         bootstrap_servers: str,
                         group_id: str,
                         auto_offset_reset: str = "earliest",
                         **overrides: Any) -> KafkaConsumer:
    """Create a consumer for a single topic inside the shared consumer group."""
    config: Dict[str, Any] = {
        "bootstrap_servers": [server.strip() for server in bootstrap_servers.split(",") if server.strip()],
        "group_id": group_id,
        "auto_offset_reset": auto_offset_reset,
        "enable_auto_commit": False,
        "key_deserializer": lambda x: x.decode("utf-8") if x else None,
        "session_timeout_ms": 30000,
        "heartbeat_interval_ms": 10000,
    }
    config.update(overrides)
    consumer = KafkaConsumer(topic, **config)
    logger.info(f"✓ Kafka consumer initialized: {group_id} for {topic}")
    return consumer


class KafkaConsumerPool:
    """Runs one consumer loop per topic on its own task.

    A message's offset is committed only after the handler returned. If the
    handler raises, the consumer seeks back to that offset and the message is
    polled again after a backoff, so nothing past it is acknowledged.

    Blocking client calls run on a thread pool owned by the consumer pool,
    one worker per topic, so idle polls never occupy the loop's default
    executor.
    """

    def __init__(self,
                 topics: Iterable[str],
                 handler: MessageHandler,
                 *,
                 consumer_factory: ConsumerFactory,
                 poll_timeout_ms: int = 1000,
                 retry_backoff_seconds: float = 1.0,
                 shutdown_grace_seconds: float = 10.0):
        self.topics: List[str] = list(dict.fromkeys(topics))
        self.poll_timeout_ms = poll_timeout_ms
        self.retry_backoff_seconds = retry_backoff_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.stats: Dict[str, TopicStats] = {topic: TopicStats() for topic in self.topics}
        self._handler = handler
        self._consumer_factory = consumer_factory
        self._consumers: Dict[str, Any] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def start(self) -> None:
        """Create every consumer, then start the per-topic loops.

        Raises BrokerUnavailableError if any consumer cannot be created; the
        consumers opened so far are closed first.
        """
        if self._tasks:
            raise RuntimeError("Consumer pool already started")

        # One worker per topic, separate from the loop's default executor.
        self._executor = ThreadPoolExecutor(
            max_workers=max(len(self.topics), 1),
            thread_name_prefix="kafka-consumer",
        )

        for topic in self.topics:
            try:
                consumer = await self._blocking(self._consumer_factory, topic)
            except Exception as e:
                logger.error(f"Failed to initialize Kafka consumer for {topic}: {e}")
                await self._close_consumers()
                self._shutdown_executor()
                raise BrokerUnavailableError(f"Cannot create consumer for topic '{topic}': {e}") from e
            self._consumers[topic] = consumer

        for topic, consumer in self._consumers.items():
            task = asyncio.create_task(self._consume(topic, consumer), name=f"kafka-consumer:{topic}")
            task.add_done_callback(self._on_loop_exit)
            self._tasks[topic] = task

        logger.info(f"🚀 Started {len(self._tasks)} consumer loops")

    async def stop(self) -> None:
        """Signal every loop, wait out the grace period, then release consumers."""
        self._stopping.set()
        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_seconds)
            for task in pending:
                logger.warning(f"Consumer loop {task.get_name()} did not stop in time, cancelling")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await self._close_consumers()
        self._shutdown_executor()
        self._tasks.clear()
        logger.info("Kafka consumer pool stopped")

    async def _consume(self, topic: str, consumer: Any) -> None:
        stats = self.stats[topic]
        while not self._stopping.is_set():
            try:
                batch = await self._blocking(consumer.poll, timeout_ms=self.poll_timeout_ms, max_records=1)
            except KafkaError as e:
                stats.read_errors += 1
                logger.error(f"Error consuming from topic {topic}: {e}")
                await self._backoff()
                continue
            except Exception as e:
                stats.read_errors += 1
                logger.error(f"Unexpected poll failure on topic {topic}: {e}", exc_info=True)
                await self._backoff()
                continue

            for topic_partition, records in (batch or {}).items():
                for record in records:
                    if not await self._handle(consumer, topic_partition, record, stats):
                        break

    async def _handle(self, consumer: Any, topic_partition: Any, record: Any, stats: TopicStats) -> bool:
        message = ConsumedMessage(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            value=record.value if record.value is not None else b"",
            key=record.key,
            timestamp_ms=getattr(record, "timestamp", None),
        )
        try:
            await self._handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            stats.retried += 1
            logger.error(f"Handler failed, message will be redelivered: {message.describe()}: {e}", exc_info=True)
            await self._blocking(consumer.seek, topic_partition, record.offset)
            await self._backoff()
            return False

        try:
            await self._blocking(consumer.commit)
        except KafkaError as e:
            # Offset stays uncommitted; the message may be seen again after a rebalance.
            logger.warning(f"Commit failed for {message.describe()}: {e}")
        stats.handled += 1
        stats.last_offset[record.partition] = record.offset
        return True

    async def _blocking(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    def _shutdown_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def _backoff(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.retry_backoff_seconds)
        except asyncio.TimeoutError:
            pass

    async def _close_consumers(self) -> None:
        for topic, consumer in list(self._consumers.items()):
            try:
                await self._blocking(consumer.close)
            except Exception as e:
                logger.error(f"Failed to close consumer for {topic}: {e}")
        self._consumers.clear()

    @staticmethod
    def _on_loop_exit(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Consumer loop {task.get_name()} crashed: {exc}", exc_info=exc)
