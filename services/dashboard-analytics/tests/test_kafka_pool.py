import asyncio
import threading
import time
from collections import namedtuple

import pytest
from kafka import TopicPartition

from libs.event_streaming.kafka_integration import BrokerUnavailableError, KafkaConsumerPool

Record = namedtuple("Record", "topic partition offset value key timestamp")


class FakeConsumer:
    """Single-partition consumer over a fixed list of payloads."""

    def __init__(self, topic: str, values):
        self.topic = topic
        self.records = [Record(topic, 0, i, v, None, 0) for i, v in enumerate(values)]
        self.position = 0
        self.committed = []
        self.seeks = []
        self.closed = False

    def poll(self, timeout_ms: int = 0, max_records: int = 1):
        if self.position >= len(self.records):
            time.sleep(0.005)
            return {}
        record = self.records[self.position]
        self.position += 1
        return {TopicPartition(self.topic, 0): [record]}

    def seek(self, partition, offset: int) -> None:
        self.seeks.append(offset)
        self.position = offset

    def commit(self) -> None:
        self.committed.append(self.position - 1)

    def close(self) -> None:
        self.closed = True


async def _wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _pool(consumers, handler):
    return KafkaConsumerPool(
        list(consumers),
        handler,
        consumer_factory=lambda topic: consumers[topic],
        poll_timeout_ms=10,
        retry_backoff_seconds=0.01,
        shutdown_grace_seconds=1.0,
    )


@pytest.mark.asyncio
async def test_failing_topic_does_not_stall_other_topics():
    consumers = {
        "inventory.stock.low": FakeConsumer("inventory.stock.low", [b"poison"]),
        "sales.order.created": FakeConsumer("sales.order.created", [b"1", b"2", b"3"]),
    }
    handled = []

    async def handler(message):
        if message.topic == "inventory.stock.low":
            raise RuntimeError("cannot apply")
        handled.append(message.value)

    pool = _pool(consumers, handler)
    await pool.start()
    await _wait_until(lambda: len(handled) == 3)
    await pool.stop()

    assert handled == [b"1", b"2", b"3"]
    assert consumers["sales.order.created"].committed == [0, 1, 2]
    assert consumers["inventory.stock.low"].committed == []
    assert consumers["inventory.stock.low"].seeks
    assert pool.stats["inventory.stock.low"].retried >= 1


@pytest.mark.asyncio
async def test_failed_message_is_redelivered_before_later_ones():
    consumer = FakeConsumer("financial.transaction.created", [b"a", b"b"])
    attempts = []

    async def handler(message):
        attempts.append(message.value)
        if attempts.count(b"a") == 1 and message.value == b"a":
            raise RuntimeError("transient")

    pool = _pool({consumer.topic: consumer}, handler)
    await pool.start()
    await _wait_until(lambda: consumer.committed == [0, 1])
    await pool.stop()

    assert attempts == [b"a", b"a", b"b"]
    assert consumer.seeks == [0]


@pytest.mark.asyncio
async def test_stop_closes_consumers():
    consumer = FakeConsumer("users.user.created", [])

    async def handler(message):
        pass

    pool = _pool({consumer.topic: consumer}, handler)
    await pool.start()
    assert pool.running
    await pool.stop()

    assert not pool.running
    assert consumer.closed


@pytest.mark.asyncio
async def test_unreachable_broker_fails_start_and_releases_consumers():
    opened = FakeConsumer("users.user.created", [])

    def factory(topic):
        if topic == "users.user.created":
            return opened
        raise ConnectionError("no brokers available")

    async def handler(message):
        pass

    pool = KafkaConsumerPool(["users.user.created", "sales.order.created"], handler, consumer_factory=factory)
    with pytest.raises(BrokerUnavailableError):
        await pool.start()

    assert opened.closed
    assert not pool.running


class IdleConsumer:
    """Blocks for the whole poll timeout like an empty topic does."""

    def __init__(self):
        self.poll_threads = set()
        self.closed = False

    def poll(self, timeout_ms: int = 0, max_records: int = 1):
        self.poll_threads.add(threading.current_thread().name)
        time.sleep(timeout_ms / 1000)
        return {}

    def commit(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_idle_polls_leave_default_executor_free():
    topics = [f"topic-{i}" for i in range(40)]
    consumers = {topic: IdleConsumer() for topic in topics}

    async def handler(message):
        pass

    pool = KafkaConsumerPool(
        topics,
        handler,
        consumer_factory=lambda topic: consumers[topic],
        poll_timeout_ms=500,
        retry_backoff_seconds=0.01,
        shutdown_grace_seconds=2.0,
    )
    await pool.start()
    await _wait_until(lambda: all(c.poll_threads for c in consumers.values()))

    started = time.perf_counter()
    await asyncio.to_thread(lambda: None)
    waited = time.perf_counter() - started
    await pool.stop()

    assert waited < 0.2
    threads = set().union(*(c.poll_threads for c in consumers.values()))
    assert all(name.startswith("kafka-consumer") for name in threads)
    assert len(threads) == len(topics)
    assert all(c.closed for c in consumers.values())
