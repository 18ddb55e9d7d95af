"""
Ingestion router: decode a consumed message and dispatch it to its handler
"""

import time
from enum import Enum
from typing import Awaitable, Callable, Dict

from libs.event_streaming.kafka_integration import ConsumedMessage
from libs.observability.telemetry import get_tracer

from .core.logging import get_logger
from .events import EventTopic, IngestedEvent, MalformedEventError, parse_event
from .instrumentation import EVENT_HANDLING_SECONDS, EVENTS_INGESTED
from .services.analytics_service import AnalyticsService, HandlerResult

logger = get_logger("router")
tracer = get_tracer(__name__)

Handler = Callable[[IngestedEvent], Awaitable[HandlerResult]]


class IngestOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    IGNORED = "ignored"


ROUTES: Dict[EventTopic, Callable[[AnalyticsService], Handler]] = {
    EventTopic.USER_CREATED: lambda s: s.handle_user_event,
    EventTopic.USER_UPDATED: lambda s: s.handle_user_event,
    EventTopic.PRODUCT_CREATED: lambda s: s.handle_product_event,
    EventTopic.PRODUCT_UPDATED: lambda s: s.handle_product_event,
    EventTopic.STOCK_LOW: lambda s: s.handle_stock_low_event,
    EventTopic.ORDER_CREATED: lambda s: s.handle_order_event,
    EventTopic.ORDER_UPDATED: lambda s: s.handle_order_event,
    EventTopic.INVOICE_PAID: lambda s: s.handle_notification_only,
    EventTopic.TRANSACTION_CREATED: lambda s: s.handle_transaction_event,
    EventTopic.BUDGET_EXCEEDED: lambda s: s.handle_budget_event,
}

_unrouted = set(EventTopic) - set(ROUTES)
if _unrouted:
    raise RuntimeError(f"Topics without a handler: {sorted(t.value for t in _unrouted)}")


class IngestionRouter:
    """Message handler for the consumer pool.

    Malformed payloads and unknown topics are logged and acknowledged. A
    handler failure propagates so the pool redelivers the message.
    """

    def __init__(self, analytics: AnalyticsService):
        self._handlers: Dict[EventTopic, Handler] = {
            topic: bind(analytics) for topic, bind in ROUTES.items()
        }

    async def route(self, message: ConsumedMessage) -> IngestOutcome:
        topic = message.topic
        event_topic = EventTopic.parse(topic)
        if event_topic is None:
            logger.warning(f"Ignoring message on unrecognised topic: {message.describe()}")
            EVENTS_INGESTED.labels(topic=topic, outcome=IngestOutcome.IGNORED.value).inc()
            return IngestOutcome.IGNORED

        try:
            event = parse_event(event_topic, message.value)
        except MalformedEventError as e:
            logger.error(f"Dropping malformed message {message.describe()}: {e}")
            EVENTS_INGESTED.labels(topic=topic, outcome=IngestOutcome.DROPPED.value).inc()
            return IngestOutcome.DROPPED

        started = time.perf_counter()
        try:
            result = await self._handlers[event_topic](event)
        except Exception:
            EVENTS_INGESTED.labels(topic=topic, outcome="failed").inc()
            raise
        finally:
            EVENT_HANDLING_SECONDS.labels(topic=topic).observe(time.perf_counter() - started)

        outcome = IngestOutcome.PROCESSED if result.applied else IngestOutcome.DUPLICATE
        EVENTS_INGESTED.labels(topic=topic, outcome=outcome.value).inc()
        return outcome

    async def __call__(self, message: ConsumedMessage) -> None:
        with tracer.start_as_current_span("ingest_event") as span:
            span.set_attribute("messaging.destination", message.topic)
            span.set_attribute("messaging.kafka.partition", message.partition)
            span.set_attribute("messaging.kafka.offset", message.offset)
            try:
                outcome = await self.route(message)
            except Exception:
                logger.error(f"Handler failed for {message.describe()}", exc_info=True)
                raise
            span.set_attribute("ingest.outcome", outcome.value)
