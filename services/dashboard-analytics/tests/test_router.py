import logging

import pytest

from app.events import EventTopic
from app.router import ROUTES, IngestionRouter, IngestOutcome
from app.services.analytics_service import HandlerResult
from libs.event_streaming.kafka_integration import ConsumedMessage
from support import envelope


def _message(topic: str, value: bytes, partition: int = 0, offset: int = 0) -> ConsumedMessage:
    return ConsumedMessage(topic=topic, partition=partition, offset=offset, value=value)


class _StubAnalytics:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def _record(self, name):
        async def handler(event):
            self.calls.append((name, event.topic))
            if self.fail:
                raise RuntimeError("store unavailable")
            return HandlerResult(applied=len(self.calls) == 1)
        return handler

    def __getattr__(self, name):
        if name.startswith("handle_"):
            return self._record(name)
        raise AttributeError(name)


def test_every_topic_has_a_route():
    assert set(ROUTES) == set(EventTopic)


@pytest.mark.asyncio
async def test_routes_by_topic_and_reports_duplicates():
    analytics = _StubAnalytics()
    router = IngestionRouter(analytics)
    raw = envelope("InvoicePaid", {"orderId": "o-1"})

    assert await router.route(_message("sales.invoice.paid", raw)) is IngestOutcome.PROCESSED
    assert await router.route(_message("sales.invoice.paid", raw, offset=1)) is IngestOutcome.DUPLICATE
    assert analytics.calls[0] == ("handle_notification_only", EventTopic.INVOICE_PAID)


@pytest.mark.asyncio
async def test_unknown_topic_and_malformed_payload_are_acknowledged():
    analytics = _StubAnalytics()
    router = IngestionRouter(analytics)

    assert await router.route(_message("sales.order.deleted", b"{}")) is IngestOutcome.IGNORED
    assert await router.route(_message("sales.order.created", b"{broken")) is IngestOutcome.DROPPED
    assert analytics.calls == []


@pytest.mark.asyncio
async def test_dropped_message_is_logged_with_its_position_and_payload(caplog):
    caplog.set_level(logging.INFO)
    router = IngestionRouter(_StubAnalytics())
    message = _message("sales.order.created", b'{"data": {"nope": 1}}', partition=3, offset=42)

    assert await router(message) is None

    dropped = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert len(dropped) == 1
    assert "sales.order.created[3]@42" in dropped[0]
    assert '"nope": 1' in dropped[0]


@pytest.mark.asyncio
async def test_ignored_topic_is_logged_with_its_position(caplog):
    caplog.set_level(logging.INFO)
    router = IngestionRouter(_StubAnalytics())

    await router(_message("sales.order.deleted", b"{}", partition=1, offset=7))

    assert any("sales.order.deleted[1]@7" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_handler_failure_propagates_for_redelivery():
    router = IngestionRouter(_StubAnalytics(fail=True))
    message = ConsumedMessage(
        topic="financial.budget.exceeded",
        partition=0,
        offset=3,
        value=envelope("BudgetExceeded", {"budgetId": "b-1", "budgetName": "Ops"}),
    )

    with pytest.raises(RuntimeError):
        await router(message)
