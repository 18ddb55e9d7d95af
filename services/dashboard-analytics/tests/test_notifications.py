import asyncio

import pytest

from app.connections import METRICS_GROUP
from app.notifications import GROUP_TARGETS, Notification, NotificationKind
from app.schemas import AlertResponse


def _alert() -> AlertResponse:
    return AlertResponse(
        id="a-1",
        title="Low Stock Alert",
        message="Widget is low",
        severity="Warning",
        source="Inventory",
        is_read=False,
        created_at="2024-01-01T00:00:00Z",
    )


def test_both_transports_carry_the_same_event(registry, hub):
    group_client = registry.open("group", "u-1")
    registry.mark_connected(group_client)
    registry.join_group(group_client, METRICS_GROUP)
    sub_client = registry.open("subscription", "u-2")
    registry.mark_connected(sub_client)
    registry.subscribe(sub_client, "s-1", "alertReceived")

    notification = hub.publish_model(NotificationKind.ALERT_RECEIVED, _alert())

    pushed = group_client._queue.get_nowait()
    streamed = sub_client._queue.get_nowait()
    assert pushed["target"] == "ReceiveAlert"
    assert streamed["type"] == "next"
    assert streamed["id"] == "s-1"
    assert streamed["payload"]["topic"] == "alertReceived"
    for field in ("eventId", "timestamp", "data"):
        assert pushed[field] == streamed["payload"][field]
    assert pushed["eventId"] == notification.event_id
    assert pushed["data"]["isRead"] is False


def test_subscription_only_receives_its_topic(registry, hub):
    client = registry.open("subscription")
    registry.mark_connected(client)
    registry.subscribe(client, "s-1", "kpiUpdated")

    delivered = hub.publish(Notification(NotificationKind.ALERT_RECEIVED, {"id": "a"}))

    assert delivered["subscription"] == 0
    assert client.pending == 0


def test_full_buffer_drops_oldest(registry):
    registry.buffer_size = 2
    client = registry.open("group")
    registry.mark_connected(client)

    for i in range(3):
        client.send({"seq": i})

    assert client.dropped == 1
    assert [client._queue.get_nowait()["seq"] for _ in range(2)] == [1, 2]


@pytest.mark.asyncio
async def test_pump_stops_after_close(registry):
    client = registry.open("group")
    registry.mark_connected(client)
    written = []

    async def write(message):
        written.append(message)

    pump = asyncio.create_task(client.pump(write))
    client.send({"seq": 1})
    registry.disconnect(client)
    await asyncio.wait_for(pump, timeout=1)

    assert written == [{"seq": 1}]
    assert not client.send({"seq": 2})


def test_every_subscription_topic_has_a_group_target():
    assert set(GROUP_TARGETS) == set(NotificationKind)
    assert set(GROUP_TARGETS.values()) == {
        "ReceiveDashboardUpdate",
        "ReceiveAlert",
        "ReceiveKPIUpdate",
        "ReceiveDatabaseUpdate",
        "ReceiveQueryExecuted",
    }
