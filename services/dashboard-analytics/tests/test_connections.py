import pytest

from app.connections import METRICS_GROUP, ConnectionClosedError, ConnectionState


def test_lifecycle_transitions(registry):
    connection = registry.open("subscription", "u-1")
    assert connection.state is ConnectionState.CONNECTING

    registry.mark_connected(connection)
    assert connection.state is ConnectionState.CONNECTED

    registry.subscribe(connection, "s-1", "dashboardUpdate")
    assert connection.state is ConnectionState.SUBSCRIBED

    assert registry.unsubscribe(connection, "s-1")
    assert connection.state is ConnectionState.CONNECTED

    registry.disconnect(connection)
    assert connection.state is ConnectionState.DISCONNECTED
    assert len(registry) == 0


def test_disconnect_is_idempotent_and_cleans_groups(registry):
    connection = registry.open("group")
    registry.mark_connected(connection)
    registry.join_group(connection, METRICS_GROUP)

    registry.disconnect(connection)
    registry.disconnect(connection)

    assert registry.group_members(METRICS_GROUP) == []
    assert connection.groups == set()


def test_subscribe_requires_handshake(registry):
    connection = registry.open("subscription")
    with pytest.raises(ConnectionClosedError):
        registry.subscribe(connection, "s-1", "kpiUpdated")


def test_duplicate_subscription_id_is_rejected(registry):
    connection = registry.open("subscription")
    registry.mark_connected(connection)
    registry.subscribe(connection, "s-1", "kpiUpdated")

    with pytest.raises(ValueError):
        registry.subscribe(connection, "s-1", "alertReceived")


def test_closed_connection_cannot_rejoin(registry):
    connection = registry.open("group")
    registry.mark_connected(connection)
    registry.disconnect(connection)

    with pytest.raises(ConnectionClosedError):
        registry.join_group(connection, METRICS_GROUP)


def test_close_all(registry):
    for _ in range(3):
        registry.mark_connected(registry.open("group"))

    assert registry.close_all() == 3
    assert len(registry) == 0
