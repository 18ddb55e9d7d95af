"""
Live-update WebSocket endpoints

``/ws/dashboard`` is the group-push transport: clients invoke
``SubscribeToMetrics`` and receive every notification tagged with a client
target. ``/ws/subscriptions`` speaks a subscribe/next/complete protocol where
each subscription names one topic.

Outbound messages only ever go through the connection's buffer; a single
writer task per connection drains it onto the socket.
"""

import asyncio
import json
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from libs.shared_auth.jwt_fastapi import authenticate_websocket

from ...connections import METRICS_GROUP, ConnectionRegistry, ConnectionState, LiveConnection
from ...core.dependencies import jwt_validator
from ...core.logging import get_logger
from ...notifications import NotificationKind

logger = get_logger("realtime")

router = APIRouter()

SUBSCRIBE_TARGET = "SubscribeToMetrics"
UNSUBSCRIBE_TARGET = "UnsubscribeFromMetrics"

CLOSE_UNAUTHORIZED = 4401
CLOSE_DUPLICATE_SUBSCRIPTION = 4409
CLOSE_BAD_REQUEST = 4400

SUBSCRIPTION_TOPICS = frozenset(kind.value for kind in NotificationKind)

# Returns a close code to end the session, or None to keep reading.
MessageHandler = Callable[[ConnectionRegistry, LiveConnection, Dict[str, Any]], Optional[int]]


def handle_group_message(registry: ConnectionRegistry,
                         connection: LiveConnection,
                         message: Dict[str, Any]) -> Optional[int]:
    message_type = message.get("type")
    target = message.get("target")
    if message_type == "ping":
        connection.send({"type": "pong"})
    elif target == SUBSCRIBE_TARGET:
        registry.join_group(connection, METRICS_GROUP)
        connection.send({"type": "ack", "target": target})
    elif target == UNSUBSCRIBE_TARGET:
        registry.leave_group(connection, METRICS_GROUP)
        connection.send({"type": "ack", "target": target})
    else:
        connection.send({"type": "error", "message": f"Unknown target {target!r}"})
    return None


def handle_subscription_message(registry: ConnectionRegistry,
                                connection: LiveConnection,
                                message: Dict[str, Any]) -> Optional[int]:
    message_type = message.get("type")

    if message_type == "connection_init":
        if connection.state is not ConnectionState.CONNECTING:
            return CLOSE_BAD_REQUEST
        registry.mark_connected(connection)
        connection.send({"type": "connection_ack"})
        return None
    if message_type == "ping":
        connection.send({"type": "pong"})
        return None
    if message_type == "pong":
        return None
    if connection.state is ConnectionState.CONNECTING:
        return CLOSE_UNAUTHORIZED

    subscription_id = message.get("id")
    if message_type in ("subscribe", "complete") and not isinstance(subscription_id, str):
        return CLOSE_BAD_REQUEST
    if message_type == "subscribe":
        payload = message.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return CLOSE_BAD_REQUEST
        topic = payload.get("topic")
        if topic is not None and not isinstance(topic, str):
            return CLOSE_BAD_REQUEST
        if not subscription_id or topic not in SUBSCRIPTION_TOPICS:
            connection.send({
                "type": "error",
                "id": subscription_id,
                "payload": [{"message": f"Unknown topic {topic!r}"}],
            })
            return None
        try:
            registry.subscribe(connection, subscription_id, topic)
        except ValueError:
            return CLOSE_DUPLICATE_SUBSCRIPTION
        logger.info(f"Client {connection.id} subscribed {subscription_id} to {topic}")
        return None
    if message_type == "complete":
        registry.unsubscribe(connection, subscription_id)
        return None

    connection.send({"type": "error", "payload": [{"message": f"Unknown message type {message_type!r}"}]})
    return None


async def _stop_writer(writer: "asyncio.Task[None]", drain_timeout: float = 1.0) -> None:
    """Let the writer flush up to the close marker, then make sure it is gone."""
    await asyncio.wait({writer}, timeout=drain_timeout)
    if not writer.done():
        writer.cancel()
    try:
        await writer
    except asyncio.CancelledError:
        pass
    except (RuntimeError, OSError, WebSocketDisconnect) as e:
        logger.debug(f"Writer ended with {e!r}")


async def _serve(websocket: WebSocket,
                 transport: str,
                 handle: MessageHandler,
                 connected_on_accept: bool) -> None:
    principal = authenticate_websocket(websocket, jwt_validator)
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry: ConnectionRegistry = websocket.app.state.connection_registry
    await websocket.accept()
    connection = registry.open(transport, user_id=principal.user_id)
    if connected_on_accept:
        registry.mark_connected(connection)
    writer = asyncio.create_task(connection.pump(websocket.send_json), name=f"ws-writer:{connection.id}")

    close_code: Optional[int] = None
    try:
        while close_code is None:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                connection.send({"type": "error", "message": "Messages must be JSON objects"})
                continue
            if not isinstance(message, dict):
                connection.send({"type": "error", "message": "Messages must be JSON objects"})
                continue
            close_code = handle(registry, connection, message)
    except WebSocketDisconnect:
        logger.debug(f"Client {connection.id} went away")
    finally:
        registry.disconnect(connection)
        await _stop_writer(writer)

    if close_code is not None:
        await websocket.close(code=close_code)


@router.websocket("/ws/dashboard")
async def dashboard_socket(websocket: WebSocket) -> None:
    await _serve(websocket, "group", handle_group_message, connected_on_accept=True)


@router.websocket("/ws/subscriptions")
async def subscriptions_socket(websocket: WebSocket) -> None:
    await _serve(websocket, "subscription", handle_subscription_message, connected_on_accept=False)
