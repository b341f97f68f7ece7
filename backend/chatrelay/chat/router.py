"""Chat router providing the relay WebSocket and presence endpoint.

This module provides:
    - WebSocket /ws/chat?username=<name>: Real-time relay connection
    - GET /presence: Usernames that currently have a live connection

Protocol Flow:
    1. Client connects with its username in the query string
       → Server sends: {type: "connected", connectionId, username, onlineUsers}
       → Server broadcasts: {type: "presenceChanged", username, status: "online"}
    2. Client sends: {type: "joinRoom", roomId}
       → Server sends: {type: "roomJoined", roomId}
    3. Client sends: {type: "roomMessage", roomId?, text?, audioUrl?, videoUrl?}
       → Server broadcasts to the room: {type: "roomMessageDelivered", ...message}
    4. Client sends: {type: "privateMessage", to, text?, audioUrl?, videoUrl?}
       → Recipient (if online) gets: {type: "privateMessageDelivered", from, ...}
       → Sender gets: {type: "privateMessageSent", to, delivered, message}
    5. On disconnect → Server broadcasts: {type: "presenceChanged", status: "offline"}

Failures are reported to the sending socket only, as
{type: "error", code: "storage_error" | "malformed_event", error}. The socket
stays open so the client can retry.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from chatrelay.errors import MalformedEvent, RelayError, StorageError
from chatrelay.services import RelayServices, get_services

from .manager import Connection
from .schemas import (
    ErrorEvent,
    JoinRoomEvent,
    PrivateMessageEvent,
    PrivateMessageSent,
    RoomMessageEvent,
    parse_event,
    to_wire,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.get("/presence")
async def get_presence(services: RelayServices = Depends(get_services)) -> JSONResponse:
    """List usernames that are currently online."""
    return JSONResponse({"online": services.presence.online_usernames()})


async def handle_frame(services: RelayServices, connection: Connection, raw: str) -> None:
    """Decode, validate and dispatch one inbound frame.

    Raises:
        MalformedEvent: For undecodable or invalid frames, and for message
            events from anonymous connections.
        StorageError: If the relay could not persist a message.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedEvent("Frame is not valid JSON") from exc

    event = parse_event(data)
    manager = services.connections

    if isinstance(event, JoinRoomEvent):
        await manager.on_join_room(connection, event.roomId)
        return

    # Sender identity always comes from the handshake, never from the frame
    if connection.is_anonymous:
        raise MalformedEvent("Anonymous connections cannot send messages")

    if isinstance(event, PrivateMessageEvent):
        report = await services.relay.send_private(
            connection.username,
            event.to,
            text=event.text,
            audio_url=event.audioUrl,
            video_url=event.videoUrl,
        )
        await manager.send_to(connection.id, to_wire(PrivateMessageSent(
            to=event.to, delivered=report.delivered, message=report.message
        )))
        return

    if isinstance(event, RoomMessageEvent):
        room_id = event.roomId or connection.current_room
        if not room_id:
            raise MalformedEvent("roomId is required when not joined to a room")
        await services.relay.send_room_message(
            room_id,
            connection.username,
            text=event.text,
            audio_url=event.audioUrl,
            video_url=event.videoUrl,
        )


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    username: Optional[str] = Query(None, description="Handshake username"),
) -> None:
    """WebSocket endpoint for one relay connection.

    Args:
        websocket: The WebSocket connection.
        username: Identity of the connecting user. Empty means anonymous.
    """
    services: RelayServices = websocket.app.state.services
    username = (username or "").strip() or None

    if username is None and not services.config.presence.allow_anonymous:
        logger.warning("[WS] Rejecting anonymous connection (presence.allow_anonymous=false)")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    if username is not None and not username.isprintable():
        logger.warning("[WS] Rejecting username with control characters: %r", username)
        await websocket.close(code=1008)
        return

    manager = services.connections
    connection = await manager.connect(websocket, username)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                await handle_frame(services, connection, raw)
            except StorageError as exc:
                logger.error(
                    "[WS] Send from %s failed to persist: %s", connection.username, exc.message
                )
                await manager.send_to(connection.id, to_wire(ErrorEvent(code=exc.code, error=exc.message)))
            except RelayError as exc:
                logger.warning(
                    "[WS] Rejected event from %s: %s", connection.username or connection.id, exc.message
                )
                await manager.send_to(connection.id, to_wire(ErrorEvent(code=exc.code, error=exc.message)))
    except WebSocketDisconnect:
        logger.debug("[WS] Socket %s closed by client", connection.id)
    finally:
        await manager.on_disconnect(connection)
