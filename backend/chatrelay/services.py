"""Wiring of the relay components.

A single :class:`RelayServices` instance is built at startup and stored on
``app.state.services``. Routers reach it through :func:`get_services`, so no
component relies on module-level state.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from chatrelay.chat.manager import ConnectionManager
from chatrelay.chat.presence import PresenceRegistry
from chatrelay.chat.relay import MessageRelay
from chatrelay.chat.rooms import RoomMembership
from chatrelay.config import AppConfig
from chatrelay.storage import ConversationStore, DuckDBConversationStore

logger = logging.getLogger(__name__)


@dataclass
class RelayServices:
    config: AppConfig
    store: ConversationStore
    presence: PresenceRegistry
    rooms: RoomMembership
    connections: ConnectionManager
    relay: MessageRelay

    def close(self) -> None:
        self.store.close()


def build_services(config: AppConfig, store: Optional[ConversationStore] = None) -> RelayServices:
    """Create the store, registries, lifecycle manager and relay.

    Args:
        config: Loaded application config.
        store: Optional pre-built store (tests inject failing stores here).
    """
    if store is None:
        store = DuckDBConversationStore(
            db_path=config.storage.db_path,
            timeout_seconds=config.storage.timeout_seconds,
        )
    presence = PresenceRegistry()
    rooms = RoomMembership()
    connections = ConnectionManager(presence, rooms)
    relay = MessageRelay(store, presence, rooms, connections)
    logger.info("Relay services ready (store=%s)", type(store).__name__)
    return RelayServices(
        config=config,
        store=store,
        presence=presence,
        rooms=rooms,
        connections=connections,
        relay=relay,
    )


def get_services(request: Request) -> RelayServices:
    return request.app.state.services
