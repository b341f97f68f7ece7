"""Message relay: persist first, then fan out to live connections.

Both send operations follow the same order:
    1. Resolve or create the conversation thread
    2. Stamp the message with the server receipt time
    3. Durably append it (a StorageError aborts here; nothing is delivered)
    4. Deliver to whichever target connections are live

Messages are not deduplicated; a client that sends twice gets two stored
messages. A private message to an offline user is a successful send: it is
stored and becomes visible through the history read path.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from chatrelay.errors import MalformedEvent
from chatrelay.storage import ConversationStore

from .manager import ConnectionManager
from .presence import PresenceRegistry
from .rooms import RoomMembership
from .schemas import (
    ConversationThread,
    Message,
    PrivateMessageDelivered,
    RoomMessageDelivered,
    ThreadKey,
    to_wire,
)

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    """Outcome of a successful send.

    Attributes:
        message: The stored message (with ``seq`` assigned).
        thread: The thread it was appended to.
        delivered_to: Connection ids the message was pushed to.
    """
    message: Message
    thread: ConversationThread
    delivered_to: List[str] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return bool(self.delivered_to)


class MessageRelay:
    """Routes room and private messages through the store to live connections.

    The relay reads presence and room membership but never mutates them.
    """

    def __init__(
        self,
        store: ConversationStore,
        presence: PresenceRegistry,
        rooms: RoomMembership,
        connections: ConnectionManager,
    ) -> None:
        self.store = store
        self.presence = presence
        self.rooms = rooms
        self.connections = connections

    async def send_private(
        self,
        sender: str,
        recipient: str,
        text: Optional[str] = None,
        audio_url: Optional[str] = None,
        video_url: Optional[str] = None,
    ) -> DeliveryReport:
        """Store a direct message and push it to the recipient if online.

        Raises:
            MalformedEvent: If sender or recipient is missing.
            StorageError: If the message could not be persisted.
        """
        if not sender:
            raise MalformedEvent("Sender identity is required to send messages")
        if not recipient:
            raise MalformedEvent("Recipient username is required for private messages")

        thread = await self.store.get_or_create_thread(ThreadKey.direct(sender, recipient))
        stored = await self.store.append_and_save(
            thread, self._build_message(sender, text, audio_url, video_url)
        )

        report = DeliveryReport(message=stored, thread=thread)
        target = self.presence.get(recipient)
        if target is None:
            logger.debug("[Relay] %s is offline; message %s stored only", recipient, stored.id)
            return report

        if await self.connections.send_to(target, to_wire(PrivateMessageDelivered.from_message(stored))):
            report.delivered_to.append(target)
        logger.debug(
            "[Relay] Private %s -> %s delivered=%s", sender, recipient, report.delivered
        )
        return report

    async def send_room_message(
        self,
        room_id: str,
        sender: str,
        text: Optional[str] = None,
        audio_url: Optional[str] = None,
        video_url: Optional[str] = None,
    ) -> DeliveryReport:
        """Store a room message and broadcast it to every connection in the room.

        The sender's own connection is included when it is joined to the
        room, so its UI renders the stored copy.

        Raises:
            MalformedEvent: If sender or room is missing.
            StorageError: If the message could not be persisted.
        """
        if not sender:
            raise MalformedEvent("Sender identity is required to send messages")
        if not room_id:
            raise MalformedEvent("Room id is required for room messages")

        thread = await self.store.get_or_create_thread(ThreadKey.room(room_id))
        stored = await self.store.append_and_save(
            thread, self._build_message(sender, text, audio_url, video_url)
        )

        targets = self.rooms.members(room_id)
        delivered = await self.connections.send_many(
            targets, to_wire(RoomMessageDelivered.from_message(room_id, stored))
        )
        logger.debug(
            "[Relay] Room %s message %s delivered to %d/%d connections",
            room_id, stored.id, len(delivered), len(targets),
        )
        return DeliveryReport(message=stored, thread=thread, delivered_to=delivered)

    @staticmethod
    def _build_message(
        sender: str,
        text: Optional[str],
        audio_url: Optional[str],
        video_url: Optional[str],
    ) -> Message:
        # Empty text is kept so media-only messages go through
        return Message(
            username=sender,
            text=text or "",
            audioUrl=audio_url or None,
            videoUrl=video_url or None,
            seen=False,
        )
