"""ConversationStore abstract interface.

The relay reaches durable history only through this interface. Implementations
must make :meth:`ConversationStore.append_and_save` durable before returning
and atomic per thread: concurrent appends to the same thread must each land
exactly once, in the order the store accepted them.

All storage failures are raised as :class:`~chatrelay.errors.StorageError`.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from chatrelay.chat.schemas import ConversationThread, Message, ThreadKey


class ConversationStore(ABC):
    """Abstract base class for conversation thread storage."""

    @abstractmethod
    async def find_thread_by_room(self, room_id: str) -> Optional[ConversationThread]:
        """Return the room thread for ``room_id``, or None if none exists yet."""
        ...

    @abstractmethod
    async def find_thread_by_user_pair(
        self, user_a: str, user_b: str
    ) -> Optional[ConversationThread]:
        """Return the direct thread between two users regardless of argument order."""
        ...

    @abstractmethod
    async def create_thread(self, key: ThreadKey) -> ConversationThread:
        """Create the thread for ``key``.

        Creating a thread that already exists returns the existing one.
        """
        ...

    @abstractmethod
    async def append_and_save(
        self, thread: ConversationThread, message: Message
    ) -> Message:
        """Durably append ``message`` to ``thread``.

        Returns:
            The stored message with its ``seq`` assigned.

        Raises:
            StorageError: If the write fails or times out. The thread is left
                unchanged in that case.
        """
        ...

    @abstractmethod
    async def get_messages(
        self,
        thread_id: str,
        before_seq: Optional[int] = None,
        limit: int = 50,
    ) -> List[Message]:
        """Return up to ``limit`` messages with ``seq < before_seq``, oldest first."""
        ...

    @abstractmethod
    async def count_messages(self, thread_id: str) -> int:
        """Return the number of messages stored in a thread."""
        ...

    async def find_thread(self, key: ThreadKey) -> Optional[ConversationThread]:
        """Look up a thread by key, dispatching on its kind."""
        if key.roomId is not None:
            return await self.find_thread_by_room(key.roomId)
        return await self.find_thread_by_user_pair(*key.users)

    async def get_or_create_thread(self, key: ThreadKey) -> ConversationThread:
        """Return the thread for ``key``, creating it on first use.

        A missing thread is never an error; absence means "create".
        """
        thread = await self.find_thread(key)
        if thread is None:
            thread = await self.create_thread(key)
        return thread

    def close(self) -> None:
        """Release any resources held by the store."""
