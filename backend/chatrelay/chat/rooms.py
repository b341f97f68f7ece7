"""Room membership: the current room of each connection.

Rooms are implicit. A room exists while at least one connection is joined
to it; joining a new room leaves the previous one.
"""
from typing import Dict, Optional, Set


class RoomMembership:
    """Tracks connection id -> current room and the reverse index."""

    def __init__(self) -> None:
        # connection_id -> room_id
        self._current: Dict[str, str] = {}

        # room_id -> set of connection ids
        self._members: Dict[str, Set[str]] = {}

    def join(self, connection_id: str, room_id: str) -> Optional[str]:
        """Move a connection into ``room_id``.

        Returns:
            The room the connection left, or None.
        """
        previous = self._current.get(connection_id)
        if previous == room_id:
            return None
        if previous is not None:
            self._discard(connection_id, previous)
        self._current[connection_id] = room_id
        self._members.setdefault(room_id, set()).add(connection_id)
        return previous

    def leave(self, connection_id: str) -> Optional[str]:
        """Remove a connection from its room (on disconnect).

        Returns:
            The room the connection was in, or None.
        """
        room_id = self._current.pop(connection_id, None)
        if room_id is not None:
            self._discard(connection_id, room_id)
        return room_id

    def _discard(self, connection_id: str, room_id: str) -> None:
        members = self._members.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._members[room_id]

    def current_room(self, connection_id: str) -> Optional[str]:
        return self._current.get(connection_id)

    def members(self, room_id: str) -> Set[str]:
        """Snapshot of connection ids currently joined to ``room_id``."""
        return set(self._members.get(room_id, ()))

    def get_room_size(self, room_id: str) -> int:
        """Get the number of connections joined to a room."""
        return len(self._members.get(room_id, ()))
