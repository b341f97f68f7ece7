"""Presence registry: which username is reachable through which connection.

The registry holds only connection ids, never connection objects; the
transport layer owns connection lifetimes.

Thread Safety:
    All operations are synchronous and never await, so within one event loop
    they are serialized per username. A stale disconnect cannot evict a newer
    session because removal is compare-and-remove.
"""
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Process-wide mapping of username -> live connection id.

    At most one connection id is tracked per username; a reconnect overwrites
    the previous entry.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, str] = {}

    def set(self, username: str, connection_id: str) -> Optional[str]:
        """Register ``connection_id`` as the live connection for ``username``.

        Returns:
            The connection id that was replaced, or None.
        """
        previous = self._entries.get(username)
        self._entries[username] = connection_id
        if previous and previous != connection_id:
            logger.info(
                "[Presence] %s reconnected: %s replaces %s", username, connection_id, previous
            )
        return previous

    def get(self, username: str) -> Optional[str]:
        """Return the live connection id for ``username``; None means offline."""
        return self._entries.get(username)

    def remove(self, username: str, expected_connection_id: str) -> bool:
        """Remove the entry only if it still points at ``expected_connection_id``.

        Returns:
            True if the entry was removed, False if it was absent or belonged
            to a newer connection.
        """
        if self._entries.get(username) != expected_connection_id:
            return False
        del self._entries[username]
        return True

    def is_online(self, username: str) -> bool:
        return username in self._entries

    def online_usernames(self) -> List[str]:
        """Sorted list of usernames with a live connection."""
        return sorted(self._entries)
