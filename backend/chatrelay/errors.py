"""Exception types shared by the relay, the conversation store and the transport.

Every error carries a short machine-readable ``code`` so the WebSocket loop can
report it to the client as ``{"type": "error", "code": ..., "error": ...}``.

Note that an offline recipient is *not* an error: a private message to a user
without a live connection is stored and the send succeeds.
"""


class RelayError(Exception):
    """Base exception for relay errors."""
    code = "relay_error"

    def __init__(self, message: str, code: str = ""):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class StorageError(RelayError):
    """Raised when the conversation store is unavailable, times out, or rejects a write.

    Nothing is broadcast when this is raised; the sender may retry.
    """
    code = "storage_error"


class MalformedEvent(RelayError):
    """Raised when an inbound event is missing required fields or cannot be parsed.

    Raised before any store write takes place.
    """
    code = "malformed_event"
