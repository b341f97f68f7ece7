"""Test doubles shared across the test modules."""
from typing import List

from chatrelay.errors import StorageError
from chatrelay.storage import DuckDBConversationStore


class FakeWebSocket:
    """Records frames sent by the server instead of writing to a socket."""

    def __init__(self, fail_sends: bool = False) -> None:
        self.accepted = False
        self.fail_sends = fail_sends
        self.sent: List[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict) -> None:
        if self.fail_sends:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def frames(self, frame_type: str) -> List[dict]:
        return [f for f in self.sent if f["type"] == frame_type]


class FailingStore(DuckDBConversationStore):
    """DuckDB store whose appends (and optionally reads) always fail."""

    def __init__(self, fail_reads: bool = False, **kwargs) -> None:
        super().__init__(db_path=":memory:", **kwargs)
        self.fail_reads = fail_reads

    async def append_and_save(self, thread, message):
        raise StorageError("database unavailable")

    async def find_thread_by_room(self, room_id: str):
        if self.fail_reads:
            raise StorageError("database unavailable")
        return await super().find_thread_by_room(room_id)
