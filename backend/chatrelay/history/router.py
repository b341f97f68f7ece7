"""Read-only history endpoints.

Endpoints:
    GET /history/rooms/{room_id}: Paginated room thread
    GET /history/direct/{user_a}/{user_b}: Paginated direct thread (pair order irrelevant)

Both return ``{"threadId", "messages", "hasMore"}`` with messages oldest
first. Pass the ``seq`` of the oldest message you hold as ``before`` to page
further back. Unknown threads return an empty page.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from chatrelay.chat.schemas import ThreadKey
from chatrelay.errors import StorageError
from chatrelay.services import RelayServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/history", tags=["history"])


async def _thread_page(
    services: RelayServices,
    key: ThreadKey,
    before: Optional[int],
    limit: Optional[int],
) -> JSONResponse:
    history = services.config.history
    limit = min(limit or history.default_page_size, history.max_page_size)

    try:
        thread = await services.store.find_thread(key)
        if thread is None:
            return JSONResponse({"threadId": None, "messages": [], "hasMore": False})
        # One extra row tells us whether an older page exists
        messages = await services.store.get_messages(thread.id, before_seq=before, limit=limit + 1)
    except StorageError as exc:
        logger.error("[History] Failed to read %s: %s", key.value, exc.message)
        return JSONResponse({"error": exc.message, "code": exc.code}, status_code=503)

    has_more = len(messages) > limit
    if has_more:
        messages = messages[1:]

    return JSONResponse({
        "threadId": thread.id,
        "messages": [msg.model_dump(mode="json") for msg in messages],
        "hasMore": has_more,
    })


@router.get("/rooms/{room_id}")
async def get_room_history(
    room_id: str,
    before: Optional[int] = Query(None, ge=1, description="Return messages with seq below this"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (clamped to the configured max)"),
    services: RelayServices = Depends(get_services),
) -> JSONResponse:
    """Get paginated message history for a room."""
    return await _thread_page(services, ThreadKey.room(room_id), before, limit)


@router.get("/direct/{user_a}/{user_b}")
async def get_direct_history(
    user_a: str,
    user_b: str,
    before: Optional[int] = Query(None, ge=1, description="Return messages with seq below this"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (clamped to the configured max)"),
    services: RelayServices = Depends(get_services),
) -> JSONResponse:
    """Get paginated message history between two users."""
    return await _thread_page(services, ThreadKey.direct(user_a, user_b), before, limit)
