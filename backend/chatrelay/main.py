"""Chat Relay Application.

This is the main entry point for the chat relay service. Clients hold a
WebSocket open, announce presence, join rooms and exchange text / audio /
video-reference messages, either broadcast to a room or sent privately to
another user. Every message is appended to a durable conversation thread
before it is delivered.

Modules:
    - chat: WebSocket lifecycle, presence, room membership, message relay
    - storage: DuckDB-backed conversation threads
    - history: Read-only paginated thread history
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.chat.router import router as chat_router
from chatrelay.config import AppConfig, get_config
from chatrelay.history import router as history_router
from chatrelay.services import build_services
from chatrelay.storage import ConversationStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request transport chatter
for _noisy in ("uvicorn.access", "websockets", "httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[ConversationStore] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Explicit config; defaults to :func:`get_config`.
        store: Explicit conversation store; defaults to DuckDB per config.
    """
    app_config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        configured_level = getattr(logging, app_config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", app_config.logging.level.upper())

        services = build_services(app_config, store=store)
        app.state.services = services
        logger.info(
            "Chat relay listening on %s:%s",
            app_config.server.host,
            app_config.server.port,
        )

        yield  # Application runs here

        # Shutdown
        services.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Chat Relay API",
        description="Presence-aware chat relay with durable conversation threads",
        version="0.1.0",
        lifespan=lifespan,
    )

    allowed_origins = app_config.server.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        allow_credentials="*" not in allowed_origins,
    )

    app.include_router(chat_router)
    app.include_router(history_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    server_config = get_config().server
    uvicorn.run(app, host=server_config.host, port=server_config.port)
