"""Relaychat Backend Application.

This is the main entry point for the relaychat service: a real-time chat
combining a public room with one-to-one direct messages, presence tracking
and per-connection network-quality telemetry.

Modules:
    - chat: WebSocket session core (presence, delivery, receipts, metrics)
    - auth: registration, login and bearer-token verification
    - storage: DuckDB persistence for users and messages
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relaychat.auth.router import router as auth_router
from relaychat.chat.gateway import build_gateway, set_gateway
from relaychat.chat.router import router as chat_router
from relaychat.config import get_config
from relaychat.storage import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn logs every WebSocket handshake at INFO
for _noisy in ("uvicorn.access", "websockets", "duckdb"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = ChatStore.get_instance(config.database.path)
    set_gateway(build_gateway(config, store))
    logger.info(
        f"Relaychat ready on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    set_gateway(None)
    ChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Relaychat API",
    description="Real-time chat: public room, direct messages, presence and network quality",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)
app.include_router(auth_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "relaychat.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )
