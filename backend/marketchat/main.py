"""marketchat gateway application.

Entry point for the reference gateway serving the real-time chat protocol
and the history API used by the client core.

Run with:
    uvicorn marketchat.main:app --port 8000

Modules:
    - chat: client synchronization core and shared wire schemas
    - gateway: WebSocket rooms and history endpoints (in-memory)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketchat import __version__
from marketchat.config import get_config
from marketchat.gateway.registry import registry
from marketchat.gateway.router import router as gateway_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every connection; websockets logs every frame at debug
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def apply_log_level(level: str) -> bool:
    """Apply a configured level name (e.g. ``"debug"``) to the root logger."""
    configured_level = getattr(logging, level.upper(), None)
    if not isinstance(configured_level, int):
        logger.warning("Unknown log level %r, keeping current level", level)
        return False
    logging.getLogger().setLevel(configured_level)
    logger.info("Root logger level set to %s", level.upper())
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()
    apply_log_level(config.logging.level)
    logger.info(
        "Gateway ready with %d configured user(s), max page size %d",
        len(config.gateway.users),
        config.gateway.max_page_size,
    )

    yield  # Application runs here

    # Shutdown
    registry.clear()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="marketchat gateway",
    description="Reference gateway for marketplace real-time chat",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(gateway_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
