import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import meta_tx, operator
from .api.errors import register_error_handlers
from .config import settings
from .core.relayer import get_relayer_service
from .logging_config import setup_logging
from .middleware import RequestLoggingMiddleware
from .providers.price_feed import build_price_feed_updater

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    service = get_relayer_service()
    price_task: Optional[asyncio.Task] = None
    updater = None

    if settings.relayer_autostart:
        await service.start()

    if settings.enable_price_feed:
        updater = build_price_feed_updater(
            settings, service.client, service.nonces, publisher=service.relayer_address
        )
        price_task = asyncio.create_task(updater.run(), name="price-feed")

    logger.info("relayhub_started", extra={"relayer": service.relayer_address})
    try:
        yield
    finally:
        if updater is not None:
            updater.stop()
        if price_task is not None:
            price_task.cancel()
            await asyncio.gather(price_task, return_exceptions=True)
        if service.is_running:
            await service.stop()


app = FastAPI(
    title="relayhub",
    description="Cross-chain command relayer with gas credits and gasless batches",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
)
app.add_middleware(RequestLoggingMiddleware)

register_error_handlers(app)

app.include_router(operator.router, tags=["Operator"])
app.include_router(meta_tx.router, tags=["Meta Transactions"])


@app.get("/")
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "relayhub",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "relayhub.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
