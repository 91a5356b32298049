"""Main FastAPI application."""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from intake_dialer.api import analytics, calls, health, streams
from intake_dialer.api.webhooks import knowlarity as knowlarity_webhooks
from intake_dialer.core.config import settings
from intake_dialer.core.dependencies import build_services
from intake_dialer.core.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    services = build_services(settings)
    app.state.services = services
    sweep_task = asyncio.create_task(
        services.relay_hub.run_cleanup_loop(settings.cleanup_interval_seconds)
    )
    logger.info(
        f"[STARTUP] Intake dialer ready - Strategy: {services.client.strategy.name}, "
        f"Test mode: {settings.knowlarity_test_mode}"
    )
    yield
    # Shutdown
    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task
    await services.shutdown()


app = FastAPI(
    title="Intake Dialer",
    description="Outbound patient intake calls bridged to a conversational voice agent",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(calls.router, tags=["calls"])
app.include_router(knowlarity_webhooks.router, tags=["webhooks"])
app.include_router(streams.router, tags=["streams"])
app.include_router(analytics.router, tags=["analytics"])


@app.get("/")
async def root():
    return {
        "message": "Intake Dialer API",
        "version": "0.1.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("intake_dialer.main:app", host=settings.host, port=settings.port)
