"""ControlGate main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from controlgate.api import router
from controlgate.api.deps import validate_auth_config
from controlgate.config import settings
from controlgate.db.base import close_db, init_db
from controlgate.instance import resolve_instance_id
from controlgate.tasks import Scheduler
from controlgate.transport import OpenClawTransport

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("controlgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting ControlGate server...")

    settings.instance_id = resolve_instance_id(settings.instance_id, settings.env.value)
    logger.info(f"Environment: {settings.env.value}, runner: {settings.instance_id}")

    # Fail fast on insecure auth configuration
    validate_auth_config()

    await init_db()
    logger.info("Database initialized")

    scheduler = Scheduler(OpenClawTransport(), runner_id=settings.instance_id)
    app.state.scheduler = scheduler
    await scheduler.start()

    yield

    logger.info("Shutting down ControlGate server...")
    await scheduler.stop()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="ControlGate",
    description="Control plane for multi-agent task automation",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "controlgate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
