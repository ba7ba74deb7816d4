"""Main FastAPI application"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from forumsync.api import dashboard, sync
from forumsync.config import settings
from forumsync.gateway import ForumGateway
from forumsync.models.base import init_db
from forumsync.scheduler import scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_gateway(gateway: ForumGateway):
    try:
        await gateway.start(settings.discord_token)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Discord gateway stopped: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting forum sync service")
    settings.validate_for_startup()
    logger.info(
        f"Configuration loaded: {len(settings.channels)} channel(s), "
        f"{len(settings.unique_team_ids())} team(s)"
    )
    init_db()
    scheduler.start()

    gateway = None
    gateway_task = None
    if settings.gateway_enabled:
        gateway = ForumGateway(scheduler)
        gateway_task = asyncio.create_task(_run_gateway(gateway))
    yield
    # Shutdown
    logger.info("Stopping forum sync service")
    if gateway is not None:
        await gateway.close()
    if gateway_task is not None:
        gateway_task.cancel()
        try:
            await gateway_task
        except asyncio.CancelledError:
            pass
    scheduler.stop()


app = FastAPI(
    title="Forum Sync Service",
    description="Mirror Discord forum threads to Linear issues and back",
    version="1.0.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(sync.router)
app.include_router(dashboard.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Forum Sync"}


def run():
    import uvicorn

    uvicorn.run(
        "forumsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
