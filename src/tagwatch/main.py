"""Tagwatch application entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tagwatch.config import load_config, settings
from tagwatch.database import init_db
from tagwatch.scheduler import DetectionScheduler

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


async def _start_scheduler(app: FastAPI) -> None:
    cfg = load_config()
    if cfg.detection_interval <= 0:
        logger.info("Periodic detection disabled")
        app.state.scheduler = None
        return

    scheduler = DetectionScheduler(cfg.detection_interval, cfg)
    await scheduler.start()
    app.state.scheduler = scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    # Import models to register them with SQLModel before init_db()
    import tagwatch.alerts.models  # noqa: F401
    import tagwatch.registry.models  # noqa: F401
    import tagwatch.whitelist.models  # noqa: F401

    init_db()
    logger.info("Database initialized")

    await _start_scheduler(app)

    yield

    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()


app = FastAPI(
    title="Tagwatch",
    description="BLE tracker detection: MAC-rotation linking, threat scoring and alerts",
    version="0.1.0",
    lifespan=lifespan,
)


# Register routers
from tagwatch.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting Tagwatch on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
