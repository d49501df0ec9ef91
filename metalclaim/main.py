"""metalclaim main application."""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from sqlalchemy.engine import make_url

from metalclaim import __version__
from metalclaim.api import dependencies
from metalclaim.api.routes import coordination_router, hosts_router, machines_router
from metalclaim.config import settings
from metalclaim.controller import Controller
from metalclaim.db.database import async_session_factory, close_db, init_db

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _ensure_database_dir() -> None:
    """Create the directory of a file-backed SQLite database."""
    url = make_url(settings.database.url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting metalclaim...")

    _ensure_database_dir()
    await init_db()
    logger.info("Database initialized")

    controller = Controller(async_session_factory)
    dependencies.controller = controller
    await controller.start()

    logger.info(f"metalclaim ready on http://{settings.host}:{settings.port}")

    yield

    # Cleanup
    logger.info("Shutting down metalclaim...")

    await controller.stop()
    dependencies.controller = None

    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title="metalclaim",
    description="Bare-metal host claiming and provisioning controller",
    version=__version__,
    lifespan=lifespan,
)

# Mount API routes
app.include_router(hosts_router, prefix="/api/v1", tags=["hosts"])
app.include_router(machines_router, prefix="/api/v1", tags=["machines"])
app.include_router(coordination_router, prefix="/api/v1", tags=["coordination"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    controller = dependencies.controller
    return {
        "status": "healthy",
        "controller_running": controller is not None,
        "leader_election": settings.uses_leader_election,
        "is_leader": controller.coordinator.is_leader if controller else False,
    }


def main():
    """Run the application."""
    import uvicorn
    uvicorn.run(
        "metalclaim.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    main()
