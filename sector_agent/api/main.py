import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from sector_agent.api.endpoints import router as api_router
from sector_agent.config.settings import settings
from sector_agent.database import session as db_session
from sector_agent.services.registry import build_services

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Sector Agent API",
    description="Address resolution, sector assignment and status reconciliation for service tickets.",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup():
    """Creates the database, then wires the shared services."""
    if getattr(app.state, "services", None) is not None:
        logger.info("Services were provided before startup; skipping default wiring.")
        return
    logger.info("Application startup: Initializing database connection...")
    session_factory = db_session.create_db_engine_and_session()
    await db_session.init_db()

    services = build_services(session_factory)
    app.state.services = services
    if settings.watch_collections:
        for collection in settings.ticket_collections:
            services.watch(collection)
        logger.info(f"Watching collections: {', '.join(settings.ticket_collections)}")


@app.on_event("shutdown")
async def on_shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        logger.info("Application shutdown: draining background tasks...")
        await services.close()
        app.state.services = None
    await db_session.dispose_db()


@app.get("/health", status_code=200, tags=["Health"])
async def healthcheck():
    """A simple health check endpoint."""
    return {"status": "ok"}

# Include the main API router
app.include_router(api_router)

if __name__ == "__main__":
    uvicorn.run(
        "sector_agent.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
