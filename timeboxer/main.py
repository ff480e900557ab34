from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from timeboxer.api.routes import router as api_router
from timeboxer.config.settings import get_settings
from timeboxer.storage.database import init_db
from timeboxer.utils.logging_config import setup_logging


# Setup logging
setup_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    description="Time-boxes prioritized work items into weekly availability around calendar conflicts",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize database on startup
@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.app_name}...")
    init_db()
    logger.info("Database initialized")
    logger.info(f"Rule timezone: {settings.timezone}")
    logger.info(f"Calendar sync: {'enabled' if settings.calendar_access_token else 'disabled'}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"Shutting down {settings.app_name}...")

app.include_router(api_router, prefix="/api/v1", tags=["scheduling"])


@app.get("/health", tags=["health"])
def health_check():
    """Health check endpoint for monitoring and load balancers."""
    return {"status": "ok", "app": settings.app_name, "version": "1.0.0"}
