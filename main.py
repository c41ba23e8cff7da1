"""Main FastAPI application for the Hub Ingestion Gateway."""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from database import engine, Base
from routers import health as health_router
from routers import hubs as hubs_router
from routers import telemetry as telemetry_router
from routers import websocket as websocket_router
from routers.websocket import connection_manager
from mqtt_client import mqtt_handler
from pipeline import pipeline_status, start_pipeline, stop_pipeline

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info("Starting Hub Ingestion Gateway...")

    # Create database tables
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created/verified")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")

    # Worker threads hand socket events back to this loop
    connection_manager.bind_loop(asyncio.get_running_loop())

    start_pipeline()

    yield

    # Shutdown
    logger.info("Shutting down Hub Ingestion Gateway...")
    stop_pipeline()


# Create FastAPI application
app = FastAPI(
    title="Hub Ingestion Gateway API",
    description="""
    Ingestion gateway for BLE health-monitoring hubs:
    - MQTT telemetry ingestion into daily CSV files
    - Pending-device (MVS) reconciliation with hubs
    - Device disconnect notifications (socket events and push)
    - Real-time telemetry streaming (WebSocket)

    ## Documentation
    - OpenAPI/Swagger: `/docs`
    - ReDoc: `/redoc`
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(
    telemetry_router.router,
    prefix=f"{settings.api_v1_prefix}/telemetry",
    tags=["telemetry"]
)
app.include_router(
    hubs_router.router,
    prefix=f"{settings.api_v1_prefix}",
    tags=["hubs"]
)
app.include_router(
    health_router.router,
    prefix=f"{settings.api_v1_prefix}",
    tags=["health"]
)
app.include_router(
    websocket_router.router,
    prefix=f"{settings.api_v1_prefix}",
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Hub Ingestion Gateway",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "mqtt_connected": mqtt_handler.is_connected,
        "pipeline": pipeline_status(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
