import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dmarc_pipeline.api.routes import router as api_router
from dmarc_pipeline.config import get_settings
from dmarc_pipeline.database import check_db_connection
from dmarc_pipeline.error_handlers import register_error_handlers
from dmarc_pipeline.logging_config import log_requests_middleware, setup_logging
from dmarc_pipeline.metrics import metrics_middleware, metrics_router
from dmarc_pipeline.schemas import HealthResponse

settings = get_settings()

setup_logging(
    log_level=settings.log_level,
    log_dir=settings.log_dir,
    app_name="dmarc-pipeline-api",
    enable_json=settings.log_json
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown tasks"""
    logger.info("Starting application...")
    if not check_db_connection():
        logger.warning("Database not reachable at startup")

    yield

    logger.info("Shutting down application...")


app = FastAPI(
    title=settings.app_name,
    description="DMARC aggregate report ingestion pipeline",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

register_error_handlers(app)

if settings.enable_request_logging:
    app.middleware("http")(log_requests_middleware)

app.include_router(api_router)
app.include_router(metrics_router)

app.middleware("http")(metrics_middleware)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint with database connectivity test"""
    db_connected = check_db_connection()

    logger.debug("Health check performed", extra={"db_connected": db_connected})

    return HealthResponse(
        status="healthy" if db_connected else "unhealthy",
        service=settings.app_name,
        database="connected" if db_connected else "disconnected",
    )
