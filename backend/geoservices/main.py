import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .detector import ServiceTypeDetector
from .fetcher import CapabilityFetcher
from .models import ErrorResponse, HealthResponse
from .notifications import NotificationFeed
from .orchestrator import ServiceOrchestrator
from .registry import InMemoryLayerRegistry
from .router import router as services_router
from .settings import (
    APP_VERSION,
    DETECTION_TIMEOUT,
    FETCH_USER_AGENT,
    FRONTEND_ORIGIN,
    LOG_LEVEL,
    MAX_TRACKED_SERVICES,
    NOTIFICATION_BACKLOG,
)
from .utils.logging import get_logger, setup_logging

# Setup logging
setup_logging(LOG_LEVEL)
logger = get_logger(__name__)


def build_fetcher() -> CapabilityFetcher:
    return CapabilityFetcher(user_agent=FETCH_USER_AGENT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    fetcher = build_fetcher()
    registry = InMemoryLayerRegistry()
    feed = NotificationFeed(backlog=NOTIFICATION_BACKLOG)
    detector = ServiceTypeDetector(fetcher, timeout=DETECTION_TIMEOUT)
    orchestrator = ServiceOrchestrator(
        detector, registry, feed, max_services=MAX_TRACKED_SERVICES
    )

    app.state.fetcher = fetcher
    app.state.registry = registry
    app.state.notifications = feed
    app.state.detector = detector
    app.state.orchestrator = orchestrator
    logger.info("GIS service stack ready", extra={'detection_timeout_s': DETECTION_TIMEOUT})

    try:
        yield
    finally:
        await orchestrator.aclose()
        await fetcher.aclose()
        logger.info("GIS service stack stopped")


app = FastAPI(
    title="GIS Service Discovery API",
    description="Detects ArcGIS REST, WMS and WFS services and adapts them into map layers",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.include_router(services_router, prefix="/api", tags=["gis-services"])

# CORS configuration
origins = [origin.strip() for origin in FRONTEND_ORIGIN.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log requests with timing and add request ID."""
    request_id = str(uuid.uuid4())[:8]
    start_time = datetime.utcnow()
    request.state.request_id = request_id

    logger.info(
        "Request started",
        extra={
            'request_id': request_id,
            'method': request.method,
            'url': str(request.url),
            'client_ip': request.client.host if request.client else None,
        },
    )

    try:
        response = await call_next(request)
    except Exception as e:
        duration = (datetime.utcnow() - start_time).total_seconds() * 1000
        logger.error(
            "Request failed",
            extra={
                'request_id': request_id,
                'method': request.method,
                'url': str(request.url),
                'duration_ms': round(duration, 2),
                'error': str(e),
            },
            exc_info=True,
        )
        raise

    duration = (datetime.utcnow() - start_time).total_seconds() * 1000
    logger.info(
        "Request completed",
        extra={
            'request_id': request_id,
            'method': request.method,
            'url': str(request.url),
            'status_code': response.status_code,
            'duration_ms': round(duration, 2),
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with structured error response."""
    request_id = getattr(request.state, 'request_id', 'unknown')

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail), request_id=request_id).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions with structured error response."""
    request_id = getattr(request.state, 'request_id', 'unknown')

    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    detail: Optional[str] = str(exc) if LOG_LEVEL.upper() == "DEBUG" else None
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            detail=detail,
            request_id=request_id,
        ).model_dump(),
    )


@app.get("/healthz", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        timestamp=datetime.utcnow().isoformat(),
        version=APP_VERSION,
    )


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
