from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from .adapter import adapt_service
from .detector import ServiceTypeDetector, validate_service_url
from .models import (
    AddServiceRequest,
    AddServiceResponse,
    DetectRequest,
    DetectResponse,
    GISServiceLayerConfig,
    Notification,
    RegisteredLayer,
    RemoveServiceResponse,
    ToggleServiceResponse,
)
from .notifications import NotificationFeed
from .orchestrator import ServiceOrchestrator
from .registry import InMemoryLayerRegistry
from .settings import rate_limiter
from .utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)

PREVIEW_REQUEST_ID = "preview"


def _enforce_rate_limit(http_request: Request) -> None:
    client_ip = http_request.client.host if http_request.client else "unknown"
    if not rate_limiter.is_allowed(client_ip):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


def _orchestrator(http_request: Request) -> ServiceOrchestrator:
    return http_request.app.state.orchestrator


def _require_url(raw: str) -> str:
    url = raw.strip()
    url_error = validate_service_url(url)
    if url_error:
        raise HTTPException(status_code=400, detail=url_error)
    return url


@router.post("/services/detect", response_model=DetectResponse)
async def detect_service(request: DetectRequest, http_request: Request):
    """Detect the service behind a URL without adding it to the map."""
    _enforce_rate_limit(http_request)
    url = _require_url(request.url)

    detector: ServiceTypeDetector = http_request.app.state.detector
    result = await detector.detect(url)

    source = layer = None
    if result.isValid and result.service is not None:
        adapted = adapt_service(result.service, PREVIEW_REQUEST_ID)
        if adapted is not None:
            source, layer = adapted

    return DetectResponse(result=result, source=source, layer=layer)


@router.post("/services", response_model=AddServiceResponse)
async def add_service(request: AddServiceRequest, http_request: Request):
    _enforce_rate_limit(http_request)
    url = _require_url(request.url)

    orchestrator = _orchestrator(http_request)
    if orchestrator.is_pending(url):
        raise HTTPException(status_code=409, detail="A request for this URL is already in progress")

    added = await orchestrator.add_service_by_url(url, request.name)
    return AddServiceResponse(added=added, service=orchestrator.latest_for_url(url))


@router.get("/services", response_model=List[GISServiceLayerConfig])
async def list_services(http_request: Request):
    return _orchestrator(http_request).service_layers


def _known_service(orchestrator: ServiceOrchestrator, service_id: str) -> GISServiceLayerConfig:
    entry = orchestrator.get_service(service_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Unknown service '{service_id}'")
    return entry


@router.delete("/services/{service_id}", response_model=RemoveServiceResponse)
async def remove_service(service_id: str, http_request: Request):
    orchestrator = _orchestrator(http_request)
    _known_service(orchestrator, service_id)
    return RemoveServiceResponse(removed=orchestrator.remove_service(service_id))


@router.post("/services/{service_id}/toggle", response_model=ToggleServiceResponse)
async def toggle_service(service_id: str, http_request: Request):
    orchestrator = _orchestrator(http_request)
    _known_service(orchestrator, service_id)
    toggled = orchestrator.toggle_service_visibility(service_id)
    return ToggleServiceResponse(toggled=toggled, service=orchestrator.get_service(service_id))


@router.get("/map/layers", response_model=List[RegisteredLayer])
async def map_layers(http_request: Request):
    registry: InMemoryLayerRegistry = http_request.app.state.registry
    return registry.snapshot()


@router.get("/notifications", response_model=List[Notification])
async def notifications(http_request: Request, limit: Optional[int] = Query(default=None, ge=1, le=500)):
    feed: NotificationFeed = http_request.app.state.notifications
    return feed.recent(limit)
