from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import orjson

from ..models import (
    ArcGISServiceInfo,
    BoundingBox,
    ErrorKind,
    LayerInfo,
    ServiceDetectionResult,
    ServiceType,
)
from ..utils.logging import get_logger
from .base import CapabilityProbe, strip_query, with_query_params

logger = get_logger(__name__)

# Checked in order, first match wins
ARCGIS_SERVICE_MARKERS = (
    ("mapserver", ServiceType.ARCGIS_MAP_SERVER),
    ("featureserver", ServiceType.ARCGIS_FEATURE_SERVER),
    ("imageserver", ServiceType.ARCGIS_IMAGE_SERVER),
    ("vectortileserver", ServiceType.ARCGIS_VECTOR_TILE_SERVER),
)


def detect_arcgis_service_type(url: str) -> ServiceType:
    path = urlsplit(url).path.lower()
    for marker, service_type in ARCGIS_SERVICE_MARKERS:
        if marker in path:
            return service_type
    return ServiceType.UNKNOWN


def _safe_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # ArcGIS reports empty extents as "NaN"
    return None if number != number else number


def _extent_to_bbox(extent: Any, fallback_wkid: Optional[int] = None) -> Optional[BoundingBox]:
    if not isinstance(extent, dict):
        return None
    coords = [_safe_float(extent.get(key)) for key in ("xmin", "ymin", "xmax", "ymax")]
    if any(value is None for value in coords):
        return None
    reference = extent.get("spatialReference") or {}
    wkid = reference.get("latestWkid") or reference.get("wkid") or fallback_wkid
    crs = f"EPSG:{wkid}" if wkid else "EPSG:4326"
    west, south, east, north = coords
    return BoundingBox(west=west, south=south, east=east, north=north, crs=crs)


def _split_capabilities(value: Any) -> List[str]:
    if not isinstance(value, str):
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _format_error(error_info: Dict[str, Any]) -> str:
    message = error_info.get("message") or "ArcGIS API error"
    details = error_info.get("details")
    if details:
        detail_text = "; ".join(str(item) for item in details if item)
        if detail_text:
            message = f"{message}: {detail_text}"
    return message


class ArcGISProbe(CapabilityProbe):
    """Reads the `?f=json` description of an ArcGIS REST endpoint."""

    family = "arcgis"
    label = "ArcGIS"

    def build_request_url(self, url: str) -> str:
        parts = urlsplit(url)
        path = parts.path.lower()
        # Bare ArcGIS Online/Enterprise host: point at the services directory
        if "arcgis.com" in parts.netloc.lower() and "/rest/" not in path:
            url = urlunsplit(
                (parts.scheme, parts.netloc, f"{parts.path.rstrip('/')}/rest/services", parts.query, parts.fragment)
            )
        return with_query_params(url, [("f", "json")])

    def parse(self, body: bytes, request_url: str) -> ServiceDetectionResult:
        data = orjson.loads(body)
        if not isinstance(data, dict):
            return self.invalid()

        if "error" in data:
            error_info = data.get("error") or {}
            message = _format_error(error_info) if isinstance(error_info, dict) else str(error_info)
            logger.info("ArcGIS endpoint returned an error document", extra={'url': request_url, 'error': message})
            return ServiceDetectionResult.failure(
                f"ArcGIS service error: {message}", ErrorKind.INVALID_DOCUMENT
            )

        if "serviceDescription" not in data and "services" not in data:
            return self.invalid()

        spatial_reference = data.get("spatialReference") or {}
        default_wkid = spatial_reference.get("latestWkid") or spatial_reference.get("wkid")

        layers: List[LayerInfo] = []
        for layer in data.get("layers") or []:
            if not isinstance(layer, dict) or layer.get("id") is None:
                continue
            layers.append(
                LayerInfo(
                    name=str(layer["id"]),
                    title=str(layer.get("name") or ""),
                    geometryType=layer.get("geometryType"),
                    boundingBox=_extent_to_bbox(layer.get("extent"), default_wkid),
                )
            )

        document_info = data.get("documentInfo") or {}
        version = data.get("currentVersion")

        service = ArcGISServiceInfo(
            name=data.get("mapName") or data.get("name") or "ArcGIS Service",
            url=strip_query(request_url),
            serviceType=detect_arcgis_service_type(request_url),
            title=document_info.get("Title") or None,
            abstract=data.get("serviceDescription") or data.get("description") or None,
            version=str(version) if version is not None else None,
            capabilities=_split_capabilities(data.get("capabilities")),
            layers=layers,
            copyrightText=data.get("copyrightText") or None,
            fullExtent=_extent_to_bbox(data.get("fullExtent"), default_wkid),
        )
        return ServiceDetectionResult.success(service)
