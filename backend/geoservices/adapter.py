"""Turns detected services into renderer source and layer descriptors.

Everything here is a pure function of its input.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import quote

from .models import (
    ArcGISServiceInfo,
    CircleLayer,
    FillLayer,
    GeoJSONSource,
    RasterLayer,
    RasterTileSource,
    ServiceType,
    VectorTileSource,
    WFSServiceInfo,
    WMSServiceInfo,
)

AnyServiceInfo = Union[ArcGISServiceInfo, WMSServiceInfo, WFSServiceInfo]
AnySource = Union[RasterTileSource, GeoJSONSource, VectorTileSource]
AnyLayer = Union[RasterLayer, CircleLayer, FillLayer]

TILE_SIZE = 256
BBOX_PLACEHOLDER = "{bbox-epsg-3857}"
DEFAULT_WMS_VERSION = "1.3.0"
DEFAULT_WFS_VERSION = "2.0.0"


def source_id_for(request_id: str) -> str:
    return f"source-{request_id}"


def layer_id_for(request_id: str) -> str:
    return f"layer-{request_id}"


def _first_layer_name(service: AnyServiceInfo) -> str:
    return service.layers[0].name if service.layers else ""


def _version_tuple(version: str) -> Tuple[int, ...]:
    parts = []
    for piece in version.split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def _map_server_source(service: AnyServiceInfo) -> AnySource:
    return RasterTileSource(
        urlTemplate=(
            f"{service.url}/export?bbox={BBOX_PLACEHOLDER}&bboxSR=3857&imageSR=3857"
            f"&size={TILE_SIZE},{TILE_SIZE}&dpi=96&format=png&transparent=true&f=image"
        ),
        tileSize=TILE_SIZE,
    )


def _feature_server_source(service: AnyServiceInfo) -> AnySource:
    return GeoJSONSource(dataUrl=f"{service.url}/query?where=1%3D1&outFields=*&f=geojson")


def _vector_tile_source(service: AnyServiceInfo) -> AnySource:
    return VectorTileSource(urlTemplate=f"{service.url}/tile/{{z}}/{{y}}/{{x}}.pbf")


def _wms_source(service: AnyServiceInfo) -> AnySource:
    version = service.version or DEFAULT_WMS_VERSION
    # WMS 1.3 renamed SRS to CRS
    crs_param = "CRS" if _version_tuple(version) >= (1, 3) else "SRS"
    layer_name = quote(_first_layer_name(service), safe=":,")
    return RasterTileSource(
        urlTemplate=(
            f"{service.url}?SERVICE=WMS&VERSION={version}&REQUEST=GetMap"
            f"&BBOX={BBOX_PLACEHOLDER}&{crs_param}=EPSG:3857"
            f"&WIDTH={TILE_SIZE}&HEIGHT={TILE_SIZE}&LAYERS={layer_name}"
            f"&STYLES=&FORMAT=image/png&TRANSPARENT=TRUE"
        ),
        tileSize=TILE_SIZE,
    )


def _wfs_source(service: AnyServiceInfo) -> AnySource:
    version = service.version or DEFAULT_WFS_VERSION
    type_name = quote(_first_layer_name(service), safe=":,")
    return GeoJSONSource(
        dataUrl=(
            f"{service.url}?SERVICE=WFS&VERSION={version}&REQUEST=GetFeature"
            f"&TYPENAMES={type_name}&OUTPUTFORMAT=application/json"
        )
    )


def _raster_layer(source_id: str, layer_id: str) -> AnyLayer:
    return RasterLayer(id=layer_id, source=source_id)


def _circle_layer(source_id: str, layer_id: str) -> AnyLayer:
    # Geometry type is not inspected; feature services always render as points
    return CircleLayer(id=layer_id, source=source_id)


def _fill_layer(source_id: str, layer_id: str) -> AnyLayer:
    # The tile schema is not read, so the source layer is assumed to be "default"
    return FillLayer(id=layer_id, source=source_id, sourceLayer="default")


_Strategy = Tuple[Callable[[AnyServiceInfo], AnySource], Callable[[str, str], AnyLayer]]

RENDER_STRATEGIES: Dict[ServiceType, _Strategy] = {
    ServiceType.ARCGIS_MAP_SERVER: (_map_server_source, _raster_layer),
    ServiceType.ARCGIS_FEATURE_SERVER: (_feature_server_source, _circle_layer),
    ServiceType.ARCGIS_VECTOR_TILE_SERVER: (_vector_tile_source, _fill_layer),
    ServiceType.WMS: (_wms_source, _raster_layer),
    ServiceType.WFS: (_wfs_source, _circle_layer),
}

UNSUPPORTED_SERVICE_TYPES = frozenset({ServiceType.ARCGIS_IMAGE_SERVER, ServiceType.UNKNOWN})

_unmapped = set(ServiceType) - set(RENDER_STRATEGIES) - UNSUPPORTED_SERVICE_TYPES
if _unmapped:
    raise RuntimeError(f"No render strategy declared for: {sorted(t.value for t in _unmapped)}")


def create_source(service: AnyServiceInfo) -> Optional[AnySource]:
    strategy = RENDER_STRATEGIES.get(service.serviceType)
    return strategy[0](service) if strategy else None


def create_layer(service: AnyServiceInfo, source_id: str, layer_id: str) -> Optional[AnyLayer]:
    strategy = RENDER_STRATEGIES.get(service.serviceType)
    return strategy[1](source_id, layer_id) if strategy else None


def adapt_service(service: AnyServiceInfo, request_id: str) -> Optional[Tuple[AnySource, AnyLayer]]:
    """Return `(source, layer)` for a service, or None if it cannot be rendered."""
    source_id = source_id_for(request_id)
    source = create_source(service)
    layer = create_layer(service, source_id, layer_id_for(request_id))
    if source is None or layer is None:
        return None
    return source, layer
