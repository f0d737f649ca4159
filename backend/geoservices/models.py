from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ServiceType(str, Enum):
    ARCGIS_MAP_SERVER = "ArcGIS-MapServer"
    ARCGIS_FEATURE_SERVER = "ArcGIS-FeatureServer"
    ARCGIS_IMAGE_SERVER = "ArcGIS-ImageServer"
    ARCGIS_VECTOR_TILE_SERVER = "ArcGIS-VectorTileServer"
    WMS = "WMS"
    WFS = "WFS"
    UNKNOWN = "Unknown"


ARCGIS_SERVICE_TYPES = (
    ServiceType.ARCGIS_MAP_SERVER,
    ServiceType.ARCGIS_FEATURE_SERVER,
    ServiceType.ARCGIS_IMAGE_SERVER,
    ServiceType.ARCGIS_VECTOR_TILE_SERVER,
)


class ErrorKind(str, Enum):
    NETWORK_OR_CORS = "NetworkOrCors"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    HTTP_STATUS = "HttpStatus"
    INVALID_DOCUMENT = "InvalidDocument"
    UNSUPPORTED_SERVICE_TYPE = "UnsupportedServiceType"
    DUPLICATE_REQUEST = "DuplicateRequest"
    INVALID_URL = "InvalidUrl"
    UNKNOWN = "Unknown"


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    west: float
    south: float
    east: float
    north: float
    crs: str = "EPSG:4326"


class LayerStyle(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    title: str = ""
    legendUrl: Optional[str] = None


class LayerInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    title: str = ""
    abstract: Optional[str] = None
    geometryType: Optional[str] = None
    boundingBox: Optional[BoundingBox] = None
    crs: List[str] = Field(default_factory=list)
    styles: List[LayerStyle] = Field(default_factory=list)


class _ServiceInfoBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    title: Optional[str] = None
    abstract: Optional[str] = None
    version: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    layers: List[LayerInfo] = Field(default_factory=list)


class ArcGISServiceInfo(_ServiceInfoBase):
    protocol: Literal["arcgis"] = "arcgis"
    serviceType: ServiceType = ServiceType.UNKNOWN
    copyrightText: Optional[str] = None
    fullExtent: Optional[BoundingBox] = None

    @field_validator("serviceType")
    @classmethod
    def check_service_type(cls, value: ServiceType) -> ServiceType:
        if value not in ARCGIS_SERVICE_TYPES and value != ServiceType.UNKNOWN:
            raise ValueError(f"{value.value} is not an ArcGIS service type")
        return value


class WMSServiceInfo(_ServiceInfoBase):
    protocol: Literal["wms"] = "wms"
    serviceType: ServiceType = ServiceType.WMS

    @field_validator("serviceType")
    @classmethod
    def check_service_type(cls, value: ServiceType) -> ServiceType:
        if value != ServiceType.WMS:
            raise ValueError("WMS services must use the WMS service type")
        return value


class WFSServiceInfo(_ServiceInfoBase):
    protocol: Literal["wfs"] = "wfs"
    serviceType: ServiceType = ServiceType.WFS

    @field_validator("serviceType")
    @classmethod
    def check_service_type(cls, value: ServiceType) -> ServiceType:
        if value != ServiceType.WFS:
            raise ValueError("WFS services must use the WFS service type")
        return value


ServiceInfo = Annotated[
    Union[ArcGISServiceInfo, WMSServiceInfo, WFSServiceInfo],
    Field(discriminator="protocol"),
]


class ServiceDetectionResult(BaseModel):
    """Outcome of one detection attempt. Built once, never mutated."""

    model_config = ConfigDict(frozen=True)

    isValid: bool
    serviceType: Optional[ServiceType] = None
    service: Optional[ServiceInfo] = None
    error: Optional[str] = None
    errorKind: Optional[ErrorKind] = None

    @model_validator(mode="after")
    def check_outcome(self) -> "ServiceDetectionResult":
        if self.isValid and self.service is None:
            raise ValueError("a valid detection result must carry a service")
        if not self.isValid and self.service is None and not self.error:
            raise ValueError("an invalid detection result must carry an error or a service")
        return self

    @classmethod
    def failure(cls, error: str, kind: ErrorKind) -> "ServiceDetectionResult":
        return cls(isValid=False, error=error, errorKind=kind)

    @classmethod
    def success(cls, service: Union[ArcGISServiceInfo, WMSServiceInfo, WFSServiceInfo]) -> "ServiceDetectionResult":
        return cls(isValid=True, serviceType=service.serviceType, service=service)


# Renderer descriptors

class RasterTileSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["raster-tiles"] = "raster-tiles"
    urlTemplate: str
    tileSize: int = 256


class GeoJSONSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["geojson"] = "geojson"
    dataUrl: str


class VectorTileSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["vector-tiles"] = "vector-tiles"
    urlTemplate: str


SourceDescriptor = Annotated[
    Union[RasterTileSource, GeoJSONSource, VectorTileSource],
    Field(discriminator="kind"),
]


class RasterLayer(BaseModel):
    model_config = ConfigDict(frozen=True)

    style: Literal["raster"] = "raster"
    id: str
    source: str
    paint: Dict[str, Any] = Field(default_factory=dict)


class CircleLayer(BaseModel):
    model_config = ConfigDict(frozen=True)

    style: Literal["circle"] = "circle"
    id: str
    source: str
    paint: Dict[str, Any] = Field(
        default_factory=lambda: {
            "circle-radius": 5,
            "circle-color": "#3b82f6",
            "circle-opacity": 0.8,
        }
    )


class FillLayer(BaseModel):
    model_config = ConfigDict(frozen=True)

    style: Literal["fill"] = "fill"
    id: str
    source: str
    sourceLayer: str = "default"
    paint: Dict[str, Any] = Field(
        default_factory=lambda: {
            "fill-color": "#3b82f6",
            "fill-opacity": 0.5,
            "fill-outline-color": "#2563eb",
        }
    )


LayerDescriptor = Annotated[
    Union[RasterLayer, CircleLayer, FillLayer],
    Field(discriminator="style"),
]


class GISServiceLayerConfig(BaseModel):
    """Orchestrator-owned record of one service addition."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    serviceUrl: str
    serviceType: Optional[ServiceType] = None
    serviceInfo: Optional[ServiceInfo] = None
    isVisible: bool = True
    isLoading: bool = True
    error: Optional[str] = None
    errorKind: Optional[ErrorKind] = None

    @property
    def is_pending(self) -> bool:
        return self.isLoading

    @property
    def succeeded(self) -> bool:
        return not self.isLoading and self.serviceInfo is not None and self.error is None


# HTTP surface models

class DetectRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)


class DetectResponse(BaseModel):
    result: ServiceDetectionResult
    source: Optional[SourceDescriptor] = None
    layer: Optional[LayerDescriptor] = None


class AddServiceRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)
    name: Optional[str] = Field(default=None, max_length=200)


class AddServiceResponse(BaseModel):
    added: bool
    service: Optional[GISServiceLayerConfig] = None


class RemoveServiceResponse(BaseModel):
    removed: bool


class ToggleServiceResponse(BaseModel):
    toggled: bool
    service: Optional[GISServiceLayerConfig] = None


class RegisteredLayer(BaseModel):
    layerId: str
    sourceId: str
    source: SourceDescriptor
    layer: LayerDescriptor
    visible: bool = True


class Notification(BaseModel):
    level: Literal["success", "warning", "error"]
    message: str
    timestamp: str


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    request_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: Optional[str] = None
