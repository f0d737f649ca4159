from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional

from ..models import (
    BoundingBox,
    LayerInfo,
    LayerStyle,
    ServiceDetectionResult,
    WMSServiceInfo,
)
from .base import CapabilityProbe, strip_query
from .ogc import (
    XLINK_HREF,
    capabilities_url,
    child_text,
    find_child,
    iter_children,
    local_name,
    operation_names,
    parse_document,
)

DEFAULT_WMS_OPERATIONS = ["GetCapabilities", "GetMap"]


@dataclass(frozen=True)
class _Dialect:
    """Element names that differ between WMS 1.3 and the legacy 1.0/1.1 schema."""

    crs_tag: str
    legacy: bool


WMS_13 = _Dialect(crs_tag="CRS", legacy=False)
WMS_LEGACY = _Dialect(crs_tag="SRS", legacy=True)


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def _geographic_bbox(layer: ET.Element, dialect: _Dialect) -> Optional[BoundingBox]:
    if dialect.legacy:
        element = find_child(layer, "LatLonBoundingBox")
        if element is None:
            return None
        values = [_float_or_none(element.get(key)) for key in ("minx", "miny", "maxx", "maxy")]
    else:
        element = find_child(layer, "EX_GeographicBoundingBox")
        if element is None:
            return None
        values = [
            _float_or_none(child_text(element, key))
            for key in (
                "westBoundLongitude",
                "southBoundLatitude",
                "eastBoundLongitude",
                "northBoundLatitude",
            )
        ]
    if any(value is None for value in values):
        return None
    west, south, east, north = values
    return BoundingBox(west=west, south=south, east=east, north=north, crs="EPSG:4326")


def _crs_list(layer: ET.Element, dialect: _Dialect) -> List[str]:
    codes: List[str] = []
    for element in iter_children(layer, dialect.crs_tag):
        # WMS 1.1.0 allows several codes separated by whitespace in one element
        codes.extend((element.text or "").split())
    return codes


def _styles(layer: ET.Element) -> List[LayerStyle]:
    styles: List[LayerStyle] = []
    for style in iter_children(layer, "Style"):
        name = child_text(style, "Name")
        if not name:
            continue
        legend_url = None
        legend = find_child(style, "LegendURL")
        resource = find_child(legend, "OnlineResource")
        if resource is not None:
            legend_url = resource.get(XLINK_HREF) or resource.get("href")
        styles.append(LayerStyle(name=name, title=child_text(style, "Title") or "", legendUrl=legend_url))
    return styles


def _collect_layers(
    layer: ET.Element,
    dialect: _Dialect,
    inherited_crs: List[str],
    inherited_bbox: Optional[BoundingBox],
    out: List[LayerInfo],
) -> None:
    """Depth-first walk keeping every layer, container or leaf, that has a Name.

    A layer's `crs` is not only the codes declared on its own element: it
    starts from every code declared on its ancestors and adds its own, without
    duplicates, since WMS layers inherit the CRS/SRS of their parents. The
    bounding box is inherited too, but a layer's own box replaces it.
    """
    crs = list(inherited_crs)
    for code in _crs_list(layer, dialect):
        if code not in crs:
            crs.append(code)
    bbox = _geographic_bbox(layer, dialect) or inherited_bbox

    name = child_text(layer, "Name")
    if name:
        out.append(
            LayerInfo(
                name=name,
                title=child_text(layer, "Title") or "",
                abstract=child_text(layer, "Abstract"),
                boundingBox=bbox,
                crs=crs,
                styles=_styles(layer),
            )
        )

    for sublayer in iter_children(layer, "Layer"):
        _collect_layers(sublayer, dialect, crs, bbox, out)


def extract_wms_layers(capability: Optional[ET.Element], dialect: _Dialect) -> List[LayerInfo]:
    layers: List[LayerInfo] = []
    for root_layer in iter_children(capability, "Layer"):
        _collect_layers(root_layer, dialect, [], None, layers)
    return layers


class WMSProbe(CapabilityProbe):
    family = "wms"
    label = "WMS"

    def build_request_url(self, url: str) -> str:
        return capabilities_url(url, "WMS")

    def parse(self, body: bytes, request_url: str) -> ServiceDetectionResult:
        root = parse_document(body)
        root_name = local_name(root.tag)
        if root_name == "WMS_Capabilities":
            dialect = WMS_13
        elif root_name == "WMT_MS_Capabilities":
            dialect = WMS_LEGACY
        else:
            return self.invalid()

        service = find_child(root, "Service")
        capability = find_child(root, "Capability")
        title = child_text(service, "Title")

        operations = operation_names(find_child(capability, "Request"))

        info = WMSServiceInfo(
            name=child_text(service, "Name") or title or "WMS Service",
            url=strip_query(request_url),
            version=root.get("version"),
            title=title,
            abstract=child_text(service, "Abstract"),
            capabilities=operations or list(DEFAULT_WMS_OPERATIONS),
            layers=extract_wms_layers(capability, dialect),
        )
        return ServiceDetectionResult.success(info)
