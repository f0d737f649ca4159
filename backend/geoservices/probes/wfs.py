from __future__ import annotations

from typing import List

from ..models import ServiceDetectionResult, WFSServiceInfo
from .base import CapabilityProbe, strip_query
from .ogc import (
    capabilities_url,
    child_text,
    find_child,
    iter_children,
    local_name,
    operation_names,
    parse_document,
)

DEFAULT_WFS_OPERATIONS = ["GetCapabilities", "GetFeature"]


class WFSProbe(CapabilityProbe):
    """Service-level reader for WFS capabilities.

    Feature types are not listed; `layers` stays empty.
    """

    family = "wfs"
    label = "WFS"

    def build_request_url(self, url: str) -> str:
        return capabilities_url(url, "WFS")

    def parse(self, body: bytes, request_url: str) -> ServiceDetectionResult:
        root = parse_document(body)
        if local_name(root.tag) != "WFS_Capabilities":
            return self.invalid()

        # ows:ServiceIdentification for 1.1/2.0, Service for 1.0
        identification = find_child(root, "ServiceIdentification")
        if identification is None:
            identification = find_child(root, "Service")
        title = child_text(identification, "Title")

        operations: List[str] = [
            operation.get("name")
            for operation in iter_children(find_child(root, "OperationsMetadata"), "Operation")
            if operation.get("name")
        ]
        if not operations:
            operations = operation_names(find_child(find_child(root, "Capability"), "Request"))

        info = WFSServiceInfo(
            name=child_text(identification, "Name") or title or "WFS Service",
            url=strip_query(request_url),
            version=root.get("version"),
            title=title,
            abstract=child_text(identification, "Abstract"),
            capabilities=operations or list(DEFAULT_WFS_OPERATIONS),
        )
        return ServiceDetectionResult.success(info)
