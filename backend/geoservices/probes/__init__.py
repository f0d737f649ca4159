from typing import Dict

from ..fetcher import CapabilityFetcher
from .arcgis import ArcGISProbe
from .base import CapabilityProbe
from .wfs import WFSProbe
from .wms import WMSProbe

# Fallback order when the URL gives no hint
PROBE_ORDER = ("arcgis", "wms", "wfs")

PROBE_CLASSES = {
    "arcgis": ArcGISProbe,
    "wms": WMSProbe,
    "wfs": WFSProbe,
}


def build_probes(fetcher: CapabilityFetcher) -> Dict[str, CapabilityProbe]:
    """Instantiate one probe per protocol family, in fallback order."""
    return {family: PROBE_CLASSES[family](fetcher) for family in PROBE_ORDER}
