import inspect
from typing import Any, Callable, List, Tuple

import httpx
import orjson
import pytest
import pytest_asyncio

from geoservices.fetcher import CapabilityFetcher


ARCGIS_MAPSERVER = {
    "currentVersion": 10.81,
    "serviceDescription": "Parks",
    "mapName": "Parks",
    "description": "City parks and reserves",
    "copyrightText": "City of Example",
    "capabilities": "Map,Query",
    "layers": [
        {"id": 0, "name": "Park boundaries", "geometryType": "esriGeometryPolygon"},
        {"id": 1, "name": "Playgrounds", "geometryType": "esriGeometryPoint"},
    ],
    "spatialReference": {"wkid": 102100, "latestWkid": 3857},
    "fullExtent": {
        "xmin": 16800000.0,
        "ymin": -3250000.0,
        "xmax": 16900000.0,
        "ymax": -3150000.0,
        "spatialReference": {"wkid": 102100, "latestWkid": 3857},
    },
}

WMS_130 = b"""<?xml version="1.0" encoding="UTF-8"?>
<WMS_Capabilities version="1.3.0" xmlns="http://www.opengis.net/wms"
    xmlns:xlink="http://www.w3.org/1999/xlink">
  <Service>
    <Name>WMS</Name>
    <Title>City basemap</Title>
    <Abstract>Roads and rivers</Abstract>
  </Service>
  <Capability>
    <Request>
      <GetCapabilities/>
      <GetMap/>
      <GetFeatureInfo/>
    </Request>
    <Layer>
      <Title>City</Title>
      <CRS>EPSG:4326</CRS>
      <CRS>EPSG:3857</CRS>
      <EX_GeographicBoundingBox>
        <westBoundLongitude>150.5</westBoundLongitude>
        <eastBoundLongitude>151.5</eastBoundLongitude>
        <southBoundLatitude>-34.2</southBoundLatitude>
        <northBoundLatitude>-33.5</northBoundLatitude>
      </EX_GeographicBoundingBox>
      <Layer queryable="1">
        <Name>city:roads</Name>
        <Title>Roads</Title>
        <Abstract>Road centrelines</Abstract>
        <Style>
          <Name>default</Name>
          <Title>Default roads</Title>
          <LegendURL width="20" height="20">
            <Format>image/png</Format>
            <OnlineResource xlink:type="simple" xlink:href="https://maps.example.com/legend/roads.png"/>
          </LegendURL>
        </Style>
      </Layer>
      <Layer>
        <Name>city:rivers</Name>
        <Title>Rivers</Title>
        <CRS>EPSG:28356</CRS>
      </Layer>
    </Layer>
  </Capability>
</WMS_Capabilities>
"""

WMS_111_NAMED_CONTAINER = b"""<?xml version="1.0" encoding="UTF-8"?>
<WMT_MS_Capabilities version="1.1.1">
  <Service>
    <Name>OGC:WMS</Name>
    <Title>Legacy topo</Title>
  </Service>
  <Capability>
    <Request>
      <GetCapabilities/>
      <GetMap/>
    </Request>
    <Layer>
      <Name>topo</Name>
      <Title>Topographic</Title>
      <SRS>EPSG:4326</SRS>
      <LatLonBoundingBox minx="140.0" miny="-38.0" maxx="154.0" maxy="-28.0"/>
      <Layer>
        <Name>contours</Name>
        <Title>Contours</Title>
        <SRS>EPSG:3857</SRS>
      </Layer>
      <Layer>
        <Name>spot_heights</Name>
        <Title>Spot heights</Title>
      </Layer>
    </Layer>
  </Capability>
</WMT_MS_Capabilities>
"""

WMS_111_UNNAMED_CONTAINER = WMS_111_NAMED_CONTAINER.replace(b"<Name>topo</Name>", b"")

WFS_200 = b"""<?xml version="1.0" encoding="UTF-8"?>
<wfs:WFS_Capabilities version="2.0.0" xmlns:wfs="http://www.opengis.net/wfs/2.0"
    xmlns:ows="http://www.opengis.net/ows/1.1">
  <ows:ServiceIdentification>
    <ows:Title>Cadastre features</ows:Title>
    <ows:Abstract>Land parcels</ows:Abstract>
    <ows:ServiceType>WFS</ows:ServiceType>
  </ows:ServiceIdentification>
  <ows:OperationsMetadata>
    <ows:Operation name="GetCapabilities"/>
    <ows:Operation name="DescribeFeatureType"/>
    <ows:Operation name="GetFeature"/>
  </ows:OperationsMetadata>
  <wfs:FeatureTypeList>
    <wfs:FeatureType>
      <wfs:Name>cadastre:parcels</wfs:Name>
      <wfs:Title>Parcels</wfs:Title>
    </wfs:FeatureType>
  </wfs:FeatureTypeList>
</wfs:WFS_Capabilities>
"""

WFS_100 = b"""<?xml version="1.0" encoding="UTF-8"?>
<WFS_Capabilities version="1.0.0" xmlns="http://www.opengis.net/wfs">
  <Service>
    <Name>WFS</Name>
    <Title>Old features</Title>
  </Service>
  <Capability>
    <Request>
      <GetCapabilities/>
      <DescribeFeatureType/>
      <GetFeature/>
    </Request>
  </Capability>
</WFS_Capabilities>
"""


class FakeGISServer:
    """Answers capability requests from canned routes and records every request."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._routes: List[Tuple[Callable[[httpx.Request], bool], Callable[[httpx.Request], Any]]] = []

    def route(self, predicate: Callable[[httpx.Request], bool], responder: Callable[[httpx.Request], Any]) -> None:
        self._routes.append((predicate, responder))

    def arcgis(self, payload: Any, status_code: int = 200) -> None:
        self.route(
            lambda request: request.url.params.get("f") == "json",
            lambda request: httpx.Response(status_code, content=orjson.dumps(payload)),
        )

    def ogc(self, service: str, body: bytes, status_code: int = 200) -> None:
        self.route(
            lambda request: request.url.params.get("SERVICE") == service,
            lambda request: httpx.Response(
                status_code, content=body, headers={"content-type": "text/xml"}
            ),
        )

    @property
    def urls(self) -> List[str]:
        return [str(request.url) for request in self.requests]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for predicate, responder in self._routes:
            if predicate(request):
                response = responder(request)
                if inspect.isawaitable(response):
                    response = await response
                return response
        return httpx.Response(404, content=b"Not Found")


@pytest.fixture
def fake_server() -> FakeGISServer:
    return FakeGISServer()


@pytest_asyncio.fixture
async def fetcher(fake_server):
    async with CapabilityFetcher(transport=httpx.MockTransport(fake_server.handle)) as capability_fetcher:
        yield capability_fetcher


@pytest.fixture
def arcgis_mapserver_doc():
    return dict(ARCGIS_MAPSERVER)


@pytest.fixture
def wms_130_doc():
    return WMS_130


@pytest.fixture
def wms_111_named_doc():
    return WMS_111_NAMED_CONTAINER


@pytest.fixture
def wms_111_unnamed_doc():
    return WMS_111_UNNAMED_CONTAINER


@pytest.fixture
def wfs_200_doc():
    return WFS_200


@pytest.fixture
def wfs_100_doc():
    return WFS_100
