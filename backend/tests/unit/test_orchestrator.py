import asyncio
import itertools

import httpx
import pytest
import pytest_asyncio

from geoservices.detector import ServiceTypeDetector
from geoservices.fetcher import CancellationToken
from geoservices.models import ArcGISServiceInfo, ErrorKind, ServiceDetectionResult, ServiceType
from geoservices.notifications import NotificationFeed
from geoservices.orchestrator import ServiceOrchestrator
from geoservices.registry import InMemoryLayerRegistry

pytestmark = pytest.mark.asyncio

PARKS_URL = "https://example.com/arcgis/rest/services/Parks/MapServer"
WMS_URL = "https://maps.example.com/geoserver/wms"


async def _slow(request):
    await asyncio.sleep(5)
    return httpx.Response(200, content=b"{}")


@pytest.fixture
def registry():
    return InMemoryLayerRegistry()


@pytest.fixture
def feed():
    return NotificationFeed()


@pytest_asyncio.fixture
async def orchestrator(fetcher, registry, feed):
    counter = itertools.count(1)
    detector = ServiceTypeDetector(fetcher, timeout=2)
    async with ServiceOrchestrator(
        detector, registry, feed, id_factory=lambda: f"svc-{next(counter)}"
    ) as service_orchestrator:
        yield service_orchestrator


async def _wait_until_pending(orchestrator, url):
    for _ in range(100):
        if orchestrator.is_pending(url):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{url} never became pending")


async def test_successful_addition_registers_layer(fake_server, orchestrator, registry, feed, arcgis_mapserver_doc):
    fake_server.arcgis(arcgis_mapserver_doc)

    added = await orchestrator.add_service_by_url(PARKS_URL)

    assert added is True
    [entry] = orchestrator.service_layers
    assert entry.id == "svc-1"
    assert entry.name == "Parks"
    assert entry.serviceType == ServiceType.ARCGIS_MAP_SERVER
    assert entry.isLoading is False
    assert entry.isVisible is True
    assert entry.error is None
    assert entry.serviceInfo.capabilities == ["Map", "Query"]

    registered = registry.get("layer-svc-1")
    assert registered.sourceId == "source-svc-1"
    assert registered.layer.style == "raster"
    assert not orchestrator.is_pending(PARKS_URL)
    assert feed.recent()[-1].message == "Added service: Parks"


async def test_display_name_override(fake_server, orchestrator, wms_130_doc):
    fake_server.ogc("WMS", wms_130_doc)

    assert await orchestrator.add_service_by_url(WMS_URL, name="Street map")

    assert orchestrator.service_layers[0].name == "Street map"


async def test_duplicate_url_is_rejected_while_in_flight(fake_server, orchestrator, feed, arcgis_mapserver_doc):
    fake_server.arcgis(arcgis_mapserver_doc)

    results = await asyncio.gather(
        orchestrator.add_service_by_url(PARKS_URL),
        orchestrator.add_service_by_url(PARKS_URL),
    )

    assert results == [True, False]
    assert len(orchestrator.service_layers) == 1
    assert len(fake_server.requests) == 1
    assert any(
        item.level == "warning" and "already in progress" in item.message for item in feed.recent()
    )


async def test_same_url_can_be_added_again_once_settled(fake_server, orchestrator, registry, arcgis_mapserver_doc):
    fake_server.arcgis(arcgis_mapserver_doc)

    assert await orchestrator.add_service_by_url(PARKS_URL)
    assert await orchestrator.add_service_by_url(PARKS_URL)

    assert len(orchestrator.service_layers) == 2
    assert len(registry) == 2


async def test_detection_failure_is_recorded_on_entry(orchestrator, registry, feed):
    added = await orchestrator.add_service_by_url(PARKS_URL)

    assert added is False
    [entry] = orchestrator.service_layers
    assert entry.isLoading is False
    assert entry.errorKind == ErrorKind.HTTP_STATUS
    assert entry.error == "Service returned status 404: Not Found"
    assert entry.serviceInfo is None
    assert len(registry) == 0
    assert feed.recent()[-1].level == "error"


async def test_unsupported_service_type(fake_server, orchestrator, registry):
    fake_server.arcgis({"serviceDescription": "Elevation", "name": "Elevation"})

    added = await orchestrator.add_service_by_url(
        "https://example.com/arcgis/rest/services/Elevation/ImageServer"
    )

    assert added is False
    [entry] = orchestrator.service_layers
    assert entry.error == "Unsupported service type"
    assert entry.errorKind == ErrorKind.UNSUPPORTED_SERVICE_TYPE
    assert len(registry) == 0


async def test_invalid_url_creates_no_entry(fake_server, orchestrator, feed):
    added = await orchestrator.add_service_by_url("not-a-url")

    assert added is False
    assert orchestrator.service_layers == []
    assert fake_server.requests == []
    assert feed.recent()[-1].level == "error"


async def test_remove_and_toggle_are_ignored_while_loading(fake_server, orchestrator):
    fake_server.route(lambda request: True, _slow)
    task = asyncio.ensure_future(orchestrator.add_service_by_url(PARKS_URL))
    await _wait_until_pending(orchestrator, PARKS_URL)
    entry = orchestrator.service_layers[0]

    assert orchestrator.remove_service(entry.id) is False
    assert orchestrator.toggle_service_visibility(entry.id) is False
    assert orchestrator.get_service(entry.id).isLoading

    await orchestrator.aclose()
    assert await task is False


async def test_toggle_and_remove_after_success(fake_server, orchestrator, registry, feed, wms_130_doc):
    fake_server.ogc("WMS", wms_130_doc)
    await orchestrator.add_service_by_url(WMS_URL)
    service_id = orchestrator.service_layers[0].id

    assert orchestrator.toggle_service_visibility(service_id) is True
    assert orchestrator.get_service(service_id).isVisible is False
    assert registry.get("layer-svc-1").visible is False

    assert orchestrator.toggle_service_visibility(service_id) is True
    assert registry.get("layer-svc-1").visible is True

    assert orchestrator.remove_service(service_id) is True
    assert orchestrator.service_layers == []
    assert len(registry) == 0
    assert feed.recent()[-1].message == "Removed service: WMS"


async def test_failed_entry_can_be_removed_and_toggled(orchestrator, registry):
    await orchestrator.add_service_by_url(WMS_URL)
    service_id = orchestrator.service_layers[0].id

    assert orchestrator.toggle_service_visibility(service_id) is True
    assert orchestrator.remove_service(service_id) is True
    assert len(registry) == 0


async def test_unknown_id(orchestrator):
    assert orchestrator.remove_service("missing") is False
    assert orchestrator.toggle_service_visibility("missing") is False


async def test_aclose_cancels_in_flight_requests(fake_server, orchestrator, registry):
    fake_server.route(lambda request: True, _slow)
    task = asyncio.ensure_future(orchestrator.add_service_by_url(PARKS_URL))
    await _wait_until_pending(orchestrator, PARKS_URL)

    await asyncio.wait_for(orchestrator.aclose(), timeout=3)

    assert await task is False
    [entry] = orchestrator.service_layers
    assert entry.isLoading is False
    assert entry.error == "cancelled"
    assert entry.errorKind == ErrorKind.CANCELLED
    assert len(registry) == 0
    assert not orchestrator.is_pending(PARKS_URL)


async def test_additions_after_close_are_rejected(fake_server, orchestrator, arcgis_mapserver_doc):
    fake_server.arcgis(arcgis_mapserver_doc)
    await orchestrator.aclose()

    assert orchestrator.closed
    assert await orchestrator.add_service_by_url(PARKS_URL) is False
    assert orchestrator.service_layers == []
    assert fake_server.requests == []


async def test_capacity_limit(fake_server, fetcher, registry, feed, arcgis_mapserver_doc):
    fake_server.arcgis(arcgis_mapserver_doc)
    detector = ServiceTypeDetector(fetcher, timeout=2)

    async with ServiceOrchestrator(detector, registry, feed, max_services=1) as orchestrator:
        assert await orchestrator.add_service_by_url(PARKS_URL)
        assert await orchestrator.add_service_by_url(PARKS_URL) is False

        assert len(orchestrator.service_layers) == 1
        assert "no more than 1 services" in feed.recent()[-1].message


async def test_settled_entry_ignores_later_transitions(fake_server, orchestrator, registry, feed, arcgis_mapserver_doc):
    fake_server.arcgis(arcgis_mapserver_doc)
    assert await orchestrator.add_service_by_url(PARKS_URL)
    service_id = orchestrator.service_layers[0].id
    settled = orchestrator.get_service(service_id)
    layers_before = registry.snapshot()
    notifications_before = feed.recent()

    orchestrator._fail(service_id, "timeout", ErrorKind.TIMEOUT)
    late = ServiceDetectionResult.success(settled.serviceInfo)
    assert orchestrator._complete(service_id, None, late, CancellationToken()) is False

    assert orchestrator.get_service(service_id) == settled
    assert orchestrator.get_service(service_id).error is None
    assert registry.snapshot() == layers_before
    assert feed.recent() == notifications_before


async def test_failed_entry_is_not_turned_into_success(orchestrator, registry, feed):
    assert await orchestrator.add_service_by_url(PARKS_URL) is False
    service_id = orchestrator.service_layers[0].id
    failed = orchestrator.get_service(service_id)
    notifications_before = feed.recent()

    service = ArcGISServiceInfo(name="Parks", url=PARKS_URL, serviceType=ServiceType.ARCGIS_MAP_SERVER)
    late = ServiceDetectionResult.success(service)
    assert orchestrator._complete(service_id, None, late, CancellationToken()) is False

    assert orchestrator.get_service(service_id) == failed
    assert len(registry) == 0
    assert feed.recent() == notifications_before
