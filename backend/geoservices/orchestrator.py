from __future__ import annotations

import asyncio
import uuid
from typing import Callable, Dict, List, Optional

from .adapter import adapt_service, layer_id_for, source_id_for
from .detector import ServiceTypeDetector, validate_service_url
from .fetcher import CancellationToken
from .models import ErrorKind, GISServiceLayerConfig, ServiceDetectionResult
from .notifications import NotificationFeed, Notifier
from .registry import MapLayerRegistry
from .settings import MAX_TRACKED_SERVICES
from .utils.logging import get_logger

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 2.0


def _new_service_id() -> str:
    return f"gis-service-{uuid.uuid4().hex[:12]}"


class DuplicateRequestError(Exception):
    """Raised internally when a URL already has a request in flight."""


class ServiceOrchestrator:
    """Tracks service additions for one map and owns their cancellation.

    Each addition gets an entry that starts loading and settles exactly once,
    either with the detected service (already registered with the renderer)
    or with an error. At most one addition per raw URL is in flight; the
    check-and-insert on the pending set happens under `_lock`.

    `remove_service` and `toggle_service_visibility` are synchronous and so
    cannot interleave with other coroutines on the loop.
    """

    def __init__(
        self,
        detector: ServiceTypeDetector,
        registry: MapLayerRegistry,
        notifier: Optional[Notifier] = None,
        *,
        max_services: int = MAX_TRACKED_SERVICES,
        id_factory: Callable[[], str] = _new_service_id,
    ):
        self.detector = detector
        self.registry = registry
        self.notifier = notifier or NotificationFeed()
        self.max_services = max_services
        self._id_factory = id_factory
        self._entries: Dict[str, GISServiceLayerConfig] = {}
        self._pending: Dict[str, str] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def __aenter__(self) -> "ServiceOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    @property
    def service_layers(self) -> List[GISServiceLayerConfig]:
        return list(self._entries.values())

    @property
    def closed(self) -> bool:
        return self._closed

    def get_service(self, service_id: str) -> Optional[GISServiceLayerConfig]:
        return self._entries.get(service_id)

    def is_pending(self, url: str) -> bool:
        return url in self._pending

    def latest_for_url(self, url: str) -> Optional[GISServiceLayerConfig]:
        for entry in reversed(list(self._entries.values())):
            if entry.serviceUrl == url:
                return entry
        return None

    async def add_service_by_url(self, url: str, name: Optional[str] = None) -> bool:
        """Detect, adapt and register the service at `url`.

        Returns whether the service was added; the reason for a failure is
        recorded on the entry's `error` field.
        """
        url_error = validate_service_url(url)
        if url_error:
            self.notifier.error(f"Failed to add service: {url_error}")
            return False

        try:
            service_id, token = await self._reserve(url, name)
        except DuplicateRequestError:
            logger.warning("Rejected duplicate service request", extra={'url': url})
            self.notifier.warning(f"A request for {url} is already in progress")
            return False
        except RuntimeError as exc:
            self.notifier.error(f"Failed to add service: {exc}")
            return False

        task = asyncio.ensure_future(self._run(service_id, url, name, token))
        self._tasks[service_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            # Detection forced down by aclose(); the entry is already settled
            if self._closed and task.cancelled():
                return False
            raise

    async def _reserve(self, url: str, name: Optional[str]):
        async with self._lock:
            if self._closed:
                raise RuntimeError("service manager has been shut down")
            if url in self._pending:
                raise DuplicateRequestError(url)
            if len(self._entries) >= self.max_services:
                raise RuntimeError(f"no more than {self.max_services} services can be added")

            service_id = self._id_factory()
            self._entries[service_id] = GISServiceLayerConfig(
                id=service_id,
                name=name or "Loading service...",
                serviceUrl=url,
            )
            self._pending[url] = service_id
            token = CancellationToken()
            self._tokens[service_id] = token

        logger.info("Service request started", extra={'service_id': service_id, 'url': url})
        return service_id, token

    async def _run(
        self,
        service_id: str,
        url: str,
        name: Optional[str],
        token: CancellationToken,
    ) -> bool:
        try:
            result = await self.detector.detect(url, token)
            return self._complete(service_id, name, result, token)
        except asyncio.CancelledError:
            self._fail(service_id, "cancelled", ErrorKind.CANCELLED)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Service request failed", extra={'service_id': service_id, 'url': url}, exc_info=True)
            self._fail(service_id, str(exc) or "Unknown error", ErrorKind.UNKNOWN)
            return False
        finally:
            if self._pending.get(url) == service_id:
                del self._pending[url]
            self._tokens.pop(service_id, None)
            self._tasks.pop(service_id, None)

    def _complete(
        self,
        service_id: str,
        name: Optional[str],
        result: ServiceDetectionResult,
        token: CancellationToken,
    ) -> bool:
        entry = self._entries.get(service_id)
        if entry is None or not entry.isLoading:
            # Already settled; registering now would leave a layer with no live entry
            logger.warning("Ignoring late detection result", extra={'service_id': service_id})
            return False

        if not result.isValid or result.service is None:
            self._fail(
                service_id,
                result.error or "Invalid service",
                result.errorKind or ErrorKind.INVALID_DOCUMENT,
            )
            return False

        if token.cancelled:
            self._fail(service_id, "cancelled", ErrorKind.CANCELLED)
            return False

        service = result.service
        adapted = adapt_service(service, service_id)
        if adapted is None:
            self._fail(service_id, "Unsupported service type", ErrorKind.UNSUPPORTED_SERVICE_TYPE)
            return False

        source, layer = adapted
        self.registry.add_layer(layer_id_for(service_id), source_id_for(service_id), source, layer)

        display_name = name or service.name or "GIS Service"
        self._settle(
            service_id,
            name=display_name,
            serviceType=service.serviceType,
            serviceInfo=service,
        )
        self.notifier.success(f"Added service: {display_name}")
        return True

    def _fail(self, service_id: str, message: str, kind: ErrorKind) -> None:
        if self._settle(service_id, error=message, errorKind=kind):
            self.notifier.error(f"Failed to add service: {message}")

    def _settle(self, service_id: str, **changes) -> bool:
        entry = self._entries.get(service_id)
        if entry is None or not entry.isLoading:
            logger.warning("Ignoring second transition for settled entry", extra={'service_id': service_id})
            return False
        changes['isLoading'] = False
        self._entries[service_id] = entry.model_copy(update=changes)
        logger.info(
            "Service request settled",
            extra={
                'service_id': service_id,
                'state': 'failed' if changes.get('error') else 'succeeded',
                'error_kind': changes.get('errorKind'),
            },
        )
        return True

    def remove_service(self, service_id: str) -> bool:
        entry = self._entries.get(service_id)
        if entry is None:
            return False
        if entry.isLoading:
            logger.warning("Ignoring removal of a loading service", extra={'service_id': service_id})
            return False

        if entry.succeeded:
            self.registry.remove_layer(layer_id_for(service_id))
        del self._entries[service_id]

        self.notifier.success(f"Removed service: {entry.name}")
        return True

    def toggle_service_visibility(self, service_id: str) -> bool:
        entry = self._entries.get(service_id)
        if entry is None:
            return False
        if entry.isLoading:
            logger.warning("Ignoring visibility toggle of a loading service", extra={'service_id': service_id})
            return False

        visible = not entry.isVisible
        if entry.succeeded:
            self.registry.set_layer_visibility(layer_id_for(service_id), visible)
        self._entries[service_id] = entry.model_copy(update={'isVisible': visible})
        return True

    async def aclose(self) -> None:
        """Abort every in-flight request and wait for the entries to settle."""
        async with self._lock:
            self._closed = True
            tasks = list(self._tasks.values())
            for token in self._tokens.values():
                token.cancel("orchestrator closed")

        if tasks:
            _, stragglers = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in stragglers:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        self._pending.clear()
        self._tokens.clear()
        self._tasks.clear()
        logger.info("Service orchestrator closed", extra={'services': len(self._entries)})
