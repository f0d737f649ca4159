from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from .fetcher import NETWORK_OR_CORS_MESSAGE, CancellationToken, CapabilityFetcher, is_absolute_http_url
from .models import ErrorKind, ServiceDetectionResult
from .probes import PROBE_ORDER, CapabilityProbe, build_probes
from .probes.base import query_param
from .settings import DETECTION_TIMEOUT
from .utils.logging import get_logger

logger = get_logger(__name__)

NOT_FOUND_MESSAGE = "Could not detect a valid GIS service at this URL"
INVALID_URL_MESSAGE = "Service URL must be an absolute http(s) URL"

# Lower-cased substrings; families are checked in this order
URL_PATTERNS = (
    ("arcgis", ("arcgis.com", "/rest/services", "mapserver", "featureserver")),
    ("wms", ("service=wms", "geoserver/wms", "wms")),
    ("wfs", ("service=wfs", "geoserver/wfs", "wfs")),
)

EXPLICIT_SERVICES = ("wms", "wfs")

# Most informative first; decides the kind of a fallback phase that found nothing
FALLBACK_FAILURE_PRIORITY = (
    ErrorKind.INVALID_DOCUMENT,
    ErrorKind.NETWORK_OR_CORS,
    ErrorKind.HTTP_STATUS,
    ErrorKind.TIMEOUT,
    ErrorKind.UNKNOWN,
)


def match_url_pattern(url: str) -> Optional[str]:
    """Return the protocol family the URL shape points at, if any."""
    # An explicit SERVICE parameter outranks substrings elsewhere in the URL
    service = (query_param(url, "SERVICE") or "").strip().lower()
    if service in EXPLICIT_SERVICES:
        return service

    lowered = url.lower()
    for family, markers in URL_PATTERNS:
        if any(marker in lowered for marker in markers):
            return family
    return None


def validate_service_url(url: str) -> Optional[str]:
    """Return an error message when `url` cannot be probed."""
    if not url or not url.strip():
        return "Service URL is required"
    if not is_absolute_http_url(url.strip()):
        return INVALID_URL_MESSAGE
    return None


class ServiceTypeDetector:
    """Works out which protocol a URL speaks.

    URLs whose shape reveals the protocol go straight to that probe with the
    whole budget. Anything else is tried against ArcGIS, WMS and WFS one after
    the other, each with a third of the budget, stopping at the first match.
    """

    def __init__(
        self,
        fetcher: CapabilityFetcher,
        timeout: float = DETECTION_TIMEOUT,
        probes: Optional[Dict[str, CapabilityProbe]] = None,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self.probes = probes or build_probes(fetcher)

    async def detect(
        self, url: str, token: Optional[CancellationToken] = None
    ) -> ServiceDetectionResult:
        url = (url or "").strip()
        url_error = validate_service_url(url)
        if url_error:
            return ServiceDetectionResult.failure(url_error, ErrorKind.INVALID_URL)

        family = match_url_pattern(url)
        if family is not None:
            logger.info("URL pattern matched", extra={'url': url, 'probe': family})
            return await self._run_probe(family, url, token, self.timeout)

        logger.info("No URL pattern matched; probing each protocol", extra={'url': url})
        return await self._probe_sequentially(url, token)

    async def _run_probe(
        self,
        family: str,
        url: str,
        token: Optional[CancellationToken],
        timeout: float,
    ) -> ServiceDetectionResult:
        try:
            return await self.probes[family].probe(url, token, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Probe raised unexpectedly", extra={'url': url, 'probe': family}, exc_info=True)
            return ServiceDetectionResult.failure(str(exc) or "Unknown error", ErrorKind.UNKNOWN)

    async def _probe_sequentially(
        self, url: str, token: Optional[CancellationToken]
    ) -> ServiceDetectionResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        share = self.timeout / len(PROBE_ORDER)
        failures: List[ErrorKind] = []

        for family in PROBE_ORDER:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            result = await self._run_probe(family, url, token, min(share, remaining))
            if result.isValid:
                return result

            if result.errorKind == ErrorKind.CANCELLED or (token is not None and token.cancelled):
                logger.info("Detection cancelled", extra={'url': url, 'probe': family})
                return ServiceDetectionResult.failure("cancelled", ErrorKind.CANCELLED)

            failures.append(result.errorKind or ErrorKind.UNKNOWN)

        kind = summarize_failures(failures)
        logger.info("No probe recognised the URL", extra={'url': url, 'error_kind': kind})
        if kind == ErrorKind.NETWORK_OR_CORS:
            return ServiceDetectionResult.failure(NETWORK_OR_CORS_MESSAGE, kind)
        return ServiceDetectionResult.failure(NOT_FOUND_MESSAGE, kind)


def summarize_failures(failures: List[ErrorKind]) -> ErrorKind:
    """Pick the kind reported when every fallback probe failed.

    A parsed but unrecognised document wins, since the host answered. Short of
    that, an unreachable probe means the service may still be valid but hidden
    from this context. A run that never got to probe counts as a timeout.
    """
    for kind in FALLBACK_FAILURE_PRIORITY:
        if kind in failures:
            return kind
    return ErrorKind.TIMEOUT
