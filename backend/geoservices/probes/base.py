from __future__ import annotations

import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..fetcher import (
    DEFAULT_FETCH_TIMEOUT,
    CancellationToken,
    CapabilityFetcher,
    FetchError,
    FetchErrorKind,
    is_absolute_http_url,
)
from ..models import ErrorKind, ServiceDetectionResult
from ..utils.logging import get_logger

logger = get_logger(__name__)

FETCH_ERROR_KINDS = {
    FetchErrorKind.HTTP_STATUS: ErrorKind.HTTP_STATUS,
    FetchErrorKind.TIMEOUT: ErrorKind.TIMEOUT,
    FetchErrorKind.CANCELLED: ErrorKind.CANCELLED,
    FetchErrorKind.NETWORK_OR_CORS: ErrorKind.NETWORK_OR_CORS,
    FetchErrorKind.TOO_LARGE: ErrorKind.INVALID_DOCUMENT,
}


def strip_query(url: str) -> str:
    """Canonical service URL: no query, fragment or trailing slash."""
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def with_query_params(url: str, params: Iterable[Tuple[str, str]]) -> str:
    """Set `params` on `url`, replacing existing keys case-insensitively.

    Unrelated parameters already on the URL are kept in their original order.
    """
    params = list(params)
    replaced = {key.lower() for key, _ in params}
    parts = urlsplit(url)
    existing = parse_qsl(parts.query, keep_blank_values=True)
    merged = [(key, value) for key, value in existing if key.lower() not in replaced]
    merged.extend(params)
    query = urlencode(merged, safe=":/,")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def query_param(url: str, name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        if key.lower() == wanted:
            return value
    return None


class CapabilityProbe(ABC):
    """Fetches a capability document and decides whether it belongs to one protocol.

    `probe()` never raises for an expected failure: transport errors, error
    statuses and documents that fail to parse all come back as an invalid
    `ServiceDetectionResult`. Only task cancellation propagates.
    """

    family: str = ""
    label: str = ""

    def __init__(self, fetcher: CapabilityFetcher):
        self.fetcher = fetcher

    @abstractmethod
    def build_request_url(self, url: str) -> str:
        """Return the capability request URL for a user supplied service URL."""

    @abstractmethod
    def parse(self, body: bytes, request_url: str) -> ServiceDetectionResult:
        """Classify a fetched document. May raise on malformed input."""

    def invalid(self, message: Optional[str] = None) -> ServiceDetectionResult:
        return ServiceDetectionResult.failure(
            message or f"Not a valid {self.label} service", ErrorKind.INVALID_DOCUMENT
        )

    async def probe(
        self,
        url: str,
        token: Optional[CancellationToken] = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> ServiceDetectionResult:
        if not is_absolute_http_url(url):
            return ServiceDetectionResult.failure(
                "Service URL must be an absolute http(s) URL", ErrorKind.INVALID_URL
            )

        request_url = self.build_request_url(url)
        logger.info(
            f"Probing for {self.label} service",
            extra={'probe': self.family, 'url': request_url, 'timeout_s': round(timeout, 3)},
        )

        try:
            response = await self.fetcher.fetch(request_url, token, timeout)
        except FetchError as exc:
            logger.info(
                f"{self.label} probe failed",
                extra={'probe': self.family, 'url': request_url, 'kind': exc.kind.value},
            )
            return ServiceDetectionResult.failure(exc.message, FETCH_ERROR_KINDS[exc.kind])

        try:
            result = self.parse(response.body, request_url)
        except (ET.ParseError, ValueError) as exc:
            logger.info(
                f"{self.label} probe received an unreadable document",
                extra={'probe': self.family, 'url': request_url, 'error': str(exc)},
            )
            return self.invalid(f"Not a valid {self.label} service: response could not be parsed")
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"{self.label} probe crashed while reading the document",
                extra={'probe': self.family, 'url': request_url},
                exc_info=True,
            )
            return ServiceDetectionResult.failure(
                str(exc) or f"Unexpected error reading {self.label} document", ErrorKind.UNKNOWN
            )

        if result.isValid:
            logger.info(
                f"Detected {self.label} service",
                extra={'probe': self.family, 'url': request_url, 'service_type': result.serviceType},
            )
        return result
