import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from .settings import FETCH_USER_AGENT, MAX_DOCUMENT_BYTES
from .utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FETCH_TIMEOUT = 10.0

NETWORK_OR_CORS_MESSAGE = (
    "Unable to reach the service. The URL may point to a valid service that is "
    "unreachable from this context (cross-origin policy, network restrictions or "
    "the server being offline); routing the request through a server-side proxy may help."
)


class FetchErrorKind(str, Enum):
    HTTP_STATUS = "HttpStatus"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    NETWORK_OR_CORS = "NetworkOrCors"
    TOO_LARGE = "TooLarge"


class FetchError(Exception):
    """Raised for every way a capability request can fail."""

    def __init__(self, kind: FetchErrorKind, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: int
    body: bytes
    content_type: str = ""


class CancellationToken:
    """Externally owned abort switch shared by every fetch of one detection."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def is_absolute_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class CapabilityFetcher:
    """Issues single GET requests for capability documents.

    Every failure surfaces as a `FetchError`; a fetch is abandoned as soon as
    its timeout elapses or the caller's token is cancelled, whichever comes
    first, and the underlying request task is cancelled with it.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent: str = FETCH_USER_AGENT,
        max_bytes: int = MAX_DOCUMENT_BYTES,
    ):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            transport=transport,
            follow_redirects=True,
            headers={
                "User-Agent": user_agent,
                "Accept": "application/json, application/xml, text/xml;q=0.9, */*;q=0.8",
            },
        )

    async def __aenter__(self) -> "CapabilityFetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(
        self,
        url: str,
        token: Optional[CancellationToken] = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> FetchResponse:
        if not is_absolute_http_url(url):
            raise ValueError(f"Capability URL must be absolute: {url!r}")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        if token is not None and token.cancelled:
            raise FetchError(FetchErrorKind.CANCELLED, "cancelled")

        request_task = asyncio.ensure_future(self._download(url, timeout))
        watchers: List[asyncio.Future] = [request_task]
        cancel_task: Optional[asyncio.Future] = None
        if token is not None:
            cancel_task = asyncio.ensure_future(token.wait())
            watchers.append(cancel_task)

        try:
            done, _ = await asyncio.wait(
                watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in watchers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

        if token is not None and token.cancelled:
            logger.info("Capability request cancelled", extra={'url': url, 'reason': token.reason})
            raise FetchError(FetchErrorKind.CANCELLED, "cancelled")

        if request_task not in done or request_task.cancelled():
            logger.info("Capability request timed out", extra={'url': url, 'timeout_s': timeout})
            raise FetchError(FetchErrorKind.TIMEOUT, f"Request timed out after {timeout:g} seconds")

        exc = request_task.exception()
        if isinstance(exc, FetchError):
            raise exc
        if exc is not None:
            raise self._translate_exception(exc, url, timeout) from exc

        response, body = request_task.result()
        if not response.is_success:
            logger.info(
                "Capability request returned an error status",
                extra={'url': url, 'status_code': response.status_code},
            )
            raise FetchError(
                FetchErrorKind.HTTP_STATUS,
                f"Service returned status {response.status_code}: {response.reason_phrase}",
                code=response.status_code,
            )

        return FetchResponse(
            url=str(response.url),
            status=response.status_code,
            body=body,
            content_type=response.headers.get("content-type", ""),
        )

    async def _download(self, url: str, timeout: float) -> Tuple[httpx.Response, bytes]:
        """GET `url`, reading at most `max_bytes` of a successful body."""
        async with self._client.stream("GET", url, timeout=timeout) as response:
            if not response.is_success:
                return response, b""

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self.max_bytes:
                raise self._too_large(url)

            chunks: List[bytes] = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > self.max_bytes:
                    raise self._too_large(url)
                chunks.append(chunk)
            return response, b"".join(chunks)

    def _too_large(self, url: str) -> FetchError:
        logger.info("Capability response too large", extra={'url': url, 'max_bytes': self.max_bytes})
        return FetchError(
            FetchErrorKind.TOO_LARGE,
            f"Response is larger than {self.max_bytes} bytes and is not a capability document",
        )

    @staticmethod
    def _translate_exception(exc: BaseException, url: str, timeout: float) -> FetchError:
        if isinstance(exc, httpx.TimeoutException):
            return FetchError(FetchErrorKind.TIMEOUT, f"Request timed out after {timeout:g} seconds")
        logger.warning(
            "Capability request failed",
            extra={'url': url, 'error': str(exc) or exc.__class__.__name__},
        )
        return FetchError(FetchErrorKind.NETWORK_OR_CORS, NETWORK_OR_CORS_MESSAGE)
