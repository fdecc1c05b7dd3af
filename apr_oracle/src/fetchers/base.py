"""Base fetcher interface, fetch error taxonomy and shared HTTP client.

All APR fetchers inherit from BaseFetcher and implement _extract(), which
pulls the metric out of the decoded JSON body. fetch() never raises for
provider failures: it returns a FetchResult carrying either the value or
the FetcherError that explains why there is none.

A shared httpx.AsyncClient is used across all fetchers to avoid connection
overhead.

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myfetcher"
        path = "/v1/apr"

        def _extract(self, data: dict) -> float:
            return data["apr"]
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

import httpx

logger = logging.getLogger(__name__)

# Statuses that say "try again later" rather than "the API changed".
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class FetchErrorKind(str, Enum):
    """Classification of a failed fetch, used for logging only."""

    TRANSIENT = "transient"
    MALFORMED = "malformed"


class FetcherError(Exception):
    """Base exception for fetcher errors.

    :ivar kind: Whether the failure is worth retrying or points at a
        provider contract change.
    """

    kind: FetchErrorKind = FetchErrorKind.TRANSIENT

    def __init__(self, message: str, kind: FetchErrorKind | None = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind is FetchErrorKind.TRANSIENT


class FetcherHTTPError(FetcherError):
    """Raised when the provider answers with a non-success status.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        Server errors and throttling are transient; any other client error
        means the request itself is no longer understood by the provider.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        transient = status_code >= 500 or status_code in TRANSIENT_STATUS_CODES
        super().__init__(
            f"HTTP {status_code}: {message}",
            FetchErrorKind.TRANSIENT if transient else FetchErrorKind.MALFORMED,
        )


class FetcherMalformedError(FetcherError):
    """Raised when the response body does not have the documented shape."""

    kind = FetchErrorKind.MALFORMED


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a single fetch: a value or an error, never both.

    :ivar source: Name of the fetcher that produced this result.
    :ivar value: Fetched metric as a ratio (0.031 = 3.1%), if successful.
    :ivar error: Failure reason, if unsuccessful.
    """

    source: str
    value: float | None = None
    error: FetcherError | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.value is not None

    @classmethod
    def ok(cls, source: str, value: float) -> FetchResult:
        return cls(source=source, value=value)

    @classmethod
    def failed(cls, source: str, error: FetcherError) -> FetchResult:
        return cls(source=source, error=error)


class BaseFetcher(ABC):
    """Abstract base class for APR fetchers.

    Subclasses must implement:
        - name: Class variable identifying the metric (e.g., "lido-last")
        - path: Endpoint path appended to the provider base URL
        - _extract(): Pull the raw metric out of the decoded JSON body

    :cvar name: Unique identifier for this fetcher.
    :cvar DEFAULT_BASE_URL: Provider base URL used when none is configured.
    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :ivar base_url: Provider base URL.
    :ivar timeout: Request timeout in seconds.
    :ivar percent_scale: Divisor applied to the raw value (100 when the
        provider reports percent and a ratio is wanted).
    :ivar allow_zero: Accept an exact zero as a legitimate reading.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""
    path: ClassVar[str] = ""

    DEFAULT_BASE_URL = "https://eth-api.lido.fi"
    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        percent_scale: float = 100.0,
        allow_zero: bool = False,
    ):
        """Initialize the fetcher.

        :param base_url: Provider base URL (default: Lido mainnet API).
        :param timeout: Request timeout in seconds (default: 10).
        :param percent_scale: Divisor turning the raw value into a ratio.
        :param allow_zero: Treat 0.0 as a valid reading (default: False).
        """
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.percent_scale = percent_scale
        self.allow_zero = allow_zero

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all fetcher instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if cls._shared_client is None or cls._shared_client.is_closed:
            cls._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                follow_redirects=True,
            )
        return cls._shared_client

    @classmethod
    def set_shared_client(cls, client: httpx.AsyncClient | None) -> None:
        """Replace the shared HTTP client (e.g. with a mock transport)."""
        cls._shared_client = client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        if cls._shared_client is not None and not cls._shared_client.is_closed:
            await cls._shared_client.aclose()
            cls._shared_client = None

    @abstractmethod
    def _extract(self, data: Any) -> Any:
        """Return the raw metric from a decoded response body.

        :param data: Decoded JSON body.
        :returns: Raw metric value, before validation and scaling.
        :raises KeyError, TypeError: If the body has an unexpected shape.
        """
        pass

    async def fetch(self) -> FetchResult:
        """Fetch the current value of the tracked metric.

        :returns: FetchResult with the ratio value or the failure reason.
        """
        try:
            response = await self._get(self.url)
            value = self._parse(response)
        except FetcherError as e:
            logger.warning(f"[{self.name}] {e.kind.value} failure: {e}")
            return FetchResult.failed(self.name, e)

        logger.debug(f"[{self.name}] APR {value:.9f}")
        return FetchResult.ok(self.name, value)

    def _parse(self, response: httpx.Response) -> float:
        """Decode, extract and validate the metric.

        :param response: Successful HTTP response.
        :returns: Metric as a ratio.
        :raises FetcherMalformedError: On any shape or value deviation.
        """
        try:
            data = response.json()
        except ValueError as e:
            raise FetcherMalformedError(f"Invalid JSON body: {e}") from e

        try:
            raw = self._extract(data)
        except (KeyError, TypeError, IndexError) as e:
            raise FetcherMalformedError(
                f"Unexpected response shape (missing {e}): {str(data)[:200]}"
            ) from e

        # bool is an int subclass; JSON true/false is never a rate
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise FetcherMalformedError(f"Non-numeric APR value: {raw!r}")

        value = float(raw)
        if not math.isfinite(value):
            raise FetcherMalformedError(f"Non-finite APR value: {raw!r}")
        if value < 0:
            raise FetcherMalformedError(f"Negative APR value: {raw!r}")
        if value == 0 and not self.allow_zero:
            raise FetcherMalformedError("Zero APR value (provider default?)")

        return value / self.percent_scale

    async def _get(self, url: str) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(url, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise FetcherHTTPError(response.status_code, response.text[:200])
        return response


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(name: str, **kwargs: Any) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Fetcher name (e.g., "lido-last", "lido-sma").
    :param kwargs: Passed through to the fetcher constructor.
    :returns: Fetcher instance.
    :raises ValueError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](**kwargs)


def get_available_fetchers() -> list[str]:
    """Get list of available fetcher names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())
