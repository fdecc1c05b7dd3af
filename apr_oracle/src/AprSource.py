"""AprSource: Combined current/SMA APR fetching.

This module runs the two APR sub-fetches (latest value and moving average)
concurrently and returns them as a single AprSnapshot. Either sub-fetch can
fail independently; the snapshot keeps whichever succeeded so callers can
degrade gracefully instead of discarding a good reading.

The source holds no state between calls. Both the sync loop and the query
endpoint call it directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .fetchers import FetcherError, FetchResult

if TYPE_CHECKING:
    from .fetchers import BaseFetcher

logger = logging.getLogger(__name__)

CURRENT = "current"
SMA = "sma"
METRIC_ROLES = (CURRENT, SMA)


@dataclass(frozen=True)
class AprSnapshot:
    """Result of one combined fetch.

    :ivar current: Latest APR sub-fetch result.
    :ivar sma: Moving-average APR sub-fetch result.
    :ivar primary: Role ("current" or "sma") that drives publishing.
    """

    current: FetchResult
    sma: FetchResult
    primary: str = CURRENT

    @property
    def driving(self) -> FetchResult:
        """Sub-result whose value is compared and published."""
        return self.current if self.primary == CURRENT else self.sma

    @property
    def informational(self) -> FetchResult:
        """Sub-result that is only reported."""
        return self.sma if self.primary == CURRENT else self.current

    @property
    def complete(self) -> bool:
        return self.current.success and self.sma.success

    @property
    def partial(self) -> bool:
        return self.current.success != self.sma.success

    @property
    def total_failure(self) -> bool:
        return not self.current.success and not self.sma.success


class AprSource:
    """Stateless source of APR readings.

    :ivar fetchers: Dict mapping role ("current", "sma") to fetcher instance.
    :ivar primary: Role that drives the publish decision.
    :ivar fetch_timeout: Hard upper bound for one sub-fetch, in seconds.
    """

    def __init__(
        self,
        fetchers: dict[str, BaseFetcher],
        primary: str = CURRENT,
        fetch_timeout: float = 10.0,
    ) -> None:
        """Initialize the source.

        :param fetchers: Fetcher per role; the primary role is required.
        :param primary: Role that drives publishing (default: "current").
        :param fetch_timeout: Hard timeout per sub-fetch (default: 10.0).
        :raises ValueError: If the primary role is unknown or has no fetcher.
        """
        if primary not in METRIC_ROLES:
            raise ValueError(f"Unknown metric role '{primary}'. Expected one of {METRIC_ROLES}")
        if primary not in fetchers:
            raise ValueError(f"No fetcher configured for primary metric '{primary}'")
        unknown = [r for r in fetchers if r not in METRIC_ROLES]
        if unknown:
            raise ValueError(f"Unknown metric roles: {unknown}")

        self.fetchers = fetchers
        self.primary = primary
        self.fetch_timeout = fetch_timeout

    async def fetch_all(self) -> AprSnapshot:
        """Fetch all configured metrics concurrently.

        Roles without a configured fetcher are reported as failed.

        :returns: Snapshot with one result per role.
        """
        results = await asyncio.gather(*(self._fetch_role(r) for r in METRIC_ROLES))
        by_role = dict(zip(METRIC_ROLES, results, strict=True))
        snapshot = AprSnapshot(
            current=by_role[CURRENT], sma=by_role[SMA], primary=self.primary
        )
        if snapshot.partial:
            failed = CURRENT if not snapshot.current.success else SMA
            logger.info(f"Partial APR fetch: {failed} unavailable")
        return snapshot

    async def _fetch_role(self, role: str) -> FetchResult:
        """Fetch a single role with a hard timeout.

        :param role: Metric role.
        :returns: FetchResult, failed on timeout or missing fetcher.
        """
        fetcher = self.fetchers.get(role)
        if fetcher is None:
            return FetchResult.failed(role, FetcherError(f"No fetcher configured for {role}"))

        try:
            return await asyncio.wait_for(fetcher.fetch(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{fetcher.name}] Timeout after {self.fetch_timeout}s")
            return FetchResult.failed(
                fetcher.name, FetcherError(f"Timed out after {self.fetch_timeout}s")
            )
