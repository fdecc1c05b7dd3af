"""SyncLoop: Periodic fetch, compare and publish of the APR.

Each tick walks Idle -> Fetching -> Comparing -> (NoOp | Publishing) -> Idle:

    1. Fetch both APRs. If the driving one failed, skip the tick and report
       the other one only.
    2. Compare it with PublishedState under the state lock.
    3. If the change is within epsilon, do nothing.
    4. Otherwise publish without holding the lock, and write PublishedState
       only once the ledger has confirmed the transaction.

A failed publish leaves PublishedState untouched, so the next tick sees the
same difference and tries again. Ticks never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .LedgerPublisher import PublishError

if TYPE_CHECKING:
    from .AprSource import AprSource
    from .fetchers import FetcherError, FetchResult
    from .LedgerPublisher import LedgerPublisher, PublishReceipt
    from .PublishedState import PublishedState

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    """How a tick ended."""

    FETCH_FAILED = "fetch_failed"
    NO_CHANGE = "no_change"
    PUBLISHED = "published"
    PUBLISH_FAILED = "publish_failed"


@dataclass(frozen=True)
class TickResult:
    """Summary of one tick, for logging and tests.

    :ivar outcome: How the tick ended.
    :ivar fetched: Driving APR, if the fetch succeeded.
    :ivar previous: Published APR the fetched value was compared with.
    :ivar receipt: Receipt, if a publish was confirmed.
    :ivar error: Fetch or publish error, if any.
    :ivar informational: Result for the non-driving metric, reported even
        when the driving fetch failed.
    """

    outcome: TickOutcome
    fetched: float | None = None
    previous: float | None = None
    receipt: PublishReceipt | None = None
    error: FetcherError | PublishError | None = None
    informational: FetchResult | None = None


class SyncLoop:
    """Orchestrates fetch, change detection and confirmed publication.

    :ivar source: Stateless APR source.
    :ivar state: Published-value cell.
    :ivar publisher: Ledger publisher.
    :ivar interval: Seconds between tick starts.
    :ivar epsilon: Minimum absolute change that triggers a publish.
    """

    def __init__(
        self,
        source: AprSource,
        state: PublishedState,
        publisher: LedgerPublisher,
        interval: float = 60.0,
        epsilon: float = 1e-9,
    ) -> None:
        """Initialize the loop.

        :param source: APR source.
        :param state: Published state cell.
        :param publisher: Ledger publisher.
        :param interval: Tick interval in seconds (default: 60).
        :param epsilon: Change threshold (default: 1e-9).
        :raises ValueError: If interval is not positive or epsilon is negative.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if epsilon < 0:
            raise ValueError("epsilon must be non-negative")

        self.source = source
        self.state = state
        self.publisher = publisher
        self.interval = interval
        self.epsilon = epsilon

        self.ticks = 0
        self.last_result: TickResult | None = None
        self._stop = asyncio.Event()

    async def tick(self) -> TickResult:
        """Run one fetch-compare-publish cycle.

        :returns: TickResult describing the outcome.
        """
        self.ticks += 1

        # Fetching
        snapshot = await self.source.fetch_all()
        fetched = snapshot.driving
        other = snapshot.informational
        if other.success:
            logger.info(f"Informational {other.source} APR: {other.value:.9f}")

        value = fetched.value
        if fetched.error is not None or value is None:
            logger.warning(f"Tick {self.ticks}: fetch failed, skipping ({fetched.error})")
            return TickResult(TickOutcome.FETCH_FAILED, error=fetched.error, informational=other)

        # Comparing
        changed, last = await self.state.compare(value, self.epsilon)
        if not changed:
            logger.info(
                f"Tick {self.ticks}: APR {value:.9f} within {self.epsilon:g} of "
                f"published {last:.9f}, no change"
            )
            return TickResult(
                TickOutcome.NO_CHANGE, fetched=value, previous=last, informational=other
            )

        # Publishing
        logger.info(f"Tick {self.ticks}: APR changed {last:.9f} -> {value:.9f}, publishing")
        try:
            receipt = await self.publisher.publish(value)
        except PublishError as e:
            logger.error(f"Tick {self.ticks}: publish failed ({type(e).__name__}): {e}")
            return TickResult(
                TickOutcome.PUBLISH_FAILED,
                fetched=value,
                previous=last,
                error=e,
                informational=other,
            )

        await self.state.write(value, receipt)
        logger.info(
            f"Tick {self.ticks}: published APR {value:.9f} "
            f"(tx={receipt.tx_hash}, block={receipt.block_number})"
        )
        return TickResult(
            TickOutcome.PUBLISHED,
            fetched=value,
            previous=last,
            receipt=receipt,
            informational=other,
        )

    async def run(self) -> None:
        """Tick on a fixed cadence until stop() is called.

        A tick that overruns the interval is followed immediately by the
        next one. Unexpected errors inside a tick are logged and the loop
        continues.
        """
        loop = asyncio.get_running_loop()
        logger.info(f"Starting sync loop (interval={self.interval}s, epsilon={self.epsilon:g})")

        while not self._stop.is_set():
            started = loop.time()
            try:
                self.last_result = await self.tick()
            except Exception:
                logger.exception(f"Tick {self.ticks}: unexpected error")

            delay = max(0.0, self.interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Sync loop stopped")

    def stop(self) -> None:
        """Request the loop to exit after the current tick."""
        self._stop.set()
