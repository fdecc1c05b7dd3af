"""PublishedState: The relay's belief about the APR currently on-chain.

A single value guarded by one asyncio.Lock. The sync loop is the only
writer; the query endpoint may read. The lock is only held to read before a
publish and to write after a confirmed receipt, never across the ledger
call, so a reader can never observe a value whose transaction is still in
flight.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .LedgerPublisher import PublishReceipt

logger = logging.getLogger(__name__)

# Cold-start sentinel: any non-zero reading differs from it.
INITIAL_VALUE = 0.0


@dataclass(frozen=True)
class PublishedValue:
    """Snapshot of the published cell.

    :ivar value: Last confirmed APR (ratio), or the sentinel.
    :ivar updated_at: Unix time of the last write, 0.0 if never written.
    :ivar receipt: Receipt of the confirming transaction, if any.
    """

    value: float
    updated_at: float = 0.0
    receipt: PublishReceipt | None = None


class PublishedState:
    """Lock-guarded cell holding the last confirmed published APR.

    :ivar epsilon: Default change threshold for compare().
    """

    def __init__(self, initial: float = INITIAL_VALUE, epsilon: float = 1e-9) -> None:
        """Initialize the state.

        :param initial: Initial value (default: 0.0 sentinel).
        :param epsilon: Minimum absolute change treated as material.
        :raises ValueError: If epsilon is negative.
        """
        if epsilon < 0:
            raise ValueError("epsilon must be non-negative")
        self.epsilon = epsilon
        self._current = PublishedValue(value=initial)
        self._lock = asyncio.Lock()

    async def read(self) -> float:
        """Return the last confirmed value."""
        async with self._lock:
            return self._current.value

    async def snapshot(self) -> PublishedValue:
        """Return value, update time and receipt together."""
        async with self._lock:
            return self._current

    async def compare(self, fetched: float, epsilon: float | None = None) -> tuple[bool, float]:
        """Decide whether a fetched value must be published.

        :param fetched: Freshly fetched APR.
        :param epsilon: Override for the instance threshold.
        :returns: Tuple of (changed, last published value).
        """
        eps = self.epsilon if epsilon is None else epsilon
        async with self._lock:
            last = self._current.value
        return abs(fetched - last) > eps, last

    async def write(self, value: float, receipt: PublishReceipt | None = None) -> None:
        """Record a confirmed publication.

        :param value: APR that the ledger now holds.
        :param receipt: Receipt of the confirming transaction.
        """
        async with self._lock:
            previous = self._current.value
            self._current = PublishedValue(value=value, updated_at=time.time(), receipt=receipt)
        logger.debug(f"Published state {previous:.9f} -> {value:.9f}")

    async def compare_and_set(
        self,
        expected_old: float,
        new: float,
        receipt: PublishReceipt | None = None,
    ) -> bool:
        """Write only if the cell still holds the expected value.

        :param expected_old: Value read before publishing.
        :param new: Newly confirmed value.
        :param receipt: Receipt of the confirming transaction.
        :returns: True if the write happened.
        """
        async with self._lock:
            if self._current.value != expected_old:
                logger.warning(
                    f"Published state changed underneath us "
                    f"(expected {expected_old:.9f}, found {self._current.value:.9f})"
                )
                return False
            self._current = PublishedValue(value=new, updated_at=time.time(), receipt=receipt)
            return True
