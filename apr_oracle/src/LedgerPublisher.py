"""LedgerPublisher: Fixed-point encoding and confirmed on-chain submission.

The APR is stored on-chain as an unsigned 256-bit integer scaled by
10**decimals (18 by default). Scaling truncates toward zero, it never
rounds: 0.039 at 2 decimals encodes to 3, not 4.

A publish is only reported as successful once the transaction has a
receipt with status 1 and the configured number of confirmations. Any other
outcome raises a PublishError subclass and the caller must not treat the
value as published.

.. code-block:: python

    >>> encode_apr(0.5)
    500000000000000000
    >>> encode_apr(0.375, decimals=2)
    37
    >>> decode_apr(31000000000000000)
    0.031
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from web3.exceptions import TimeExhausted, Web3Exception

if TYPE_CHECKING:
    from web3 import Web3
    from web3.contract import Contract

logger = logging.getLogger(__name__)

# Number of decimals stored on-chain.
NUM_DECIMALS = 18

UINT256_MAX = 2**256 - 1


class PublishError(Exception):
    """Base exception for ledger publication failures."""

    pass


class PublishRejectedError(PublishError):
    """Raised when the ledger refuses the transaction or it reverts."""

    pass


class ConfirmationTimeoutError(PublishError):
    """Raised when a submitted transaction is not confirmed in time.

    :ivar tx_hash: Hash of the submitted transaction.
    """

    def __init__(self, tx_hash: str, message: str):
        self.tx_hash = tx_hash
        super().__init__(f"{tx_hash}: {message}")


class EncodingOverflowError(PublishError):
    """Raised when a value has no uint256 fixed-point representation."""

    pass


@dataclass(frozen=True)
class PublishReceipt:
    """Confirmed publication.

    :ivar tx_hash: Transaction hash (0x-prefixed hex).
    :ivar block_number: Block that included the transaction.
    :ivar gas_used: Gas consumed.
    :ivar encoded_value: Fixed-point integer written on-chain.
    :ivar confirmations: Confirmations observed when the receipt was accepted.
    """

    tx_hash: str
    block_number: int
    gas_used: int
    encoded_value: int
    confirmations: int = 1


def encode_apr(value: float, decimals: int = NUM_DECIMALS) -> int:
    """Scale a ratio into the on-chain fixed-point integer.

    The exact binary value of the float is scaled and truncated, so the
    result never exceeds the value that was fetched. Floats such as 0.03
    sit just below their decimal literal and encode to 29999999999999998.

    :param value: APR as a ratio.
    :param decimals: Number of fixed-point decimals.
    :returns: Truncated scaled integer.
    :raises EncodingOverflowError: If value is negative, non-finite or too big.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EncodingOverflowError(f"Cannot encode non-numeric value {value!r}")
    if not math.isfinite(value):
        raise EncodingOverflowError(f"Cannot encode non-finite value {value!r}")
    if value < 0:
        raise EncodingOverflowError(f"Cannot encode negative value {value!r} as uint256")

    # Exact rational arithmetic; floor division truncates for non-negative values.
    numerator, denominator = value.as_integer_ratio()
    encoded = numerator * 10**decimals // denominator
    if encoded > UINT256_MAX:
        raise EncodingOverflowError(f"{value!r} exceeds uint256 at {decimals} decimals")
    return encoded


def decode_apr(encoded: int, decimals: int = NUM_DECIMALS) -> float:
    """Convert an on-chain fixed-point integer back to a ratio."""
    return float(Decimal(encoded).scaleb(-decimals))


class LedgerPublisher:
    """Submits APR updates to the ledger contract and awaits confirmation.

    Web3 calls are blocking; publish() runs them in a worker thread so the
    event loop (and the query endpoint) stays responsive.

    :ivar w3: Signing Web3 instance.
    :ivar contract: Bound APR contract.
    :ivar sender: Address that signs the transactions.
    :ivar chain_id: Numeric network identifier.
    :ivar decimals: Fixed-point decimals.
    :ivar confirmation_timeout: Seconds to wait for receipt and confirmations.
    :ivar confirmations: Blocks (including the inclusion block) required.
    :ivar poll_latency: Seconds between receipt/block polls.
    """

    def __init__(
        self,
        w3: Web3,
        contract: Contract,
        sender: str,
        chain_id: int,
        decimals: int = NUM_DECIMALS,
        confirmation_timeout: float = 120.0,
        confirmations: int = 1,
        poll_latency: float = 1.0,
    ) -> None:
        """Initialize the publisher.

        :param w3: Web3 instance with signing middleware.
        :param contract: Contract exposing updateAPY(uint256).
        :param sender: Signing account address.
        :param chain_id: Numeric network identifier.
        :param decimals: Fixed-point decimals (default: 18).
        :param confirmation_timeout: Receipt wait bound (default: 120s).
        :param confirmations: Confirmation depth (default: 1).
        :param poll_latency: Poll interval (default: 1s).
        :raises ValueError: If confirmations < 1 or timeout <= 0.
        """
        if confirmations < 1:
            raise ValueError("confirmations must be at least 1")
        if confirmation_timeout <= 0:
            raise ValueError("confirmation_timeout must be positive")

        self.w3 = w3
        self.contract = contract
        self.sender = sender
        self.chain_id = chain_id
        self.decimals = decimals
        self.confirmation_timeout = confirmation_timeout
        self.confirmations = confirmations
        self.poll_latency = poll_latency

    async def publish(self, value: float) -> PublishReceipt:
        """Publish a value and wait until it is confirmed.

        :param value: APR as a ratio.
        :returns: Receipt of the confirmed transaction.
        :raises EncodingOverflowError: If the value cannot be encoded.
        :raises PublishRejectedError: If submission fails or the tx reverts.
        :raises ConfirmationTimeoutError: If confirmation does not arrive in time.
        """
        encoded = encode_apr(value, self.decimals)
        return await asyncio.to_thread(self._submit_and_confirm, encoded)

    def _submit_and_confirm(self, encoded: int) -> PublishReceipt:
        tx_hash = self._submit(encoded)
        logger.info(f"updateAPY({encoded}) submitted: {tx_hash}")

        deadline = time.monotonic() + self.confirmation_timeout
        receipt = self._wait_for_receipt(tx_hash)

        if receipt["status"] != 1:
            raise PublishRejectedError(f"Transaction {tx_hash} reverted in block {receipt['blockNumber']}")

        confirmations = self._wait_for_confirmations(tx_hash, receipt["blockNumber"], deadline)
        return PublishReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            gas_used=receipt.get("gasUsed", 0),
            encoded_value=encoded,
            confirmations=confirmations,
        )

    def _submit(self, encoded: int) -> str:
        """Build, sign and send the legacy (gasPrice) transaction.

        :returns: 0x-prefixed transaction hash.
        :raises PublishRejectedError: If the node refuses the transaction.
        """
        try:
            tx_params = self.contract.functions.updateAPY(encoded).build_transaction(
                {
                    "from": self.sender,
                    "chainId": self.chain_id,
                    "gasPrice": self.w3.eth.gas_price,
                }
            )
            tx_hash = self.w3.eth.send_transaction(tx_params)
        except (Web3Exception, ValueError, OSError) as e:
            raise PublishRejectedError(f"Submission rejected: {e}") from e
        return _hex(tx_hash)

    def _wait_for_receipt(self, tx_hash: str) -> Any:
        try:
            return self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self.confirmation_timeout,
                poll_latency=self.poll_latency,
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(
                tx_hash, f"no receipt after {self.confirmation_timeout}s"
            ) from e
        except (Web3Exception, OSError) as e:
            raise ConfirmationTimeoutError(tx_hash, f"lost track of transaction: {e}") from e

    def _wait_for_confirmations(self, tx_hash: str, block_number: int, deadline: float) -> int:
        """Poll block height until the inclusion block is deep enough.

        :returns: Confirmations observed.
        :raises ConfirmationTimeoutError: If the deadline passes first.
        """
        while True:
            try:
                head = self.w3.eth.block_number
            except (Web3Exception, OSError) as e:
                raise ConfirmationTimeoutError(tx_hash, f"cannot read block height: {e}") from e

            seen = head - block_number + 1
            if seen >= self.confirmations:
                return seen
            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    tx_hash, f"{seen}/{self.confirmations} confirmations after {self.confirmation_timeout}s"
                )
            logger.debug(f"{tx_hash}: {seen}/{self.confirmations} confirmations")
            time.sleep(self.poll_latency)


def _hex(tx_hash: Any) -> str:
    if isinstance(tx_hash, (bytes, bytearray)):
        return "0x" + bytes(tx_hash).hex()
    return str(tx_hash)
