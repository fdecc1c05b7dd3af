"""
APR Oracle Relay - Yield Metric Synchronization Module

This module relays a yield metric from an off-chain provider to a ledger
contract:
- AprSource: Concurrent current/SMA APR fetching with partial results
- PublishedState: Lock-guarded last-published value
- LedgerPublisher: Fixed-point encoding and confirmed submission
- SyncLoop: Periodic fetch, compare and publish
- QueryService: Read-only HTTP endpoint
- AprOracle: Main orchestrator
- fetchers: Provider fetcher implementations
"""

from .AprOracle import AprOracle
from .AprSource import AprSnapshot, AprSource
from .LedgerPublisher import (
    NUM_DECIMALS,
    ConfirmationTimeoutError,
    EncodingOverflowError,
    LedgerPublisher,
    PublishError,
    PublishReceipt,
    PublishRejectedError,
    decode_apr,
    encode_apr,
)
from .PublishedState import PublishedState
from .RelayConfig import ConfigError, ConfigInvalidError, ConfigMissingError, RelayConfig
from .SyncLoop import SyncLoop, TickOutcome, TickResult

__all__ = [
    "AprOracle",
    "AprSnapshot",
    "AprSource",
    "ConfigError",
    "ConfigInvalidError",
    "ConfigMissingError",
    "ConfirmationTimeoutError",
    "EncodingOverflowError",
    "LedgerPublisher",
    "NUM_DECIMALS",
    "PublishError",
    "PublishReceipt",
    "PublishRejectedError",
    "PublishedState",
    "RelayConfig",
    "SyncLoop",
    "TickOutcome",
    "TickResult",
    "decode_apr",
    "encode_apr",
]
