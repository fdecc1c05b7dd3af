"""AprOracle: Main orchestrator for the APR relay.

This module wires the relay together from a validated RelayConfig and runs
it.

Architecture:
    - AprSource fetches current and SMA APR from the provider
    - SyncLoop compares the driving APR with PublishedState every tick
    - LedgerPublisher writes changed values on-chain and awaits confirmation
    - QueryService serves fresh readings over HTTP on the same event loop
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import uvicorn

from .AprSource import CURRENT, SMA, AprSource
from .ContractUtility import ContractUtility
from .fetchers import BaseFetcher, get_fetcher
from .LedgerPublisher import LedgerPublisher
from .PublishedState import PublishedState
from .QueryService import create_app
from .SyncLoop import SyncLoop, TickResult

if TYPE_CHECKING:
    from fastapi import FastAPI

    from .RelayConfig import RelayConfig

logger = logging.getLogger(__name__)

# Fetcher backing each metric role.
ROLE_FETCHERS = {
    CURRENT: "lido-last",
    SMA: "lido-sma",
}


class AprOracle:
    """Main orchestrator for the APR relay.

    :ivar config: Validated configuration.
    :ivar contract_utility: Signing Web3 connection.
    :ivar source: APR source shared by the loop and the query endpoint.
    :ivar state: Published APR cell.
    :ivar publisher: Ledger publisher.
    :ivar sync_loop: Periodic synchronization loop.
    :ivar app: Query endpoint application.
    """

    def __init__(self, config: RelayConfig) -> None:
        """Initialize the relay.

        :param config: Validated configuration.
        :raises ConfigInvalidError: If the key or contract address is unusable.
        """
        self.config = config
        fetch_timeout = config.effective_fetch_timeout()

        self.contract_utility = ContractUtility(
            rpc_url=config.rpc_url,
            private_key=config.private_key,
            chain_id=config.chain_id,
        )
        contract = self.contract_utility.get_contract(config.contract_address)

        fetchers: dict[str, BaseFetcher] = {
            role: get_fetcher(
                name,
                base_url=config.api_url,
                timeout=fetch_timeout,
                percent_scale=config.percent_scale,
                allow_zero=config.allow_zero,
            )
            for role, name in ROLE_FETCHERS.items()
        }
        self.source = AprSource(
            fetchers, primary=config.primary_metric, fetch_timeout=fetch_timeout
        )
        self.state = PublishedState(epsilon=config.epsilon)
        self.publisher = LedgerPublisher(
            w3=self.contract_utility.w3,
            contract=contract,
            sender=self.contract_utility.address,
            chain_id=config.chain_id,
            decimals=config.decimals,
            confirmation_timeout=config.confirmation_timeout,
            confirmations=config.confirmations,
        )
        self.sync_loop = SyncLoop(
            source=self.source,
            state=self.state,
            publisher=self.publisher,
            interval=config.tick_interval,
            epsilon=config.epsilon,
        )
        self.app: FastAPI = create_app(self.source, self.state)

        logger.info(
            f"AprOracle initialized: contract={contract.address}, "
            f"sender={self.contract_utility.address}, primary={config.primary_metric}"
        )

    async def run_once(self) -> TickResult:
        """Verify the network and run a single tick."""
        await asyncio.to_thread(self.contract_utility.verify_chain_id)
        try:
            return await self.sync_loop.tick()
        finally:
            await BaseFetcher.close_shared_client()

    async def run(self, serve: bool = True) -> None:
        """Run the sync loop, and the query endpoint if requested.

        Returns once the server shuts down (the loop is stopped after its
        current tick) or, without a server, when the loop is stopped.

        :param serve: Start the HTTP query endpoint (default: True).
        """
        await asyncio.to_thread(self.contract_utility.verify_chain_id)

        loop_task = asyncio.create_task(self.sync_loop.run(), name="sync-loop")
        try:
            if serve:
                server = uvicorn.Server(
                    uvicorn.Config(
                        self.app,
                        host=self.config.host,
                        port=self.config.port,
                        log_config=None,
                    )
                )
                logger.info(f"Query endpoint on http://{self.config.host}:{self.config.port}/apy")
                await server.serve()
                logger.info("Query endpoint stopped, finishing current tick")
                self.sync_loop.stop()
            await loop_task
        finally:
            if not loop_task.done():
                loop_task.cancel()
            await BaseFetcher.close_shared_client()
