"""Lido stETH APR fetchers.

Endpoints:
    https://eth-api.lido.fi/v1/protocol/steth/apr/last
    https://eth-api.lido.fi/v1/protocol/steth/apr/sma
Rate Limit: Public, no key required

Both endpoints report APR in percent, e.g. ``{"data": {"apr": 3.1}, "meta": {...}}``.
"""

import logging
from typing import Any

from .base import BaseFetcher, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class LidoLastAprFetcher(BaseFetcher):
    """Fetcher for the most recent stETH APR."""

    name = "lido-last"
    path = "/v1/protocol/steth/apr/last"

    def _extract(self, data: Any) -> Any:
        return data["data"]["apr"]


@register_fetcher
class LidoSmaAprFetcher(BaseFetcher):
    """Fetcher for the 7-day simple moving average of stETH APR.

    The SMA body also carries the individual daily readings under
    ``data.aprs``; only ``data.smaApr`` is used.
    """

    name = "lido-sma"
    path = "/v1/protocol/steth/apr/sma"

    def _extract(self, data: Any) -> Any:
        return data["data"]["smaApr"]
