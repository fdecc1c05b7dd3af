"""
APR fetchers for the remote data provider.

This module provides a unified interface for fetching yield metrics. Each
fetcher returns a FetchResult instead of raising, so callers branch on the
result rather than catching provider errors.

Usage:
    from apr_oracle.src.fetchers import get_fetcher, get_available_fetchers

    # Get list of available fetchers
    available = get_available_fetchers()
    # ['lido-last', 'lido-sma']

    fetcher = get_fetcher("lido-last", timeout=5.0)
    result = await fetcher.fetch()
    if result.success:
        print(result.value)
"""

# Import base classes and utilities
from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherError,
    FetcherHTTPError,
    FetcherMalformedError,
    FetchErrorKind,
    FetchResult,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .lido import LidoLastAprFetcher, LidoSmaAprFetcher

__all__ = [
    # Base classes
    "BaseFetcher",
    "FetchErrorKind",
    "FetchResult",
    "FetcherError",
    "FetcherHTTPError",
    "FetcherMalformedError",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Fetcher implementations
    "LidoLastAprFetcher",
    "LidoSmaAprFetcher",
]
