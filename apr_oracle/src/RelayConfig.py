"""RelayConfig: Startup configuration and its validation.

All settings arrive as strings (environment, .env file or CLI) and are
validated here in one place. Anything missing or malformed raises a
ConfigError before the relay starts serving or looping.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Callable, Mapping, TypeVar

T = TypeVar("T")

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

REQUIRED_SETTINGS = ("RPC_URL", "PRIVATE_KEY", "CHAIN_ID", "CONTRACT_ADDRESS")


class ConfigError(Exception):
    """Base exception for configuration errors.

    :ivar setting: Name of the offending setting.
    """

    def __init__(self, setting: str, message: str):
        self.setting = setting
        super().__init__(f"{setting}: {message}")


class ConfigMissingError(ConfigError):
    """Raised when a required setting is absent or empty."""

    def __init__(self, setting: str):
        super().__init__(setting, "required setting is not set")


class ConfigInvalidError(ConfigError):
    """Raised when a setting is present but cannot be used."""

    pass


@dataclass(frozen=True)
class RelayConfig:
    """Validated relay configuration.

    :ivar rpc_url: Ledger JSON-RPC endpoint.
    :ivar private_key: Signing key (never logged).
    :ivar chain_id: Numeric network identifier.
    :ivar contract_address: APR contract address.
    :ivar tick_interval: Seconds between sync ticks.
    :ivar epsilon: Minimum absolute APR change that triggers a publish.
    :ivar fetch_timeout: Per-request provider timeout in seconds.
    :ivar confirmation_timeout: Seconds to wait for a confirmed receipt.
    :ivar confirmations: Confirmation depth.
    :ivar api_url: Provider base URL.
    :ivar primary_metric: "current" or "sma"; drives publishing.
    :ivar allow_zero: Accept an exact 0.0 APR as legitimate.
    :ivar apr_unit: "percent" if the provider reports percent, else "ratio".
    :ivar decimals: On-chain fixed-point decimals.
    :ivar host: Query endpoint bind address.
    :ivar port: Query endpoint port.
    """

    rpc_url: str
    private_key: str
    chain_id: int
    contract_address: str
    tick_interval: float = 60.0
    epsilon: float = 1e-9
    fetch_timeout: float = 10.0
    confirmation_timeout: float = 120.0
    confirmations: int = 1
    api_url: str = "https://eth-api.lido.fi"
    primary_metric: str = "current"
    allow_zero: bool = False
    apr_unit: str = "percent"
    decimals: int = 18
    host: str = "127.0.0.1"
    port: int = 3030

    @property
    def percent_scale(self) -> float:
        return 100.0 if self.apr_unit == "percent" else 1.0

    @classmethod
    def from_mapping(cls, values: Mapping[str, str | None]) -> RelayConfig:
        """Build a config from string settings keyed by environment name.

        :param values: Mapping such as os.environ or parsed CLI values.
        :returns: Validated RelayConfig.
        :raises ConfigMissingError: If a required setting is absent.
        :raises ConfigInvalidError: If a setting is malformed.
        """
        for name in REQUIRED_SETTINGS:
            if not (values.get(name) or "").strip():
                raise ConfigMissingError(name)

        rpc_url = values["RPC_URL"].strip()
        if not rpc_url.startswith(("http://", "https://")):
            raise ConfigInvalidError("RPC_URL", f"expected an http(s) URL, got {rpc_url!r}")

        private_key = values["PRIVATE_KEY"].strip()
        if not _PRIVATE_KEY_RE.match(private_key):
            raise ConfigInvalidError("PRIVATE_KEY", "expected 32 bytes of hex")

        contract_address = values["CONTRACT_ADDRESS"].strip()
        if not _ADDRESS_RE.match(contract_address):
            raise ConfigInvalidError(
                "CONTRACT_ADDRESS", f"expected 0x-prefixed 20-byte hex, got {contract_address!r}"
            )

        chain_id = _parse("CHAIN_ID", values["CHAIN_ID"], int)
        if chain_id <= 0:
            raise ConfigInvalidError("CHAIN_ID", "must be a positive integer")

        defaults = cls.__dataclass_fields__
        tick_interval = _optional(values, "TICK_INTERVAL", float, defaults["tick_interval"].default)
        epsilon = _optional(values, "EPSILON", float, defaults["epsilon"].default)
        fetch_timeout = _optional(values, "FETCH_TIMEOUT", float, defaults["fetch_timeout"].default)
        confirmation_timeout = _optional(
            values, "CONFIRMATION_TIMEOUT", float, defaults["confirmation_timeout"].default
        )
        confirmations = _optional(values, "CONFIRMATIONS", int, defaults["confirmations"].default)
        decimals = _optional(values, "APR_DECIMALS", int, defaults["decimals"].default)
        port = _optional(values, "PORT", int, defaults["port"].default)

        if not math.isfinite(tick_interval) or tick_interval < 1:
            raise ConfigInvalidError("TICK_INTERVAL", "must be at least 1 second")
        if not math.isfinite(epsilon) or epsilon < 0:
            raise ConfigInvalidError("EPSILON", "must be a non-negative number")
        if not math.isfinite(fetch_timeout) or fetch_timeout <= 0:
            raise ConfigInvalidError("FETCH_TIMEOUT", "must be positive")
        if not math.isfinite(confirmation_timeout) or confirmation_timeout <= 0:
            raise ConfigInvalidError("CONFIRMATION_TIMEOUT", "must be positive")
        if confirmations < 1:
            raise ConfigInvalidError("CONFIRMATIONS", "must be at least 1")
        if not 0 <= decimals <= 77:
            raise ConfigInvalidError("APR_DECIMALS", "must be between 0 and 77")
        if not 0 < port < 65536:
            raise ConfigInvalidError("PORT", f"out of range: {port}")

        primary_metric = (values.get("PRIMARY_METRIC") or "current").strip().lower()
        if primary_metric not in ("current", "sma"):
            raise ConfigInvalidError("PRIMARY_METRIC", f"expected 'current' or 'sma', got {primary_metric!r}")

        apr_unit = (values.get("APR_UNIT") or "percent").strip().lower()
        if apr_unit not in ("percent", "ratio"):
            raise ConfigInvalidError("APR_UNIT", f"expected 'percent' or 'ratio', got {apr_unit!r}")

        return cls(
            rpc_url=rpc_url,
            private_key=private_key,
            chain_id=chain_id,
            contract_address=contract_address,
            tick_interval=tick_interval,
            epsilon=epsilon,
            fetch_timeout=fetch_timeout,
            confirmation_timeout=confirmation_timeout,
            confirmations=confirmations,
            api_url=(values.get("APR_API_URL") or defaults["api_url"].default).strip(),
            primary_metric=primary_metric,
            allow_zero=_parse_bool("ALLOW_ZERO_APR", values.get("ALLOW_ZERO_APR")),
            apr_unit=apr_unit,
            decimals=decimals,
            host=(values.get("HOST") or defaults["host"].default).strip(),
            port=port,
        )

    def effective_fetch_timeout(self) -> float:
        """Fetch timeout clamped below the tick interval."""
        return min(self.fetch_timeout, self.tick_interval * 0.9)


def _parse(name: str, raw: str, kind: Callable[[str], T]) -> T:
    try:
        return kind(raw.strip())
    except (TypeError, ValueError) as e:
        raise ConfigInvalidError(name, f"cannot parse {raw!r} as {kind.__name__}") from e


def _optional(values: Mapping[str, str | None], name: str, kind: Callable[[str], T], default: T) -> T:
    raw = values.get(name)
    if raw is None or not str(raw).strip():
        return default
    return _parse(name, str(raw), kind)


def _parse_bool(name: str, raw: str | None) -> bool:
    if raw is None or not raw.strip():
        return False
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigInvalidError(name, f"expected a boolean, got {raw!r}")
