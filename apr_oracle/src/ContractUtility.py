"""ContractUtility: Web3 initialization and APR contract binding."""

from __future__ import annotations

import logging

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract
from web3.middleware import SignAndSendRawMiddlewareBuilder

from .RelayConfig import ConfigInvalidError

logger = logging.getLogger(__name__)

# Only the write entry point is needed by the relay.
APR_CONTRACT_ABI: list[dict] = [
    {
        "type": "function",
        "name": "updateAPY",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_newAPY", "type": "uint256", "internalType": "uint256"}],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "APYUpdated",
        "anonymous": False,
        "inputs": [{"name": "newAPY", "type": "uint256", "indexed": False, "internalType": "uint256"}],
    },
]


class ContractUtility:
    """Utility for the signing Web3 connection and contract binding.

    :ivar rpc_url: Ledger JSON-RPC endpoint.
    :ivar chain_id: Expected numeric network identifier.
    :ivar account: Local signing account.
    :ivar w3: Web3 instance that signs outgoing transactions locally.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        chain_id: int,
        request_timeout: float = 30.0,
    ) -> None:
        """Initialize the contract utility.

        :param rpc_url: JSON-RPC endpoint URL.
        :param private_key: Hex-encoded secp256k1 signing key.
        :param chain_id: Numeric network identifier.
        :param request_timeout: Per-RPC-request timeout in seconds.
        :raises ConfigInvalidError: If the key cannot be loaded.
        """
        self.rpc_url = rpc_url
        self.chain_id = chain_id

        try:
            self.account: LocalAccount = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError("PRIVATE_KEY", "not a valid secp256k1 key") from e

        self.w3 = Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(self.account))
        self.w3.eth.default_account = self.account.address

    @property
    def address(self) -> str:
        return self.account.address

    def get_contract(self, address: str) -> Contract:
        """Bind the APR contract at the given address.

        :param address: Contract address (any case).
        :returns: Web3 contract instance.
        :raises ConfigInvalidError: If the address is not a valid address.
        """
        if not Web3.is_address(address):
            raise ConfigInvalidError("CONTRACT_ADDRESS", f"not an address: {address}")
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address), abi=APR_CONTRACT_ABI
        )

    def verify_chain_id(self) -> None:
        """Check that the RPC endpoint serves the configured network.

        :raises ConfigInvalidError: If the endpoint reports another chain id.
        """
        remote = self.w3.eth.chain_id
        if remote != self.chain_id:
            raise ConfigInvalidError(
                "CHAIN_ID", f"configured {self.chain_id}, but {self.rpc_url} reports {remote}"
            )
        logger.info(f"Connected to chain {remote} as {self.address}")
