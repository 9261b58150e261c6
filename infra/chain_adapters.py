"""
Read-only web3 adapters for LIVE mode.

Registry lookups, feed registry reads, direct aggregator reads and ERC20 /
native balance reads. Nothing here signs or sends transactions; submission
goes through core.gateway.JsonRpcGateway.
"""

import logging
from typing import Optional

from web3 import Web3
from web3.exceptions import Web3Exception

from core.exceptions import TransportError
from core.interfaces import NATIVE_ASSET, RoundData

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_REGISTRY_ABI = [
    {
        "name": "getAddr",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "_id", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

_ROUND_OUTPUTS = [
    {"name": "roundId", "type": "uint80"},
    {"name": "answer", "type": "int256"},
    {"name": "startedAt", "type": "uint256"},
    {"name": "updatedAt", "type": "uint256"},
    {"name": "answeredInRound", "type": "uint80"},
]

_FEED_REGISTRY_ABI = [
    {
        "name": "getFeed",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "base", "type": "address"}, {"name": "quote", "type": "address"}],
        "outputs": [{"name": "aggregator", "type": "address"}],
    },
    {
        "name": "latestRoundData",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "base", "type": "address"}, {"name": "quote", "type": "address"}],
        "outputs": _ROUND_OUTPUTS,
    },
]

_AGGREGATOR_ABI = [
    {
        "name": "latestRoundData",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": _ROUND_OUTPUTS,
    },
]

_ERC20_MIN_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


def connect(rpc_url: str, timeout: float = 20.0) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    logger.info(f"web3 provider configured for {rpc_url}")
    return w3


def _round(raw) -> RoundData:
    round_id, answer, _started_at, updated_at, _answered_in = raw
    return RoundData(round_id=int(round_id), answer=int(answer), updated_at=int(updated_at))


class _Web3Adapter:
    def __init__(self, w3: Web3):
        self.w3 = w3

    def _contract(self, address: str, abi):
        return self.w3.eth.contract(address=self.w3.to_checksum_address(address), abi=abi)

    def _read(self, what: str, fn):
        """Run a view call, mapping provider failures to TransportError."""
        try:
            return fn.call()
        except (OSError, ValueError, Web3Exception) as e:
            raise TransportError(f"{what} failed: {e}", original=e) from e


class Web3Registry(_Web3Adapter):
    """Name -> address lookups against an on-chain registry keyed by keccak(name)."""

    def __init__(self, w3: Web3, registry_address: str):
        super().__init__(w3)
        self.contract = self._contract(registry_address, _REGISTRY_ABI)

    def resolve_address(self, name: str) -> str:
        address = self._read(f"registry lookup {name}",
                             self.contract.functions.getAddr(Web3.keccak(text=name)))
        if not address or address == ZERO_ADDRESS:
            raise TransportError(f"{name} is not registered")
        return address


class Web3FeedRegistry(_Web3Adapter):
    def __init__(self, w3: Web3, feed_registry_address: str):
        super().__init__(w3)
        self.contract = self._contract(feed_registry_address, _FEED_REGISTRY_ABI)

    def get_feed(self, base: str, quote: str) -> Optional[str]:
        fn = self.contract.functions.getFeed(self.w3.to_checksum_address(base),
                                             self.w3.to_checksum_address(quote))
        try:
            address = fn.call()
        except (OSError, ValueError, Web3Exception) as e:
            # Registry reverts with "Feed not found" for unknown pairs
            logger.debug(f"getFeed({base}, {quote}) failed: {e}")
            return None
        return None if address == ZERO_ADDRESS else address

    def latest_round_data(self, base: str, quote: str) -> RoundData:
        fn = self.contract.functions.latestRoundData(self.w3.to_checksum_address(base),
                                                     self.w3.to_checksum_address(quote))
        return _round(self._read(f"registry latestRoundData({base}, {quote})", fn))


class Web3FeedReader(_Web3Adapter):
    def latest_round_data(self, feed_address: str) -> RoundData:
        aggregator = self._contract(feed_address, _AGGREGATOR_ABI)
        return _round(self._read(f"latestRoundData at {feed_address}", aggregator.functions.latestRoundData()))


class Web3BalanceReader(_Web3Adapter):
    """Read half of BalanceBook; LIVE mode never moves funds from here."""

    def balance_of(self, asset: str, holder: str) -> int:
        holder = self.w3.to_checksum_address(holder)
        if asset.lower() == NATIVE_ASSET.lower():
            try:
                return int(self.w3.eth.get_balance(holder))
            except (OSError, ValueError, Web3Exception) as e:
                raise TransportError(f"get_balance({holder}) failed: {e}", original=e) from e
        token = self._contract(asset, _ERC20_MIN_ABI)
        return int(self._read(f"balanceOf {holder}", token.functions.balanceOf(holder)))

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        token = self._contract(asset, _ERC20_MIN_ABI)
        fn = token.functions.allowance(self.w3.to_checksum_address(owner), self.w3.to_checksum_address(spender))
        return int(self._read(f"allowance {owner}->{spender}", fn))
