"""Narrow interfaces to the external collaborators recipe-ops consumes.

Implemented by the in-memory sandbox (sandbox/ledger.py), the JSON-RPC
gateway (core/gateway.py) and the web3 read adapters (infra/chain_adapters.py).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple


NATIVE_ASSET = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


@dataclass(frozen=True)
class AccountHandle:
    owner: str
    address: str


@dataclass(frozen=True)
class RawOutcome:
    """Un-classified result reported by an execution gateway."""
    reverted: bool
    gas_used: int
    return_data: Tuple[Optional[int], ...] = ()
    revert_reason: Optional[str] = None
    out_of_gas: bool = False
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class VaultState:
    """Raw vault readings in base units; price is debt units per collateral unit."""
    position_id: int
    owner: str
    collateral_asset: str
    collateral_raw: int
    collateral_decimals: int
    debt_asset: str
    debt_raw: int
    debt_decimals: int
    price_raw: int
    price_decimals: int


@dataclass(frozen=True)
class RoundData:
    round_id: int
    answer: int
    updated_at: int


class Registry(Protocol):
    def resolve_address(self, name: str) -> str: ...


class AccountProvisioner(Protocol):
    def get_or_create_execution_account(self, owner: str) -> AccountHandle: ...


class BalanceBook(Protocol):
    def balance_of(self, asset: str, holder: str) -> int: ...

    def allowance(self, asset: str, owner: str, spender: str) -> int: ...

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> None: ...

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> None: ...


class Exchange(Protocol):
    def convert(self, src_asset: str, dest_asset: str, dest_amount: int, payer: str,
                max_src_amount: int) -> int:
        """Buy exactly `dest_amount` of dest for `payer`; return src spent."""
        ...


class ExecutionGateway(Protocol):
    def submit(self, target: str, payload: bytes, gas_ceiling: int) -> RawOutcome: ...


class PositionReader(Protocol):
    def get_vault(self, position_id: int) -> Optional[VaultState]: ...

    def positions_of(self, owner: str) -> List[int]: ...


class FeedRegistry(Protocol):
    def get_feed(self, base: str, quote: str) -> Optional[str]: ...

    def latest_round_data(self, base: str, quote: str) -> RoundData: ...


class FeedReader(Protocol):
    def latest_round_data(self, feed_address: str) -> RoundData: ...
