"""
recipe-ops Sandbox: In-Memory Ledger

Simulated chain for dry runs and tests.
Implements the same collaborator interfaces as the live adapters:
- Registry / AccountProvisioner
- BalanceBook / Exchange
- ExecutionGateway (through SandboxGateway)
- PositionReader
- FeedRegistry / FeedReader

Recipes run all-or-nothing: state is snapshotted before the first action and
restored on any revert, out-of-gas or unrepaid flash loan. Only the closed
ActionKind set is interpreted; every kind has exactly one handler.
"""

import copy
import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from core.actions import ActionKind, DEFAULT_GAS_ESTIMATES, MAX_UINT, Value
from core.exceptions import BuildError, RecipeOpsError
from core.interfaces import (
    NATIVE_ASSET,
    AccountHandle,
    RawOutcome,
    RoundData,
    VaultState,
)
from core.recipe import RecipeBuilder, RecipeUnit
from core.references import ReferenceResolver

logger = logging.getLogger(__name__)

BPS = 10_000


class SandboxRevert(RecipeOpsError):
    """Raised inside the sandbox when an operation would revert on chain."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _k(address: str) -> str:
    return address.lower()


@dataclass
class Ilk:
    """Collateral type served by a join adapter."""
    join: str
    collateral_asset: str
    debt_asset: str
    price_raw: int  # debt units per collateral unit, scaled by price_decimals
    price_decimals: int = 18
    liquidation_ratio_bps: int = 15_000
    dust: int = 0


@dataclass
class Vault:
    vault_id: int
    owner: str
    join: str
    collateral: int = 0
    debt: int = 0


@dataclass
class _FlashLoan:
    lender: str
    asset: str
    owed: int
    required_balance: int  # lender balance before the loan plus fee


class SandboxChain:
    """In-memory ledger with vaults, flash lenders, swap rates and price feeds."""

    def __init__(self, native_asset: str = NATIVE_ASSET, clock: Callable[[], float] = time.time,
                 gas_costs: Optional[Mapping[ActionKind, int]] = None):
        self.native_asset = native_asset
        self._clock = clock
        self.gas_costs: Dict[ActionKind, int] = dict(DEFAULT_GAS_ESTIMATES)
        if gas_costs:
            self.gas_costs.update(gas_costs)

        self.decimals: Dict[str, int] = {_k(native_asset): 18}
        self.balances: Dict[Tuple[str, str], int] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.rates: Dict[Tuple[str, str], Tuple[int, int]] = {}
        self.addresses: Dict[str, str] = {}
        self.accounts: Dict[str, AccountHandle] = {}
        self.ilks: Dict[str, Ilk] = {}
        self.vaults: Dict[int, Vault] = {}
        self.next_vault_id = 1
        self.flash_lenders: Dict[str, int] = {}
        self.exchange_wrappers: Set[str] = set()
        self.feeds: Dict[Tuple[str, str], str] = {}
        self.rounds: Dict[str, RoundData] = {}
        self.registry_rounds: Dict[Tuple[str, str], RoundData] = {}

        self.builder = RecipeBuilder(gas_estimates=self.gas_costs)
        self.resolver = ReferenceResolver()
        self._lock = threading.RLock()

    # ===== Setup helpers =====

    def set_address(self, name: str, address: str) -> None:
        self.addresses[name] = address

    def register_token(self, asset: str, decimals: int = 18) -> None:
        self.decimals[_k(asset)] = decimals

    def mint(self, asset: str, holder: str, amount: int) -> None:
        key = (_k(asset), _k(holder))
        self.balances[key] = self.balances.get(key, 0) + amount

    def set_rate(self, src: str, dest: str, numerator: int, denominator: int = 1) -> None:
        """dest_raw = src_raw * numerator // denominator"""
        if numerator <= 0 or denominator <= 0:
            raise ValueError("rate terms must be positive")
        self.rates[(_k(src), _k(dest))] = (numerator, denominator)

    def add_ilk(self, ilk: Ilk) -> None:
        self.ilks[_k(ilk.join)] = ilk

    def add_flash_lender(self, lender: str, fee_bps: int = 0) -> None:
        self.flash_lenders[_k(lender)] = fee_bps

    def add_exchange_wrapper(self, wrapper: str) -> None:
        self.exchange_wrappers.add(_k(wrapper))

    def set_feed(self, base: str, quote: str, address: str, answer: int, updated_at: int,
                 round_id: int = 1) -> None:
        self.feeds[(_k(base), _k(quote))] = address
        self.rounds[_k(address)] = RoundData(round_id=round_id, answer=answer, updated_at=updated_at)

    def set_registry_round(self, base: str, quote: str, round_data: RoundData) -> None:
        """Make the registry path report a different round than the feed itself."""
        self.registry_rounds[(_k(base), _k(quote))] = round_data

    # ===== Registry / accounts =====

    def resolve_address(self, name: str) -> str:
        try:
            return self.addresses[name]
        except KeyError:
            raise SandboxRevert(f"{name} not registered") from None

    def get_or_create_execution_account(self, owner: str) -> AccountHandle:
        with self._lock:
            handle = self.accounts.get(_k(owner))
            if handle is None:
                digest = hashlib.sha256(f"proxy:{_k(owner)}".encode("utf-8")).hexdigest()
                handle = AccountHandle(owner=owner, address="0x" + digest[:40])
                self.accounts[_k(owner)] = handle
                logger.info(f"Provisioned execution account {handle.address} for {owner}")
            return handle

    # ===== BalanceBook =====

    def balance_of(self, asset: str, holder: str) -> int:
        return self.balances.get((_k(asset), _k(holder)), 0)

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        return self.allowances.get((_k(asset), _k(owner), _k(spender)), 0)

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> None:
        self.allowances[(_k(asset), _k(owner), _k(spender))] = amount

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        with self._lock:
            self._move(asset, sender, recipient, amount)

    def _move(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        balance = self.balance_of(asset, sender)
        if amount > balance:
            raise SandboxRevert(f"insufficient {asset} balance at {sender}: {balance} < {amount}")
        self.balances[(_k(asset), _k(sender))] = balance - amount
        self.mint(asset, recipient, amount)

    def _burn(self, asset: str, holder: str, amount: int) -> None:
        balance = self.balance_of(asset, holder)
        if amount > balance:
            raise SandboxRevert(f"insufficient {asset} balance at {holder}: {balance} < {amount}")
        self.balances[(_k(asset), _k(holder))] = balance - amount

    def _pull(self, asset: str, owner: str, spender: str, amount: int) -> None:
        """Move `amount` from owner to spender, consuming allowance when they differ."""
        if _k(owner) != _k(spender):
            allowed = self.allowance(asset, owner, spender)
            if allowed < amount:
                raise SandboxRevert(f"allowance {allowed} < {amount} for {asset}")
            if allowed != MAX_UINT:
                self.approve(asset, owner, spender, allowed - amount)
        self._move(asset, owner, spender, amount)

    # ===== Exchange =====

    def quote(self, src: str, dest: str, src_amount: int) -> int:
        rate = self.rates.get((_k(src), _k(dest)))
        if rate is None:
            raise SandboxRevert(f"no route {src} -> {dest}")
        numerator, denominator = rate
        return src_amount * numerator // denominator

    def convert(self, src_asset: str, dest_asset: str, dest_amount: int, payer: str,
                max_src_amount: int) -> int:
        with self._lock:
            rate = self.rates.get((_k(src_asset), _k(dest_asset)))
            if rate is None:
                raise SandboxRevert(f"no route {src_asset} -> {dest_asset}")
            numerator, denominator = rate
            src_needed = -(-dest_amount * denominator // numerator)
            if src_needed > max_src_amount:
                raise SandboxRevert(f"conversion needs {src_needed} {src_asset}, max {max_src_amount}")
            self._burn(src_asset, payer, src_needed)
            self.mint(dest_asset, payer, dest_amount)
            logger.debug(f"Converted {src_needed} {src_asset} -> {dest_amount} {dest_asset} for {payer}")
            return src_needed

    # ===== PositionReader =====

    def get_vault(self, position_id: int) -> Optional[VaultState]:
        vault = self.vaults.get(position_id)
        if vault is None:
            return None
        ilk = self.ilks[_k(vault.join)]
        return VaultState(
            position_id=vault.vault_id,
            owner=vault.owner,
            collateral_asset=ilk.collateral_asset,
            collateral_raw=vault.collateral,
            collateral_decimals=self.decimals.get(_k(ilk.collateral_asset), 18),
            debt_asset=ilk.debt_asset,
            debt_raw=vault.debt,
            debt_decimals=self.decimals.get(_k(ilk.debt_asset), 18),
            price_raw=ilk.price_raw,
            price_decimals=ilk.price_decimals,
        )

    def positions_of(self, owner: str) -> List[int]:
        return sorted(v.vault_id for v in self.vaults.values() if _k(v.owner) == _k(owner))

    # ===== Feeds =====

    def get_feed(self, base: str, quote: str) -> Optional[str]:
        return self.feeds.get((_k(base), _k(quote)))

    def latest_round_data(self, *args: str) -> RoundData:
        """FeedRegistry form (base, quote) or FeedReader form (feed_address)."""
        if len(args) == 2:
            key = (_k(args[0]), _k(args[1]))
            if key in self.registry_rounds:
                return self.registry_rounds[key]
            address = self.feeds.get(key)
            if address is None:
                raise SandboxRevert("Feed not found")
            return self.rounds[_k(address)]
        (address,) = args
        try:
            return self.rounds[_k(address)]
        except KeyError:
            raise SandboxRevert(f"no aggregator at {address}") from None

    # ===== Recipe execution =====

    def execute_recipe(self, unit: RecipeUnit, account: str, gas_ceiling: int) -> RawOutcome:
        """Run every action or none of them."""
        with self._lock:
            snapshot = self._snapshot()
            gas_used = 0
            outputs: List[Optional[int]] = []
            loans: List[_FlashLoan] = []
            try:
                for position, action in enumerate(unit.actions):
                    gas_used += self.gas_costs[action.kind]
                    if gas_used > gas_ceiling:
                        self._restore(snapshot)
                        logger.info(f"Sandbox: {unit.name!r} ran out of gas at action {position}")
                        return RawOutcome(reverted=True, gas_used=gas_ceiling, out_of_gas=True,
                                          revert_reason=f"out of gas at action {position}")
                    params = self.resolver.resolve(unit, position, outputs)
                    handler = self._handlers[action.kind]
                    outputs.append(handler(self, [_raw(p) for p in params], account, loans))
                self._settle_flash_loans(loans)
            except (SandboxRevert, BuildError) as e:
                self._restore(snapshot)
                logger.info(f"Sandbox: {unit.name!r} reverted: {e}")
                return RawOutcome(reverted=True, gas_used=gas_used, revert_reason=str(e))

            return RawOutcome(reverted=False, gas_used=gas_used, return_data=tuple(outputs))

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "balances": dict(self.balances),
            "allowances": dict(self.allowances),
            "vaults": copy.deepcopy(self.vaults),
            "next_vault_id": self.next_vault_id,
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.balances = snapshot["balances"]
        self.allowances = snapshot["allowances"]
        self.vaults = snapshot["vaults"]
        self.next_vault_id = snapshot["next_vault_id"]

    def _settle_flash_loans(self, loans: List[_FlashLoan]) -> None:
        for loan in loans:
            balance = self.balance_of(loan.asset, loan.lender)
            if balance < loan.required_balance:
                raise SandboxRevert(
                    f"flash loan not repaid: lender {loan.lender} short {loan.required_balance - balance}"
                )

    def _owned_vault(self, vault_id: int, account: str) -> Vault:
        vault = self.vaults.get(vault_id)
        if vault is None:
            raise SandboxRevert(f"vault {vault_id} does not exist")
        if _k(vault.owner) != _k(account):
            raise SandboxRevert(f"vault {vault_id} not owned by {account}")
        return vault

    def _check_safe(self, vault: Vault) -> None:
        ilk = self.ilks[_k(vault.join)]
        if 0 < vault.debt < ilk.dust:
            raise SandboxRevert("Vault/dust")
        if vault.debt == 0:
            return
        state = self.get_vault(vault.vault_id)
        coll_value = state.collateral_raw * state.price_raw * (10 ** state.debt_decimals) * BPS
        required = (
            vault.debt * ilk.liquidation_ratio_bps
            * (10 ** state.collateral_decimals) * (10 ** state.price_decimals)
        )
        if coll_value < required:
            raise SandboxRevert("Vault/not-safe")

    # ===== Action handlers (params already resolved to raw python values) =====

    def _flash_loan(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        asset, amount, lender = p
        if _k(lender) not in self.flash_lenders:
            raise SandboxRevert(f"unknown flash lender {lender}")
        before = self.balance_of(asset, lender)
        self._move(asset, lender, account, amount)
        owed = amount + amount * self.flash_lenders[_k(lender)] // BPS
        loans.append(_FlashLoan(lender=lender, asset=asset, owed=owed,
                                required_balance=before + owed - amount))
        return owed

    def _swap(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        src, dest, src_amount, min_dest, wrapper, from_addr, to_addr = p
        if _k(wrapper) not in self.exchange_wrappers:
            raise SandboxRevert(f"wrapper {wrapper} not approved")
        if src_amount == MAX_UINT:
            src_amount = self.balance_of(src, from_addr)
        dest_amount = self.quote(src, dest, src_amount)
        if dest_amount < min_dest:
            raise SandboxRevert(f"slippage: got {dest_amount}, wanted {min_dest}")
        self._pull(src, from_addr, account, src_amount)
        self._burn(src, account, src_amount)
        self.mint(dest, to_addr, dest_amount)
        return dest_amount

    def _open_vault(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        join, manager = p
        if _k(join) not in self.ilks:
            raise SandboxRevert(f"unknown join {join}")
        expected_manager = self.addresses.get("McdManager")
        if expected_manager and _k(manager) != _k(expected_manager):
            raise SandboxRevert(f"unknown vault manager {manager}")
        vault_id = self.next_vault_id
        self.next_vault_id += 1
        self.vaults[vault_id] = Vault(vault_id=vault_id, owner=account, join=join)
        return vault_id

    def _supply(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        vault_id, amount, join, from_addr, manager = p
        vault = self._owned_vault(vault_id, account)
        if _k(join) != _k(vault.join):
            raise SandboxRevert(f"join {join} does not match vault {vault_id}")
        asset = self.ilks[_k(join)].collateral_asset
        if amount == MAX_UINT:
            amount = self.balance_of(asset, from_addr)
        self._pull(asset, from_addr, account, amount)
        self._burn(asset, account, amount)
        vault.collateral += amount
        return amount

    def _generate(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        vault_id, amount, to_addr, manager = p
        vault = self._owned_vault(vault_id, account)
        vault.debt += amount
        self._check_safe(vault)
        self.mint(self.ilks[_k(vault.join)].debt_asset, to_addr, amount)
        return amount

    def _payback(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        vault_id, amount, from_addr, manager = p
        vault = self._owned_vault(vault_id, account)
        if amount == MAX_UINT:
            amount = vault.debt
        if amount > vault.debt:
            raise SandboxRevert(f"payback {amount} exceeds debt {vault.debt}")
        asset = self.ilks[_k(vault.join)].debt_asset
        self._pull(asset, from_addr, account, amount)
        self._burn(asset, account, amount)
        vault.debt -= amount
        self._check_safe(vault)
        return amount

    def _withdraw(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        vault_id, amount, join, to_addr, manager = p
        vault = self._owned_vault(vault_id, account)
        if amount == MAX_UINT:
            amount = vault.collateral
        if amount > vault.collateral:
            raise SandboxRevert(f"withdraw {amount} exceeds collateral {vault.collateral}")
        vault.collateral -= amount
        self._check_safe(vault)
        self.mint(self.ilks[_k(vault.join)].collateral_asset, to_addr, amount)
        return amount

    def _pull_token(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        asset, from_addr, amount = p
        if amount == MAX_UINT:
            amount = self.balance_of(asset, from_addr)
        self._pull(asset, from_addr, account, amount)
        return amount

    def _send_token(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        asset, to_addr, amount = p
        if amount == MAX_UINT:
            amount = self.balance_of(asset, account)
        self._move(asset, account, to_addr, amount)
        return amount

    def _sum_inputs(self, p: List[Any], account: str, loans: List[_FlashLoan]) -> int:
        a, b = p
        total = a + b
        if total > MAX_UINT:
            raise SandboxRevert("SumInputs overflow")
        return total

    _handlers = {
        ActionKind.FLASH_LOAN: _flash_loan,
        ActionKind.SWAP: _swap,
        ActionKind.OPEN_VAULT: _open_vault,
        ActionKind.SUPPLY: _supply,
        ActionKind.GENERATE: _generate,
        ActionKind.PAYBACK: _payback,
        ActionKind.WITHDRAW: _withdraw,
        ActionKind.PULL_TOKEN: _pull_token,
        ActionKind.SEND_TOKEN: _send_token,
        ActionKind.SUM_INPUTS: _sum_inputs,
    }

    # ===== Config =====

    @classmethod
    def from_config(cls, raw_config: Optional[Mapping[str, Any]],
                    clock: Callable[[], float] = time.time) -> "SandboxChain":
        """Build a chain from the `sandbox` section of app.yaml."""
        raw_config = raw_config or {}
        chain = cls(clock=clock)
        for name, address in (raw_config.get("addresses") or {}).items():
            chain.set_address(name, address)
        for asset, decimals in (raw_config.get("tokens") or {}).items():
            chain.register_token(asset, int(decimals))
        for item in raw_config.get("balances") or []:
            chain.mint(item["asset"], item["holder"], int(item["amount"]))
        for item in raw_config.get("allowances") or []:
            chain.approve(item["asset"], item["owner"], item["spender"], int(item["amount"]))
        for item in raw_config.get("rates") or []:
            chain.set_rate(item["src"], item["dest"], int(item["num"]), int(item.get("den", 1)))
        for item in raw_config.get("ilks") or []:
            chain.add_ilk(Ilk(
                join=item["join"],
                collateral_asset=item["collateral"],
                debt_asset=item["debt"],
                price_raw=int(item["price"]),
                price_decimals=int(item.get("price_decimals", 18)),
                liquidation_ratio_bps=int(item.get("liquidation_ratio_bps", 15_000)),
                dust=int(item.get("dust", 0)),
            ))
        for item in raw_config.get("flash_lenders") or []:
            chain.add_flash_lender(item["address"], int(item.get("fee_bps", 0)))
        for wrapper in raw_config.get("exchange_wrappers") or []:
            chain.add_exchange_wrapper(wrapper)
        now = int(clock())
        for item in raw_config.get("feeds") or []:
            chain.set_feed(item["base"], item["quote"], item["address"], int(item["answer"]),
                           now - int(item.get("age_seconds", 0)))
        logger.info(
            f"Sandbox chain ready: {len(chain.addresses)} addresses, {len(chain.ilks)} ilks, "
            f"{len(chain.feeds)} feeds"
        )
        return chain


_missing = set(ActionKind) - set(SandboxChain._handlers)
if _missing:  # pragma: no cover
    raise RuntimeError(f"Sandbox has no handler for {sorted(k.value for k in _missing)}")


def _raw(value: Value) -> Any:
    return value.value


class SandboxGateway:
    """ExecutionGateway that runs recipes on a SandboxChain as `account`."""

    def __init__(self, chain: SandboxChain, account: AccountHandle):
        self.chain = chain
        self.account = account

    def submit(self, target: str, payload: bytes, gas_ceiling: int) -> RawOutcome:
        executor = self.chain.addresses.get("RecipeExecutor")
        if executor is None or _k(target) != _k(executor):
            return RawOutcome(reverted=True, gas_used=0, revert_reason=f"no executor at {target}")
        try:
            unit = self.chain.builder.decode(payload)
        except BuildError as e:
            return RawOutcome(reverted=True, gas_used=0, revert_reason=f"malformed payload: {e}")
        return self.chain.execute_recipe(unit, self.account.address, gas_ceiling)
