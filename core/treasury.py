"""
recipe-ops Core: Gas Refill Treasury

Keeps automated operator accounts solvent by sending them native currency,
converting held reserve assets when the treasury's native balance falls short.

Rules:
- Only the authorized caller may refill, and only whitelisted recipients
  (the operator address or an additional bot) may receive
- A single refill never exceeds the per-call cap
- A refill either transfers exactly `amount` or changes nothing
- Policy changes are owner-only and apply to subsequent calls only
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import FrozenSet, List, Optional, Tuple

from core.audit_log import AuditLogger
from core.exceptions import (
    CapExceeded,
    ConversionFailed,
    InvalidAmount,
    RecipeOpsError,
    TopUpIncomplete,
    TreasuryError,
    Unauthorized,
)
from core.interfaces import NATIVE_ASSET, BalanceBook, Exchange
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

_UNCHANGED = object()


def _norm(address: Optional[str]) -> str:
    return (address or "").lower()


@dataclass(frozen=True)
class RefillPolicy:
    operator_address: str
    authorized_caller: str
    per_call_cap: int
    reserve_asset: str
    threshold_balance: int
    target_balance: Optional[int] = None
    additional_bots: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.per_call_cap <= 0:
            raise ValueError("per_call_cap must be positive")
        if self.threshold_balance < 0:
            raise ValueError("threshold_balance cannot be negative")
        if self.target_balance is not None and self.target_balance < self.threshold_balance:
            raise ValueError("target_balance must be >= threshold_balance")

    @property
    def refill_target(self) -> int:
        return self.target_balance if self.target_balance is not None else self.threshold_balance

    def recipients(self) -> List[str]:
        """Operator first, then additional bots in a stable order."""
        bots = sorted(b for b in self.additional_bots if _norm(b) != _norm(self.operator_address))
        return [self.operator_address] + bots

    def is_recipient_allowed(self, recipient: str) -> bool:
        allowed = {_norm(self.operator_address)} | {_norm(b) for b in self.additional_bots}
        return _norm(recipient) in allowed


@dataclass(frozen=True)
class RefillReceipt:
    recipient: str
    amount: int
    source: str  # "native" | wrapped native asset | reserve asset
    converted: int = 0  # source units spent on conversion


class GasRefillTreasury:
    """
    Operator gas treasury.

    Funds live at `holder`; the treasury acts as `address` and must be
    approved by the holder for any asset it converts. Calls are serialized by
    a per-treasury lock held only for the duration of one call.
    """

    def __init__(self, policy: RefillPolicy, owner: str, holder: str, address: str,
                 balances: BalanceBook, exchange: Exchange, wrapped_native: Optional[str] = None,
                 native_asset: str = NATIVE_ASSET, metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None):
        self._policy = policy
        self.owner = owner
        self.holder = holder
        self.address = address
        self.balances = balances
        self.exchange = exchange
        self.wrapped_native = wrapped_native
        self.native_asset = native_asset
        self.metrics = metrics
        self.audit = audit
        self._lock = threading.Lock()
        logger.info(
            f"Initialized GasRefillTreasury (operator={policy.operator_address}, "
            f"cap={policy.per_call_cap}, threshold={policy.threshold_balance}, "
            f"reserve={policy.reserve_asset})"
        )

    @property
    def policy(self) -> RefillPolicy:
        return self._policy

    # ===== Operational surface =====

    def refill(self, caller: str, amount: int, recipient: str) -> RefillReceipt:
        """
        Send exactly `amount` native currency to `recipient`.

        Raises:
            Unauthorized: caller is not the authorized caller, or recipient not whitelisted
            CapExceeded: amount above the per-call cap
            ConversionFailed: native reserve short and no reserve asset could cover it
        """
        with self._lock:
            policy = self._policy
            try:
                self._authorize_refill(policy, caller, amount, recipient)
                source, converted = self._ensure_native(policy, amount)
                self.balances.transfer(self.native_asset, self.holder, recipient, amount)
            except TreasuryError as e:
                logger.warning(f"Refill of {amount} to {recipient} rejected: {e}")
                self._record(caller, recipient, amount, None, type(e).__name__, str(e))
                raise

            logger.info(f"Refilled {recipient} with {amount} wei (source={source}, converted={converted})")
            self._record(caller, recipient, amount, source, "success")
            return RefillReceipt(recipient=recipient, amount=amount, source=source, converted=converted)

    def deficit(self, account: str) -> int:
        """Amount needed to bring `account` back to target, 0 when above threshold."""
        policy = self._policy
        balance = self.balances.balance_of(self.native_asset, account)
        if self.metrics:
            self.metrics.record_operator_balance(account, balance)
        if balance >= policy.threshold_balance:
            return 0
        return policy.refill_target - balance

    def top_up(self, caller: str) -> List[RefillReceipt]:
        """
        Refill every whitelisted account that fell below the threshold.

        Every account is attempted even when an earlier one fails.

        Raises:
            TopUpIncomplete: at least one refill failed; carries the receipts of
                the refills that went through and an (account, error) pair per failure
        """
        receipts: List[RefillReceipt] = []
        failures: List[Tuple[str, TreasuryError]] = []
        for account in self._policy.recipients():
            needed = self.deficit(account)
            if needed <= 0:
                continue
            amount = min(needed, self._policy.per_call_cap)
            logger.info(f"Operator {account} below threshold; topping up {amount} of {needed} needed")
            try:
                receipts.append(self.refill(caller, amount, account))
            except TreasuryError as e:
                failures.append((account, e))
        if failures:
            raise TopUpIncomplete(receipts, failures)
        return receipts

    def _authorize_refill(self, policy: RefillPolicy, caller: str, amount: int, recipient: str) -> None:
        if _norm(caller) != _norm(policy.authorized_caller):
            raise Unauthorized("caller", caller)
        if not policy.is_recipient_allowed(recipient):
            raise Unauthorized("recipient", recipient)
        if amount <= 0:
            raise InvalidAmount(amount, "refill amount must be positive")
        if amount > policy.per_call_cap:
            raise CapExceeded(amount, policy.per_call_cap)

    def _ensure_native(self, policy: RefillPolicy, amount: int):
        native = self.balances.balance_of(self.native_asset, self.holder)
        if native >= amount:
            return "native", 0
        shortfall = amount - native

        last_error: Optional[Exception] = None
        for asset in (self.wrapped_native, policy.reserve_asset):
            if not asset:
                continue
            available = min(
                self.balances.balance_of(asset, self.holder),
                self.balances.allowance(asset, self.holder, self.address),
            )
            if available <= 0:
                logger.debug(f"No usable {asset} at treasury holder")
                continue
            try:
                spent = self.exchange.convert(asset, self.native_asset, shortfall, self.holder, available)
            except (RecipeOpsError, ValueError) as e:
                logger.warning(f"Converting {asset} for {shortfall} wei failed: {e}")
                last_error = e
                continue
            return asset, spent

        reason = str(last_error) if last_error else "no reserve asset available"
        raise ConversionFailed(policy.reserve_asset, shortfall, reason, original=last_error)

    # ===== Administrative surface =====

    def _require_owner(self, caller: str) -> None:
        if _norm(caller) != _norm(self.owner):
            raise Unauthorized("owner", caller)

    def _update_policy(self, caller: str, **changes) -> RefillPolicy:
        with self._lock:
            self._require_owner(caller)
            self._policy = replace(self._policy, **changes)
            logger.info(f"Treasury policy updated by {caller}: {sorted(changes)}")
            return self._policy

    def set_authorized_caller(self, caller: str, new_caller: str) -> RefillPolicy:
        return self._update_policy(caller, authorized_caller=new_caller)

    def set_additional_bot(self, caller: str, bot: str, allowed: bool) -> RefillPolicy:
        with self._lock:
            self._require_owner(caller)
            bots = {b for b in self._policy.additional_bots if _norm(b) != _norm(bot)}
            if allowed:
                bots.add(bot)
            self._policy = replace(self._policy, additional_bots=frozenset(bots))
            logger.info(f"Additional bot {bot} {'allowed' if allowed else 'removed'} by {caller}")
            return self._policy

    def set_per_call_cap(self, caller: str, cap: int) -> RefillPolicy:
        return self._update_policy(caller, per_call_cap=cap)

    def set_threshold_balance(self, caller: str, threshold: int, target=_UNCHANGED) -> RefillPolicy:
        """Omitting `target` keeps the current one; pass None to top up to the threshold."""
        if target is _UNCHANGED:
            return self._update_policy(caller, threshold_balance=threshold)
        return self._update_policy(caller, threshold_balance=threshold, target_balance=target)

    def withdraw(self, caller: str, asset: str, to: str, amount: int = 0) -> int:
        """Owner withdrawal from the treasury holder; amount 0 withdraws everything."""
        with self._lock:
            self._require_owner(caller)
            balance = self.balances.balance_of(asset, self.holder)
            if amount == 0:
                amount = balance
            if amount > balance:
                raise InvalidAmount(amount, f"exceeds balance {balance}")
            if amount > 0:
                self.balances.transfer(asset, self.holder, to, amount)
            logger.info(f"Withdrew {amount} of {asset} to {to}")
            return amount

    def approve(self, caller: str, asset: str, spender: str, amount: int) -> None:
        """Owner-only allowance from the treasury holder; amount 0 revokes it."""
        with self._lock:
            self._require_owner(caller)
            if amount < 0:
                raise InvalidAmount(amount, "allowance cannot be negative")
            self.balances.approve(asset, self.holder, spender, amount)
            logger.info(f"Holder allowance for {spender} on {asset} set to {amount} by {caller}")

    def _record(self, caller: str, recipient: str, amount: int, source: Optional[str],
                result: str, error: Optional[str] = None) -> None:
        if self.metrics:
            self.metrics.record_refill(result, amount)
        if self.audit:
            self.audit.log_refill(caller, recipient, amount, source, result, error)
