"""
recipe-ops Core: Flash Loan Orchestrator

Builds leveraged vault recipes around a flash loan that must be repaid inside
the same atomic unit.

Only the structure is checked here (a borrow first, a matching repay last).
Whether the intervening actions actually generate enough to repay is an
economic question answered by the environment: an insufficient recipe comes
back as a REVERTED outcome.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Sequence

from core import actions as act
from core.actions import ActionKind, ActionSpec, AddressValue, MAX_UINT, Reference, UintValue
from core.exceptions import InvalidFlashLoanLayout, MissingFlashLoanRepay
from core.position import ExpectedBounds
from core.recipe import RecipeBuilder, RecipeUnit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeveragePlan:
    """
    Parameters of a leveraged vault opening.

    principal = base_debt x leverage is flash-borrowed in debt_asset, swapped
    into collateral, supplied, and repaid by generating the same amount of debt.
    """
    base_debt: int
    leverage: Decimal
    debt_asset: str
    collateral_asset: str
    join: str
    manager: str
    lender: str
    exchange_wrapper: str
    account: str
    own_collateral: int = 0
    owner: Optional[str] = None
    min_collateral_out: int = 0

    def __post_init__(self):
        if self.base_debt <= 0:
            raise ValueError("base_debt must be positive")
        if Decimal(self.leverage) < 1:
            raise ValueError("leverage must be >= 1")
        if self.own_collateral > 0 and not self.owner:
            raise ValueError("owner is required to pull own collateral")

    @property
    def principal(self) -> int:
        scaled = Decimal(self.base_debt) * Decimal(self.leverage)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))

    def expected_bounds(self) -> ExpectedBounds:
        """Debt after a successful run can never be below the borrowed principal."""
        return ExpectedBounds(min_debt=self.principal)


class FlashLoanOrchestrator:
    """Enforce the borrow/repay layout on top of RecipeBuilder."""

    def __init__(self, builder: Optional[RecipeBuilder] = None):
        self.builder = builder or RecipeBuilder()

    def validate(self, actions: Sequence[ActionSpec]) -> None:
        """
        Check the borrow-first / repay-last structure.

        Raises:
            InvalidFlashLoanLayout: first action is not a single literal flash loan
            MissingFlashLoanRepay: last action does not repay the lender in the borrowed asset
        """
        if not actions or actions[0].kind is not ActionKind.FLASH_LOAN:
            raise InvalidFlashLoanLayout(0, "first action must be a flash loan")

        borrow = actions[0]
        asset = borrow.param("asset")
        lender = borrow.param("lender")
        amount = borrow.param("amount")
        if not isinstance(amount, UintValue):
            raise InvalidFlashLoanLayout(0, "borrowed amount must be a literal")

        for position, action in enumerate(actions[1:], start=1):
            if action.kind is ActionKind.FLASH_LOAN:
                raise InvalidFlashLoanLayout(position, "nested flash loans are not supported")

        if len(actions) < 2 or not self._repays(actions[-1], asset, lender, amount.value):
            raise MissingFlashLoanRepay(lender.value, asset.value)

    @staticmethod
    def _repays(action: ActionSpec, asset: AddressValue, lender: AddressValue, borrowed: int) -> bool:
        if action.kind is ActionKind.GENERATE:
            recipient = action.param("to")
        elif action.kind is ActionKind.SEND_TOKEN:
            if not _same_address(action.param("asset"), asset):
                return False
            recipient = action.param("to")
        else:
            return False
        if not _same_address(recipient, lender):
            return False
        amount = action.param("amount")
        if isinstance(amount, Reference):
            return amount.index == 0
        return isinstance(amount, UintValue) and amount.value >= borrowed

    def build(self, name: str, actions: Sequence[ActionSpec],
              gas_ceiling: Optional[int] = None) -> RecipeUnit:
        self.validate(actions)
        return self.builder.build(name, actions, gas_ceiling=gas_ceiling)

    def leveraged_actions(self, plan: LeveragePlan) -> Sequence[ActionSpec]:
        steps = [
            act.flash_loan(plan.debt_asset, plan.principal, plan.lender, output="borrowed"),
            act.swap(plan.debt_asset, plan.collateral_asset, plan.principal, plan.exchange_wrapper,
                     plan.account, plan.account, min_dest_amount=plan.min_collateral_out,
                     output="bought"),
            act.open_vault(plan.join, plan.manager, output="vault"),
        ]
        vault = Reference(2)
        if plan.own_collateral > 0:
            steps.append(act.pull_token(plan.collateral_asset, plan.owner, plan.own_collateral,
                                        output="pulled"))
            # Whole account balance: swapped plus pulled collateral
            supply_amount = MAX_UINT
        else:
            supply_amount = Reference(1)
        steps.append(act.supply(vault, supply_amount, plan.join, plan.account, plan.manager,
                                output="supplied"))
        steps.append(act.generate(vault, Reference(0), plan.lender, plan.manager, output="generated"))
        return steps

    def build_leveraged(self, plan: LeveragePlan, name: str = "LeveragedVaultRecipe",
                        gas_ceiling: Optional[int] = None) -> RecipeUnit:
        logger.info(
            f"Building leveraged recipe {name!r}: base_debt={plan.base_debt}, "
            f"leverage={plan.leverage}, principal={plan.principal}"
        )
        return self.build(name, self.leveraged_actions(plan), gas_ceiling=gas_ceiling)

    def build_open_and_supply(self, name: str, join: str, manager: str, collateral_amount: int,
                              debt_amount: int, owner: str,
                              gas_ceiling: Optional[int] = None) -> RecipeUnit:
        """Plain [open, supply, generate] recipe without a flash loan."""
        steps = [
            act.open_vault(join, manager, output="vault"),
            act.supply(Reference(0), collateral_amount, join, owner, manager, output="supplied"),
            act.generate(Reference(0), debt_amount, owner, manager, output="generated"),
        ]
        return self.builder.build(name, steps, gas_ceiling=gas_ceiling)


def _same_address(a, b) -> bool:
    return (
        isinstance(a, AddressValue)
        and isinstance(b, AddressValue)
        and a.value.lower() == b.value.lower()
    )
