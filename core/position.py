"""
recipe-ops Core: Position Verifier

Post-execution checks of a vault's collateral, debt and collateralization
ratio against expected bounds.

All pass/fail decisions use integer fixed-point math in each asset's native
decimals. Decimal values are derived for display and logging only. Positions
are read fresh on every call; nothing is cached between verifications.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from core.exceptions import BoundsViolated, PositionNotFound
from core.interfaces import PositionReader, VaultState

logger = logging.getLogger(__name__)

BPS = 10_000


@dataclass(frozen=True)
class TokenAmount:
    asset: str
    raw: int
    decimals: int

    def to_decimal(self) -> Decimal:
        return Decimal(self.raw).scaleb(-self.decimals)


@dataclass(frozen=True)
class Position:
    position_id: int
    collateral: TokenAmount
    debt: TokenAmount
    ratio_bps: Optional[int]

    @property
    def ratio(self) -> Optional[Decimal]:
        """Collateralization ratio as a percentage (e.g. Decimal('215.37'))."""
        if self.ratio_bps is None:
            return None
        return Decimal(self.ratio_bps).scaleb(-2)

    def describe(self) -> str:
        ratio = f"{self.ratio:.2f}%" if self.ratio is not None else "n/a"
        return (
            f"Ratio: {ratio} (coll: {self.collateral.to_decimal():.2f} {self.collateral.asset}, "
            f"debt: {self.debt.to_decimal():.2f} {self.debt.asset})"
        )


@dataclass(frozen=True)
class ExpectedBounds:
    """Optional bounds; debt in raw base units, ratios as percentages."""
    min_debt: Optional[int] = None
    max_debt: Optional[int] = None
    min_ratio: Optional[Decimal] = None
    max_ratio: Optional[Decimal] = None

    @classmethod
    def exact_debt(cls, debt: int) -> "ExpectedBounds":
        return cls(min_debt=debt, max_debt=debt)


def compute_ratio_bps(state: VaultState) -> Optional[int]:
    """Collateral value / debt value in basis points, floored. None when debt is zero."""
    if state.debt_raw == 0:
        return None
    numerator = state.collateral_raw * state.price_raw * (10 ** state.debt_decimals) * BPS
    denominator = (
        state.debt_raw * (10 ** state.collateral_decimals) * (10 ** state.price_decimals)
    )
    return numerator // denominator


class PositionVerifier:
    """Read a position and check it against expectations."""

    def __init__(self, reader: PositionReader):
        self.reader = reader

    def read(self, position_id: int) -> Position:
        state = self.reader.get_vault(position_id)
        if state is None:
            raise PositionNotFound(position_id)
        return Position(
            position_id=position_id,
            collateral=TokenAmount(state.collateral_asset, state.collateral_raw, state.collateral_decimals),
            debt=TokenAmount(state.debt_asset, state.debt_raw, state.debt_decimals),
            ratio_bps=compute_ratio_bps(state),
        )

    def latest_position_id(self, owner: str) -> int:
        ids = self.reader.positions_of(owner)
        if not ids:
            raise PositionNotFound(-1)
        return ids[-1]

    def verify(self, position_id: int, expected: Optional[ExpectedBounds] = None) -> Position:
        """
        Read the position fresh and enforce every supplied bound.

        Raises:
            PositionNotFound: reader has no such position
            BoundsViolated: first unmet bound (min_debt, max_debt, min_ratio, max_ratio)
        """
        position = self.read(position_id)
        logger.info(f"Position {position_id}: {position.describe()}")
        if expected is None:
            return position

        debt = position.debt.raw
        if expected.min_debt is not None and debt < expected.min_debt:
            raise BoundsViolated("debt", debt, f">= {expected.min_debt}")
        if expected.max_debt is not None and debt > expected.max_debt:
            raise BoundsViolated("debt", debt, f"<= {expected.max_debt}")

        if position.ratio_bps is None:
            # Zero debt: unbounded ratio, satisfies any minimum and no maximum
            if expected.max_ratio is not None:
                raise BoundsViolated("ratio", None, f"<= {expected.max_ratio}")
            return position
        if expected.min_ratio is not None and position.ratio_bps < Decimal(expected.min_ratio) * 100:
            raise BoundsViolated("ratio", position.ratio, f">= {expected.min_ratio}")
        if expected.max_ratio is not None and position.ratio_bps > Decimal(expected.max_ratio) * 100:
            raise BoundsViolated("ratio", position.ratio, f"<= {expected.max_ratio}")
        return position
