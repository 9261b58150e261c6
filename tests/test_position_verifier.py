"""
PositionVerifier tests.

Verifies:
1. Ratio math uses integer basis points across differing decimals
2. Zero debt yields no ratio; it passes any min_ratio and fails any max_ratio
3. Bounds are checked in order: min_debt, max_debt, min_ratio, max_ratio
4. Missing positions raise PositionNotFound
"""

from decimal import Decimal

import pytest

from core.exceptions import BoundsViolated, PositionNotFound
from core.interfaces import VaultState
from core.position import ExpectedBounds, PositionVerifier, compute_ratio_bps
from tests.helpers import DAI, OWNER, WAD, WETH

USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


def vault(collateral=2 * WAD, debt=1000 * WAD, price=2000 * WAD, debt_asset=DAI,
          debt_decimals=18, price_decimals=18, position_id=7):
    return VaultState(
        position_id=position_id,
        owner=OWNER,
        collateral_asset=WETH,
        collateral_raw=collateral,
        collateral_decimals=18,
        debt_asset=debt_asset,
        debt_raw=debt,
        debt_decimals=debt_decimals,
        price_raw=price,
        price_decimals=price_decimals,
    )


class FixedReader:

    def __init__(self, *states):
        self.states = {s.position_id: s for s in states}
        self.reads = 0

    def get_vault(self, position_id):
        self.reads += 1
        return self.states.get(position_id)

    def positions_of(self, owner):
        return sorted(self.states)


class TestRatio:

    def test_basic_ratio(self):
        assert compute_ratio_bps(vault()) == 40_000

    def test_ratio_floors(self):
        # 1 WETH at 2000 against 3000 debt = 66.666...%
        assert compute_ratio_bps(vault(collateral=WAD, debt=3000 * WAD)) == 6_666

    def test_mixed_decimals(self):
        # USDC debt with 6 decimals, price quoted with 8 decimals
        state = vault(debt=1000 * 10 ** 6, debt_asset=USDC, debt_decimals=6,
                      price=2000 * 10 ** 8, price_decimals=8)
        assert compute_ratio_bps(state) == 40_000

    def test_zero_debt_has_no_ratio(self):
        assert compute_ratio_bps(vault(debt=0)) is None


class TestVerify:

    def test_reads_fresh_every_time(self):
        reader = FixedReader(vault())
        verifier = PositionVerifier(reader)
        verifier.verify(7)
        verifier.verify(7)
        assert reader.reads == 2

    def test_position_fields(self):
        position = PositionVerifier(FixedReader(vault())).verify(7)
        assert position.collateral.to_decimal() == Decimal(2)
        assert position.debt.to_decimal() == Decimal(1000)
        assert position.ratio == Decimal("400.00")
        assert "400.00%" in position.describe()

    def test_not_found(self):
        with pytest.raises(PositionNotFound) as exc:
            PositionVerifier(FixedReader()).verify(99)
        assert exc.value.position_id == 99

    def test_latest_position_id(self):
        reader = FixedReader(vault(position_id=3), vault(position_id=11))
        assert PositionVerifier(reader).latest_position_id(OWNER) == 11

    def test_latest_position_id_without_positions(self):
        with pytest.raises(PositionNotFound):
            PositionVerifier(FixedReader()).latest_position_id(OWNER)

    def test_min_debt(self):
        with pytest.raises(BoundsViolated) as exc:
            PositionVerifier(FixedReader(vault())).verify(7, ExpectedBounds(min_debt=1001 * WAD))
        assert exc.value.field == "debt"
        assert exc.value.actual == 1000 * WAD

    def test_exact_debt(self):
        verifier = PositionVerifier(FixedReader(vault()))
        verifier.verify(7, ExpectedBounds.exact_debt(1000 * WAD))
        with pytest.raises(BoundsViolated):
            verifier.verify(7, ExpectedBounds.exact_debt(999 * WAD))

    def test_debt_checked_before_ratio(self):
        bounds = ExpectedBounds(max_debt=1, min_ratio=Decimal(500))
        with pytest.raises(BoundsViolated) as exc:
            PositionVerifier(FixedReader(vault())).verify(7, bounds)
        assert exc.value.field == "debt"

    def test_min_ratio(self):
        with pytest.raises(BoundsViolated) as exc:
            PositionVerifier(FixedReader(vault())).verify(7, ExpectedBounds(min_ratio=Decimal("400.01")))
        assert exc.value.field == "ratio"

    def test_max_ratio(self):
        with pytest.raises(BoundsViolated):
            PositionVerifier(FixedReader(vault())).verify(7, ExpectedBounds(max_ratio=Decimal(399)))

    def test_ratio_bounds_inclusive(self):
        bounds = ExpectedBounds(min_ratio=Decimal(400), max_ratio=Decimal(400))
        PositionVerifier(FixedReader(vault())).verify(7, bounds)

    def test_zero_debt_satisfies_min_ratio(self):
        bounds = ExpectedBounds(min_ratio=Decimal(150))
        position = PositionVerifier(FixedReader(vault(debt=0))).verify(7, bounds)
        assert position.ratio is None
        assert "n/a" in position.describe()

    def test_zero_debt_fails_max_ratio(self):
        bounds = ExpectedBounds(max_ratio=Decimal(1000))
        with pytest.raises(BoundsViolated) as exc:
            PositionVerifier(FixedReader(vault(debt=0))).verify(7, bounds)
        assert exc.value.field == "ratio"
        assert exc.value.actual is None
