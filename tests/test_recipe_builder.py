"""
RecipeBuilder tests.

Verifies:
1. Identical action lists encode to byte-identical payloads
2. Forward, self and dangling references fail at build time
3. Duplicate output slots and schema mismatches are rejected
4. Gas ceiling is enforced against the summed estimate
5. decode() re-validates payloads
"""

import pytest

from core import actions as act
from core.actions import ActionKind, ActionSpec, AddressValue, Reference, UintValue
from core.exceptions import (
    BuildError,
    CircularOrForwardReference,
    DuplicateOutputSlot,
    EmptyRecipe,
    GasCeilingExceeded,
    InvalidParameter,
    UnresolvedReference,
)
from core.recipe import RecipeBuilder
from tests.helpers import DAI, ETH_A_JOIN, MANAGER, OWNER, WETH


def open_supply_generate():
    return [
        act.open_vault(ETH_A_JOIN, MANAGER, output="vault"),
        act.supply(Reference(0), 2 * 10 ** 18, ETH_A_JOIN, OWNER, MANAGER, output="supplied"),
        act.generate(Reference(0), 1000 * 10 ** 18, OWNER, MANAGER, output="generated"),
    ]


class TestBuild:

    def test_builds_immutable_unit(self, builder):
        unit = builder.build("McdOpenRecipe", open_supply_generate())
        assert unit.name == "McdOpenRecipe"
        assert len(unit) == 3
        assert isinstance(unit.actions, tuple)
        assert unit.output_slots() == {"vault": 0, "supplied": 1, "generated": 2}

    def test_empty_recipe(self, builder):
        with pytest.raises(EmptyRecipe):
            builder.build("Nothing", [])

    def test_forward_reference(self, builder):
        actions = [
            act.supply(Reference(1), 10, ETH_A_JOIN, OWNER, MANAGER),
            act.open_vault(ETH_A_JOIN, MANAGER, output="vault"),
        ]
        with pytest.raises(CircularOrForwardReference) as exc:
            builder.build("Forward", actions)
        assert exc.value.position == 0
        assert exc.value.index == 1

    def test_self_reference(self, builder):
        actions = [act.sum_inputs(1, 2, output="a"), act.sum_inputs(Reference(1), 1, output="b")]
        with pytest.raises(CircularOrForwardReference):
            builder.build("Self", actions)

    def test_reference_to_action_without_output(self, builder):
        actions = [
            act.open_vault(ETH_A_JOIN, MANAGER),
            act.supply(Reference(0), 10, ETH_A_JOIN, OWNER, MANAGER),
        ]
        with pytest.raises(UnresolvedReference):
            builder.build("Dangling", actions)

    def test_duplicate_output_slot(self, builder):
        actions = [act.sum_inputs(1, 2, output="x"), act.sum_inputs(3, 4, output="x")]
        with pytest.raises(DuplicateOutputSlot) as exc:
            builder.build("Dup", actions)
        assert exc.value.slot == "x"
        assert exc.value.positions == (0, 1)

    def test_wrong_param_count(self, builder):
        bad = ActionSpec(ActionKind.SUM_INPUTS, (UintValue(1),))
        with pytest.raises(InvalidParameter):
            builder.build("Short", [bad])

    def test_wrong_literal_type(self, builder):
        bad = ActionSpec(ActionKind.SUM_INPUTS, (UintValue(1), AddressValue(DAI)))
        with pytest.raises(InvalidParameter) as exc:
            builder.build("Typed", [bad])
        assert exc.value.param == "b"

    def test_reference_in_address_slot_rejected(self, builder):
        actions = [
            act.sum_inputs(1, 2, output="n"),
            ActionSpec(ActionKind.SEND_TOKEN, (AddressValue(DAI), Reference(0), UintValue(1))),
        ]
        with pytest.raises(InvalidParameter):
            builder.build("RefAddress", actions)


class TestGas:

    def test_estimate_sums_per_kind(self, builder):
        actions = open_supply_generate()
        expected = sum(builder.gas_estimates[a.kind] for a in actions)
        assert builder.estimate_gas(actions) == expected

    def test_ceiling_exceeded(self, builder):
        actions = open_supply_generate()
        estimate = builder.estimate_gas(actions)
        with pytest.raises(GasCeilingExceeded) as exc:
            builder.build("Tight", actions, gas_ceiling=estimate - 1)
        assert exc.value.estimate == estimate

    def test_ceiling_equal_to_estimate_passes(self, builder):
        actions = open_supply_generate()
        unit = builder.build("Exact", actions, gas_ceiling=builder.estimate_gas(actions))
        assert unit.gas_estimate == builder.estimate_gas(actions)

    def test_overrides_from_config(self):
        builder = RecipeBuilder.from_config({"gas_estimates": {"swap": 1}})
        assert builder.gas_estimates[ActionKind.SWAP] == 1
        assert builder.gas_estimates[ActionKind.SUPPLY] > 1


class TestEncoding:

    def test_identical_actions_encode_identically(self, builder):
        first = builder.encode(builder.build("R", open_supply_generate()))
        second = builder.encode(builder.build("R", open_supply_generate()))
        assert first == second

    def test_address_case_does_not_change_payload(self, builder):
        upper = [act.send_token(WETH.upper().replace("0X", "0x"), OWNER, 1)]
        lower = [act.send_token(WETH, OWNER, 1)]
        assert builder.encode(builder.build("S", upper)) == builder.encode(builder.build("S", lower))

    def test_order_changes_fingerprint(self, builder):
        a = builder.build("S", [act.sum_inputs(1, 2), act.sum_inputs(3, 4)])
        b = builder.build("S", [act.sum_inputs(3, 4), act.sum_inputs(1, 2)])
        assert builder.fingerprint(a) != builder.fingerprint(b)

    def test_decode_returns_equivalent_unit(self, builder):
        unit = builder.build("RoundTrip", open_supply_generate())
        decoded = builder.decode(builder.encode(unit))
        assert builder.encode(decoded) == builder.encode(unit)
        assert decoded.output_slots() == unit.output_slots()

    def test_decode_rejects_garbage(self, builder):
        with pytest.raises(BuildError):
            builder.decode(b"\xff\x00")

    def test_decode_revalidates_references(self, builder):
        payload = (
            b'{"actions":[{"kind":"sum_inputs","output":"a","params":'
            b'[{"t":"ref","v":3},{"t":"uint","v":"1"}]}],"name":"Bad","version":1}'
        )
        with pytest.raises(CircularOrForwardReference):
            builder.decode(payload)

    def test_decode_rejects_unknown_version(self, builder):
        with pytest.raises(BuildError):
            builder.decode(b'{"actions":[],"name":"x","version":99}')

    def test_amounts_are_decimal_strings(self, builder):
        payload = builder.encode(builder.build("S", [act.sum_inputs(10 ** 30, 1)]))
        assert b'"1000000000000000000000000000000"' in payload
