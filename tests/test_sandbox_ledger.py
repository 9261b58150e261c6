"""
Sandbox ledger tests.

Verifies:
1. Every action handler applies its protocol effect
2. Failures anywhere in a recipe restore balances, allowances and vaults
3. Unrepaid flash loans, dust and unsafe vaults revert
4. Gateway rejects unknown targets and malformed payloads
5. Chains can be seeded from the sandbox config section
"""

import pytest

from core import actions as act
from core.actions import MAX_UINT, Reference
from core.interfaces import NATIVE_ASSET
from sandbox.ledger import SandboxChain, SandboxGateway, SandboxRevert
from tests.helpers import (
    DAI,
    ETH_A_JOIN,
    EXECUTOR,
    LENDER,
    MANAGER,
    NOW,
    OWNER,
    STRANGER,
    USD,
    WAD,
    WETH,
    WRAPPER,
    make_chain,
)

CEILING = 5_000_000


def run(chain, builder, account, actions, ceiling=CEILING):
    unit = builder.build("Test", actions)
    return chain.execute_recipe(unit, account.address, ceiling)


def open_vault_with(chain, builder, account, collateral, debt):
    chain.mint(WETH, account.address, collateral)
    result = run(chain, builder, account, [
        act.open_vault(ETH_A_JOIN, MANAGER, output="vault"),
        act.supply(Reference(0), collateral, ETH_A_JOIN, account.address, MANAGER, output="s"),
        act.generate(Reference(0), debt, account.address, MANAGER, output="g"),
    ])
    assert not result.reverted, result.revert_reason
    return result.return_data[0]


class TestAccounts:

    def test_execution_account_is_stable(self, chain):
        first = chain.get_or_create_execution_account(OWNER)
        second = chain.get_or_create_execution_account(OWNER.upper().replace("0X", "0x"))
        assert first == second
        assert first.address != OWNER

    def test_unknown_registry_name(self, chain):
        with pytest.raises(SandboxRevert):
            chain.resolve_address("Nope")


class TestHandlers:

    def test_pull_consumes_allowance(self, chain, builder, account):
        chain.mint(DAI, OWNER, 100)
        chain.approve(DAI, OWNER, account.address, 150)
        result = run(chain, builder, account, [act.pull_token(DAI, OWNER, 100, output="p")])
        assert not result.reverted
        assert chain.balance_of(DAI, account.address) == 100
        assert chain.allowance(DAI, OWNER, account.address) == 50

    def test_pull_without_allowance_reverts(self, chain, builder, account):
        chain.mint(DAI, OWNER, 100)
        result = run(chain, builder, account, [act.pull_token(DAI, OWNER, 100)])
        assert result.reverted
        assert "allowance" in result.revert_reason

    def test_send_max_uint_sends_whole_balance(self, chain, builder, account):
        chain.mint(DAI, account.address, 42)
        result = run(chain, builder, account, [act.send_token(DAI, STRANGER, MAX_UINT, output="s")])
        assert result.return_data == (42,)
        assert chain.balance_of(DAI, STRANGER) == 42

    def test_swap_with_min_dest(self, chain, builder, account):
        chain.mint(DAI, account.address, 4000 * WAD)
        result = run(chain, builder, account, [
            act.swap(DAI, WETH, 4000 * WAD, WRAPPER, account.address, account.address,
                     min_dest_amount=2 * WAD, output="bought"),
        ])
        assert result.return_data == (2 * WAD,)
        assert chain.balance_of(WETH, account.address) == 2 * WAD
        assert chain.balance_of(DAI, account.address) == 0

    def test_swap_slippage_reverts(self, chain, builder, account):
        chain.mint(DAI, account.address, 4000 * WAD)
        result = run(chain, builder, account, [
            act.swap(DAI, WETH, 4000 * WAD, WRAPPER, account.address, account.address,
                     min_dest_amount=3 * WAD),
        ])
        assert result.reverted
        assert "slippage" in result.revert_reason
        assert chain.balance_of(DAI, account.address) == 4000 * WAD

    def test_swap_requires_approved_wrapper(self, chain, builder, account):
        chain.mint(DAI, account.address, WAD)
        result = run(chain, builder, account, [
            act.swap(DAI, WETH, WAD, STRANGER, account.address, account.address),
        ])
        assert result.reverted

    def test_open_supply_generate_payback_withdraw(self, chain, builder, account):
        vault_id = open_vault_with(chain, builder, account, 2 * WAD, 1000 * WAD)
        assert chain.get_vault(vault_id).debt_raw == 1000 * WAD

        result = run(chain, builder, account, [
            act.payback(vault_id, MAX_UINT, account.address, MANAGER, output="paid"),
            act.withdraw(vault_id, MAX_UINT, ETH_A_JOIN, OWNER, MANAGER, output="freed"),
        ])

        assert result.return_data == (1000 * WAD, 2 * WAD)
        state = chain.get_vault(vault_id)
        assert state.debt_raw == 0
        assert state.collateral_raw == 0
        assert chain.balance_of(WETH, OWNER) == 2 * WAD

    def test_foreign_vault_rejected(self, chain, builder, account):
        vault_id = open_vault_with(chain, builder, account, 2 * WAD, 1000 * WAD)
        other = chain.get_or_create_execution_account(STRANGER)
        result = run(chain, builder, other, [act.generate(vault_id, 1, STRANGER, MANAGER)])
        assert result.reverted
        assert "not owned" in result.revert_reason

    def test_unsafe_generate_reverts(self, chain, builder, account):
        vault_id = open_vault_with(chain, builder, account, 2 * WAD, 1000 * WAD)
        result = run(chain, builder, account, [act.generate(vault_id, 2000 * WAD, OWNER, MANAGER)])
        assert result.reverted
        assert result.revert_reason == "Vault/not-safe"
        assert chain.get_vault(vault_id).debt_raw == 1000 * WAD

    def test_dust_debt_reverts(self, builder):
        chain = make_chain(dust=100 * WAD)
        account = chain.get_or_create_execution_account(OWNER)
        chain.mint(WETH, account.address, WAD)
        result = run(chain, builder, account, [
            act.open_vault(ETH_A_JOIN, MANAGER, output="vault"),
            act.supply(Reference(0), WAD, ETH_A_JOIN, account.address, MANAGER),
            act.generate(Reference(0), 10 * WAD, OWNER, MANAGER),
        ])
        assert result.revert_reason == "Vault/dust"

    def test_sum_inputs_overflow(self, chain, builder, account):
        result = run(chain, builder, account, [act.sum_inputs(MAX_UINT, 1)])
        assert result.reverted
        assert "overflow" in result.revert_reason

    def test_unknown_manager_rejected(self, chain, builder, account):
        result = run(chain, builder, account, [act.open_vault(ETH_A_JOIN, STRANGER)])
        assert result.reverted


class TestAtomicity:

    def test_failure_restores_everything(self, chain, builder, account):
        chain.mint(DAI, OWNER, 100)
        chain.approve(DAI, OWNER, account.address, 100)
        balances_before = dict(chain.balances)
        allowances_before = dict(chain.allowances)

        result = run(chain, builder, account, [
            act.pull_token(DAI, OWNER, 100, output="p"),
            act.open_vault(ETH_A_JOIN, MANAGER, output="vault"),
            act.send_token(DAI, STRANGER, 101),
        ])

        assert result.reverted
        assert chain.balances == balances_before
        assert chain.allowances == allowances_before
        assert chain.vaults == {}
        assert chain.next_vault_id == 1

    def test_unrepaid_flash_loan_reverts(self, chain, builder, account):
        lender_before = chain.balance_of(DAI, LENDER)
        result = run(chain, builder, account, [
            act.flash_loan(DAI, 500 * WAD, LENDER, output="borrowed"),
            act.send_token(DAI, STRANGER, 500 * WAD),
        ])
        assert result.reverted
        assert "flash loan not repaid" in result.revert_reason
        assert chain.balance_of(DAI, LENDER) == lender_before
        assert chain.balance_of(DAI, STRANGER) == 0

    def test_repaid_flash_loan_succeeds(self, chain, builder, account):
        result = run(chain, builder, account, [
            act.flash_loan(DAI, 500 * WAD, LENDER, output="borrowed"),
            act.send_token(DAI, LENDER, Reference(0)),
        ])
        assert not result.reverted

    def test_out_of_gas_rolls_back(self, chain, builder, account):
        chain.mint(DAI, account.address, 10)
        result = run(chain, builder, account, [
            act.send_token(DAI, STRANGER, 5, output="a"),
            act.send_token(DAI, STRANGER, 5, output="b"),
        ], ceiling=chain.gas_costs[act.ActionKind.SEND_TOKEN])
        assert result.out_of_gas
        assert chain.balance_of(DAI, STRANGER) == 0


class TestGateway:

    def test_wrong_target(self, chain, account, builder):
        gateway = SandboxGateway(chain, account)
        unit = builder.build("S", [act.sum_inputs(1, 1)])
        raw = gateway.submit(STRANGER, builder.encode(unit), CEILING)
        assert raw.reverted
        assert raw.gas_used == 0

    def test_malformed_payload(self, chain, account):
        raw = SandboxGateway(chain, account).submit(EXECUTOR, b"not json", CEILING)
        assert raw.reverted
        assert raw.revert_reason.startswith("malformed payload")


class TestExchangeAndFeeds:

    def test_convert_rounds_source_up(self, chain):
        chain.mint(DAI, OWNER, 10 * WAD)
        spent = chain.convert(DAI, NATIVE_ASSET, 1, OWNER, 10 * WAD)
        assert spent == 2000
        assert chain.balance_of(NATIVE_ASSET, OWNER) == 1

    def test_convert_respects_max(self, chain):
        chain.mint(WETH, OWNER, WAD)
        with pytest.raises(SandboxRevert):
            chain.convert(WETH, NATIVE_ASSET, 2 * WAD, OWNER, WAD)

    def test_registry_round_defaults_to_feed_round(self, chain):
        address = chain.get_feed(WETH.upper().replace("0X", "0x"), USD)
        assert chain.latest_round_data(address) == chain.latest_round_data(WETH, USD)

    def test_missing_feed_reverts(self, chain):
        with pytest.raises(SandboxRevert):
            chain.latest_round_data(DAI, WETH)


class TestFromConfig:

    def test_seeds_chain(self):
        raw = {
            "addresses": {"RecipeExecutor": EXECUTOR},
            "tokens": {DAI: 18},
            "balances": [{"asset": DAI, "holder": OWNER, "amount": 5}],
            "allowances": [{"asset": DAI, "owner": OWNER, "spender": STRANGER, "amount": 3}],
            "rates": [{"src": DAI, "dest": WETH, "num": 1, "den": 2000}],
            "flash_lenders": [{"address": LENDER, "fee_bps": 9}],
            "exchange_wrappers": [WRAPPER],
            "feeds": [{"base": DAI, "quote": WETH, "address": STRANGER, "answer": 7, "age_seconds": 60}],
        }
        chain = SandboxChain.from_config(raw, clock=lambda: NOW)
        assert chain.resolve_address("RecipeExecutor") == EXECUTOR
        assert chain.balance_of(DAI, OWNER) == 5
        assert chain.allowance(DAI, OWNER, STRANGER) == 3
        assert chain.quote(DAI, WETH, 4000) == 2
        assert chain.flash_lenders[LENDER] == 9
        assert chain.latest_round_data(STRANGER).updated_at == NOW - 60
