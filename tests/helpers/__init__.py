"""Test helpers for recipe-ops test suite"""

from tests.helpers.chain_stubs import (
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
    ScriptedGateway,
    StubFeedRegistry,
    make_chain,
    raw_revert,
    raw_success,
    transport_failure,
)

__all__ = [
    "DAI",
    "ETH_A_JOIN",
    "EXECUTOR",
    "LENDER",
    "MANAGER",
    "NOW",
    "OWNER",
    "STRANGER",
    "USD",
    "WAD",
    "WETH",
    "WRAPPER",
    "ScriptedGateway",
    "StubFeedRegistry",
    "make_chain",
    "raw_revert",
    "raw_success",
    "transport_failure",
]
