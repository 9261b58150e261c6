"""
Pytest configuration and fixtures for recipe-ops tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from core.audit_log import AuditLogger
from core.recipe import RecipeBuilder
from infra.metrics import MetricsRecorder
from sandbox.ledger import SandboxGateway
from tests.helpers import OWNER, make_chain


@pytest.fixture
def chain():
    """Seeded sandbox with a WETH/DAI vault market."""
    return make_chain()


@pytest.fixture
def account(chain):
    """Execution account (proxy) of OWNER on the sandbox."""
    return chain.get_or_create_execution_account(OWNER)


@pytest.fixture
def gateway(chain, account):
    return SandboxGateway(chain, account)


@pytest.fixture
def builder():
    return RecipeBuilder()


@pytest.fixture
def metrics():
    """Recorder on its own registry; no HTTP exporter."""
    return MetricsRecorder(enabled=True)


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(str(tmp_path / "audit.jsonl"))
