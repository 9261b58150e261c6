"""
OperationsLoop tests.

Verifies:
1. Invalid configuration refuses to start
2. A SANDBOX cycle tops up every low operator and checks feeds
3. Feed discrepancies are alerted, counted and audited
4. A failing stage is contained and alerted as CRITICAL
5. The configured executor runs recipes against the sandbox
6. A partial top-up reports what was sent and what failed
7. submit() applies the execution section of app.yaml
"""

import json
import shutil
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest
import yaml

from core import actions as act
from core.exceptions import ConfigError, ConversionFailed, GasCeilingExceeded
from core.interfaces import NATIVE_ASSET
from infra.alerting import AlertSeverity
from runner.ops_loop import OperationsLoop, main
from tests.helpers import NOW

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"
OPERATOR = "0x000000000000000000000000000000000000a005"
BOT = "0x000000000000000000000000000000000000a006"
HOLDER = "0x000000000000000000000000000000000000a002"
T_ADDRESS = "0x000000000000000000000000000000000000a003"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
DAI = "0x6b175474e89094c44da98b954eedeac495271d0f"
TARGET = 300000000000000000


def edit(config_dir: Path, filename: str, mutate) -> None:
    path = config_dir / filename
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG, target)

    def isolate(d):
        d["logging"]["file"] = None
        d["audit"]["file"] = str(tmp_path / "audit.jsonl")
        d["alerts"]["dry_run"] = True

    edit(target, "app.yaml", isolate)
    return target


def make_loop(config_dir):
    return OperationsLoop(str(config_dir), install_signal_handlers=False, clock=lambda: NOW)


def test_invalid_config_refuses_to_start(config_dir):
    edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="PAPER"))
    with pytest.raises(ConfigError):
        make_loop(config_dir)


def test_sandbox_cycle_tops_up_operators(config_dir):
    loop = make_loop(config_dir)

    summary = loop.run_cycle()

    assert summary["status"] == "ok"
    assert [r.recipient for r in summary["refills"]] == [OPERATOR, BOT]
    assert summary["discrepancies"] == []
    assert loop.chain.balance_of(NATIVE_ASSET, OPERATOR) == TARGET
    assert loop.chain.balance_of(NATIVE_ASSET, BOT) == TARGET
    assert loop.metrics.registry.get_sample_value("ops_cycles_total", {"status": "ok"}) == 1.0


def test_second_cycle_has_nothing_to_refill(config_dir):
    loop = make_loop(config_dir)
    loop.run_cycle()
    assert loop.run_cycle()["refills"] == []


def test_feed_discrepancy_alerted_and_audited(config_dir, tmp_path):
    feeds = json.loads((config_dir / "feeds" / "sandbox.json").read_text())
    feeds[1]["feedAddress"] = "0x00000000000000000000000000000000000000ff"
    (config_dir / "feeds" / "sandbox.json").write_text(json.dumps(feeds))
    loop = make_loop(config_dir)
    loop.alerts = Mock()

    summary = loop.run_cycle()

    assert len(summary["discrepancies"]) == 1
    assert summary["discrepancies"][0].record.name == "DAI / USD"
    severity, title = loop.alerts.notify.call_args.args[:2]
    assert severity is AlertSeverity.WARNING
    assert title == "Feed address_drift: DAI / USD"
    assert loop.metrics.registry.get_sample_value(
        "feed_discrepancies_total", {"kind": "address_drift"}
    ) == 1.0
    events = [json.loads(line)["event"] for line in (tmp_path / "audit.jsonl").read_text().splitlines()]
    assert "feed_check" in events


def test_failing_stage_is_contained(config_dir):
    loop = make_loop(config_dir)
    loop.alerts = Mock()
    loop.treasury.top_up = Mock(side_effect=ConversionFailed("0xdai", 1, "empty"))

    summary = loop.run_cycle()

    assert summary["status"] == "error"
    assert loop.alerts.notify.call_args.args[0] is AlertSeverity.CRITICAL
    assert loop.metrics.registry.get_sample_value("ops_cycles_total", {"status": "error"}) == 1.0


def test_executor_runs_recipes_on_sandbox(config_dir):
    loop = make_loop(config_dir)
    unit = loop.builder.build("Sum", [act.sum_inputs(2, 3, output="total")])
    outcome = loop.executor.execute(unit, 100_000)
    assert outcome.success
    assert outcome.output(unit, "total") == 5


def test_stop_ends_run_forever(config_dir):
    loop = make_loop(config_dir)
    loop.stop()
    loop.run_forever(interval_seconds=1)


def test_main_once_exits_zero(config_dir, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["recipe-ops", "--once", "--config-dir", str(config_dir)])
    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 0


def test_partial_top_up_reports_sent_and_failed(config_dir):
    loop = make_loop(config_dir)
    loop.alerts = Mock()
    loop.chain.approve(WETH, HOLDER, T_ADDRESS, 0)
    loop.chain.approve(DAI, HOLDER, T_ADDRESS, 0)
    # Operator needs 0.25; the holder's native balance covers exactly that
    loop.chain.mint(NATIVE_ASSET, HOLDER, 50000000000000000)

    summary = loop.run_cycle()

    assert summary["status"] == "error"
    assert [r.recipient for r in summary["refills"]] == [OPERATOR]
    assert summary["failed_refills"] == [BOT]
    assert loop.chain.balance_of(NATIVE_ASSET, OPERATOR) == TARGET
    severity, title = loop.alerts.notify.call_args_list[0].args[:2]
    assert severity is AlertSeverity.CRITICAL
    assert title == "Operator funding incomplete"


def test_submit_uses_execution_settings(config_dir):
    loop = make_loop(config_dir)
    loop.executor = Mock()

    loop.submit("Sum", [act.sum_inputs(2, 3, output="total")])

    unit, gas_ceiling, max_attempts, backoff = loop.executor.execute_with_retries.call_args.args
    assert unit.name == "Sum"
    assert (gas_ceiling, max_attempts, backoff) == (3000000, 3, 1.0)


def test_submit_runs_on_sandbox(config_dir):
    loop = make_loop(config_dir)
    actions = [act.sum_inputs(2, 3, output="total")]
    outcome = loop.submit("Sum", actions)
    assert outcome.success
    assert outcome.output(loop.builder.build("Sum", actions), "total") == 5


def test_submit_enforces_configured_gas_ceiling(config_dir):
    edit(config_dir, "app.yaml", lambda d: d["execution"].update(gas_ceiling=10_000))
    loop = make_loop(config_dir)
    loop.executor = Mock()
    with pytest.raises(GasCeilingExceeded):
        loop.submit("Sum", [act.sum_inputs(2, 3)])
    loop.executor.execute_with_retries.assert_not_called()


def test_submit_without_executor(config_dir):
    loop = make_loop(config_dir)
    loop.executor = None
    with pytest.raises(ConfigError):
        loop.submit("Sum", [act.sum_inputs(2, 3)])
