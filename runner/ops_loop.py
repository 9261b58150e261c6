"""
recipe-ops - Operations Loop

Periodic operational cycle:
1. Keep operator accounts funded (SANDBOX: top up via the treasury;
   LIVE: alert on operators below threshold)
2. Check price feeds against the static reference list
3. Alert on problems, record metrics, write the audit trail

Recipe construction and execution are library calls (core.recipe,
core.flashloan, core.execution); the loop wires them to the configured
environment; `loop.submit()` builds and submits a recipe with the
execution settings from app.yaml.
"""

import logging
import os
import signal
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.actions import ActionSpec
from core.audit_log import AuditLogger
from core.exceptions import ConfigError, RecipeOpsError, TopUpIncomplete
from core.execution import ExecutionOutcome, RecipeExecutor
from core.interfaces import NATIVE_ASSET
from core.price_monitor import Discrepancy, FeedRecord, PriceConsistencyMonitor, load_feed_records
from core.recipe import RecipeBuilder
from core.treasury import GasRefillTreasury, RefillPolicy
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from tools.config_validator import feeds_path, load_yaml_file, validate_all_configs

logger = logging.getLogger(__name__)

MODES = {"SANDBOX", "LIVE"}


def policy_from_config(raw: Dict[str, Any]) -> RefillPolicy:
    return RefillPolicy(
        operator_address=raw["operator_address"],
        authorized_caller=raw["authorized_caller"],
        per_call_cap=int(raw["per_call_cap"]),
        reserve_asset=raw["reserve_asset"],
        threshold_balance=int(raw["threshold_balance"]),
        target_balance=int(raw["target_balance"]) if raw.get("target_balance") is not None else None,
        additional_bots=frozenset(raw.get("additional_bots") or []),
    )


class OperationsLoop:
    """
    Operations loop orchestrator.

    Responsibilities:
    - Load and validate config
    - Build the SANDBOX or LIVE environment
    - Run periodic cycles; a failing stage is logged and alerted, never fatal
    """

    def __init__(self, config_dir: str = "config", install_signal_handlers: bool = True,
                 clock: Callable[[], float] = time.time):
        self.config_dir = Path(config_dir)
        self._clock = clock
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ConfigError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = load_yaml_file(self.config_dir / "app.yaml")
        self.treasury_config = load_yaml_file(self.config_dir / "treasury.yaml")["treasury"]

        app_section = self.app_config["app"]
        self.mode = app_section["mode"].upper()
        if self.mode not in MODES:
            raise ConfigError(f"Invalid mode: {self.mode}")
        self.network = app_section["network"]
        self.interval_seconds = float(app_section.get("interval_seconds", 60))

        self._setup_logging(self.app_config.get("logging") or {})
        logger.info(f"Starting recipe-ops in mode={self.mode}, network={self.network}")

        metrics_cfg = self.app_config.get("metrics") or {}
        self.metrics = MetricsRecorder(enabled=metrics_cfg.get("enabled", True), port=metrics_cfg.get("port"))
        self.metrics.start()
        self.alerts = AlertService.from_config(self.app_config.get("alerts"))
        self.audit = AuditLogger((self.app_config.get("audit") or {}).get("file"))
        exec_cfg = self.app_config.get("execution") or {}
        self.builder = RecipeBuilder.from_config(exec_cfg)
        self.gas_ceiling = int(exec_cfg["gas_ceiling"])
        self.max_attempts = int(exec_cfg.get("max_attempts", 3))
        self.backoff_base_seconds = float(exec_cfg.get("backoff_base_seconds", 1.0))
        self.policy = policy_from_config(self.treasury_config)

        self.executor: Optional[RecipeExecutor] = None
        if self.mode == "SANDBOX":
            self._build_sandbox()
        else:
            self._build_live()

        monitor_cfg = self.app_config.get("monitor") or {}
        self.monitor_enabled = bool(monitor_cfg.get("enabled", True))
        self.max_workers = int(monitor_cfg.get("max_workers", 8))
        self.feed_records: List[FeedRecord] = []
        if self.monitor_enabled:
            self.feed_records = load_feed_records(feeds_path(self.config_dir, self.app_config))
        self.monitor = PriceConsistencyMonitor(
            self.feed_registry,
            self.feed_reader,
            max_age=timedelta(hours=float(monitor_cfg.get("max_age_hours", 24))),
            tolerance_bps=int(monitor_cfg.get("tolerance_bps", 0)),
            clock=self._clock,
        )

        self._running = True
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized OperationsLoop in {self.mode} mode")

    @staticmethod
    def _setup_logging(log_cfg: Dict[str, Any]) -> None:
        handlers: List[logging.Handler] = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _build_sandbox(self) -> None:
        from sandbox.ledger import SandboxChain, SandboxGateway

        self.chain = SandboxChain.from_config(self.app_config.get("sandbox"), clock=self._clock)
        account = self.chain.get_or_create_execution_account(self.policy.operator_address)
        self.executor = RecipeExecutor(
            SandboxGateway(self.chain, account),
            builder=self.builder,
            registry=self.chain,
            metrics=self.metrics,
            audit=self.audit,
        )
        self.balances = self.chain
        self.treasury = GasRefillTreasury(
            self.policy,
            owner=self.treasury_config["owner"],
            holder=self.treasury_config["holder"],
            address=self.treasury_config["address"],
            balances=self.chain,
            exchange=self.chain,
            wrapped_native=self.treasury_config.get("wrapped_native"),
            metrics=self.metrics,
            audit=self.audit,
        )
        self.feed_registry = self.chain
        self.feed_reader = self.chain

    def _build_live(self) -> None:
        from core.gateway import JsonRpcGateway
        from infra.chain_adapters import (
            Web3BalanceReader,
            Web3FeedReader,
            Web3FeedRegistry,
            Web3Registry,
            connect,
        )
        from infra.rpc_client import JsonRpcClient

        rpc_cfg = self.app_config.get("rpc") or {}
        url = os.path.expandvars(rpc_cfg["url"])
        timeout = float(rpc_cfg.get("timeout_seconds", 20))
        w3 = connect(url, timeout=timeout)

        self.chain = None
        self.treasury = None
        self.balances = Web3BalanceReader(w3)
        self.feed_registry = Web3FeedRegistry(w3, rpc_cfg["feed_registry_address"])
        self.feed_reader = Web3FeedReader(w3)

        sender = rpc_cfg.get("sender")
        registry_address = rpc_cfg.get("registry_address")
        if sender and registry_address:
            client = JsonRpcClient(url, timeout=timeout, max_retries=int(rpc_cfg.get("max_retries", 3)))
            self.executor = RecipeExecutor(
                JsonRpcGateway(client, sender),
                builder=self.builder,
                registry=Web3Registry(w3, registry_address),
                metrics=self.metrics,
                audit=self.audit,
            )
        else:
            logger.info("No rpc.sender/registry_address configured; recipe submission disabled")

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received; stopping after the current cycle")
        self._running = False

    def stop(self) -> None:
        self._running = False

    def submit(self, name: str, actions: List[ActionSpec]) -> ExecutionOutcome:
        """
        Build and submit a recipe with the configured execution settings.

        The gas ceiling applies at build time and at submission; only transport
        failures are retried (execution.max_attempts, execution.backoff_base_seconds).
        """
        if self.executor is None:
            raise ConfigError("Recipe submission needs rpc.sender and rpc.registry_address in LIVE mode")
        unit = self.builder.build(name, actions, gas_ceiling=self.gas_ceiling)
        return self.executor.execute_with_retries(
            unit, self.gas_ceiling, self.max_attempts, self.backoff_base_seconds
        )

    # ===== Cycle =====

    def run_cycle(self) -> Dict[str, Any]:
        """Run one cycle. Returns a summary; stage failures are contained."""
        started = time.monotonic()
        summary: Dict[str, Any] = {"status": "ok", "refills": [], "failed_refills": [],
                                   "low_operators": [], "discrepancies": []}

        try:
            self._service_operators(summary)
        except TopUpIncomplete as e:
            summary["status"] = "error"
            summary["refills"] = e.receipts
            summary["failed_refills"] = [account for account, _ in e.failures]
            logger.error(f"Operator funding stage incomplete: {e}")
            self.alerts.notify(AlertSeverity.CRITICAL, "Operator funding incomplete", str(e),
                               {"network": self.network, "refilled": len(e.receipts),
                                "failed": summary["failed_refills"]})
        except RecipeOpsError as e:
            summary["status"] = "error"
            logger.error(f"Operator funding stage failed: {e}")
            self.alerts.notify(AlertSeverity.CRITICAL, "Operator funding failed", str(e),
                               {"network": self.network, "error": type(e).__name__})

        if self.monitor_enabled:
            try:
                summary["discrepancies"] = self._check_feeds()
            except RecipeOpsError as e:
                summary["status"] = "error"
                logger.error(f"Feed check stage failed: {e}")
                self.alerts.notify(AlertSeverity.CRITICAL, "Feed check failed", str(e),
                                   {"network": self.network, "error": type(e).__name__})

        self.metrics.record_cycle(summary["status"])
        logger.info(
            f"Cycle {summary['status']} in {time.monotonic() - started:.2f}s: "
            f"{len(summary['refills'])} refill(s), {len(summary['low_operators'])} low operator(s), "
            f"{len(summary['discrepancies'])} discrepancy(ies)"
        )
        return summary

    def _service_operators(self, summary: Dict[str, Any]) -> None:
        if self.treasury is not None:
            summary["refills"] = self.treasury.top_up(self.policy.authorized_caller)
            return

        for account in self.policy.recipients():
            needed = self._live_deficit(account)
            if needed > 0:
                summary["low_operators"].append(account)
                self.alerts.notify(
                    AlertSeverity.WARNING,
                    "Operator below gas threshold",
                    f"{account} needs {needed} wei to reach target",
                    {"network": self.network, "threshold": self.policy.threshold_balance},
                )

    def _live_deficit(self, account: str) -> int:
        balance = self.balances.balance_of(NATIVE_ASSET, account)
        self.metrics.record_operator_balance(account, balance)
        if balance >= self.policy.threshold_balance:
            return 0
        return self.policy.refill_target - balance

    def _check_feeds(self) -> List[Discrepancy]:
        discrepancies = self.monitor.check_all(self.feed_records, max_workers=self.max_workers)
        for d in discrepancies:
            self.metrics.record_discrepancy(d.kind.value)
            self.alerts.notify(
                AlertSeverity.WARNING,
                f"Feed {d.kind.value}: {d.record.name}",
                f"{d.record.base}/{d.record.quote} expected {d.record.expected_feed_address}",
                {"network": self.network, **d.details},
            )
        if discrepancies:
            self.audit.log_discrepancies(self.network, discrepancies)
        return discrepancies

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = max(float(interval_seconds or self.interval_seconds), 1.0)
        logger.info(f"Starting continuous loop (interval={interval}s)")

        while self._running:
            start = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - start
            sleep_for = max(1.0, interval - elapsed)
            logger.debug(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            # Sleep in short steps so a stop signal is honoured promptly
            deadline = time.monotonic() + sleep_for
            while self._running and time.monotonic() < deadline:
                time.sleep(min(1.0, deadline - time.monotonic()))

        logger.info("Operations loop stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="recipe-ops operations loop")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None,
                        help="Seconds between cycles (default: app.interval_seconds)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    loop = OperationsLoop(config_dir=args.config_dir)

    if args.once:
        summary = loop.run_cycle()
        raise SystemExit(0 if summary["status"] == "ok" else 1)
    loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
