"""Prometheus-backed metrics hooks for recipe execution, treasury refills and feed checks."""

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

GAS_BUCKETS = (100_000, 250_000, 500_000, 1_000_000, 2_000_000, 3_000_000, 5_000_000, 10_000_000)


class MetricsRecorder:
    """
    Expose recipe-ops stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several recorders (one per
    test, one per loop) never collide on metric registration.
    """

    def __init__(self, enabled: bool = True, port: Optional[int] = None,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._executions = Counter(
            "recipe_executions_total",
            "Recipe executions by outcome status",
            labelnames=("recipe", "status"),
            registry=self.registry,
        )
        self._gas_used = Histogram(
            "recipe_gas_used",
            "Gas consumed per recipe execution",
            labelnames=("recipe",),
            buckets=GAS_BUCKETS,
            registry=self.registry,
        )
        self._refills = Counter(
            "treasury_refills_total",
            "Treasury refill attempts by result",
            labelnames=("result",),
            registry=self.registry,
        )
        self._refilled_wei = Counter(
            "treasury_refilled_wei_total",
            "Native currency sent to operator accounts (wei)",
            registry=self.registry,
        )
        self._operator_balance = Gauge(
            "operator_native_balance_wei",
            "Last observed native balance of an operator account",
            labelnames=("operator",),
            registry=self.registry,
        )
        self._discrepancies = Counter(
            "feed_discrepancies_total",
            "Price feed discrepancies by kind",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._cycles = Counter(
            "ops_cycles_total",
            "Operations loop cycles by status",
            labelnames=("status",),
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        """Start the HTTP exporter once, if a port is configured."""
        if not self._enabled or self._started or not self._port:
            return
        start_http_server(self._port, registry=self.registry)
        self._started = True
        logger.info(f"Prometheus metrics exporter listening on :{self._port}")

    def record_execution(self, recipe: str, status: str, gas_used: int) -> None:
        if not self._enabled:
            return
        self._executions.labels(recipe=recipe, status=status).inc()
        if gas_used:
            self._gas_used.labels(recipe=recipe).observe(gas_used)

    def record_refill(self, result: str, amount: int = 0) -> None:
        if not self._enabled:
            return
        self._refills.labels(result=result).inc()
        if result == "success" and amount > 0:
            self._refilled_wei.inc(amount)

    def record_operator_balance(self, operator: str, balance: int) -> None:
        if not self._enabled:
            return
        self._operator_balance.labels(operator=operator).set(balance)

    def record_discrepancy(self, kind: str) -> None:
        if not self._enabled:
            return
        self._discrepancies.labels(kind=kind).inc()

    def record_cycle(self, status: str) -> None:
        if not self._enabled:
            return
        self._cycles.labels(status=status).inc()
