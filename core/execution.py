"""
recipe-ops Core: Recipe Executor

Submits an encoded recipe as one atomic call and classifies the outcome.

Classification:
- SUCCESS: every action applied
- REVERTED: the environment explicitly rejected the unit (all effects rolled back)
- OUT_OF_GAS: consumption reached the caller's ceiling
- TransportError (raised): the submission itself failed; safe to retry

REVERTED and OUT_OF_GAS are never retried here. They mean the recipe or its
gas sizing is wrong, and resubmitting the same unit would repeat the mistake.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from core.audit_log import AuditLogger
from core.exceptions import OutOfGas, Reverted, TransportError
from core.interfaces import ExecutionGateway, RawOutcome, Registry
from core.recipe import RecipeBuilder, RecipeUnit
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

EXECUTOR_REGISTRY_NAME = "RecipeExecutor"


class ExecutionStatus(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"
    OUT_OF_GAS = "out_of_gas"


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one submission. Owned by the caller."""
    recipe: str
    status: ExecutionStatus
    gas_used: int
    emitted_data: Tuple[Any, ...] = ()
    reason: Optional[str] = None
    tx_hash: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS

    def raise_for_status(self) -> "ExecutionOutcome":
        if self.status is ExecutionStatus.REVERTED:
            raise Reverted(self.recipe, self.gas_used, self.reason)
        if self.status is ExecutionStatus.OUT_OF_GAS:
            raise OutOfGas(self.recipe, self.gas_used, self.reason)
        return self

    def output(self, unit: RecipeUnit, slot: str) -> Any:
        """Value emitted by the action that declared `slot`."""
        position = unit.output_slots()[slot]
        if position >= len(self.emitted_data):
            return None
        return self.emitted_data[position]


def classify(recipe: str, raw: RawOutcome, gas_ceiling: int) -> ExecutionOutcome:
    if raw.reverted:
        if raw.out_of_gas or raw.gas_used >= gas_ceiling:
            status = ExecutionStatus.OUT_OF_GAS
        else:
            status = ExecutionStatus.REVERTED
        return ExecutionOutcome(recipe, status, raw.gas_used, reason=raw.revert_reason,
                                tx_hash=raw.tx_hash)
    return ExecutionOutcome(recipe, ExecutionStatus.SUCCESS, raw.gas_used,
                            emitted_data=tuple(raw.return_data), tx_hash=raw.tx_hash)


class RecipeExecutor:
    """
    Submit recipes through an execution gateway.

    Holds no per-execution state, so independent units may be submitted
    concurrently from different threads. Two units touching the same position
    must be serialized by the caller.
    """

    def __init__(self, gateway: ExecutionGateway, builder: Optional[RecipeBuilder] = None,
                 registry: Optional[Registry] = None, target: Optional[str] = None,
                 metrics: Optional[MetricsRecorder] = None, audit: Optional[AuditLogger] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if target is None and registry is None:
            raise ValueError("RecipeExecutor needs a target address or a registry to resolve one")
        self.gateway = gateway
        self.builder = builder or RecipeBuilder()
        self.registry = registry
        self.target = target
        self.metrics = metrics
        self.audit = audit
        self._sleep = sleep

    def _resolve_target(self) -> str:
        if self.target is not None:
            return self.target
        return self.registry.resolve_address(EXECUTOR_REGISTRY_NAME)

    def execute(self, unit: RecipeUnit, gas_ceiling: int) -> ExecutionOutcome:
        """
        Submit `unit` once.

        Raises:
            TransportError: submission failed before the environment saw the unit
        """
        if gas_ceiling <= 0:
            raise ValueError("gas_ceiling must be positive")
        payload = self.builder.encode(unit)
        fingerprint = self.builder.fingerprint(unit)
        target = self._resolve_target()

        logger.info(
            f"Executing recipe {unit.name!r} ({len(unit)} actions, fp={fingerprint[:12]}) "
            f"via {target}, gas ceiling {gas_ceiling}"
        )
        try:
            raw = self.gateway.submit(target, payload, gas_ceiling)
        except TransportError as e:
            logger.warning(f"Transport failure submitting {unit.name!r}: {e}")
            if self.metrics:
                self.metrics.record_execution(unit.name, "transport_error", 0)
            raise

        outcome = classify(unit.name, raw, gas_ceiling)
        if outcome.success:
            logger.info(f"Recipe {unit.name!r} succeeded, gas used {outcome.gas_used}")
        else:
            logger.error(
                f"Recipe {unit.name!r} {outcome.status.value}: gas used {outcome.gas_used}, "
                f"reason={outcome.reason}"
            )

        if self.metrics:
            self.metrics.record_execution(unit.name, outcome.status.value, outcome.gas_used)
        if self.audit:
            self.audit.log_execution(
                recipe=unit.name,
                fingerprint=fingerprint,
                status=outcome.status.value,
                gas_used=outcome.gas_used,
                gas_ceiling=gas_ceiling,
                reason=outcome.reason,
                tx_hash=outcome.tx_hash,
            )
        return outcome

    def execute_with_retries(self, unit: RecipeUnit, gas_ceiling: int, max_attempts: int = 3,
                             backoff_base: float = 1.0) -> ExecutionOutcome:
        """Retry only TransportError, with exponential backoff and jitter."""
        max_attempts = max(1, int(max_attempts))
        for attempt in range(max_attempts):
            try:
                return self.execute(unit, gas_ceiling)
            except TransportError:
                if attempt == max_attempts - 1:
                    logger.error(f"All {max_attempts} submission attempts failed for {unit.name!r}")
                    raise
                backoff = backoff_base * (2 ** attempt) + random.uniform(0, backoff_base)
                logger.info(f"Retrying {unit.name!r} in {backoff:.1f}s "
                            f"(attempt {attempt + 2}/{max_attempts})")
                self._sleep(backoff)
        raise AssertionError("unreachable")  # pragma: no cover
