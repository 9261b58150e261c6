"""
recipe-ops Core: Recipe Builder

Assembles an ordered list of ActionSpecs into an immutable RecipeUnit and
serializes it for the execution gateway.

Encoding is canonical JSON (sorted keys, compact separators, integers as
decimal strings) so logically identical recipes always produce byte-identical
payloads. The sha256 of the payload is used as the recipe fingerprint, the
same way deterministic client order IDs are derived.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.actions import (
    ActionKind,
    ActionSpec,
    AddressValue,
    BytesValue,
    DEFAULT_GAS_ESTIMATES,
    LITERAL_TYPES,
    PARAM_SCHEMAS,
    ParamType,
    Reference,
    UintValue,
    Value,
)
from core.exceptions import (
    BuildError,
    DuplicateOutputSlot,
    EmptyRecipe,
    GasCeilingExceeded,
    InvalidParameter,
)
from core.references import ReferenceResolver

logger = logging.getLogger(__name__)

ENCODING_VERSION = 1


@dataclass(frozen=True)
class RecipeUnit:
    """Named, ordered, immutable sequence of actions."""
    name: str
    actions: Tuple[ActionSpec, ...]
    gas_estimate: int

    def __len__(self) -> int:
        return len(self.actions)

    def output_slots(self) -> Dict[str, int]:
        """Map of declared output slot -> action position."""
        return {a.output_slot: i for i, a in enumerate(self.actions) if a.output_slot is not None}


class RecipeBuilder:
    """
    Validate and assemble recipes.

    Checks (all at build time):
    - Non-empty action list
    - Parameter count and literal types match each kind's schema
    - References only backwards, only into UINT slots, only to actions with outputs
    - No output slot declared twice
    - Estimated gas within the caller's ceiling
    """

    def __init__(self, gas_estimates: Optional[Mapping[ActionKind, int]] = None,
                 resolver: Optional[ReferenceResolver] = None):
        self.gas_estimates: Dict[ActionKind, int] = dict(DEFAULT_GAS_ESTIMATES)
        if gas_estimates:
            self.gas_estimates.update(gas_estimates)
        self.resolver = resolver or ReferenceResolver()

    @classmethod
    def from_config(cls, raw_config: Optional[Mapping]) -> "RecipeBuilder":
        """Build from the `execution` section of app.yaml."""
        raw_config = raw_config or {}
        overrides = {}
        for kind_name, gas in (raw_config.get("gas_estimates") or {}).items():
            overrides[ActionKind(kind_name)] = int(gas)
        return cls(gas_estimates=overrides)

    def estimate_gas(self, actions: Iterable[ActionSpec]) -> int:
        return sum(self.gas_estimates[a.kind] for a in actions)

    def build(self, name: str, actions: Sequence[ActionSpec],
              gas_ceiling: Optional[int] = None) -> RecipeUnit:
        """
        Build an immutable RecipeUnit.

        Raises:
            BuildError subclass describing the first structural problem found
        """
        actions = tuple(actions)
        if not actions:
            raise EmptyRecipe(name)

        for position, action in enumerate(actions):
            self._check_params(position, action)

        self.resolver.check_static(actions)
        self._check_output_slots(actions)

        estimate = self.estimate_gas(actions)
        if gas_ceiling is not None and estimate > gas_ceiling:
            raise GasCeilingExceeded(estimate, gas_ceiling)

        unit = RecipeUnit(name=name, actions=actions, gas_estimate=estimate)
        logger.info(
            f"Built recipe {name!r}: {len(actions)} actions "
            f"[{', '.join(a.kind.value for a in actions)}], gas_estimate={estimate}"
        )
        return unit

    @staticmethod
    def _check_params(position: int, action: ActionSpec) -> None:
        if not isinstance(action.kind, ActionKind):
            raise InvalidParameter(position, "kind", f"unknown action kind {action.kind!r}")
        schema = PARAM_SCHEMAS[action.kind]
        if len(action.params) != len(schema):
            raise InvalidParameter(
                position, "params",
                f"{action.kind.value} expects {len(schema)} params, got {len(action.params)}",
            )
        for (param_name, param_type), value in zip(schema, action.params):
            if isinstance(value, Reference):
                if param_type is not ParamType.UINT:
                    raise InvalidParameter(position, param_name, "references may only fill uint params")
                continue
            actual = LITERAL_TYPES.get(type(value))
            if actual is None:
                raise InvalidParameter(position, param_name, f"unsupported value {value!r}")
            if actual is not param_type:
                raise InvalidParameter(
                    position, param_name, f"expected {param_type.value}, got {actual.value}"
                )

    @staticmethod
    def _check_output_slots(actions: Sequence[ActionSpec]) -> None:
        seen: Dict[str, List[int]] = {}
        for position, action in enumerate(actions):
            if action.output_slot is not None:
                seen.setdefault(action.output_slot, []).append(position)
        for slot, positions in seen.items():
            if len(positions) > 1:
                raise DuplicateOutputSlot(slot, positions)

    # ===== Encoding =====

    def encode(self, unit: RecipeUnit) -> bytes:
        """Deterministic, order-preserving serialization of a unit."""
        doc = {
            "version": ENCODING_VERSION,
            "name": unit.name,
            "actions": [
                {
                    "kind": action.kind.value,
                    "output": action.output_slot,
                    "params": [_encode_value(p) for p in action.params],
                }
                for action in unit.actions
            ],
        }
        return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def decode(self, payload: bytes) -> RecipeUnit:
        """Parse a payload produced by encode() and re-validate it."""
        try:
            doc = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BuildError(f"Undecodable recipe payload: {e}") from e
        if not isinstance(doc, dict):
            raise BuildError("Recipe payload must be a JSON object")
        if doc.get("version") != ENCODING_VERSION:
            raise BuildError(f"Unsupported recipe encoding version {doc.get('version')!r}")
        try:
            actions = [
                ActionSpec(
                    kind=ActionKind(item["kind"]),
                    params=tuple(_decode_value(p) for p in item["params"]),
                    output_slot=item.get("output"),
                )
                for item in doc["actions"]
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise BuildError(f"Malformed recipe payload: {e}") from e
        return self.build(doc.get("name", ""), actions)

    def fingerprint(self, unit: RecipeUnit) -> str:
        return hashlib.sha256(self.encode(unit)).hexdigest()


def _encode_value(value: Value) -> Dict[str, object]:
    if isinstance(value, Reference):
        return {"t": "ref", "v": value.index}
    if isinstance(value, AddressValue):
        return {"t": "address", "v": value.value.lower()}
    if isinstance(value, UintValue):
        return {"t": "uint", "v": str(value.value)}
    if isinstance(value, BytesValue):
        return {"t": "bytes", "v": value.value.hex()}
    raise BuildError(f"Cannot encode value {value!r}")


def _decode_value(item: Mapping) -> Value:
    tag, raw = item["t"], item["v"]
    if tag == "ref":
        return Reference(int(raw))
    if tag == "address":
        return AddressValue(raw)
    if tag == "uint":
        return UintValue(int(raw))
    if tag == "bytes":
        return BytesValue(bytes.fromhex(raw))
    raise ValueError(f"unknown value tag {tag!r}")
