"""
recipe-ops Core: Action Model

Typed description of a single recipe action.

Every action kind is a member of the closed ActionKind enum with a fixed
parameter schema. Parameters are literal values or a Reference(index) to the
output of an earlier action in the same recipe (0-based positions).
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Union

MAX_UINT = 2 ** 256 - 1
NULL_ADDRESS = "0x" + "0" * 40

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ParamType(Enum):
    ADDRESS = "address"
    UINT = "uint"
    BYTES = "bytes"


@dataclass(frozen=True)
class AddressValue:
    value: str

    def __post_init__(self):
        if not isinstance(self.value, str) or not _ADDRESS_RE.match(self.value):
            raise ValueError(f"Invalid address: {self.value!r}")


@dataclass(frozen=True)
class UintValue:
    value: int

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise ValueError(f"Uint must be int, got {type(self.value).__name__}")
        if self.value < 0 or self.value > MAX_UINT:
            raise ValueError(f"Uint out of range: {self.value}")


@dataclass(frozen=True)
class BytesValue:
    value: bytes


@dataclass(frozen=True)
class Reference:
    """Points at the output of the action at `index` in the same recipe."""
    index: int


Literal = Union[AddressValue, UintValue, BytesValue]
Value = Union[AddressValue, UintValue, BytesValue, Reference]

LITERAL_TYPES: Dict[type, ParamType] = {
    AddressValue: ParamType.ADDRESS,
    UintValue: ParamType.UINT,
    BytesValue: ParamType.BYTES,
}


class ActionKind(Enum):
    """Closed set of protocol operations a recipe can combine."""
    FLASH_LOAN = "flash_loan"
    SWAP = "swap"
    OPEN_VAULT = "open_vault"
    SUPPLY = "supply"
    GENERATE = "generate"
    PAYBACK = "payback"
    WITHDRAW = "withdraw"
    PULL_TOKEN = "pull_token"
    SEND_TOKEN = "send_token"
    SUM_INPUTS = "sum_inputs"


_A = ParamType.ADDRESS
_U = ParamType.UINT

PARAM_SCHEMAS: Dict[ActionKind, Tuple[Tuple[str, ParamType], ...]] = {
    ActionKind.FLASH_LOAN: (("asset", _A), ("amount", _U), ("lender", _A)),
    ActionKind.SWAP: (
        ("src_asset", _A), ("dest_asset", _A), ("src_amount", _U),
        ("min_dest_amount", _U), ("wrapper", _A), ("from", _A), ("to", _A),
    ),
    ActionKind.OPEN_VAULT: (("join", _A), ("manager", _A)),
    ActionKind.SUPPLY: (
        ("vault", _U), ("amount", _U), ("join", _A), ("from", _A), ("manager", _A),
    ),
    ActionKind.GENERATE: (("vault", _U), ("amount", _U), ("to", _A), ("manager", _A)),
    ActionKind.PAYBACK: (("vault", _U), ("amount", _U), ("from", _A), ("manager", _A)),
    ActionKind.WITHDRAW: (
        ("vault", _U), ("amount", _U), ("join", _A), ("to", _A), ("manager", _A),
    ),
    ActionKind.PULL_TOKEN: (("asset", _A), ("from", _A), ("amount", _U)),
    ActionKind.SEND_TOKEN: (("asset", _A), ("to", _A), ("amount", _U)),
    ActionKind.SUM_INPUTS: (("a", _U), ("b", _U)),
}

# Rough per-action gas used for the build-time ceiling check.
DEFAULT_GAS_ESTIMATES: Dict[ActionKind, int] = {
    ActionKind.FLASH_LOAN: 250_000,
    ActionKind.SWAP: 300_000,
    ActionKind.OPEN_VAULT: 200_000,
    ActionKind.SUPPLY: 150_000,
    ActionKind.GENERATE: 200_000,
    ActionKind.PAYBACK: 150_000,
    ActionKind.WITHDRAW: 150_000,
    ActionKind.PULL_TOKEN: 60_000,
    ActionKind.SEND_TOKEN: 60_000,
    ActionKind.SUM_INPUTS: 30_000,
}


@dataclass(frozen=True)
class ActionSpec:
    kind: ActionKind
    params: Tuple[Value, ...]
    output_slot: Optional[str] = None

    def param(self, name: str) -> Value:
        """Return a parameter by its schema name."""
        for idx, (param_name, _) in enumerate(PARAM_SCHEMAS[self.kind]):
            if param_name == name:
                return self.params[idx]
        raise KeyError(f"{self.kind.value} has no parameter {name!r}")

    def references(self) -> Tuple[Reference, ...]:
        return tuple(p for p in self.params if isinstance(p, Reference))


def as_value(raw: Union[Value, str, int, bytes]) -> Value:
    """Coerce a plain Python value into a typed Value."""
    if isinstance(raw, (AddressValue, UintValue, BytesValue, Reference)):
        return raw
    if isinstance(raw, bool):
        raise ValueError("bool is not a valid action parameter")
    if isinstance(raw, int):
        return UintValue(raw)
    if isinstance(raw, str):
        return AddressValue(raw)
    if isinstance(raw, (bytes, bytearray)):
        return BytesValue(bytes(raw))
    raise ValueError(f"Unsupported parameter value: {raw!r}")


def _spec(kind: ActionKind, output: Optional[str], *params) -> ActionSpec:
    return ActionSpec(kind=kind, params=tuple(as_value(p) for p in params), output_slot=output)


def flash_loan(asset, amount, lender, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.FLASH_LOAN, output, asset, amount, lender)


def swap(src_asset, dest_asset, src_amount, wrapper, from_addr, to_addr,
         min_dest_amount=0, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.SWAP, output, src_asset, dest_asset, src_amount,
                 min_dest_amount, wrapper, from_addr, to_addr)


def open_vault(join, manager, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.OPEN_VAULT, output, join, manager)


def supply(vault, amount, join, from_addr, manager, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.SUPPLY, output, vault, amount, join, from_addr, manager)


def generate(vault, amount, to_addr, manager, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.GENERATE, output, vault, amount, to_addr, manager)


def payback(vault, amount, from_addr, manager, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.PAYBACK, output, vault, amount, from_addr, manager)


def withdraw(vault, amount, join, to_addr, manager, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.WITHDRAW, output, vault, amount, join, to_addr, manager)


def pull_token(asset, from_addr, amount, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.PULL_TOKEN, output, asset, from_addr, amount)


def send_token(asset, to_addr, amount, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.SEND_TOKEN, output, asset, to_addr, amount)


def sum_inputs(a, b, output: Optional[str] = None) -> ActionSpec:
    return _spec(ActionKind.SUM_INPUTS, output, a, b)
