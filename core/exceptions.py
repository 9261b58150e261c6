"""Shared exception types for recipe building, execution, verification and treasury logic."""

from typing import Any, Optional, Sequence


class RecipeOpsError(Exception):
    """Base class for every error raised by recipe-ops."""

    retryable = False


class ConfigError(RecipeOpsError):
    """Raised when configuration files are missing or invalid."""


# ===== Build-time errors =====
class BuildError(RecipeOpsError):
    """Malformed recipe, rejected before anything is submitted."""


class EmptyRecipe(BuildError):
    def __init__(self, name: str):
        super().__init__(f"Recipe {name!r} has no actions")
        self.name = name


class InvalidParameter(BuildError):
    def __init__(self, position: int, param: str, reason: str):
        super().__init__(f"Action {position} param {param!r}: {reason}")
        self.position = position
        self.param = param
        self.reason = reason


class CircularOrForwardReference(BuildError):
    def __init__(self, position: int, index: int):
        super().__init__(
            f"Action {position} references index {index}; references must point to an earlier action"
        )
        self.position = position
        self.index = index


class UnresolvedReference(BuildError):
    def __init__(self, position: int, index: int, reason: str = "target declares no output"):
        super().__init__(f"Action {position} reference to {index} cannot be resolved: {reason}")
        self.position = position
        self.index = index
        self.reason = reason


class DuplicateOutputSlot(BuildError):
    def __init__(self, slot: str, positions: Sequence[int]):
        super().__init__(f"Output slot {slot!r} assigned by actions {list(positions)}")
        self.slot = slot
        self.positions = tuple(positions)


class GasCeilingExceeded(BuildError):
    def __init__(self, estimate: int, ceiling: int):
        super().__init__(f"Estimated gas {estimate} exceeds ceiling {ceiling}")
        self.estimate = estimate
        self.ceiling = ceiling


class InvalidFlashLoanLayout(BuildError):
    def __init__(self, position: int, reason: str):
        super().__init__(f"Flash loan layout invalid at action {position}: {reason}")
        self.position = position
        self.reason = reason


class MissingFlashLoanRepay(BuildError):
    def __init__(self, lender: str, asset: str):
        super().__init__(f"No final action repays lender {lender} in asset {asset}")
        self.lender = lender
        self.asset = asset


# ===== Submission / execution =====
class TransportError(RecipeOpsError):
    """Submission-layer failure (network, nonce, signature). Safe to retry."""

    retryable = True

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class RpcError(RecipeOpsError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class ExecutionFailed(RecipeOpsError):
    """Unit was included but its effects were rolled back."""

    def __init__(self, recipe: str, gas_used: int, reason: Optional[str] = None):
        detail = f": {reason}" if reason else ""
        super().__init__(f"Recipe {recipe!r} failed after {gas_used} gas{detail}")
        self.recipe = recipe
        self.gas_used = gas_used
        self.reason = reason


class Reverted(ExecutionFailed):
    pass


class OutOfGas(ExecutionFailed):
    pass


# ===== Verification =====
class VerificationError(RecipeOpsError):
    pass


class PositionNotFound(VerificationError):
    def __init__(self, position_id: int):
        super().__init__(f"Position {position_id} not found")
        self.position_id = position_id


class BoundsViolated(VerificationError):
    def __init__(self, field: str, actual: Any, expected: Any):
        super().__init__(f"{field} out of bounds: actual={actual}, expected {expected}")
        self.field = field
        self.actual = actual
        self.expected = expected


# ===== Treasury =====
class TreasuryError(RecipeOpsError):
    pass


class Unauthorized(TreasuryError):
    def __init__(self, field: str, address: Optional[str]):
        super().__init__(f"Unauthorized {field}: {address}")
        self.field = field
        self.address = address


class CapExceeded(TreasuryError):
    def __init__(self, amount: int, cap: int):
        super().__init__(f"Refill amount {amount} exceeds per-call cap {cap}")
        self.amount = amount
        self.cap = cap


class ConversionFailed(TreasuryError):
    def __init__(self, asset: str, needed: int, reason: str, original: Optional[Exception] = None):
        super().__init__(f"Could not convert {asset} to cover {needed}: {reason}")
        self.asset = asset
        self.needed = needed
        self.reason = reason
        self.original = original


class InvalidAmount(TreasuryError, ValueError):
    def __init__(self, amount: int, reason: str):
        super().__init__(f"Invalid amount {amount}: {reason}")
        self.amount = amount
        self.reason = reason


class TopUpIncomplete(TreasuryError):
    """Some accounts were refilled, others failed. Both lists are kept."""

    def __init__(self, receipts: Sequence[Any], failures: Sequence[Any]):
        names = ", ".join(f"{account} ({type(err).__name__})" for account, err in failures)
        super().__init__(f"Top-up incomplete: {len(receipts)} refilled, failed for {names}")
        self.receipts = list(receipts)
        self.failures = list(failures)
