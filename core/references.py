"""
recipe-ops Core: Reference Resolution

Build-time validation and execution-time substitution of Reference(index)
parameters. Static checks run before anything is submitted so malformed
recipes never cost gas.
"""

import logging
from typing import Optional, Sequence, Tuple, TYPE_CHECKING

from core.actions import ActionSpec, Reference, UintValue, Value
from core.exceptions import CircularOrForwardReference, UnresolvedReference

if TYPE_CHECKING:  # pragma: no cover
    from core.recipe import RecipeUnit

logger = logging.getLogger(__name__)


class ReferenceResolver:
    """Validate and resolve inter-action references."""

    def check_static(self, actions: Sequence[ActionSpec]) -> None:
        """
        Reject forward, self and dangling references.

        Raises:
            CircularOrForwardReference: index >= the referencing action's position
            UnresolvedReference: target action declares no output slot
        """
        for position, action in enumerate(actions):
            for ref in action.references():
                if ref.index < 0 or ref.index >= position:
                    raise CircularOrForwardReference(position, ref.index)
                if actions[ref.index].output_slot is None:
                    raise UnresolvedReference(position, ref.index)

    def resolve(
        self,
        unit: "RecipeUnit",
        position: int,
        outputs: Sequence[Optional[int]],
    ) -> Tuple[Value, ...]:
        """
        Return the params of `unit.actions[position]` with references replaced.

        Args:
            unit: Recipe being executed
            position: Index of the action about to run
            outputs: Output of each already-executed action (None when nothing was produced)
        """
        action = unit.actions[position]
        resolved = []
        for param in action.params:
            if not isinstance(param, Reference):
                resolved.append(param)
                continue
            if param.index >= position or param.index >= len(outputs):
                raise CircularOrForwardReference(position, param.index)
            value = outputs[param.index]
            if value is None:
                raise UnresolvedReference(position, param.index, reason="referenced action produced no output")
            resolved.append(UintValue(value))
        logger.debug(f"Resolved params for {unit.name}[{position}] {action.kind.value}")
        return tuple(resolved)
