from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("shopdesk.steps")


@dataclass
class Step:
    """Named pipeline step with optional skip guard."""
    name: str
    fn: Callable[[object], None]
    skip_if: Optional[Callable[[object], bool]] = None


class StepRunner:
    """Runs steps in order against one mutable turn context."""

    def __init__(self, steps: List[Step]) -> None:
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: object) -> None:
        """Purpose: Execute steps in order, honouring each skip guard.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Invokes step functions that mutate the context.
        Dependencies: Step.fn and Step.skip_if.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: The router has no ordered pipeline to run a turn through.
        Testing Notes: A step whose skip_if turns true mid-run must be skipped.
        """
        # skip_if is evaluated lazily so earlier steps can short-circuit later ones.
        for step in self._steps:
            if step.skip_if and step.skip_if(context):
                logger.debug("step=%s skipped", step.name)
                continue
            step.fn(context)
