from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List


@dataclass
class TurnStep:
    """Named stage of the per-message pipeline."""
    name: str
    fn: Callable[[object], None]
    always_run: bool = False


class StepRunner:
    """Ordered step runner that stops at the first step producing a final outcome."""

    def __init__(self, steps: List[TurnStep], is_done: Callable[[object], bool]) -> None:
        """Purpose: Initialize the runner with ordered steps and a completion predicate.
        Inputs/Outputs: Inputs are the TurnStep list and a predicate over the context;
            no return value.
        Side Effects / State: Stores the steps for later execution.
        Dependencies: None beyond TurnStep definitions.
        Failure Modes: None; assumes valid callables.
        If Removed: The orchestrator cannot sequence dedup, guard, phase rules and generation.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        # Store the pipeline steps for deterministic execution.
        self._steps = steps
        self._is_done = is_done

    def run(self, context: object) -> List[str]:
        """Purpose: Execute steps in order, skipping the rest once the turn is decided.
        Inputs/Outputs: Input is a mutable context object; output is the executed step names.
        Side Effects / State: Invokes step functions that may mutate context.
        Dependencies: TurnStep.fn, TurnStep.always_run, and the is_done predicate.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: Inbound messages are never processed.
        Testing Notes: A step that decides the turn must prevent later non-final steps.
        """
        # Short-circuit everything except always_run steps after a decision.
        executed: List[str] = []
        for step in self._steps:
            if not step.always_run and self._is_done(context):
                continue
            step.fn(context)
            executed.append(step.name)
        return executed
