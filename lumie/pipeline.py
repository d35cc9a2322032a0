from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Protocol, TypeVar


class Haltable(Protocol):
    finished: bool


TurnT = TypeVar("TurnT", bound=Haltable)


@dataclass
class Step(Generic[TurnT]):
    """Step descriptor for the per-message state machine."""
    name: str
    fn: Callable[[TurnT], None]
    skip_if: Optional[Callable[[TurnT], bool]] = None


class StepRunner(Generic[TurnT]):
    """Ordered step runner that stops once a step marks the turn finished."""

    def __init__(self, steps: List[Step[TurnT]]) -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of Step; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond Step definitions.
        Failure Modes: ValueError on duplicate step names.
        If Removed: The engine cannot sequence its stages.
        Testing Notes: Provide a minimal step list and ensure order and halting.
        """
        # Names double as trace labels, so they must be unique.
        names = [step.name for step in steps]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate step names in {names}")
        self._steps = list(steps)

    def run(self, turn: TurnT) -> List[str]:
        """Purpose: Execute steps in order, honoring skip_if and early termination.
        Inputs/Outputs: Input is a mutable turn object; returns the names of steps that ran.
        Side Effects / State: Step functions mutate the turn.
        Dependencies: Step.fn, Step.skip_if, and the turn's finished flag.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: Messages are never processed.
        Testing Notes: A step setting finished must prevent all later steps.
        """
        # Terminal states short-circuit the rest of the sequence.
        executed: List[str] = []
        for step in self._steps:
            if turn.finished:
                break
            if step.skip_if and step.skip_if(turn):
                continue
            step.fn(turn)
            executed.append(step.name)
        return executed
