from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol


class TracedContext(Protocol):
    def log(self, event: str, detail: str, status: str = "success") -> None: ...


@dataclass
class Step:
    """Step descriptor for the intake step runner."""
    name: str
    fn: Callable[[object], None]
    skip_if: Optional[Callable[[object], bool]] = None


class StepRunner:
    """Runs an ordered list of steps over one operation context."""

    def __init__(self, steps: List[Step]) -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of Step; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond Step definitions.
        Failure Modes: None; assumes valid callables in steps.
        If Removed: Pipeline operations have no shared execution and tracing path.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        # Store the pipeline steps for deterministic execution.
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: TracedContext) -> None:
        """Purpose: Execute steps in order, honoring skip_if guards.
        Inputs/Outputs: Input is a mutable context with a ``log`` method; no return value.
        Side Effects / State: Invokes step functions that may mutate the context and
            appends one trace entry per step.
        Dependencies: Depends on Step.fn and Step.skip_if semantics.
        Failure Modes: The first exception is traced with status "error" and re-raised;
            later steps do not run.
        If Removed: Checkout, parsing and reorder operations cannot run.
        Testing Notes: Verify skip_if and the error trace with simple steps.
        """
        # Iterate steps and honor skip_if guards.
        for step in self._steps:
            if step.skip_if and step.skip_if(context):
                context.log(step.name, "skipped", status="skipped")
                continue
            try:
                step.fn(context)
            except Exception as exc:
                context.log(step.name, str(exc), status="error")
                raise
            context.log(step.name, "done")
