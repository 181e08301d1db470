from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


@dataclass
class AdkStep:
    """Step descriptor for the async pipeline runner."""
    name: str
    fn: Callable[[object], Awaitable[None]]
    skip_if: Optional[Callable[[object], bool]] = None


class AdkAgent:
    """Lightweight ADK-style step runner for deterministic per-turn pipelines."""

    def __init__(self, steps: list[AdkStep]) -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of AdkStep; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond AdkStep definitions.
        Failure Modes: None; assumes valid coroutine functions in steps.
        If Removed: The router cannot run its turn pipeline.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        self._steps = steps

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self._steps]

    async def run(self, context: object) -> None:
        """Purpose: Await steps in order, skipping any whose skip_if holds.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Invokes step coroutines that may mutate context.
        Dependencies: AdkStep.fn and AdkStep.skip_if semantics.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: No reply is ever produced for free text.
        Testing Notes: A step that finishes the turn makes the guarded steps after it skip.
        """
        # skip_if is evaluated right before each step, after earlier steps ran.
        for step in self._steps:
            if step.skip_if and step.skip_if(context):
                continue
            await step.fn(context)
