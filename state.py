"""Loop state and exit policy for the verify-improve loop."""

from dataclasses import dataclass, replace
from enum import Enum
from errors import PipelineError
from rosetta.schema import Conclusion, Rule, StructuredProblem, VerifierFeedback


class LoopPhase(str, Enum):
    VERIFYING = "verifying"
    IMPROVING = "improving"
    DONE_SUCCESS = "done-success"
    DONE_DEGRADED = "done-degraded"
    DONE_FAILURE = "done-failure"


DONE_PHASES = (LoopPhase.DONE_SUCCESS, LoopPhase.DONE_DEGRADED, LoopPhase.DONE_FAILURE)


@dataclass(frozen=True)
class LoopState:
    """
    State threaded through the verify-improve loop.

    Immutable: every transition returns a new LoopState, so no iteration
    can see another iteration's rules or feedback through a shared reference.
    """
    # Input
    problem: StructuredProblem
    rules: tuple[Rule, ...]

    # Last verification pass
    test_results: VerifierFeedback | None = None

    # Number of Improving transitions taken
    iteration_count: int = 0

    phase: LoopPhase = LoopPhase.VERIFYING
    failure: PipelineError | None = None

    @property
    def done(self) -> bool:
        return self.phase in DONE_PHASES

    @property
    def degraded(self) -> bool:
        return self.phase == LoopPhase.DONE_DEGRADED

    def verified(self, feedback: VerifierFeedback, max_iterations: int) -> "LoopState":
        """Transition out of VERIFYING with the feedback of the pass."""
        state = replace(self, test_results=feedback)
        return replace(state, phase=next_phase(state, max_iterations))

    def improved(self, rules: list[Rule]) -> "LoopState":
        """Transition IMPROVING -> VERIFYING with a replacement rule set."""
        return replace(
            self,
            rules=tuple(rules),
            iteration_count=self.iteration_count + 1,
            phase=LoopPhase.VERIFYING
        )

    def failed(self, error: PipelineError) -> "LoopState":
        """Transition IMPROVING -> DONE_FAILURE."""
        return replace(self, phase=LoopPhase.DONE_FAILURE, failure=error)


def should_exit(state: LoopState, max_iterations: int) -> bool:
    """
    Exit predicate evaluated after each verification pass.

    Args:
        state: State holding the feedback of the pass just run
        max_iterations: Maximum number of Improving transitions

    Returns:
        True when every test passed or no improvement budget is left
    """
    if state.test_results is None:
        return False
    if state.test_results.conclusion == Conclusion.ALL_PASS:
        return True
    return state.iteration_count >= max_iterations


def next_phase(state: LoopState, max_iterations: int) -> LoopPhase:
    """Phase following a verification pass."""
    if state.test_results is None:
        return LoopPhase.VERIFYING
    if state.test_results.conclusion == Conclusion.ALL_PASS:
        return LoopPhase.DONE_SUCCESS
    if should_exit(state, max_iterations):
        return LoopPhase.DONE_DEGRADED
    return LoopPhase.IMPROVING
