"""Circuit breakers for a solver run."""

from dataclasses import dataclass, field
import logging

log = logging.getLogger(__name__)


class GuardError(Exception):
    """Raised when a guard condition is violated."""
    pass


@dataclass
class Guards:
    """
    Safety guards for one run.

    Monitors:
    - Cost budget (total API spend, fed by the LLM client's cost callback)
    - Leaf failure rate (verifier calls that failed even after a retry)
    """
    max_cost: float = 5.0
    max_failed_fraction: float = 1.0

    total_cost: float = field(default=0.0, init=False)
    calls: int = field(default=0, init=False)
    leaf_tests: int = field(default=0, init=False)
    leaf_failures: int = field(default=0, init=False)

    def record_cost(self, cost: float):
        """Record API cost. Called by LLM client after each request."""
        self.total_cost += cost
        self.calls += 1

    def record_leaf(self, failed: bool):
        """Record one settled verifier call."""
        self.leaf_tests += 1
        if failed:
            self.leaf_failures += 1

    def check_budget(self):
        """Raise GuardError once spend exceeds the budget."""
        if self.total_cost > self.max_cost:
            raise GuardError(f"Budget exceeded: ${self.total_cost:.2f} > ${self.max_cost}")

    def check_all(self):
        """
        Check all guards, raise GuardError if any violated.

        The failure-rate guard only trips when every verifier call of the run
        failed (the default `max_failed_fraction` of 1.0), i.e. the model is
        unreachable rather than merely flaky.
        """
        self.check_budget()

        if self.leaf_tests and self.leaf_failures / self.leaf_tests >= self.max_failed_fraction:
            raise GuardError(
                f"{self.leaf_failures}/{self.leaf_tests} verification calls failed"
            )
