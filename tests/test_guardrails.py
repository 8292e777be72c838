"""Tests for guardrails.py - Circuit breakers and safety guards."""

import pytest
from guardrails import Guards, GuardError


class TestCostGuard:
    """Tests for cost budget guard."""

    def test_under_budget_passes(self):
        """Cost under limit does not raise."""
        g = Guards(max_cost=5.0)
        g.record_cost(2.0)
        g.check_all()  # Should not raise

    def test_over_budget_raises(self):
        """Cost over limit raises GuardError."""
        g = Guards(max_cost=5.0)
        g.record_cost(6.0)
        with pytest.raises(GuardError, match="Budget exceeded"):
            g.check_budget()

    def test_cumulative_cost(self):
        """Multiple costs accumulate."""
        g = Guards(max_cost=5.0)
        g.record_cost(2.0)
        g.record_cost(2.0)
        g.record_cost(2.0)  # Total: 6.0
        assert g.calls == 3
        with pytest.raises(GuardError):
            g.check_all()


class TestLeafFailureGuard:
    """Tests for the verifier failure-rate guard."""

    def test_partial_failures_pass(self):
        """Some failed verifier calls do not trip the default guard."""
        g = Guards()
        g.record_leaf(failed=True)
        g.record_leaf(failed=False)
        g.check_all()  # Should not raise

    def test_all_failed_raises(self):
        """Every verifier call failing trips the default guard."""
        g = Guards()
        for _ in range(4):
            g.record_leaf(failed=True)
        with pytest.raises(GuardError, match="4/4"):
            g.check_all()

    def test_custom_fraction(self):
        """A lower threshold trips earlier."""
        g = Guards(max_failed_fraction=0.5)
        g.record_leaf(failed=True)
        g.record_leaf(failed=False)
        with pytest.raises(GuardError):
            g.check_all()

    def test_no_leaves_passes(self):
        """The guard is inactive before any verifier call."""
        Guards().check_all()
