"""Tests for state.py and the verify-improve loop in runner.py."""

import pytest
from agents.verifier import VerifierOrchestrator
from events import ITERATION_UPDATE
from guardrails import GuardError
from rosetta.schema import Conclusion, VerifierFeedback
from runner import run_verify_improve_loop
from state import LoopPhase, LoopState, next_phase, should_exit
from fakes import (
    FakeImprover,
    FakeRuleTester,
    FakeSentenceTester,
    make_ctx,
    make_problem,
    make_rules,
    rule_ok,
    rule_wrong,
)


def state_with(conclusion, iteration_count=0):
    return LoopState(
        problem=make_problem(),
        rules=tuple(make_rules()),
        test_results=VerifierFeedback(conclusion=conclusion),
        iteration_count=iteration_count
    )


class TestExitPredicate:
    """Tests for should_exit() and next_phase()."""

    def test_no_feedback_yet(self):
        state = LoopState(problem=make_problem(), rules=tuple(make_rules()))
        assert not should_exit(state, 4)
        assert next_phase(state, 4) == LoopPhase.VERIFYING

    def test_all_pass_exits(self):
        state = state_with(Conclusion.ALL_PASS)
        assert should_exit(state, 4)
        assert next_phase(state, 4) == LoopPhase.DONE_SUCCESS

    def test_needs_improvement_continues(self):
        state = state_with(Conclusion.NEEDS_IMPROVEMENT, iteration_count=3)
        assert not should_exit(state, 4)
        assert next_phase(state, 4) == LoopPhase.IMPROVING

    def test_cap_reached_is_degraded(self):
        state = state_with(Conclusion.MAJOR_ISSUES, iteration_count=4)
        assert should_exit(state, 4)
        assert next_phase(state, 4) == LoopPhase.DONE_DEGRADED

    def test_all_pass_at_cap_is_success(self):
        state = state_with(Conclusion.ALL_PASS, iteration_count=4)
        assert next_phase(state, 4) == LoopPhase.DONE_SUCCESS

    def test_zero_iterations(self):
        """With no improvement budget the first failing pass ends the loop."""
        assert next_phase(state_with(Conclusion.NEEDS_IMPROVEMENT), 0) == LoopPhase.DONE_DEGRADED


class TestTransitions:
    """LoopState transitions return new states."""

    def test_improved_increments_and_replaces(self):
        state = state_with(Conclusion.NEEDS_IMPROVEMENT)
        new_rules = make_rules()[:1]
        improved = state.improved(new_rules)
        assert improved.iteration_count == 1
        assert improved.rules == tuple(new_rules)
        assert improved.phase == LoopPhase.VERIFYING
        assert improved.problem is state.problem
        assert state.iteration_count == 0
        assert len(state.rules) == 2

    def test_verified_sets_feedback(self):
        state = LoopState(problem=make_problem(), rules=tuple(make_rules()))
        fb = VerifierFeedback(conclusion=Conclusion.ALL_PASS)
        assert state.verified(fb, 4).test_results is fb
        assert state.test_results is None


class TestLoop:
    """End-to-end loop runs with fake verifiers and improver."""

    @pytest.mark.asyncio
    async def test_scenario_all_pass_first_pass(self):
        """Everything verified OK: exit at iteration 0 without improving."""
        ctx = make_ctx()
        improver = FakeImprover()
        rules_tester = FakeRuleTester()
        verifier = VerifierOrchestrator(rules_tester, FakeSentenceTester())

        state = await run_verify_improve_loop(ctx, make_problem(), make_rules(), verifier, improver, 4)
        assert state.phase == LoopPhase.DONE_SUCCESS
        assert state.iteration_count == 0
        assert state.test_results.conclusion == Conclusion.ALL_PASS
        assert improver.calls == []
        assert len(rules_tester.calls) == 2

    @pytest.mark.asyncio
    async def test_scenario_persistent_wrong_rule(self):
        """A rule that stays wrong uses the full budget and ends degraded."""
        ctx = make_ctx()
        improver = FakeImprover()
        rules_tester = FakeRuleTester({"Past tense suffix": rule_wrong()})
        verifier = VerifierOrchestrator(rules_tester, FakeSentenceTester())

        state = await run_verify_improve_loop(ctx, make_problem(), make_rules(), verifier, improver, 4)
        assert len(improver.calls) == 4
        assert state.iteration_count == 4
        assert state.phase == LoopPhase.DONE_DEGRADED
        assert state.degraded
        assert "Past tense suffix" in state.test_results.errant_rules
        assert ctx.metrics.verification_passes == 5
        assert state.rules[0].description.endswith("(rev 4)")

    @pytest.mark.asyncio
    async def test_fixed_after_one_improvement(self):
        ctx = make_ctx()
        improver = FakeImprover()
        rules_tester = FakeRuleTester({"Past tense suffix": [rule_wrong(), rule_ok()]})
        verifier = VerifierOrchestrator(rules_tester, FakeSentenceTester())

        state = await run_verify_improve_loop(ctx, make_problem(), make_rules(), verifier, improver, 4)
        assert state.phase == LoopPhase.DONE_SUCCESS
        assert state.iteration_count == 1
        assert [i for i, _ in improver.calls] == [1]

    @pytest.mark.asyncio
    async def test_iteration_events(self):
        """One iteration-update per verification pass."""
        ctx = make_ctx()
        verifier = VerifierOrchestrator(FakeRuleTester({"Past tense suffix": rule_wrong()}), FakeSentenceTester())
        await run_verify_improve_loop(ctx, make_problem(), make_rules(), verifier, FakeImprover(), 2)

        events = ctx.events.of_type(ITERATION_UPDATE)
        assert [e.data["iteration"] for e in events] == [1, 2, 3]
        assert [e.data["isLastIteration"] for e in events] == [False, False, True]
        assert all(e.data["maxIterations"] == 2 for e in events)

    @pytest.mark.asyncio
    async def test_improver_failure(self):
        """A failed improvement ends the loop in DONE_FAILURE."""
        ctx = make_ctx()
        verifier = VerifierOrchestrator(FakeRuleTester({"Past tense suffix": rule_wrong()}), FakeSentenceTester())
        state = await run_verify_improve_loop(
            ctx, make_problem(), make_rules(), verifier, FakeImprover(fail_on=2), 4
        )
        assert state.phase == LoopPhase.DONE_FAILURE
        assert state.iteration_count == 1
        assert state.failure.message == "[Improve Rules Step] Extraction failed: no revised rules"

    @pytest.mark.asyncio
    async def test_every_call_failing_trips_guard(self):
        """An unreachable model stops the loop instead of burning iterations."""
        ctx = make_ctx()
        verifier = VerifierOrchestrator(
            FakeRuleTester({"Past tense suffix": None, "Present tense": None}),
            FakeSentenceTester({"#1": None, "#2": None, "#3": None, "Q1": None})
        )
        improver = FakeImprover()
        with pytest.raises(GuardError):
            await run_verify_improve_loop(ctx, make_problem(), make_rules(), verifier, improver, 4)
        assert improver.calls == []
