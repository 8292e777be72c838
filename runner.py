"""Runner for solving a problem through the extract, hypothesize, verify-improve, answer pipeline."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from agents.aggregation import ConclusionPolicy
from agents.answerer import QuestionAnswerer
from agents.extractor import StructuredProblemExtractor
from agents.hypothesizer import InitialHypothesizer
from agents.improver import RuleImprover
from agents.rule_tester import RuleTester
from agents.sentence_tester import SentenceTester
from agents.verifier import FeedbackSynthesizer, VerifierOrchestrator
from config import Settings
from context import RunContext
from errors import ImprovementFailed, PipelineError
from events import ITERATION_UPDATE, STEP_COMPLETE, STEP_START
from guardrails import GuardError
from rosetta.schema import Answer, Rule, StructuredProblem, VerifierFeedback, VocabularyEntry
from state import LoopPhase, LoopState

log = logging.getLogger(__name__)

STEP_EXTRACT = "extract-structure"
STEP_HYPOTHESIS = "initial-hypothesis"
STEP_LOOP = "verify-improve-rules-loop"
STEP_ANSWER = "answer-questions"


async def run_verify_improve_loop(
    ctx: RunContext,
    problem: StructuredProblem,
    rules: list[Rule],
    verifier: VerifierOrchestrator,
    improver: RuleImprover,
    max_iterations: int = 4
) -> LoopState:
    """
    Verify, then improve, until every test passes or the budget is spent.

    Runs at most `max_iterations` Improving transitions, hence at most
    `max_iterations + 1` verification passes.

    Args:
        ctx: Run context
        problem: Structured problem (never changes)
        rules: Initial rule set
        verifier: Verification orchestrator
        improver: Rule improver
        max_iterations: Maximum number of improvements

    Returns:
        Final LoopState in one of the DONE phases

    Raises:
        GuardError: Cost budget exceeded or every verifier call failed
    """
    state = LoopState(problem=problem, rules=tuple(rules))

    while not state.done:
        if state.phase == LoopPhase.VERIFYING:
            pass_number = state.iteration_count + 1
            feedback = await verifier.verify(ctx, problem, list(state.rules), pass_number)
            state = state.verified(feedback, max_iterations)

            ctx.events.emit(
                ITERATION_UPDATE,
                ctx.step_id,
                iteration=pass_number,
                maxIterations=max_iterations,
                conclusion=feedback.conclusion.value,
                isLastIteration=state.done
            )
            log.info(
                f"Pass {pass_number}: {feedback.conclusion.value} | "
                f"improvements={state.iteration_count}/{max_iterations} | "
                f"cost=${ctx.guards.total_cost:.4f}"
            )
            ctx.guards.check_all()

        elif state.phase == LoopPhase.IMPROVING:
            try:
                revised = await improver.improve(
                    ctx, problem, list(state.rules), state.test_results, state.iteration_count + 1
                )
            except ImprovementFailed as e:
                log.error(e.message)
                state = state.failed(e)
                continue
            state = state.improved(revised)

    if state.degraded:
        log.warning(
            f"Stopped after {state.iteration_count} improvements without all tests passing; "
            f"answering with the best rule set so far"
        )
    return state


@dataclass
class PipelineResult:
    """
    Outcome of one pipeline run.

    status is "success", "failed" (a stage bailed) or "cancelled". Failed
    and cancelled runs carry no partial answers.
    """
    status: str
    answers: list[Answer] = field(default_factory=list)
    message: str | None = None
    failed_stage: str | None = None
    rules: list[Rule] = field(default_factory=list)
    feedback: VerifierFeedback | None = None
    iterations: int = 0
    degraded: bool = False
    vocabulary: list[VocabularyEntry] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"


class Pipeline:
    """
    Drives extraction, initial hypothesis, the verify-improve loop and answering.

    Any stage failure short-circuits the run ("bail"): later stages are never
    invoked and the failure message is returned verbatim.
    """

    def __init__(
        self,
        settings: Settings,
        llm=None,
        extractor: StructuredProblemExtractor | None = None,
        hypothesizer: InitialHypothesizer | None = None,
        verifier: VerifierOrchestrator | None = None,
        improver: RuleImprover | None = None,
        answerer: QuestionAnswerer | None = None
    ):
        """
        Initialize pipeline.

        Args:
            settings: Run settings (models per role, loop and concurrency limits)
            llm: LLMClient shared by every agent not passed explicitly
            extractor, hypothesizer, verifier, improver, answerer: Stage overrides
        """
        self.settings = settings
        model = settings.model_for

        self.extractor = extractor or StructuredProblemExtractor(llm, model("extractor"))
        self.hypothesizer = hypothesizer or InitialHypothesizer(llm, model("hypothesizer"), model("extractor"))
        if verifier is None:
            synthesizer = FeedbackSynthesizer(llm, model("synthesizer")) if settings.synthesize_feedback else None
            verifier = VerifierOrchestrator(
                RuleTester(llm, model("rule_tester")),
                SentenceTester(llm, model("sentence_tester")),
                synthesizer=synthesizer,
                max_concurrent=settings.max_concurrent,
                policy=ConclusionPolicy(settings.major_issue_fraction),
                bidirectional=settings.bidirectional
            )
        self.verifier = verifier
        self.improver = improver or RuleImprover(llm, model("improver"), model("extractor"))
        self.answerer = answerer or QuestionAnswerer(llm, model("answerer"))

        # In-flight runs by run_id
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()

    def cancel(self, run_id: str | None = None) -> bool:
        """
        Cancel a run in flight, including its outstanding verifier calls.

        Args:
            run_id: Run to cancel (default: every run in flight)

        Returns:
            True if at least one running task was cancelled
        """
        targets = list(self._tasks) if run_id is None else [run_id]
        cancelled = False
        for rid in targets:
            task = self._tasks.get(rid)
            if task is None or task.done():
                continue
            self._cancel_requested.add(rid)
            cancelled = task.cancel() or cancelled
        return cancelled

    async def run(self, raw_text: str, ctx: RunContext | None = None) -> PipelineResult:
        """
        Solve one problem.

        Args:
            raw_text: Problem text
            ctx: Run context (a fresh one with an execution log is created if None)

        Returns:
            PipelineResult

        Raises:
            ValueError: A run with the same run_id is already in progress
        """
        ctx = ctx or RunContext.create(self.settings)
        run_id = ctx.run_id
        if run_id in self._tasks:
            raise ValueError(f"Run {run_id} is already in progress")

        task = asyncio.ensure_future(self._run(ctx, raw_text))
        self._tasks[run_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if run_id not in self._cancel_requested:
                raise
            log.warning("Run cancelled")
            ctx.log.failure("Run cancelled")
            return PipelineResult(status="cancelled", message="Run cancelled")
        finally:
            self._tasks.pop(run_id, None)
            self._cancel_requested.discard(run_id)
            ctx.log.summary(ctx.metrics.started_at, ctx.metrics.timings)
            log.info(f"Final: {ctx.metrics.summary()} | cost=${ctx.guards.total_cost:.4f}")

    async def _step(self, ctx: RunContext, step_id: str, coro):
        ctx.step_id = step_id
        ctx.events.emit(STEP_START, step_id)
        started = time.monotonic()
        result = await coro
        ctx.events.emit(STEP_COMPLETE, step_id, durationMs=int((time.monotonic() - started) * 1000))
        return result

    async def _loop(self, ctx: RunContext, problem: StructuredProblem, rules: list[Rule]) -> LoopState:
        state = await run_verify_improve_loop(
            ctx, problem, rules, self.verifier, self.improver, self.settings.max_iterations
        )
        if state.failure is not None:
            raise state.failure
        return state

    async def _run(self, ctx: RunContext, raw_text: str) -> PipelineResult:
        try:
            problem = await self._step(ctx, STEP_EXTRACT, self.extractor.extract(ctx, raw_text))
            rules = await self._step(ctx, STEP_HYPOTHESIS, self.hypothesizer.hypothesize(ctx, problem))
            state = await self._step(ctx, STEP_LOOP, self._loop(ctx, problem, rules))
            answers = await self._step(ctx, STEP_ANSWER, self.answerer.answer(ctx, problem, list(state.rules)))

        except PipelineError as e:
            return self._bail(ctx, e.message, e.stage)

        except GuardError as e:
            return self._bail(ctx, f"[Guard] {e}", "Guard")

        log.info(f"Solved: {len(answers)} answers after {state.iteration_count} improvements")
        return PipelineResult(
            status="success",
            answers=answers,
            rules=list(state.rules),
            feedback=state.test_results,
            iterations=state.iteration_count,
            degraded=state.degraded,
            vocabulary=ctx.vocabulary.get()
        )

    @staticmethod
    def _bail(ctx: RunContext, message: str, stage: str) -> PipelineResult:
        log.error(message)
        ctx.log.failure(message)
        return PipelineResult(status="failed", message=message, failed_stage=stage)
