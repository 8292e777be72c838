"""Verifier orchestrator: fans out rule and sentence tests and aggregates them."""

import asyncio
import logging
from agents.aggregation import ConclusionPolicy, aggregate, merge_synthesis
from agents.reasoning import Agent, run_agent, to_prompt_json
from agents.rule_tester import RuleTester, RuleTestResult
from agents.sentence_tester import SentenceTask, SentenceTester, SentenceTestResult, build_sentence_tasks
from context import RunContext, VerificationContext
from data.text import detect_bidirectional
from events import TOOL_CALL
from rosetta.schema import Conclusion, FeedbackSynthesis, Rule, StructuredProblem, VerifierFeedback

log = logging.getLogger(__name__)

SYNTHESIZER_INSTRUCTIONS = """You review the results of testing a linguistic rule set, one rule and one
sentence at a time, and write the verification report for the rule improver.

- Cluster related failures into issues; cite the rule titles and sentence ids involved.
- List patterns no current rule explains as missing rules, with evidence ids.
- Give at most 5 top recommendations, most impactful first.
- Set majorIssues to true only if the rule set is fundamentally wrong, not merely incomplete.
Do not re-test anything yourself; use only the results given."""


class FeedbackSynthesizer:
    """Optional model-written summary folded into the deterministic report."""

    def __init__(self, llm, model: str):
        self.llm = llm
        self.agent = Agent(
            id="verifier-feedback-synthesizer",
            name="Verifier Feedback Synthesizer Agent",
            instructions=SYNTHESIZER_INSTRUCTIONS,
            model=model
        )

    async def synthesize(
        self,
        ctx: RunContext,
        feedback: VerifierFeedback,
        rule_results: list[RuleTestResult],
        sentence_results: list[SentenceTestResult],
        step_name: str
    ) -> FeedbackSynthesis:
        results = {
            "ruleResults": [
                {"title": r.rule.title, "verdict": r.verdict} for r in rule_results if r.success
            ],
            "sentenceResults": [
                {"id": s.task.test_id, "content": s.task.content, "verdict": s.verdict}
                for s in sentence_results if s.success
            ],
            "deterministicReport": feedback,
        }
        generation = await run_agent(
            ctx,
            self.llm,
            self.agent,
            "Write the verification report for these test results:\n\n" + to_prompt_json(results),
            step_name,
            schema=FeedbackSynthesis
        )
        return generation.object


class VerifierOrchestrator:
    """
    Runs one verification pass.

    Every rule and every sentence is tested independently and concurrently,
    bounded by `max_concurrent`. A failed leaf call is retried once and then
    recorded as a failed test; it never aborts the pass.
    """

    def __init__(
        self,
        rule_tester: RuleTester,
        sentence_tester: SentenceTester,
        synthesizer: FeedbackSynthesizer | None = None,
        max_concurrent: int = 8,
        policy: ConclusionPolicy | None = None,
        bidirectional: bool | None = None
    ):
        """
        Initialize orchestrator.

        Args:
            rule_tester: Leaf verifier for rules
            sentence_tester: Leaf verifier for sentences
            synthesizer: Optional feedback synthesizer (None to skip)
            max_concurrent: Maximum in-flight leaf calls
            policy: Conclusion thresholds
            bidirectional: Test dataset items both ways; None to detect from the questions
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.rule_tester = rule_tester
        self.sentence_tester = sentence_tester
        self.synthesizer = synthesizer
        self.max_concurrent = max_concurrent
        self.policy = policy or ConclusionPolicy()
        self.bidirectional = bidirectional

    def sentence_tasks(self, problem: StructuredProblem) -> list[SentenceTask]:
        bidirectional = self.bidirectional
        if bidirectional is None:
            bidirectional = detect_bidirectional(problem)
        return build_sentence_tasks(problem, bidirectional)

    async def verify(
        self,
        ctx: RunContext,
        problem: StructuredProblem,
        rules: list[Rule],
        iteration: int
    ) -> VerifierFeedback:
        """
        Test every rule and sentence, then aggregate.

        Args:
            ctx: Run context (vocabulary is locked for the duration of the tests)
            problem: Structured problem
            rules: Rule set under test
            iteration: 1-based pass number, used in log labels

        Returns:
            VerifierFeedback for the pass
        """
        tasks = self.sentence_tasks(problem)
        log.info(f"[Iter {iteration}] Verifying {len(rules)} rules and {len(tasks)} sentences")
        sem = asyncio.Semaphore(self.max_concurrent)

        with ctx.vocabulary.read_only() as vocabulary:
            vctx = VerificationContext(
                problem=problem,
                rules=tuple(rules),
                vocabulary=vocabulary,
                iteration=iteration,
                run=ctx
            )
            results = await asyncio.gather(
                *[self._test_rule(sem, r, vctx) for r in rules],
                *[self._test_sentence(sem, t, vctx) for t in tasks]
            )

        rule_results = list(results[:len(rules)])
        sentence_results = list(results[len(rules):])
        ctx.metrics.verification_passes += 1

        feedback = aggregate(rule_results, sentence_results, self.policy)
        log.info(
            f"[Iter {iteration}] {feedback.conclusion.value}: "
            f"{len(feedback.errant_rules)} errant rules, "
            f"{len(feedback.errant_sentences)} errant sentences, "
            f"{len(feedback.failed_tests)} failed tests"
        )

        if self.synthesizer and feedback.conclusion != Conclusion.ALL_PASS:
            feedback = await self._synthesize(ctx, feedback, rule_results, sentence_results, iteration)
        return feedback

    async def _synthesize(self, ctx, feedback, rule_results, sentence_results, iteration) -> VerifierFeedback:
        try:
            synthesis = await self.synthesizer.synthesize(
                ctx, feedback, rule_results, sentence_results, f"Step 3 (Iter {iteration})"
            )
        except Exception as e:
            log.warning(f"[Iter {iteration}] Feedback synthesis failed, using aggregated report: {e}")
            return feedback
        return merge_synthesis(feedback, synthesis)

    async def _test_rule(self, sem: asyncio.Semaphore, rule: Rule, vctx: VerificationContext) -> RuleTestResult:
        async with sem:
            result = await self.rule_tester.test(rule, vctx)
            if not result.success:
                vctx.run.metrics.retried_tests += 1
                log.info(f"Retrying rule test for {rule.title!r}")
                result = await self.rule_tester.test(rule, vctx)

        run = vctx.run
        run.metrics.rule_tests += 1
        status = result.verdict.status.value if result.success else "ERROR"
        self._record(run, result.success)
        run.log.rule_test(rule.title, status)
        run.events.emit(
            TOOL_CALL,
            run.step_id,
            toolName="testRule",
            input={"title": rule.title, "description": rule.description},
            output=result.verdict.to_wire() if result.success else {"error": result.error},
            success=result.success
        )
        return result

    async def _test_sentence(self, sem: asyncio.Semaphore, task: SentenceTask, vctx: VerificationContext) -> SentenceTestResult:
        async with sem:
            result = await self.sentence_tester.test(task, vctx)
            if not result.success:
                vctx.run.metrics.retried_tests += 1
                log.info(f"Retrying sentence test {task.test_id}")
                result = await self.sentence_tester.test(task, vctx)

        run = vctx.run
        run.metrics.sentence_tests += 1
        status = result.verdict.overall_status.value if result.success else "ERROR"
        self._record(run, result.success)
        run.log.sentence_test(task.test_id, status)
        run.events.emit(
            TOOL_CALL,
            run.step_id,
            toolName="testSentence",
            input={
                "id": task.test_id,
                "content": task.content,
                "sourceLanguage": task.source_language,
                "targetLanguage": task.target_language,
            },
            output=result.verdict.to_wire() if result.success else {"error": result.error},
            success=result.success
        )
        return result

    @staticmethod
    def _record(run: RunContext, success: bool):
        run.guards.record_leaf(failed=not success)
        if not success:
            run.metrics.failed_tests += 1
