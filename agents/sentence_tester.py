"""Sentence tester: blind translation of one sentence using only the given rules."""

import logging
from dataclasses import dataclass
from agents.reasoning import to_prompt_json
from agents.rule_tester import format_ruleset
from context import VerificationContext
from data.text import question_direction, sentence_test_id, split_item_fields, translations_match
from rosetta.schema import SentenceVerdict, StructuredProblem

log = logging.getLogger(__name__)

INSTRUCTIONS = """You are a specialized linguistic sentence translator and validator. Translate a
SINGLE sentence using ONLY the provided rules and vocabulary, and report every ambiguity.

Process:
1. Translate step by step using only the rules and vocabulary. No outside knowledge, no guessing.
2. At each step note every place where more than one interpretation is possible.
3. Produce your best translation based solely on the rules.

Output:
- canTranslate: true only if the translation is unambiguous and deterministic
- translation: your best attempt, even if ambiguous
- ambiguities: every point where a rule could apply several ways, a morpheme is missing from the
  vocabulary, order or combination is unspecified, or an exception is not covered.
  If no rule covers a pattern, say "MISSING_RULE_NEEDED" and describe the rule required.
- suggestions: unless the status is SENTENCE_OK, EXACTLY 3 distinct fixes to the ruleset, ranked
  HIGH, MEDIUM, LOW likelihood, each with reasoning citing rules or item ids
- overallStatus: SENTENCE_OK, SENTENCE_AMBIGUOUS or SENTENCE_UNTRANSLATABLE

Be very strict: if there is any doubt, flag it."""


@dataclass(frozen=True)
class SentenceTask:
    """
    One sentence to translate. `expected` is kept for post-hoc comparison
    and is never put in the prompt.
    """
    test_id: str
    content: str
    source_language: str
    target_language: str
    expected: str | None = None


@dataclass
class SentenceTestResult:
    """Outcome of one sentence test: a verdict, or the error that prevented one."""
    task: SentenceTask
    verdict: SentenceVerdict | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.verdict is not None


def build_sentence_tasks(problem: StructuredProblem, bidirectional: bool = False) -> list[SentenceTask]:
    """
    Sentence tests for every dataset item and every question.

    Dataset items are translated foreign to English, and also English to
    foreign when `bidirectional` is set. Questions follow their task type.

    Args:
        problem: Structured problem
        bidirectional: Test dataset items in both directions

    Returns:
        SentenceTask list, dataset items first
    """
    tasks = []
    for item in problem.dataset:
        keys = split_item_fields(item)
        if keys is None:
            log.warning(f"Dataset item {item.id} has fewer than two fields, not tested")
            continue
        foreign, english = keys
        values = item.fields()
        tasks.append(SentenceTask(
            test_id=sentence_test_id(item.id),
            content=values[foreign],
            source_language=foreign,
            target_language=english,
            expected=values[english]
        ))
        if bidirectional:
            tasks.append(SentenceTask(
                test_id=sentence_test_id(item.id, reverse=True),
                content=values[english],
                source_language=english,
                target_language=foreign,
                expected=values[foreign]
            ))

    for question in problem.questions:
        source, target = question_direction(question)
        tasks.append(SentenceTask(
            test_id=question.id,
            content=question.input,
            source_language=source,
            target_language=target
        ))
    return tasks


class SentenceTester:
    """Leaf verifier for one sentence. Never raises on model failure."""

    def __init__(self, llm, model: str):
        self.llm = llm
        self.model = model

    def build_prompt(self, task: SentenceTask, vctx: VerificationContext) -> str:
        """Translation prompt. Deliberately omits the expected translation."""
        return f"""Translate and validate the following sentence using the provided ruleset.

## Sentence to Translate
**ID:** {task.test_id}
**Content:** {task.content}
**From:** {task.source_language}
**To:** {task.target_language}

## Context
{vctx.problem.context}

## Rules
{format_ruleset(vctx.rules)}

## Vocabulary
{to_prompt_json(list(vctx.vocabulary))}

Translate step by step using only the rules and vocabulary above and flag every ambiguity."""

    async def test(self, task: SentenceTask, vctx: VerificationContext) -> SentenceTestResult:
        """
        Translate one sentence blind, then compare with the expected value.

        Args:
            task: Sentence to test
            vctx: Read-only pass context

        Returns:
            SentenceTestResult with a verdict, or with an error message on failure
        """
        try:
            generation = await self.llm.generate(
                self.build_prompt(task, vctx),
                schema=SentenceVerdict,
                system=INSTRUCTIONS,
                model=self.model
            )
        except Exception as e:
            log.warning(f"Sentence test failed for {task.test_id}: {e}")
            return SentenceTestResult(task=task, error=f"Sentence test failed: {e}")

        verdict: SentenceVerdict = generation.object
        if task.expected:
            verdict = verdict.model_copy(
                update={"matches_expected": translations_match(verdict.translation, task.expected)}
            )
        return SentenceTestResult(task=task, verdict=verdict)
