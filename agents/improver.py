"""Rule improver: revises the rule set and vocabulary from verifier feedback."""

import logging
from agents.reasoning import Agent, ReasonThenExtract, to_prompt_json
from context import RunContext
from errors import ImprovementFailed
from rosetta.schema import ImprovementExtraction, Rule, StructuredProblem, VerifierFeedback, VocabularyChanges

log = logging.getLogger(__name__)

REASONER_INSTRUCTIONS = """You are an expert linguist revising your rules for a Linguistics Olympiad
problem after they were independently tested.

You receive the current rules, the current vocabulary, the dataset and a verification report:
the errant rules, the sentences that could not be translated unambiguously, clustered issues,
missing rules and the top recommendations.

Write your revision in NATURAL LANGUAGE with clear section headers. Do NOT output JSON.

1. Diagnose each issue, citing item ids.
2. Give the COMPLETE revised rule set: every rule, changed or not, with title, description and
   confidence. Drop rules the data contradicts; add rules for the missing patterns.
3. Vocabulary changes: entries to add, entries to update (same form, new meaning), forms to
   remove, or say that the vocabulary must be cleared and rebuilt."""

EXTRACTOR_INSTRUCTIONS = """You convert a rule revision written in prose into JSON.
rules must hold the COMPLETE revised rule set exactly as stated. vocabularyChanges holds the
entries to add, update and remove, and clear=true only if the revision says to start over.
If the revision contains no rule set, set success to false and explain why."""


def apply_vocabulary_changes(ctx: RunContext, changes: VocabularyChanges):
    """Apply edits in the order clear, remove, update, add."""
    if changes.clear:
        ctx.vocabulary.clear()
    if changes.remove:
        ctx.vocabulary.remove(changes.remove)
    if changes.update:
        ctx.vocabulary.update(changes.update)
    if changes.add:
        ctx.vocabulary.add(changes.add)


class RuleImprover:
    """Revises rules from feedback. Writes to the vocabulary store."""

    def __init__(self, llm, reasoner_model: str, extractor_model: str):
        self.pipeline = ReasonThenExtract(
            llm,
            reasoner=Agent(
                id="rules-improver",
                name="Rules Improver Agent",
                instructions=REASONER_INSTRUCTIONS,
                model=reasoner_model
            ),
            extractor=Agent(
                id="rules-improvement-extractor",
                name="Rules Improvement Extractor Agent",
                instructions=EXTRACTOR_INSTRUCTIONS,
                model=extractor_model
            ),
            schema=ImprovementExtraction,
            failure=ImprovementFailed
        )

    async def improve(
        self,
        ctx: RunContext,
        problem: StructuredProblem,
        rules: list[Rule],
        feedback: VerifierFeedback,
        iteration: int
    ) -> list[Rule]:
        """
        Produce a revised rule set.

        Args:
            ctx: Run context
            problem: Structured problem
            rules: Current rules
            feedback: Report of the last verification pass
            iteration: 1-based iteration number

        Returns:
            Revised rule set (replaces the current one)

        Raises:
            ImprovementFailed: Either phase failed or no rules were extracted
        """
        prompt = (
            "Please revise the rules to address the verification feedback.\n\n"
            + to_prompt_json({
                "currentRules": rules,
                "vocabulary": ctx.vocabulary.get(),
                "verificationFeedback": feedback,
                "structuredProblem": problem,
            })
        )
        _, extraction = await self.pipeline.run(
            ctx,
            prompt,
            "Please extract the revised rules and vocabulary changes from the following revision:",
            f"Step 4 (Iter {iteration})"
        )

        if not extraction.success or not extraction.rules:
            raise ImprovementFailed(
                f"Extraction failed: {extraction.explanation or 'no revised rules'}"
            )

        apply_vocabulary_changes(ctx, extraction.vocabulary_changes)
        log.info(f"[Iter {iteration}] Revised rules: {len(rules)} -> {len(extraction.rules)}")
        return list(extraction.rules)
