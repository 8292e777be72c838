"""Initial hypothesizer: first rule set and vocabulary for a structured problem."""

import logging
from agents.reasoning import Agent, ReasonThenExtract, to_prompt_json
from context import RunContext
from errors import HypothesisFailed
from rosetta.schema import HypothesisExtraction, Rule, StructuredProblem

log = logging.getLogger(__name__)

REASONER_INSTRUCTIONS = """You are a conscientious expert linguist solving a Linguistics Olympiad problem.
Discover the rules of an unknown language from the dataset of example pairs. A complete solution
explains every dataset item and lets every question be answered with confidence.

Write your analysis in NATURAL LANGUAGE with clear section headers. Do NOT output JSON.

Cover:
1. Segmentation of each item into morphemes, citing item ids.
2. Rules: word order, agreement, affixes, phonological changes. Give each rule a short title,
   a precise description and a confidence (HIGH, MEDIUM, LOW) based on evidence.
3. Vocabulary: one entry per morpheme with its form, meaning, type (noun, verb-root,
   tense-marker, ...) and notes (supporting item ids, allomorphs, restrictions).
   Be atomic: one morpheme, one meaning."""

EXTRACTOR_INSTRUCTIONS = """You convert a linguistic analysis written in prose into JSON.
Copy rules and vocabulary exactly as the analysis states them; do not add, merge or drop any.
If the analysis contains no identifiable rules, set success to false and explain why."""


class InitialHypothesizer:
    """Produces the first rule set and seeds the vocabulary store."""

    def __init__(self, llm, reasoner_model: str, extractor_model: str):
        self.pipeline = ReasonThenExtract(
            llm,
            reasoner=Agent(
                id="initial-hypothesizer",
                name="Initial Hypothesizer Agent",
                instructions=REASONER_INSTRUCTIONS,
                model=reasoner_model
            ),
            extractor=Agent(
                id="initial-hypothesis-extractor",
                name="Initial Hypothesis Extractor Agent",
                instructions=EXTRACTOR_INSTRUCTIONS,
                model=extractor_model
            ),
            schema=HypothesisExtraction,
            failure=HypothesisFailed
        )

    async def hypothesize(self, ctx: RunContext, problem: StructuredProblem) -> list[Rule]:
        """
        Generate initial rules and add the discovered vocabulary to the store.

        Args:
            ctx: Run context (its vocabulary store is written)
            problem: Structured problem

        Returns:
            Initial rule set

        Raises:
            HypothesisFailed: Either phase failed or no rule was identified
        """
        prompt = (
            "Please analyze the dataset, hypothesize the linguistic rules and extract the vocabulary.\n\n"
            + to_prompt_json({"vocabulary": ctx.vocabulary.get(), "structuredProblem": problem})
        )
        _, extraction = await self.pipeline.run(
            ctx,
            prompt,
            "Please extract the rules and vocabulary from the following linguistic analysis:",
            "Step 2"
        )

        if not extraction.success or not extraction.rules:
            raise HypothesisFailed(
                f"Extraction failed: {extraction.explanation or 'no rules identified'}"
            )

        if extraction.vocabulary:
            ctx.vocabulary.add(extraction.vocabulary)

        log.info(f"Initial hypothesis: {len(extraction.rules)} rules, {ctx.vocabulary.count()} vocabulary entries")
        return list(extraction.rules)
