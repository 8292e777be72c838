"""Structured problem extractor: raw problem text to dataset, questions and context."""

import logging
from agents.reasoning import Agent, run_agent
from context import RunContext
from errors import ExtractionFailed, LLMCallFailed, SchemaValidationError
from rosetta.schema import ExtractionResult, StructuredProblem

log = logging.getLogger(__name__)

INSTRUCTIONS = """You extract Linguistics Olympiad "Rosetta Stone" problems into structured data.

From the problem text, extract:
- context: linguistic, grammatical and orthographic notes that matter for solving. Exclude trivia.
- dataset: every complete example pair, with sequential ids ("1", "2", ...). Name the fields
  after the languages involved (e.g. "english", "foreignForm"). Complete pairs only.
- questions: every task, with ids "Q1", "Q2", ..., a task type such as
  "translate-to-english" or "translate-to-target", and the input phrase.

If the text has no usable paired examples or no questions, set success to false, explain what
is missing, and set data to null. Never invent data."""


class StructuredProblemExtractor:
    """Turns raw problem text into a StructuredProblem, or fails the run."""

    def __init__(self, llm, model: str):
        self.llm = llm
        self.agent = Agent(
            id="structured-problem-extractor",
            name="Structured Problem Extractor Agent",
            instructions=INSTRUCTIONS,
            model=model
        )

    async def extract(self, ctx: RunContext, raw_text: str) -> StructuredProblem:
        """
        Extract the structured problem.

        Args:
            ctx: Run context
            raw_text: Problem text as pasted by the user

        Returns:
            StructuredProblem

        Raises:
            ExtractionFailed: Model reported failure, returned invalid output,
                or produced no dataset/questions
        """
        if not raw_text.strip():
            raise ExtractionFailed("Extraction failed: problem text is empty")

        try:
            generation = await run_agent(
                ctx, self.llm, self.agent, raw_text, "Step 1", schema=ExtractionResult
            )
        except SchemaValidationError as e:
            raise ExtractionFailed(f"Validation failed: {e}") from e
        except LLMCallFailed as e:
            raise ExtractionFailed(f"Extraction call failed: {e}") from e

        result: ExtractionResult = generation.object
        if not result.success or result.data is None:
            raise ExtractionFailed(f"Extraction failed: {result.explanation or 'no explanation given'}")

        problem = result.data
        if not problem.dataset or not problem.questions:
            raise ExtractionFailed(
                f"Extraction failed: found {len(problem.dataset)} dataset items and "
                f"{len(problem.questions)} questions"
            )

        log.info(f"Extracted {len(problem.dataset)} dataset items and {len(problem.questions)} questions")
        return problem
