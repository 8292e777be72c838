"""Question answerer: applies the final rules to every question."""

import logging
from agents.reasoning import Agent, run_agent, to_prompt_json
from context import RunContext
from errors import AnswerFailed, LLMCallFailed, SchemaValidationError
from rosetta.schema import Answer, AnswersResult, Rule, StructuredProblem

log = logging.getLogger(__name__)

INSTRUCTIONS = """You answer Linguistics Olympiad translation questions by applying a given rule set.

For every question:
- answer: the translation
- workingSteps: the step-by-step application of the rules and vocabulary
- confidence: HIGH, MEDIUM or LOW
- confidenceReasoning: what makes the answer certain or uncertain

Use only the rules and vocabulary provided. Answer every question id exactly once.
If the rules cannot be applied at all, set success to false and explain why."""


class QuestionAnswerer:
    """Final step: one Answer per question."""

    def __init__(self, llm, model: str):
        self.llm = llm
        self.agent = Agent(
            id="question-answerer",
            name="Question Answerer Agent",
            instructions=INSTRUCTIONS,
            model=model
        )

    async def answer(self, ctx: RunContext, problem: StructuredProblem, rules: list[Rule]) -> list[Answer]:
        """
        Answer every question.

        Args:
            ctx: Run context
            problem: Structured problem
            rules: Final rule set

        Returns:
            Answers in question order

        Raises:
            AnswerFailed: Model reported failure, left a question unanswered,
                returned invalid output, or the call failed
        """
        prompt = (
            "Please answer the questions using the rules and vocabulary.\n\n"
            + to_prompt_json({
                "rules": rules,
                "vocabulary": ctx.vocabulary.get(),
                "structuredProblem": problem,
            })
        )
        try:
            generation = await run_agent(ctx, self.llm, self.agent, prompt, "Step 5", schema=AnswersResult)
        except SchemaValidationError as e:
            raise AnswerFailed(f"Validation failed: {e}") from e
        except LLMCallFailed as e:
            raise AnswerFailed(f"Answer call failed: {e}") from e

        result: AnswersResult = generation.object
        if not result.success or not result.answers:
            raise AnswerFailed(f"Answering failed: {result.explanation or 'no answers returned'}")

        order = {q.id: i for i, q in enumerate(problem.questions)}
        unknown = [a.question_id for a in result.answers if a.question_id not in order]
        if unknown:
            log.warning(f"Answers for unknown question ids dropped: {unknown}")

        # First answer per question id wins
        by_id: dict[str, Answer] = {}
        for a in result.answers:
            if a.question_id in order and a.question_id not in by_id:
                by_id[a.question_id] = a
        if len(by_id) < sum(1 for a in result.answers if a.question_id in order):
            log.warning("Duplicate answers dropped")

        missing = [q.id for q in problem.questions if q.id not in by_id]
        if missing:
            raise AnswerFailed(f"No answer for questions: {missing}")
        return sorted(by_id.values(), key=lambda a: order[a.question_id])
