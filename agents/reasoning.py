"""Agent-call bookkeeping and the two-phase reason-then-extract capability."""

import json
import logging
import time
from dataclasses import dataclass
from pydantic import BaseModel
from agents.llm import Generation
from context import RunContext
from errors import LLMCallFailed, PipelineError, SchemaValidationError
from events import AGENT_REASONING

log = logging.getLogger(__name__)


def to_prompt_json(payload) -> str:
    """JSON for prompts: pydantic models serialized with camelCase keys."""
    def default(o):
        if isinstance(o, BaseModel):
            return o.model_dump(mode="json", by_alias=True)
        raise TypeError(f"Not JSON serializable: {type(o).__name__}")
    return json.dumps(payload, default=default, indent=2, ensure_ascii=False)


@dataclass(frozen=True)
class Agent:
    """Identity and instructions of one model-backed agent."""
    id: str
    name: str
    instructions: str
    model: str


async def run_agent(
    ctx: RunContext,
    llm,
    agent: Agent,
    prompt: str,
    step_name: str,
    schema: type[BaseModel] | None = None
) -> Generation:
    """
    Call an agent and record timing, reasoning event and log output.

    Args:
        ctx: Run context
        llm: Object with an async `generate` like LLMClient
        agent: Agent to call
        prompt: User prompt
        step_name: Label for timings and the execution log
        schema: Output schema (None for free text)

    Returns:
        The Generation

    Raises:
        SchemaValidationError, LLMCallFailed: Propagated after logging
    """
    started = time.monotonic()
    try:
        generation = await llm.generate(
            prompt, schema=schema, system=agent.instructions, model=agent.model
        )
    except SchemaValidationError as e:
        ctx.metrics.record(step_name, agent.name, started)
        ctx.log.validation_error(step_name, e)
        log.error(f"[{step_name}] {agent.name} returned invalid output: {e}")
        raise
    finally:
        ctx.guards.check_budget()

    timing = ctx.metrics.record(step_name, agent.name, started)
    log.info(f"[{step_name}] {agent.name} finished at {timing.end_time} ({timing.duration_minutes} min).")

    if generation.reasoning:
        ctx.events.emit(
            AGENT_REASONING,
            ctx.step_id,
            agentId=agent.id,
            agentName=agent.name,
            model=generation.model or agent.model,
            reasoning=generation.reasoning
        )
    output = generation.object if generation.object is not None else generation.text
    ctx.log.agent_output(step_name, agent.name, output, generation.reasoning)
    return generation


class ReasonThenExtract:
    """
    Free-text reasoning followed by schema-constrained extraction.

    The reasoner works without any JSON formatting pressure; a second agent
    turns its prose into `schema`. Failures of the two phases are reported
    separately so the log shows which one broke.
    """

    def __init__(self, llm, reasoner: Agent, extractor: Agent, schema: type[BaseModel], failure: type[PipelineError]):
        self.llm = llm
        self.reasoner = reasoner
        self.extractor = extractor
        self.schema = schema
        self.failure = failure

    async def run(self, ctx: RunContext, prompt: str, extraction_request: str, step_name: str) -> tuple[str, BaseModel]:
        """
        Run both phases.

        Args:
            ctx: Run context
            prompt: Reasoning prompt
            extraction_request: Instruction placed before the prose for the extractor
            step_name: Base label, e.g. "Step 2"

        Returns:
            (prose, extracted object)

        Raises:
            PipelineError subclass given as `failure`
        """
        try:
            reasoning = await run_agent(ctx, self.llm, self.reasoner, prompt, f"{step_name}a")
        except LLMCallFailed as e:
            raise self.failure(f"Reasoning call failed: {e}") from e

        prose = (reasoning.text or "").strip()
        if not prose:
            raise self.failure("Reasoning call returned no analysis")

        try:
            extraction = await run_agent(
                ctx,
                self.llm,
                self.extractor,
                f"{extraction_request}\n\n{prose}",
                f"{step_name}b",
                schema=self.schema
            )
        except SchemaValidationError as e:
            raise self.failure(f"Extraction validation failed: {e}") from e
        except LLMCallFailed as e:
            raise self.failure(f"Extraction call failed: {e}") from e

        return prose, extraction.object
