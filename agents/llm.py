"""LLM client for OpenRouter with timeout, retry, schema validation and cost tracking."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
import openai
from pydantic import BaseModel, ValidationError
from config import DEFAULT_BASE_URL, DEFAULT_MODEL
from errors import LLMCallFailed, SchemaValidationError, TransientLLMError

log = logging.getLogger(__name__)

# Model pricing per 1M tokens (input, output)
MODEL_PRICING = {
    "openai/gpt-oss-20b": (0.03, 0.14),
    "openai/gpt-5-mini": (0.25, 2.00),
    "google/gemini-3-flash-preview": (0.50, 3.00),
    "google/gemini-3-pro-preview": (2.00, 12.00),
}

# OpenRouter rate limits (paid models with credits)
DEFAULT_RPM = 200

TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    asyncio.TimeoutError,
    TransientLLMError,
)


def is_transient(error: BaseException) -> bool:
    """Timeouts, network resets, rate limits, 5xx and empty responses are retryable."""
    if isinstance(error, TRANSIENT_ERRORS):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code >= 500
    return False


def extract_json(text: str) -> Any:
    """
    Find the outermost JSON object in a model response.

    Tolerates surrounding prose and markdown code fences.

    Raises:
        ValueError: If no JSON object can be decoded
    """
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise ValueError("No JSON object found in response")
    return json.loads(text[start:end])


def schema_instructions(schema: type[BaseModel]) -> str:
    """Prompt suffix asking for JSON matching a pydantic schema."""
    return (
        "Respond with a single JSON object that matches this JSON schema. "
        "Output only the JSON.\n\n"
        f"{json.dumps(schema.model_json_schema(by_alias=True), indent=2)}"
    )


@dataclass
class Generation:
    """Result of one model call."""
    text: str
    object: BaseModel | None = None
    reasoning: str | None = None
    model: str = ""


class RateLimiter:
    """Simple rate limiter using token bucket algorithm."""

    def __init__(self, requests_per_minute: int = DEFAULT_RPM):
        self.min_interval = 60.0 / requests_per_minute
        self.last_request = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until we can make another request."""
        async with self._lock:
            now = time.monotonic()
            wait_time = self.last_request + self.min_interval - now
            if wait_time > 0:
                await asyncio.sleep(wait_time)
            self.last_request = time.monotonic()


class LLMClient:
    """
    Async LLM client for OpenRouter with OpenAI-compatible API.

    Features:
    - Per-call timeout
    - Exponential backoff on transient failures only
    - Structured output validated against pydantic schemas
    - Cost tracking via callback
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        on_cost: Callable[[float], None] | None = None,
        requests_per_minute: int = DEFAULT_RPM,
        timeout: float = 600.0,
        max_retries: int = 2,
        retry_delay: float = 5.0
    ):
        """
        Initialize LLM client.

        Args:
            api_key: API key (OpenRouter or other provider)
            model: Default model name
            base_url: API base URL
            on_cost: Callback invoked with cost after each request
            requests_per_minute: Rate limit
            timeout: Seconds before a single attempt is abandoned
            max_retries: Extra attempts after the first, for transient errors
            retry_delay: First backoff delay in seconds, doubled per attempt
        """
        self.client = openai.AsyncOpenAI(
            base_url=base_url,
            api_key=api_key
        )
        self.model = model
        self.on_cost = on_cost
        self.rate_limiter = RateLimiter(requests_per_minute)
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def generate(
        self,
        prompt: str,
        schema: type[BaseModel] | None = None,
        system: str | None = None,
        model: str | None = None,
        timeout: float | None = None
    ) -> Generation:
        """
        Run one prompt, optionally parsing the reply into `schema`.

        Args:
            prompt: User message
            schema: Pydantic model the reply must satisfy (None for free text)
            system: System instructions
            model: Model override for this call
            timeout: Per-attempt timeout override

        Returns:
            Generation with text, parsed object and reasoning trace

        Raises:
            SchemaValidationError: Reply is not valid JSON for `schema` (not retried)
            LLMCallFailed: Retries exhausted or a non-transient API error
        """
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        content = f"{prompt}\n\n{schema_instructions(schema)}" if schema else prompt
        messages.append({"role": "user", "content": content})

        model = model or self.model
        text, reasoning = await self._complete_with_retry(messages, model, timeout or self.timeout)

        generation = Generation(text=text, reasoning=reasoning, model=model)
        if schema is not None:
            generation.object = parse_structured(text, schema)
        return generation

    async def _complete_with_retry(self, messages: list[dict], model: str, timeout: float) -> tuple[str, str | None]:
        for attempt in range(self.max_retries + 1):
            try:
                await self.rate_limiter.acquire()
                return await asyncio.wait_for(self._complete(messages, model), timeout)

            except Exception as e:
                if not is_transient(e):
                    raise LLMCallFailed(f"{type(e).__name__}: {e}") from e
                if attempt == self.max_retries:
                    raise LLMCallFailed(
                        f"LLM call failed after {attempt + 1} attempts: {type(e).__name__}: {e}"
                    ) from e

                wait = self.retry_delay * (2 ** attempt)
                log.warning(
                    f"Attempt {attempt + 1} failed: {type(e).__name__}: {e}. "
                    f"Retrying in {wait:.0f}s ({self.max_retries - attempt} retries remaining)"
                )
                await asyncio.sleep(wait)

        raise LLMCallFailed("LLM call failed after retries")

    async def _complete(self, messages: list[dict], model: str) -> tuple[str, str | None]:
        resp = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.0
        )

        cost = self._calc_cost(model, resp.usage)
        if self.on_cost:
            self.on_cost(cost)

        if not resp.choices or not resp.choices[0].message.content:
            raise TransientLLMError("Empty response from model")

        message = resp.choices[0].message
        reasoning = getattr(message, "reasoning", None)
        return message.content, reasoning if isinstance(reasoning, str) else None

    def _calc_cost(self, model: str, usage) -> float:
        """
        Calculate cost based on model pricing.

        Returns 0 for unknown models, otherwise uses MODEL_PRICING table.
        """
        if usage is None:
            return 0.0

        pricing = MODEL_PRICING.get(model, (0.0, 0.0))
        input_cost = (usage.prompt_tokens * pricing[0]) / 1_000_000
        output_cost = (usage.completion_tokens * pricing[1]) / 1_000_000
        return input_cost + output_cost


def parse_structured(text: str, schema: type[BaseModel]) -> BaseModel:
    """
    Parse a model reply into `schema`.

    Raises:
        SchemaValidationError: On missing/invalid JSON or schema mismatch
    """
    try:
        data = extract_json(text)
    except ValueError as e:
        raise SchemaValidationError(f"Invalid JSON: {e}", raw=text) from e

    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise SchemaValidationError(
            f"{schema.__name__} validation failed: {e.error_count()} error(s)",
            raw=text,
            errors=[
                {"loc": err["loc"], "msg": err["msg"]} for err in e.errors()
            ]
        ) from e
