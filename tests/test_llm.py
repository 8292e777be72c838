"""Tests for agents/llm.py - JSON extraction, validation and retry policy."""

import asyncio
from types import SimpleNamespace
import pytest
from agents.llm import LLMClient, extract_json, is_transient, parse_structured
from errors import LLMCallFailed, SchemaValidationError, TransientLLMError
from rosetta.schema import RuleStatus, RuleVerdict


class TestExtractJson:
    """Tests for extract_json()."""

    def test_plain_object(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_surrounding_text(self):
        """JSON embedded in prose is extracted."""
        assert extract_json('Here you go: {"a": {"b": 2}} done.') == {"a": {"b": 2}}

    def test_code_fence(self):
        """JSON in a markdown code block is extracted."""
        assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_no_object(self):
        """Text without braces raises ValueError."""
        with pytest.raises(ValueError):
            extract_json("no json here")


class TestParseStructured:
    """Tests for parse_structured()."""

    def test_valid(self):
        v = parse_structured('{"status": "RULE_OK", "reasoning": "fine"}', RuleVerdict)
        assert v.status == RuleStatus.OK

    def test_invalid_json(self):
        """Malformed JSON is a validation error, with the raw text kept."""
        with pytest.raises(SchemaValidationError) as exc:
            parse_structured("{not json", RuleVerdict)
        assert exc.value.raw == "{not json"

    def test_schema_mismatch_lists_errors(self):
        """Schema violations carry per-field error details."""
        with pytest.raises(SchemaValidationError) as exc:
            parse_structured('{"status": "MAYBE"}', RuleVerdict)
        assert exc.value.errors
        assert exc.value.errors[0]["loc"] == ("status",)


class TestIsTransient:
    """Tests for retry classification."""

    def test_timeout_is_transient(self):
        assert is_transient(asyncio.TimeoutError())

    def test_empty_response_is_transient(self):
        assert is_transient(TransientLLMError("Empty response from model"))

    def test_other_errors_not_transient(self):
        assert not is_transient(ValueError("bad request"))


@pytest.fixture
def client():
    """Client with no backoff and no rate limiting delay."""
    return LLMClient(api_key="test", requests_per_minute=600000, retry_delay=0.0, max_retries=2)


class TestRetry:
    """Tests for LLMClient.generate() retry behaviour."""

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, client):
        """Two transient failures, then a valid reply."""
        attempts = []

        async def fake_complete(messages, model):
            attempts.append(model)
            if len(attempts) < 3:
                raise TransientLLMError("Empty response from model")
            return '{"status": "RULE_OK"}', "checked every item"

        client._complete = fake_complete
        generation = await client.generate("test", schema=RuleVerdict)
        assert len(attempts) == 3
        assert generation.object.status == RuleStatus.OK
        assert generation.reasoning == "checked every item"

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, client):
        """Persistent transient failures end in LLMCallFailed."""
        attempts = []

        async def fake_complete(messages, model):
            attempts.append(1)
            raise TransientLLMError("Empty response from model")

        client._complete = fake_complete
        with pytest.raises(LLMCallFailed):
            await client.generate("test")
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self, client):
        """A non-transient error fails on the first attempt."""
        attempts = []

        async def fake_complete(messages, model):
            attempts.append(1)
            raise ValueError("bad request")

        client._complete = fake_complete
        with pytest.raises(LLMCallFailed):
            await client.generate("test")
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_schema_error_not_retried(self, client):
        """Invalid output raises SchemaValidationError after one call."""
        attempts = []

        async def fake_complete(messages, model):
            attempts.append(1)
            return "I cannot answer that", None

        client._complete = fake_complete
        with pytest.raises(SchemaValidationError):
            await client.generate("test", schema=RuleVerdict)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, client):
        """An attempt exceeding the timeout counts as transient."""
        client.max_retries = 0

        async def slow_complete(messages, model):
            await asyncio.sleep(1)
            return "{}", None

        client._complete = slow_complete
        with pytest.raises(LLMCallFailed):
            await client.generate("test", timeout=0.01)

    @pytest.mark.asyncio
    async def test_schema_instructions_appended(self, client):
        """Structured calls append the JSON schema to the prompt."""
        seen = []

        async def fake_complete(messages, model):
            seen.append(messages)
            return '{"status": "RULE_OK"}', None

        client._complete = fake_complete
        await client.generate("test rule", schema=RuleVerdict, system="be strict")
        assert seen[0][0] == {"role": "system", "content": "be strict"}
        assert "JSON schema" in seen[0][1]["content"]


class TestCost:
    """Tests for LLMClient._calc_cost()."""

    def test_known_model(self, client):
        usage = SimpleNamespace(prompt_tokens=1_000_000, completion_tokens=1_000_000)
        assert client._calc_cost("openai/gpt-oss-20b", usage) == pytest.approx(0.17)

    def test_unknown_model_is_free(self, client):
        usage = SimpleNamespace(prompt_tokens=1000, completion_tokens=1000)
        assert client._calc_cost("some/other-model", usage) == 0.0

    def test_no_usage(self, client):
        assert client._calc_cost("openai/gpt-oss-20b", None) == 0.0
