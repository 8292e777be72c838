"""Error taxonomy for the solver pipeline."""


class PipelineError(Exception):
    """
    Terminal failure of one pipeline stage.

    Carries the stage label and a human-readable reason; the driver turns it
    into the failure message returned to the caller.
    """
    stage = "Pipeline"

    def __init__(self, reason: str, stage: str | None = None):
        super().__init__(reason)
        self.reason = reason
        if stage:
            self.stage = stage

    @property
    def message(self) -> str:
        return f"[{self.stage} Step] {self.reason}"


class ExtractionFailed(PipelineError):
    """No usable dataset and questions could be identified."""
    stage = "Extract Structure"


class HypothesisFailed(PipelineError):
    """The initial rule hypothesis could not be produced."""
    stage = "Initial Hypothesis"


class ImprovementFailed(PipelineError):
    """The rule improver could not produce a revised rule set."""
    stage = "Improve Rules"


class AnswerFailed(PipelineError):
    """The questions could not be answered from the final rules."""
    stage = "Answer Questions"


class SchemaValidationError(Exception):
    """Model output did not satisfy the expected structure. Never retried."""

    def __init__(self, message: str, raw: str = "", errors: list[dict] | None = None):
        super().__init__(message)
        self.raw = raw
        self.errors = errors or []


class TransientLLMError(Exception):
    """Timeout, network reset, rate limit, server error or empty response."""
    pass


class LLMCallFailed(Exception):
    """Raised when a model call still fails after all retries."""
    pass
