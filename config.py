"""Runtime settings for the solver, read from the environment."""

import os
from dataclasses import dataclass, field

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-oss-20b"

# Roles that can be pointed at a different model via LLM_MODEL_<ROLE>
ROLES = (
    "extractor",
    "hypothesizer",
    "rule_tester",
    "sentence_tester",
    "synthesizer",
    "improver",
    "answerer",
)


def _env_bool(value: str | None, default: bool | None, allow_auto: bool = False) -> bool | None:
    if value is None or value.strip() == "":
        return default
    value = value.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    if value == "auto" and allow_auto:
        return None
    raise ValueError(f"Not a boolean setting: {value!r}")


@dataclass
class Settings:
    """
    All tunables of a solver run.

    Defaults mirror the policy values of the verify-improve workflow:
    four improvement rounds, a ten minute model timeout and two retries.
    """
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    role_models: dict[str, str] = field(default_factory=dict)

    max_iterations: int = 4
    max_concurrent: int = 8
    timeout: float = 600.0
    max_retries: int = 2
    retry_delay: float = 5.0

    log_directory: str = "./logs"
    major_issue_fraction: float = 0.5
    bidirectional: bool | None = None
    synthesize_feedback: bool = True
    max_cost: float = 5.0

    def __post_init__(self):
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if not 0.0 < self.major_issue_fraction <= 1.0:
            raise ValueError("major_issue_fraction must be in (0, 1]")

    def model_for(self, role: str) -> str:
        """Model name for an agent role, falling back to the default model."""
        return self.role_models.get(role, self.model)

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Settings with every unset variable at its default
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        role_models = {}
        for role in ROLES:
            name = env.get(f"LLM_MODEL_{role.upper()}")
            if name:
                role_models[role] = name

        return cls(
            api_key=env.get("OPENROUTER_API_KEY") or None,
            base_url=env.get("LLM_BASE_URL", defaults.base_url),
            model=env.get("LLM_MODEL", defaults.model),
            role_models=role_models,
            max_iterations=int(env.get("MAX_ITERATIONS", defaults.max_iterations)),
            max_concurrent=int(env.get("MAX_CONCURRENT", defaults.max_concurrent)),
            timeout=float(env.get("LLM_TIMEOUT", defaults.timeout)),
            max_retries=int(env.get("LLM_MAX_RETRIES", defaults.max_retries)),
            retry_delay=float(env.get("LLM_RETRY_DELAY", defaults.retry_delay)),
            log_directory=env.get("LOG_DIRECTORY", defaults.log_directory),
            major_issue_fraction=float(
                env.get("MAJOR_ISSUE_FRACTION", defaults.major_issue_fraction)
            ),
            bidirectional=_env_bool(env.get("BIDIRECTIONAL"), defaults.bidirectional, allow_auto=True),
            synthesize_feedback=_env_bool(env.get("SYNTHESIZE_FEEDBACK"), defaults.synthesize_feedback),
            max_cost=float(env.get("MAX_COST", defaults.max_cost)),
        )
