"""Typed schemas for problems, rules, vocabulary, verdicts and answers.

Field names are snake_case in Python and camelCase on the wire, matching the
JSON the models are asked to produce.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MAX_TOP_RECOMMENDATIONS = 5
SUGGESTIONS_PER_SENTENCE = 3


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Serialize with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return {"HIGH": 0, "MEDIUM": 1, "LOW": 2}[self.value]


# Problem

class DatasetItem(CamelModel):
    """
    One paired example. Besides `id` the fields are free-form and named after
    the languages involved (e.g. "english", "foreignForm").
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    id: str

    @model_validator(mode="before")
    @classmethod
    def _stringify(cls, data):
        if isinstance(data, dict):
            return {k: v if isinstance(v, str) or v is None else str(v) for k, v in data.items()}
        return data

    @model_validator(mode="after")
    def _fields_are_strings(self):
        for key, value in (self.model_extra or {}).items():
            if not isinstance(value, str):
                raise ValueError(f"dataset field {key!r} must be a string")
        return self

    def fields(self) -> dict[str, str]:
        """Language fields of the item, excluding the id."""
        return dict(self.model_extra or {})


class Question(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    input: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v):
        return str(v)


class StructuredProblem(CamelModel):
    """Extracted problem. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    context: str = ""
    dataset: tuple[DatasetItem, ...]
    questions: tuple[Question, ...]


class ExtractionResult(CamelModel):
    success: bool
    explanation: str = ""
    data: StructuredProblem | None = None


# Rules and vocabulary

class Rule(CamelModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str
    confidence: Confidence = Confidence.MEDIUM


def unique_rule_titles(rules: list[Rule] | None) -> list[Rule] | None:
    """
    Suffix repeated rule titles with " (2)", " (3)", ...

    Verdicts, errant lists and the highlighted rule under test are keyed by
    title, so every rule in a set needs a distinct one.
    """
    if rules is None:
        return None
    seen: set[str] = set()
    unique = []
    for rule in rules:
        title, n = rule.title, 1
        while title in seen:
            n += 1
            title = f"{rule.title} ({n})"
        seen.add(title)
        unique.append(rule if title == rule.title else rule.model_copy(update={"title": title}))
    return unique


class VocabularyEntry(CamelModel):
    """A morpheme or word; `foreign_form` is the unique key."""
    model_config = ConfigDict(frozen=True)

    foreign_form: str = Field(min_length=1)
    meaning: str
    type: str = ""
    notes: str = ""


class VocabularyChanges(CamelModel):
    clear: bool = False
    add: list[VocabularyEntry] = Field(default_factory=list)
    update: list[VocabularyEntry] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class HypothesisExtraction(CamelModel):
    """Rules and initial vocabulary parsed out of the hypothesizer's prose."""
    success: bool
    explanation: str = ""
    rules: list[Rule] | None = None
    vocabulary: list[VocabularyEntry] = Field(default_factory=list)

    @field_validator("rules")
    @classmethod
    def _unique_titles(cls, v: list[Rule] | None) -> list[Rule] | None:
        return unique_rule_titles(v)


class ImprovementExtraction(CamelModel):
    """Revised rules and vocabulary edits parsed out of the improver's prose."""
    success: bool
    explanation: str = ""
    rules: list[Rule] | None = None
    vocabulary_changes: VocabularyChanges = Field(default_factory=VocabularyChanges)

    @field_validator("rules")
    @classmethod
    def _unique_titles(cls, v: list[Rule] | None) -> list[Rule] | None:
        return unique_rule_titles(v)


# Verdicts

class RuleStatus(str, Enum):
    OK = "RULE_OK"
    WRONG = "RULE_WRONG"
    INCONSISTENT = "RULE_INCONSISTENT"
    UNCLEAR = "RULE_UNCLEAR"
    NEEDS_UPDATE = "RULE_NEEDS_UPDATE"
    NEW_NEEDED = "RULE_NEW_NEEDED"


class RuleVerdict(CamelModel):
    status: RuleStatus
    reasoning: str = ""
    recommendation: str = ""


class Suggestion(CamelModel):
    suggestion: str
    likelihood: Confidence
    reasoning: str = ""


class SentenceStatus(str, Enum):
    OK = "SENTENCE_OK"
    AMBIGUOUS = "SENTENCE_AMBIGUOUS"
    UNTRANSLATABLE = "SENTENCE_UNTRANSLATABLE"


class SentenceVerdict(CamelModel):
    can_translate: bool
    translation: str = ""
    ambiguities: list[str] = Field(default_factory=list)
    suggestions: list[Suggestion] = Field(default_factory=list)
    overall_status: SentenceStatus
    # Filled in after translation by comparing with the dataset, never by the model
    matches_expected: bool | None = None

    @model_validator(mode="after")
    def _three_suggestions(self):
        if self.overall_status != SentenceStatus.OK and len(self.suggestions) != SUGGESTIONS_PER_SENTENCE:
            raise ValueError(
                f"expected exactly {SUGGESTIONS_PER_SENTENCE} suggestions for "
                f"{self.overall_status.value}, got {len(self.suggestions)}"
            )
        return self

    @property
    def is_ok(self) -> bool:
        return self.overall_status == SentenceStatus.OK

    def ranked_suggestions(self) -> list[Suggestion]:
        """Suggestions ordered HIGH to LOW, stable within a likelihood."""
        return sorted(self.suggestions, key=lambda s: s.likelihood.rank)


# Aggregated feedback

class Issue(CamelModel):
    title: str
    description: str
    recommendation: str = ""


class MissingRule(CamelModel):
    pattern: str
    suggested_rule: str
    evidence: list[str] = Field(default_factory=list)


class Conclusion(str, Enum):
    ALL_PASS = "ALL_RULES_PASS"
    NEEDS_IMPROVEMENT = "NEEDS_IMPROVEMENT"
    MAJOR_ISSUES = "MAJOR_ISSUES"


class FailedTest(CamelModel):
    """A verifier call that errored even after its retry."""

    kind: str  # "rule" or "sentence"
    target: str
    error: str


class VerifierFeedback(CamelModel):
    full_explanation: str = ""
    rules_tested_count: int = 0
    errant_rules: list[str] = Field(default_factory=list)
    sentences_tested_count: int = 0
    errant_sentences: list[str] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    missing_rules: list[MissingRule] = Field(default_factory=list)
    top_recommendations: list[str] = Field(default_factory=list)
    conclusion: Conclusion
    failed_tests: list[FailedTest] = Field(default_factory=list)

    @field_validator("top_recommendations")
    @classmethod
    def _cap_recommendations(cls, v: list[str]) -> list[str]:
        return v[:MAX_TOP_RECOMMENDATIONS]

    @property
    def coverage_complete(self) -> bool:
        return not self.failed_tests


class FeedbackSynthesis(CamelModel):
    """Model-written clustering of one verification pass."""
    full_explanation: str
    issues: list[Issue] = Field(default_factory=list)
    missing_rules: list[MissingRule] = Field(default_factory=list)
    top_recommendations: list[str] = Field(default_factory=list)
    major_issues: bool = False

    @field_validator("top_recommendations")
    @classmethod
    def _cap_recommendations(cls, v: list[str]) -> list[str]:
        return v[:MAX_TOP_RECOMMENDATIONS]


# Answers

class Answer(CamelModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    answer: str
    working_steps: str = ""
    confidence: Confidence
    confidence_reasoning: str = ""


class AnswersResult(CamelModel):
    success: bool
    explanation: str = ""
    answers: list[Answer] | None = None
