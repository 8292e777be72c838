"""Explicit per-run and per-pass context objects passed to steps and verifiers."""

import uuid
from dataclasses import dataclass, field
from config import Settings
from events import EventLog, VOCABULARY_UPDATE
from guardrails import Guards
from metrics import RunMetrics
from rosetta.schema import Rule, StructuredProblem, VocabularyEntry
from rosetta.store import VocabularyStore
from run_log import ExecutionLog, log_file_path


@dataclass
class RunContext:
    """
    Everything one pipeline run owns: vocabulary, events, log, timings, guards.

    Created fresh per run so concurrent runs never share logs or timings.
    """
    settings: Settings
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    events: EventLog = field(default_factory=EventLog)
    metrics: RunMetrics = field(default_factory=RunMetrics)
    log: ExecutionLog | None = None
    guards: Guards | None = None
    vocabulary: VocabularyStore | None = None
    step_id: str = "pipeline"

    def __post_init__(self):
        if self.log is None:
            self.log = ExecutionLog(None)
        if self.guards is None:
            self.guards = Guards(max_cost=self.settings.max_cost)
        if self.vocabulary is None:
            self.vocabulary = VocabularyStore(on_change=self._vocabulary_changed)

    @classmethod
    def create(cls, settings: Settings, write_log: bool = True, **kwargs) -> "RunContext":
        """
        Build a context with a timestamped execution log under settings.log_directory.

        Args:
            settings: Run settings
            write_log: False to skip the Markdown log file
            **kwargs: Overrides for any other field
        """
        ctx = cls(settings=settings, **kwargs)
        if write_log:
            ctx.log = ExecutionLog(log_file_path(settings.log_directory, ctx.run_id))
        ctx.log.initialize(ctx.metrics.started_at)
        return ctx

    def _vocabulary_changed(self, action: str, entries: list[VocabularyEntry], total: int):
        self.log.vocabulary_change(action, entries)
        self.events.emit(
            VOCABULARY_UPDATE,
            self.step_id,
            action=action,
            entries=[
                {"foreignForm": e.foreign_form, "meaning": e.meaning, "type": e.type}
                for e in entries
            ],
            totalCount=total
        )


@dataclass(frozen=True)
class VerificationContext:
    """
    Read-only inputs shared by every verifier call in one pass.

    Snapshots are taken when the pass starts; verifiers never see later writes.
    """
    problem: StructuredProblem
    rules: tuple[Rule, ...]
    vocabulary: tuple[VocabularyEntry, ...]
    iteration: int
    run: RunContext
