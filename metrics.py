"""Step timings and run counters."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import time


def format_clock(dt: datetime) -> str:
    """HH:MM:SS in UTC."""
    return dt.astimezone(timezone.utc).strftime("%H:%M:%S")


@dataclass
class StepTiming:
    """Wall-clock duration of one agent call within a step."""
    step_name: str
    agent_name: str
    end_time: str  # HH:MM:SS
    duration_ms: int

    @property
    def duration_minutes(self) -> float:
        return round(self.duration_ms / 60000, 2)


@dataclass
class RunMetrics:
    """
    Per-run timings and counters.

    One instance per pipeline run; nothing here is shared between runs.
    """
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    timings: list[StepTiming] = field(default_factory=list)
    verification_passes: int = field(default=0, init=False)
    rule_tests: int = field(default=0, init=False)
    sentence_tests: int = field(default=0, init=False)
    failed_tests: int = field(default=0, init=False)
    retried_tests: int = field(default=0, init=False)

    def record(self, step_name: str, agent_name: str, started: float) -> StepTiming:
        """
        Record the timing of an agent call.

        Args:
            step_name: e.g. "Step 3a (Iter 2)"
            agent_name: Human-readable agent name
            started: time.monotonic() value taken before the call

        Returns:
            The recorded StepTiming
        """
        timing = StepTiming(
            step_name=step_name,
            agent_name=agent_name,
            end_time=format_clock(datetime.now(timezone.utc)),
            duration_ms=int((time.monotonic() - started) * 1000)
        )
        self.timings.append(timing)
        return timing

    def total_minutes(self) -> float:
        elapsed = datetime.now(timezone.utc) - self.started_at
        return round(elapsed.total_seconds() / 60, 2)

    def summary(self) -> str:
        """One-line summary for logging."""
        return (
            f"passes={self.verification_passes} | "
            f"rule_tests={self.rule_tests} | "
            f"sentence_tests={self.sentence_tests} | "
            f"failed_tests={self.failed_tests} | "
            f"retries={self.retried_tests} | "
            f"elapsed={self.total_minutes()}min"
        )

    def save(self, path: str) -> None:
        """
        Save timings and counters to a JSON file.

        Args:
            path: File path for JSON output
        """
        with open(path, "w") as f:
            json.dump({
                "started_at": self.started_at.isoformat(),
                "verification_passes": self.verification_passes,
                "rule_tests": self.rule_tests,
                "sentence_tests": self.sentence_tests,
                "failed_tests": self.failed_tests,
                "retried_tests": self.retried_tests,
                "timings": [
                    {
                        "step": t.step_name,
                        "agent": t.agent_name,
                        "end_time": t.end_time,
                        "duration_ms": t.duration_ms
                    }
                    for t in self.timings
                ]
            }, f, indent=2)
