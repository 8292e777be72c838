"""Human-readable Markdown execution log, one file per run."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from pydantic import BaseModel, ValidationError
from metrics import StepTiming, format_clock

log = logging.getLogger(__name__)


def log_file_path(directory: str | Path, run_id: str) -> Path:
    """Timestamped log path, unique per run."""
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
    return Path(directory) / f"workflow-03_{stamp}_{run_id}.md"


def _to_jsonable(output):
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json", by_alias=True)
    if isinstance(output, (list, tuple)):
        return [_to_jsonable(o) for o in output]
    if isinstance(output, dict):
        return {k: _to_jsonable(v) for k, v in output.items()}
    return output


class ExecutionLog:
    """
    Append-only diagnostic log. Never read back by the pipeline.

    With `path=None` every call is a no-op, which keeps tests and embedded
    runs free of file output.
    """

    def __init__(self, path: str | Path | None):
        self.path = Path(path) if path else None

    def initialize(self, started_at: datetime) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            f"# Workflow Execution Log\n\n_Generated: {started_at.isoformat()}_\n\n---\n\n",
            encoding="utf-8"
        )
        log.info(f"Execution log: {self.path}")

    def _append(self, content: str) -> None:
        if not self.path:
            return
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(content)

    def agent_output(self, step_name: str, agent_name: str, output, reasoning: str | None = None) -> None:
        """
        Log one agent's reasoning and output.

        Args:
            step_name: Section title
            agent_name: Agent that produced the output
            output: Pydantic model, dict, list or string
            reasoning: Reasoning trace, if the model returned one
        """
        content = f"## {step_name}\n\n**Agent:** {agent_name}\n\n"
        content += f"### Reasoning\n\n{reasoning or '(Reasoning not provided.)'}\n\n"
        if isinstance(output, str):
            content += f"### Output\n\n{output}\n\n---\n\n"
        else:
            body = json.dumps(_to_jsonable(output), indent=2, ensure_ascii=False)
            content += f"### Output\n\n```json\n{body}\n```\n\n---\n\n"
        self._append(content)

    def validation_error(self, step_name: str, error: Exception) -> None:
        issues = ""
        errors = getattr(error, "errors", None)
        if isinstance(error, ValidationError):
            errors = error.errors()
        if isinstance(errors, list) and errors:
            issues = "\n**Issues:**\n" + "\n".join(
                f"- **{'.'.join(str(p) for p in e.get('loc', ()))}**: {e.get('msg', '')}"
                for e in errors
            ) + "\n"
        self._append(f"## Validation Error: {step_name}\n\n```\n{error}\n```\n{issues}\n---\n\n")

    def failure(self, message: str) -> None:
        self._append(f"## Run Failed\n\n{message}\n\n---\n\n")

    def vocabulary_change(self, action: str, entries: list) -> None:
        if not entries:
            return
        if action in ("add", "update"):
            title = "Added" if action == "add" else "Updated"
            lines = "\n".join(f"  {e.meaning} → {e.foreign_form}" for e in entries)
            self._append(f"### Vocabulary {title} ({len(entries)} entries)\n\n{lines}\n\n")
        elif action == "remove":
            lines = "\n".join(f"  - {e.foreign_form}" for e in entries)
            self._append(f"### Vocabulary Removed ({len(entries)} entries)\n\n{lines}\n\n")
        elif action == "clear":
            self._append(f"### Vocabulary Cleared ({len(entries)} entries)\n\n")

    def rule_test(self, title: str, status: str) -> None:
        self._append(f'[RULE] "{title}": {status}\n')

    def sentence_test(self, test_id: str, status: str) -> None:
        self._append(f"[SENTENCE] {test_id}: {status}\n")

    def summary(self, started_at: datetime, timings: list[StepTiming]) -> None:
        """Append the final per-step timing table."""
        end = datetime.now(timezone.utc)
        total = round((end - started_at).total_seconds() / 60, 2)
        content = "## Workflow Timing Summary\n\n"
        content += f"**Start Time:** {format_clock(started_at)}\n"
        content += f"**End Time:** {format_clock(end)}\n"
        content += f"**Total Duration:** {total} minutes\n\n"
        content += "### Step Timings\n\n"
        content += "| Step | Agent | Finished At | Duration (min) |\n"
        content += "|------|-------|-------------|----------------|\n"
        for t in timings:
            content += f"| {t.step_name} | {t.agent_name} | {t.end_time} | {t.duration_minutes} |\n"
        content += "\n---\n"
        self._append(content)
