"""Audit trail for workflow runs.

Three durable records, all append-only:
- ``<state dir>/events.jsonl``: one JSON event per line
- ``docs/WORKFLOW_LOG.md``: human-readable, stage-tagged log
- ``docs/remediation/<milestone>_<task>_remediation_<n>.md``: one document
  per remediation attempt
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from src.core.config import AuditConfig, StateConfig
from src.core.models import RemediationRecord


@dataclass
class AuditLog:
    """Writes JSONL events, the markdown workflow log and remediation docs."""

    project_dir: Path
    config: AuditConfig = field(default_factory=AuditConfig)
    state_config: StateConfig = field(default_factory=StateConfig)
    counters: dict[str, int] = field(default_factory=dict)

    @property
    def events_path(self) -> Path:
        return self.project_dir / self.state_config.dir_name / self.config.events_file

    @property
    def docs_dir(self) -> Path:
        return self.project_dir / self.config.docs_dir

    @property
    def workflow_log_path(self) -> Path:
        return self.docs_dir / self.config.workflow_log

    def emit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        self.counters[event_type] = self.counters.get(event_type, 0) + 1
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def log(self, stage: str, message: str, details: Optional[str] = None) -> None:
        """Append one ``[STAGE]`` entry to the workflow log."""
        stamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        lines = [f"- {stamp} **[{stage.upper()}]** {message}"]
        if details:
            lines += ["", "  ```", *(f"  {line}" for line in details.strip().splitlines()), "  ```"]
        self.workflow_log_path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.workflow_log_path.exists()
        with self.workflow_log_path.open("a", encoding="utf-8") as handle:
            if new_file:
                handle.write("# Workflow Log\n\n")
            handle.write("\n".join(lines) + "\n")

    def read_events(self, event_type: Optional[str] = None) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events = []
        for line in self.events_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            record = json.loads(line)
            if event_type is None or record.get("event_type") == event_type:
                events.append(record)
        return events

    def write_remediation_doc(
        self,
        milestone_id: str,
        task_id: str,
        record: RemediationRecord,
        failure_context: str = "",
    ) -> Path:
        """Write the per-attempt remediation document and return its path."""
        path = (
            self.docs_dir / "remediation"
            / f"{milestone_id}_{task_id}_remediation_{record.attempt}.md"
        )
        score = "n/a" if record.consensus_score is None else f"{record.consensus_score:.0%}"
        sections = [
            f"# Remediation Attempt {record.attempt}: {task_id}",
            "",
            f"- Milestone: {milestone_id}",
            f"- Timestamp: {record.timestamp.isoformat()}",
            f"- Consensus: {'approved' if record.consensus_approved else 'not approved'} ({score})",
            f"- Outcome: {record.outcome or 'pending'}",
            "",
            "## Root Cause Analysis",
            "",
            record.analysis.strip() or "(none)",
            "",
            "## Fix Plan",
            "",
            record.plan.strip() or "(none)",
        ]
        if failure_context.strip():
            sections += ["", "## Failure Context", "", failure_context.strip()]
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(sections) + "\n", encoding="utf-8")
        return path
