"""Tests for src/workflow/audit.py."""

from __future__ import annotations

import json

from src.core.config import AuditConfig
from src.core.models import RemediationRecord
from src.workflow.audit import AuditLog


class TestEvents:
    def test_emit_appends_jsonl(self, project_dir):
        audit = AuditLog(project_dir)
        audit.emit_event("task_started", {"task_id": "t1"})
        audit.emit_event("task_failed", {"task_id": "t1", "path": project_dir})

        lines = audit.events_path.read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["event_type"] == "task_started"
        assert first["payload"] == {"task_id": "t1"}
        assert "timestamp" in first
        assert json.loads(lines[1])["payload"]["path"] == str(project_dir)
        assert audit.counters == {"task_started": 1, "task_failed": 1}

    def test_events_live_in_state_dir(self, project_dir):
        assert AuditLog(project_dir).events_path == project_dir / ".concord" / "events.jsonl"

    def test_read_events_filters(self, project_dir):
        audit = AuditLog(project_dir)
        assert audit.read_events() == []
        audit.emit_event("a", {})
        audit.emit_event("b", {})
        audit.emit_event("a", {"n": 2})
        assert [e["payload"] for e in audit.read_events("a")] == [{}, {"n": 2}]
        assert len(audit.read_events()) == 3


class TestWorkflowLog:
    def test_header_written_once(self, project_dir):
        audit = AuditLog(project_dir)
        audit.log("consensus", "Plan approved")
        audit.log("test", "3 passed", details="line one\nline two")

        text = audit.workflow_log_path.read_text()
        assert text.startswith("# Workflow Log\n")
        assert text.count("# Workflow Log") == 1
        assert "**[CONSENSUS]** Plan approved" in text
        assert "  line two" in text

    def test_custom_paths(self, project_dir):
        audit = AuditLog(project_dir, config=AuditConfig(docs_dir="audit", workflow_log="LOG.md"))
        audit.log("init", "hello")
        assert (project_dir / "audit" / "LOG.md").exists()


class TestRemediationDocs:
    def test_document_per_attempt(self, project_dir):
        audit = AuditLog(project_dir)
        record = RemediationRecord(
            attempt=2, analysis="Wrong import path", plan="1. Fix import",
            consensus_score=0.96, consensus_approved=True, outcome="success",
        )

        path = audit.write_remediation_doc("milestone-1", "milestone-1-task-1", record, "## Error Details\nboom")

        assert path == project_dir / "docs" / "remediation" / "milestone-1_milestone-1-task-1_remediation_2.md"
        text = path.read_text()
        assert text.startswith("# Remediation Attempt 2: milestone-1-task-1")
        assert "- Consensus: approved (96%)" in text
        assert "- Outcome: success" in text
        assert "Wrong import path" in text
        assert "## Failure Context\n\n## Error Details\nboom" in text

    def test_rewrite_replaces_document(self, project_dir):
        audit = AuditLog(project_dir)
        record = RemediationRecord(attempt=1)
        audit.write_remediation_doc("m", "t", record)
        record.outcome = "plan not approved"
        path = audit.write_remediation_doc("m", "t", record)
        text = path.read_text()
        assert "- Outcome: plan not approved" in text
        assert "- Consensus: not approved (n/a)" in text
        assert "Failure Context" not in text
