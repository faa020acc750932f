"""
Test run models — persisted outcome of one ProcessMapTestEngine run.

Models:
    - ProcessMapTestRun:     run-level status, result and step counters
    - ProcessMapStepResult:  per-step outcome, payloads, validation and logs
"""

from datetime import datetime, timezone

from processmap.models import db


# ── Constants ────────────────────────────────────────────────────────────

RUN_MODES = {"schema_validation", "mock", "production_readonly"}
RUN_STATUSES = {"pending", "running", "completed", "failed", "cancelled"}
RUN_RESULTS = {"pass", "fail", "partial", "error"}
STEP_STATUSES = {"pending", "running", "passed", "failed", "skipped"}


def _utcnow():
    return datetime.now(timezone.utc)


class ProcessMapTestRun(db.Model):
    """One execution of a process map workflow."""

    __tablename__ = "process_map_test_runs"

    id = db.Column(db.Integer, primary_key=True)
    run_key = db.Column(db.String(64), nullable=False, unique=True, index=True)
    process_map_id = db.Column(
        db.Integer, db.ForeignKey("process_maps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    org_id = db.Column(db.String(64), nullable=False)
    run_mode = db.Column(
        db.String(30), default="mock",
        comment="schema_validation | mock | production_readonly",
    )
    test_data = db.Column(db.JSON, default=dict)
    run_config = db.Column(db.JSON, default=dict)
    status = db.Column(
        db.String(20), default="pending",
        comment="pending | running | completed | failed | cancelled",
    )
    overall_result = db.Column(db.String(20), nullable=True, comment="pass | fail | partial | error")

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)

    steps_total = db.Column(db.Integer, default=0)
    steps_passed = db.Column(db.Integer, default=0)
    steps_failed = db.Column(db.Integer, default=0)
    steps_skipped = db.Column(db.Integer, default=0)

    error_message = db.Column(db.Text, nullable=True)
    error_details = db.Column(db.JSON, nullable=True)
    run_by = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    step_results = db.relationship(
        "ProcessMapStepResult", backref="test_run", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ProcessMapStepResult.sequence_number",
    )

    def to_dict(self, include_steps=False):
        result = {
            "id": self.id,
            "run_key": self.run_key,
            "process_map_id": self.process_map_id,
            "org_id": self.org_id,
            "run_mode": self.run_mode,
            "test_data": self.test_data or {},
            "run_config": self.run_config or {},
            "status": self.status,
            "overall_result": self.overall_result,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "steps_total": self.steps_total,
            "steps_passed": self.steps_passed,
            "steps_failed": self.steps_failed,
            "steps_skipped": self.steps_skipped,
            "error_message": self.error_message,
            "error_details": self.error_details,
            "run_by": self.run_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_steps:
            result["step_results"] = [s.to_dict() for s in self.step_results]
        return result

    def __repr__(self):
        return f"<ProcessMapTestRun {self.run_key}: {self.status}/{self.overall_result}>"


class ProcessMapStepResult(db.Model):
    """Outcome of one step inside a test run."""

    __tablename__ = "process_map_step_results"

    id = db.Column(db.Integer, primary_key=True)
    test_run_id = db.Column(
        db.Integer, db.ForeignKey("process_map_test_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(db.String(100), nullable=False)
    step_name = db.Column(db.String(200), default="")
    sequence_number = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.String(20), default="pending",
        comment="pending | running | passed | failed | skipped",
    )

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_ms = db.Column(db.Integer, default=0)

    input_data = db.Column(db.JSON, nullable=True)
    output_data = db.Column(db.JSON, nullable=True)
    expected_output = db.Column(db.JSON, nullable=True)
    validation_results = db.Column(db.JSON, default=list)

    error_message = db.Column(db.Text, nullable=True)
    error_details = db.Column(db.JSON, nullable=True)
    error_stack = db.Column(db.Text, nullable=True)

    was_mocked = db.Column(db.Boolean, default=False)
    mock_source = db.Column(db.String(50), nullable=True)
    logs = db.Column(db.JSON, default=list)

    def to_dict(self):
        return {
            "id": self.id,
            "test_run_id": self.test_run_id,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "sequence_number": self.sequence_number,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "expected_output": self.expected_output,
            "validation_results": self.validation_results or [],
            "error_message": self.error_message,
            "error_details": self.error_details,
            "was_mocked": bool(self.was_mocked),
            "mock_source": self.mock_source,
            "logs": self.logs or [],
        }

    def __repr__(self):
        return f"<ProcessMapStepResult {self.step_id}: {self.status}>"
