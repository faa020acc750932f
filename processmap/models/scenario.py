"""
Scenario & coverage models — generated test cases for a process map.

Models:
    - TestScenario:      one generated test case (a path, or a path plus an
                         injected integration failure)
    - CoverageSnapshot:  point-in-time coverage report for a process map
    - ScenarioRun:       one execution of a scenario and whether it matched
                         its expectation

Chain: ProcessMap → TestScenario → ScenarioRun
"""

from datetime import datetime, timezone

from processmap.models import db


# ── Constants ────────────────────────────────────────────────────────────

SCENARIO_TYPES = ("happy_path", "branch_path", "failure_mode")
EXPECTED_RESULTS = {"pass", "fail"}


def _utcnow():
    return datetime.now(timezone.utc)


class TestScenario(db.Model):
    """
    Auto-generated test scenario.

    ``path`` is a ScenarioPath: {"step_ids": [...], "path_hash": "...",
    "branch_choices": [{"from": ..., "to": ..., "label": ...}]}.
    ``mock_overrides`` lists mocks injected for this scenario only:
    [{"integration", "mock_type", "step_id", "error_response"}].
    """

    __tablename__ = "process_map_test_scenarios"
    # Not a pytest test class despite the name
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    process_map_id = db.Column(
        db.Integer, db.ForeignKey("process_maps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    org_id = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    scenario_type = db.Column(
        db.String(20), nullable=False,
        comment="happy_path | branch_path | failure_mode",
    )
    path = db.Column(db.JSON, nullable=False)
    mock_overrides = db.Column(db.JSON, default=list)
    expected_result = db.Column(db.String(10), default="pass", comment="pass | fail")
    expected_failure_step = db.Column(db.String(100), nullable=True)
    expected_failure_type = db.Column(db.String(20), nullable=True)
    priority = db.Column(db.Integer, default=0)
    tags = db.Column(db.JSON, default=list)
    last_run_result = db.Column(
        db.JSON, nullable=True,
        comment="{result, run_at, duration_ms, test_run_id}",
    )
    version = db.Column(db.Integer, default=1)
    process_structure_hash = db.Column(db.String(64), nullable=True)
    generated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    runs = db.relationship(
        "ScenarioRun", backref="scenario", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "process_map_id": self.process_map_id,
            "org_id": self.org_id,
            "name": self.name,
            "description": self.description or "",
            "scenario_type": self.scenario_type,
            "path": self.path,
            "mock_overrides": self.mock_overrides or [],
            "expected_result": self.expected_result,
            "expected_failure_step": self.expected_failure_step,
            "expected_failure_type": self.expected_failure_type,
            "priority": self.priority,
            "tags": self.tags or [],
            "last_run_result": self.last_run_result,
            "version": self.version,
            "process_structure_hash": self.process_structure_hash,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
        }

    def __repr__(self):
        return f"<TestScenario {self.id}: {self.scenario_type} {self.name}>"


class CoverageSnapshot(db.Model):
    """Coverage report persisted after scenario generation or a full run."""

    __tablename__ = "process_map_coverage_snapshots"

    id = db.Column(db.Integer, primary_key=True)
    process_map_id = db.Column(
        db.Integer, db.ForeignKey("process_maps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    org_id = db.Column(db.String(64), nullable=False)

    total_paths = db.Column(db.Integer, default=0)
    covered_paths = db.Column(db.Integer, default=0)
    path_coverage_percent = db.Column(db.Float, default=0.0)
    total_branches = db.Column(db.Integer, default=0)
    covered_branches = db.Column(db.Integer, default=0)
    branch_coverage_percent = db.Column(db.Float, default=0.0)
    failure_mode_coverage = db.Column(db.JSON, default=dict)
    integrations_with_full_coverage = db.Column(db.JSON, default=list)
    integrations_with_partial_coverage = db.Column(db.JSON, default=list)
    uncovered_paths = db.Column(db.JSON, default=list)
    overall_score = db.Column(db.Float, default=0.0)

    total_scenarios = db.Column(db.Integer, default=0)
    happy_path_scenarios = db.Column(db.Integer, default=0)
    branch_path_scenarios = db.Column(db.Integer, default=0)
    failure_mode_scenarios = db.Column(db.Integer, default=0)

    version = db.Column(db.Integer, default=1)
    process_structure_hash = db.Column(db.String(64), nullable=True)
    calculated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_coverage(self):
        """Coverage report shape, as produced by CoverageAnalyzer.analyze()."""
        return {
            "total_paths": self.total_paths,
            "covered_paths": self.covered_paths,
            "path_coverage_percent": self.path_coverage_percent,
            "total_branches": self.total_branches,
            "covered_branches": self.covered_branches,
            "branch_coverage_percent": self.branch_coverage_percent,
            "failure_mode_coverage": self.failure_mode_coverage or {},
            "integrations_with_full_coverage": self.integrations_with_full_coverage or [],
            "integrations_with_partial_coverage": self.integrations_with_partial_coverage or [],
            "uncovered_paths": self.uncovered_paths or [],
            "overall_score": self.overall_score,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }

    def to_dict(self):
        result = self.to_coverage()
        result.update({
            "snapshot_id": self.id,
            "process_map_id": self.process_map_id,
            "org_id": self.org_id,
            "total_scenarios": self.total_scenarios,
            "happy_path_scenarios": self.happy_path_scenarios,
            "branch_path_scenarios": self.branch_path_scenarios,
            "failure_mode_scenarios": self.failure_mode_scenarios,
            "process_structure_hash": self.process_structure_hash,
        })
        return result

    def __repr__(self):
        return f"<CoverageSnapshot {self.id}: score={self.overall_score}>"


class ScenarioRun(db.Model):
    """One execution of a TestScenario."""

    __tablename__ = "process_map_scenario_runs"

    id = db.Column(db.Integer, primary_key=True)
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("process_map_test_scenarios.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    test_run_id = db.Column(db.String(64), nullable=False)
    result = db.Column(db.String(10), nullable=False, comment="pass | fail | partial | error")
    matched_expectation = db.Column(db.Boolean, default=False)
    mismatch_details = db.Column(db.Text, nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)
    steps_executed = db.Column(db.Integer, default=0)
    steps_passed = db.Column(db.Integer, default=0)
    steps_failed = db.Column(db.Integer, default=0)
    error_message = db.Column(db.Text, nullable=True)
    failure_step_id = db.Column(db.String(100), nullable=True)
    failure_type = db.Column(db.String(20), nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "scenario_id": self.scenario_id,
            "test_run_id": self.test_run_id,
            "result": self.result,
            "matched_expectation": bool(self.matched_expectation),
            "mismatch_details": self.mismatch_details,
            "duration_ms": self.duration_ms,
            "steps_executed": self.steps_executed,
            "steps_passed": self.steps_passed,
            "steps_failed": self.steps_failed,
            "error_message": self.error_message,
            "failure_step_id": self.failure_step_id,
            "failure_type": self.failure_type,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }

    def __repr__(self):
        return f"<ScenarioRun {self.id}: {self.result}>"
