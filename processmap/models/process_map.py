"""
Process map domain models — the workflow under test and its integration mocks.

Models:
    - ProcessMap:      a workflow (steps + explicit branch edges) owned by an org
    - ProcessMapMock:  canned integration response used by mock-mode test runs

Architecture ref:
    ProcessMap ──1:N──▶ ProcessMapMock
    ProcessMap ──1:N──▶ ProcessMapTestRun ──1:N──▶ ProcessMapStepResult
    ProcessMap ──1:N──▶ TestScenario ──1:N──▶ ScenarioRun
    ProcessMap ──1:N──▶ CoverageSnapshot
"""

from datetime import datetime, timezone

from processmap.models import db


# ── Constants ────────────────────────────────────────────────────────────

PROCESS_TYPES = {"workflow", "integration"}

STEP_TYPES = {
    "trigger", "action", "condition", "transform",
    "external_call", "storage", "notification",
}

MOCK_TYPES = {"success", "error", "timeout", "rate_limit", "auth_failure"}

# Mock types that make a step fail when matched
FAILURE_MOCK_TYPES = ("error", "timeout", "rate_limit", "auth_failure")


def _utcnow():
    return datetime.now(timezone.utc)


class ProcessMap(db.Model):
    """
    A workflow definition whose steps form a directed graph.

    ``steps`` holds step definitions (id, name, type, integration,
    dependencies, input/output schema, test_config). ``edges`` holds
    optional explicit edges ({source, target, label}) for branches that
    are not expressed as dependencies.
    """

    __tablename__ = "process_maps"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    process_type = db.Column(
        db.String(20), default="workflow",
        comment="workflow | integration",
    )
    steps = db.Column(db.JSON, default=list)
    edges = db.Column(db.JSON, default=list)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Relationships
    mocks = db.relationship(
        "ProcessMapMock", backref="process_map", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    test_runs = db.relationship(
        "ProcessMapTestRun", backref="process_map", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    scenarios = db.relationship(
        "TestScenario", backref="process_map", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    coverage_snapshots = db.relationship(
        "CoverageSnapshot", backref="process_map", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def structure(self):
        """The part of the map that scenario generation depends on."""
        return {"steps": self.steps or [], "edges": self.edges or []}

    def integrations(self):
        """Integrations used by the steps, de-duplicated in step order."""
        seen = []
        for step in self.steps or []:
            integration = step.get("integration")
            if integration and integration not in seen:
                seen.append(integration)
        return seen

    def to_dict(self):
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "description": self.description,
            "process_type": self.process_type,
            "steps": self.steps or [],
            "edges": self.edges or [],
            "integrations": self.integrations(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ProcessMap {self.id}: {self.name}>"


class ProcessMapMock(db.Model):
    """Canned response for one integration, picked by priority at run time."""

    __tablename__ = "process_map_mocks"

    id = db.Column(db.Integer, primary_key=True)
    process_map_id = db.Column(
        db.Integer, db.ForeignKey("process_maps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    org_id = db.Column(db.String(64), nullable=False)
    integration = db.Column(db.String(50), nullable=False)
    endpoint = db.Column(db.String(200), nullable=True)
    mock_type = db.Column(
        db.String(20), default="success",
        comment="success | error | timeout | rate_limit | auth_failure",
    )
    response_data = db.Column(db.JSON, nullable=True)
    error_response = db.Column(db.JSON, nullable=True)
    delay_ms = db.Column(db.Integer, default=0)
    match_conditions = db.Column(db.JSON, nullable=True)
    priority = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "process_map_id": self.process_map_id,
            "org_id": self.org_id,
            "integration": self.integration,
            "endpoint": self.endpoint,
            "mock_type": self.mock_type,
            "response_data": self.response_data,
            "error_response": self.error_response,
            "delay_ms": self.delay_ms or 0,
            "match_conditions": self.match_conditions,
            "priority": self.priority or 0,
            "is_active": bool(self.is_active),
        }

    def __repr__(self):
        return f"<ProcessMapMock {self.id}: {self.integration}/{self.mock_type}>"
