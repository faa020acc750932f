"""
Execution state models — time-travel debugging for workflow executions.

Models:
    - ExecutionSnapshot:     state captured before/after/on error of a node
    - ExecutionCheckpoint:   named, resumable state
    - HttpRequestRecording:  outbound HTTP exchange recorded for replay

Rows are keyed by the string ``execution_id`` (a test run key, or a
``fork-``/``resume-`` id) rather than a foreign key, so forks and resumes
live alongside the run that produced them.
"""

from datetime import datetime, timezone

from processmap.models import db


SNAPSHOT_TYPES = ("before", "after", "error")


def _utcnow():
    return datetime.now(timezone.utc)


class ExecutionSnapshot(db.Model):
    __tablename__ = "execution_snapshots"
    __table_args__ = (
        db.Index("ix_execution_snapshots_exec_node_seq",
                 "execution_id", "node_id", "sequence_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(db.String(64), nullable=False, index=True)
    workflow_id = db.Column(db.String(64), nullable=False, default="")
    node_id = db.Column(db.String(100), nullable=False)
    sequence_number = db.Column(db.Integer, nullable=False)
    snapshot_type = db.Column(db.String(10), nullable=False, comment="before | after | error")
    state = db.Column(db.JSON, default=dict)
    variables = db.Column(db.JSON, default=dict)
    node_outputs = db.Column(db.JSON, default=dict)
    http_requests = db.Column(db.JSON, default=list)
    error_details = db.Column(db.JSON, nullable=True)
    memory_usage = db.Column(db.Integer, nullable=True)
    cpu_time = db.Column(db.Float, nullable=True)
    timestamp = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "sequence_number": self.sequence_number,
            "snapshot_type": self.snapshot_type,
            "state": self.state or {},
            "variables": self.variables or {},
            "node_outputs": self.node_outputs or {},
            "http_requests": self.http_requests or [],
            "error_details": self.error_details,
            "memory_usage": self.memory_usage,
            "cpu_time": self.cpu_time,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<ExecutionSnapshot {self.execution_id}/{self.node_id}#{self.sequence_number}>"


class ExecutionCheckpoint(db.Model):
    __tablename__ = "execution_checkpoints"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(db.String(64), nullable=False, index=True)
    workflow_id = db.Column(db.String(64), nullable=False, default="")
    checkpoint_name = db.Column(db.String(200), nullable=False)
    node_id = db.Column(db.String(100), nullable=False)
    state = db.Column(db.JSON, default=dict)
    variables = db.Column(db.JSON, default=dict)
    node_outputs = db.Column(db.JSON, default=dict)
    can_resume = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "checkpoint_name": self.checkpoint_name,
            "node_id": self.node_id,
            "state": self.state or {},
            "variables": self.variables or {},
            "node_outputs": self.node_outputs or {},
            "can_resume": bool(self.can_resume),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ExecutionCheckpoint {self.execution_id}: {self.checkpoint_name}>"


class HttpRequestRecording(db.Model):
    __tablename__ = "http_request_recordings"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(db.String(64), nullable=False, index=True)
    workflow_id = db.Column(db.String(64), nullable=False, default="")
    node_id = db.Column(db.String(100), nullable=False)
    request_sequence = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(10), nullable=False)
    url = db.Column(db.String(2000), nullable=False)
    headers = db.Column(db.JSON, default=dict)
    body = db.Column(db.JSON, nullable=True)
    response_status = db.Column(db.Integer, nullable=True)
    response_headers = db.Column(db.JSON, nullable=True)
    response_body = db.Column(db.JSON, nullable=True)
    response_time_ms = db.Column(db.Integer, nullable=True)
    error = db.Column(db.Text, nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        result = {
            "id": self.id,
            "node_id": self.node_id,
            "request_sequence": self.request_sequence,
            "method": self.method,
            "url": self.url,
            "headers": self.headers or {},
            "body": self.body,
            "response": None,
            "error": self.error,
        }
        if self.response_status:
            result["response"] = {
                "status": self.response_status,
                "headers": self.response_headers or {},
                "body": self.response_body,
                "time_ms": self.response_time_ms,
            }
        return result

    def __repr__(self):
        return f"<HttpRequestRecording {self.method} {self.url}>"
