"""Execution snapshot service — time-travel debugging for workflow executions.

Captures node-level state before/after/on error, named checkpoints and
outbound HTTP exchanges, and builds timelines, forks, resumes and
execution comparisons on top of them.

Rules:
  - Every state dict is redacted before it is stored; the caller's
    objects are never mutated.
  - Sequence counters and the snapshot cache live in the service
    instance (one per process, see get_snapshot_service()).
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from processmap.core.exceptions import NotFoundError, ValidationError
from processmap.models import db
from processmap.models.execution import (
    SNAPSHOT_TYPES,
    ExecutionCheckpoint,
    ExecutionSnapshot,
    HttpRequestRecording,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_SNAPSHOTS_PER_EXECUTION = 1000
REDACTED = "[REDACTED]"
SENSITIVE_KEY_FRAGMENTS = ("password", "secret", "token", "key", "credential", "auth")


# ═════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════


def redact(value):
    """Return a copy of ``value`` with sensitive keys replaced by [REDACTED].

    Walks nested dicts and lists. Matching is a case-insensitive substring
    test on the key name.
    """
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            lowered = str(key).lower()
            if any(fragment in lowered for fragment in SENSITIVE_KEY_FRAGMENTS):
                result[key] = REDACTED
            else:
                result[key] = redact(item)
        return result
    if isinstance(value, list):
        return [redact(item) for item in value]
    return copy.deepcopy(value)


def estimate_memory_usage(*objects) -> int:
    """Rough size estimate: 2 bytes per character of the JSON encoding."""
    size = 0
    for obj in objects:
        try:
            size += len(json.dumps(obj, default=str)) * 2
        except (TypeError, ValueError):
            # Circular structures are skipped
            continue
    return size


def _new_execution_id(prefix: str) -> str:
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{prefix}-{millis}-{uuid.uuid4().hex[:9]}"


# ═════════════════════════════════════════════════════════════════════════
# Service
# ═════════════════════════════════════════════════════════════════════════


class ExecutionSnapshotService:
    """Snapshot, checkpoint and HTTP-recording store for executions."""

    def __init__(self, max_snapshots_per_execution: int = DEFAULT_MAX_SNAPSHOTS_PER_EXECUTION) -> None:
        self.max_snapshots_per_execution = max_snapshots_per_execution
        self.http_recording_enabled = True
        self._sequence_counters: dict[tuple, int] = {}
        self._snapshot_cache: dict[str, list[dict]] = {}

    # ── Capture ───────────────────────────────────────────────────────

    def _next_sequence(self, key: tuple, column, *criteria) -> int:
        if key not in self._sequence_counters:
            # Continue numbering from rows stored before a restart or clear_cache()
            stored = db.session.execute(select(func.max(column)).where(*criteria)).scalar()
            self._sequence_counters[key] = stored or 0
        self._sequence_counters[key] += 1
        return self._sequence_counters[key]

    def capture_snapshot(self, execution_id: str, workflow_id: str, node_id: str,
                         snapshot_type: str, state: dict | None = None,
                         variables: dict | None = None, node_outputs: dict | None = None,
                         error_details: dict | None = None,
                         cpu_time: float | None = None) -> dict | None:
        """Persist one snapshot. Returns its dict, or None if it could not be stored."""
        if snapshot_type not in SNAPSHOT_TYPES:
            raise ValidationError(
                f"snapshot_type must be one of: {', '.join(SNAPSHOT_TYPES)}",
                details={"snapshot_type": snapshot_type},
            )

        state = state or {}
        variables = variables or {}
        node_outputs = node_outputs or {}
        sequence_number = self._next_sequence(
            ("snapshot", execution_id, node_id), ExecutionSnapshot.sequence_number,
            ExecutionSnapshot.execution_id == execution_id, ExecutionSnapshot.node_id == node_id,
        )

        snapshot = ExecutionSnapshot(
            execution_id=execution_id,
            workflow_id=workflow_id or "",
            node_id=node_id,
            sequence_number=sequence_number,
            snapshot_type=snapshot_type,
            state=redact(state),
            variables=redact(variables),
            node_outputs=redact(node_outputs),
            http_requests=[],
            error_details=error_details,
            memory_usage=estimate_memory_usage(state, variables, node_outputs),
            cpu_time=cpu_time,
        )
        try:
            db.session.add(snapshot)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to capture snapshot execution_id=%s node=%s",
                             execution_id, node_id)
            return None

        result = snapshot.to_dict()
        cached = self._snapshot_cache.setdefault(execution_id, [])
        cached.append(result)
        if len(cached) > self.max_snapshots_per_execution:
            cached.pop(0)

        logger.debug("Captured %s snapshot for node %s in execution %s",
                     snapshot_type, node_id, execution_id,
                     extra={"execution_id": execution_id})
        return result

    def record_http_request(self, execution_id: str, workflow_id: str, node_id: str,
                            request: dict) -> bool:
        """Store an outbound HTTP exchange for replay.

        ``request`` is {method, url, headers, body, response: {status,
        headers, body, time_ms}, error}. Always True while recording is off.
        """
        if not self.http_recording_enabled:
            return True

        response = request.get("response") or {}
        recording = HttpRequestRecording(
            execution_id=execution_id,
            workflow_id=workflow_id or "",
            node_id=node_id,
            request_sequence=self._next_sequence(
                ("http", execution_id), HttpRequestRecording.request_sequence,
                HttpRequestRecording.execution_id == execution_id,
            ),
            method=(request.get("method") or "GET").upper(),
            url=request.get("url") or "",
            headers=redact(request.get("headers") or {}),
            body=request.get("body"),
            response_status=response.get("status"),
            response_headers=response.get("headers"),
            response_body=response.get("body"),
            response_time_ms=response.get("time_ms"),
            error=request.get("error"),
        )
        try:
            db.session.add(recording)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to record HTTP request execution_id=%s", execution_id)
            return False

        logger.debug("Recorded HTTP %s request to %s", recording.method, recording.url)
        return True

    def create_checkpoint(self, execution_id: str, workflow_id: str, checkpoint_name: str,
                          node_id: str, state: dict | None = None,
                          variables: dict | None = None,
                          node_outputs: dict | None = None) -> dict:
        checkpoint = ExecutionCheckpoint(
            execution_id=execution_id,
            workflow_id=workflow_id or "",
            checkpoint_name=checkpoint_name,
            node_id=node_id,
            state=redact(state or {}),
            variables=redact(variables or {}),
            node_outputs=redact(node_outputs or {}),
            can_resume=True,
        )
        db.session.add(checkpoint)
        db.session.commit()
        logger.info("Created checkpoint '%s' for execution %s", checkpoint_name, execution_id,
                    extra={"execution_id": execution_id})
        return checkpoint.to_dict()

    # ── Read ──────────────────────────────────────────────────────────

    def get_execution_timeline(self, execution_id: str) -> dict | None:
        """Snapshots, checkpoints and node statistics; None without snapshots."""
        snapshots = db.session.execute(
            select(ExecutionSnapshot)
            .where(ExecutionSnapshot.execution_id == execution_id)
            .order_by(ExecutionSnapshot.sequence_number, ExecutionSnapshot.id)
        ).scalars().all()
        if not snapshots:
            return None

        checkpoints = db.session.execute(
            select(ExecutionCheckpoint)
            .where(ExecutionCheckpoint.execution_id == execution_id)
            .order_by(ExecutionCheckpoint.created_at, ExecutionCheckpoint.id)
        ).scalars().all()

        node_stats: OrderedDict[str, dict] = OrderedDict()
        for snap in snapshots:
            stats = node_stats.setdefault(snap.node_id, {"completed": False, "failed": False})
            if snap.snapshot_type == "after":
                stats["completed"] = True
            elif snap.snapshot_type == "error":
                stats["failed"] = True

        by_time = sorted(snapshots, key=lambda s: (s.timestamp, s.id))
        return {
            "execution_id": execution_id,
            "workflow_id": snapshots[0].workflow_id,
            "start_time": by_time[0].timestamp.isoformat() if by_time[0].timestamp else None,
            "end_time": by_time[-1].timestamp.isoformat() if by_time[-1].timestamp else None,
            "snapshots": [s.to_dict() for s in snapshots],
            "checkpoints": [c.to_dict() for c in checkpoints],
            "total_nodes": len(node_stats),
            "completed_nodes": sum(1 for s in node_stats.values() if s["completed"]),
            "failed_nodes": sum(1 for s in node_stats.values() if s["failed"]),
        }

    def get_snapshot_at(self, execution_id: str, node_id: str, sequence_number: int) -> dict | None:
        snap = db.session.execute(
            select(ExecutionSnapshot).where(
                ExecutionSnapshot.execution_id == execution_id,
                ExecutionSnapshot.node_id == node_id,
                ExecutionSnapshot.sequence_number == sequence_number,
            )
        ).scalars().first()
        return snap.to_dict() if snap else None

    def get_recorded_http_requests(self, execution_id: str, node_id: str | None = None) -> list[dict]:
        stmt = (
            select(HttpRequestRecording)
            .where(HttpRequestRecording.execution_id == execution_id)
            .order_by(HttpRequestRecording.request_sequence)
        )
        if node_id:
            stmt = stmt.where(HttpRequestRecording.node_id == node_id)
        return [r.to_dict() for r in db.session.execute(stmt).scalars().all()]

    def get_cached_snapshots(self, execution_id: str) -> list[dict]:
        return list(self._snapshot_cache.get(execution_id, []))

    # ── Fork / resume ─────────────────────────────────────────────────

    def fork_execution(self, original_execution_id: str, from_snapshot: int | None = None,
                       from_checkpoint: int | None = None, modify_state=None,
                       modify_variables=None) -> str:
        """Start a new execution from a snapshot or checkpoint.

        ``modify_state`` / ``modify_variables`` may be callables applied to
        the copied state, or dicts merged over it.

        Raises:
            NotFoundError: neither fork point exists.
        """
        source = None
        if from_snapshot is not None:
            source = db.session.get(ExecutionSnapshot, from_snapshot)
        elif from_checkpoint is not None:
            source = db.session.get(ExecutionCheckpoint, from_checkpoint)
        if source is None:
            raise NotFoundError(resource="ForkPoint",
                                resource_id=from_snapshot if from_snapshot is not None else from_checkpoint)

        state = copy.deepcopy(source.state or {})
        variables = copy.deepcopy(source.variables or {})
        node_outputs = copy.deepcopy(source.node_outputs or {})

        state = _apply_modification(state, modify_state)
        variables = _apply_modification(variables, modify_variables)

        forked_id = _new_execution_id("fork")
        self.capture_snapshot(forked_id, source.workflow_id, "fork", "before",
                              state, variables, node_outputs)
        logger.info("Forked execution %s to %s", original_execution_id, forked_id,
                    extra={"execution_id": forked_id})
        return forked_id

    def resume_from_checkpoint(self, checkpoint_id: int) -> dict | None:
        """New execution seeded from a checkpoint; None if it cannot resume."""
        checkpoint = db.session.get(ExecutionCheckpoint, checkpoint_id)
        if checkpoint is None or not checkpoint.can_resume:
            return None

        resumed_id = _new_execution_id("resume")
        self.capture_snapshot(resumed_id, checkpoint.workflow_id, checkpoint.node_id, "before",
                              checkpoint.state, checkpoint.variables, checkpoint.node_outputs)
        logger.info("Resumed execution from checkpoint %s as %s", checkpoint_id, resumed_id,
                    extra={"execution_id": resumed_id})

        state = dict(checkpoint.state or {})
        state.update({
            "variables": checkpoint.variables or {},
            "node_outputs": checkpoint.node_outputs or {},
            "resumed_from": checkpoint_id,
            "resumed_at": checkpoint.node_id,
        })
        return {"execution_id": resumed_id, "state": state}

    # ── Compare ───────────────────────────────────────────────────────

    def compare_executions(self, execution_id_1: str, execution_id_2: str) -> dict:
        """Differences between two executions, keyed by node and snapshot type."""
        timeline_1 = self.get_execution_timeline(execution_id_1)
        timeline_2 = self.get_execution_timeline(execution_id_2)
        if not timeline_1 or not timeline_2:
            return {"differences": [], "similarity": 0}

        # Later snapshots of the same node/type win
        snaps_1 = {(s["node_id"], s["snapshot_type"]): s for s in timeline_1["snapshots"]}
        snaps_2 = {(s["node_id"], s["snapshot_type"]): s for s in timeline_2["snapshots"]}
        all_keys = list(snaps_1)
        all_keys += [k for k in snaps_2 if k not in snaps_1]

        differences = []
        for key in all_keys:
            node_id = key[0]
            snap_1, snap_2 = snaps_1.get(key), snaps_2.get(key)
            if snap_1 is None:
                differences.append({"node_id": node_id, "type": "added", "field": "node",
                                    "value2": snap_2["node_id"]})
            elif snap_2 is None:
                differences.append({"node_id": node_id, "type": "removed", "field": "node",
                                    "value1": snap_1["node_id"]})
            else:
                if _canonical(snap_1["node_outputs"]) != _canonical(snap_2["node_outputs"]):
                    differences.append({"node_id": node_id, "type": "modified", "field": "output",
                                        "value1": snap_1["node_outputs"],
                                        "value2": snap_2["node_outputs"]})
                if bool(snap_1["error_details"]) != bool(snap_2["error_details"]):
                    differences.append({"node_id": node_id, "type": "modified", "field": "error",
                                        "value1": snap_1["error_details"],
                                        "value2": snap_2["error_details"]})

        total = len(all_keys)
        similarity = (total - len(differences)) / total * 100 if total else 100
        return {"differences": differences, "similarity": similarity}

    # ── Settings ──────────────────────────────────────────────────────

    def clear_cache(self) -> None:
        self._snapshot_cache.clear()
        self._sequence_counters.clear()

    def set_http_recording(self, enabled: bool) -> None:
        self.http_recording_enabled = bool(enabled)


def _canonical(value) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _apply_modification(target: dict, modification) -> dict:
    if modification is None:
        return target
    if callable(modification):
        return modification(target)
    merged = dict(target)
    merged.update(modification)
    return merged


# ── Process-wide instance ───────────────────────────────────────────────

_service: ExecutionSnapshotService | None = None


def get_snapshot_service() -> ExecutionSnapshotService:
    """Lazy-initialise the shared service from the app config."""
    global _service
    if _service is None:
        from flask import current_app
        _service = ExecutionSnapshotService(
            max_snapshots_per_execution=current_app.config.get(
                "SNAPSHOT_MAX_PER_EXECUTION", DEFAULT_MAX_SNAPSHOTS_PER_EXECUTION),
        )
    return _service
