"""Execution snapshot blueprint — time-travel debugging for test runs.

Endpoints (prefix /api/v1/executions):
  POST /<execution_id>/snapshots                          capture a snapshot
  GET  /<execution_id>/snapshots/<node_id>/<sequence>     snapshot lookup
  GET  /<execution_id>/timeline                           timeline + node stats
  POST /<execution_id>/http-requests                      record an HTTP exchange
  GET  /<execution_id>/http-requests                      recorded exchanges (?node_id=)
  POST /<execution_id>/checkpoints                        create a checkpoint
  POST /<execution_id>/fork                               fork from snapshot/checkpoint
  POST /checkpoints/<checkpoint_id>/resume                resume from a checkpoint
  GET  /compare?a=<execution_id>&b=<execution_id>         compare two executions
  PUT  /settings/http-recording                           toggle HTTP recording

Test runs started with capture_snapshots use their run key as execution id.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from processmap.core.exceptions import NotFoundError, ValidationError
from processmap.models.execution import SNAPSHOT_TYPES
from processmap.services.execution_snapshot_service import get_snapshot_service
from processmap.utils.errors import E, api_error, http_error

logger = logging.getLogger(__name__)

execution_bp = Blueprint("execution", __name__, url_prefix="/api/v1/executions")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _object_fields(data: dict, *names: str):
    """First field among ``names`` that is present but not a JSON object."""
    for name in names:
        if data.get(name) is not None and not isinstance(data[name], dict):
            return name
    return None


# ── Error handlers ────────────────────────────────────────────────────────────


@execution_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@execution_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@execution_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return http_error(error)
    logger.exception("Unexpected error in execution_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Snapshots
# ═════════════════════════════════════════════════════════════════════════


@execution_bp.route("/<execution_id>/snapshots", methods=["POST"])
def capture_snapshot(execution_id):
    """Body: {workflow_id?, node_id, snapshot_type, state?, variables?,
    node_outputs?, error_details?, cpu_time?}
    """
    data = _body()
    node_id = (data.get("node_id") or "").strip()
    if not node_id:
        return api_error(E.VALIDATION_REQUIRED, "node_id is required")
    if data.get("snapshot_type") not in SNAPSHOT_TYPES:
        return api_error(E.VALIDATION_INVALID,
                         f"snapshot_type must be one of: {', '.join(SNAPSHOT_TYPES)}")
    bad = _object_fields(data, "state", "variables", "node_outputs", "error_details")
    if bad:
        return api_error(E.VALIDATION_INVALID, f"{bad} must be an object")

    snapshot = get_snapshot_service().capture_snapshot(
        execution_id,
        data.get("workflow_id") or "",
        node_id,
        data["snapshot_type"],
        state=data.get("state"),
        variables=data.get("variables"),
        node_outputs=data.get("node_outputs"),
        error_details=data.get("error_details"),
        cpu_time=data.get("cpu_time"),
    )
    if snapshot is None:
        return api_error(E.INTERNAL, "Snapshot could not be stored")
    return jsonify(snapshot), 201


@execution_bp.route("/<execution_id>/snapshots/<node_id>/<int:sequence_number>", methods=["GET"])
def get_snapshot(execution_id, node_id, sequence_number):
    snapshot = get_snapshot_service().get_snapshot_at(execution_id, node_id, sequence_number)
    if snapshot is None:
        return api_error(E.NOT_FOUND, "Snapshot not found")
    return jsonify(snapshot), 200


@execution_bp.route("/<execution_id>/timeline", methods=["GET"])
def get_timeline(execution_id):
    timeline = get_snapshot_service().get_execution_timeline(execution_id)
    if timeline is None:
        return api_error(E.NOT_FOUND, f"No snapshots for execution {execution_id}")
    return jsonify(timeline), 200


# ═════════════════════════════════════════════════════════════════════════
# HTTP recordings
# ═════════════════════════════════════════════════════════════════════════


@execution_bp.route("/<execution_id>/http-requests", methods=["POST"])
def record_http_request(execution_id):
    """Body: {workflow_id?, node_id, request: {method, url, headers?, body?,
    response?: {status, headers, body, time_ms}, error?}}
    """
    data = _body()
    node_id = (data.get("node_id") or "").strip()
    exchange = data.get("request")
    if not node_id:
        return api_error(E.VALIDATION_REQUIRED, "node_id is required")
    if not isinstance(exchange, dict) or not exchange.get("url"):
        return api_error(E.VALIDATION_REQUIRED, "request.url is required")

    recorded = get_snapshot_service().record_http_request(
        execution_id, data.get("workflow_id") or "", node_id, exchange)
    if not recorded:
        return api_error(E.INTERNAL, "HTTP request could not be recorded")
    return jsonify({"recorded": True}), 201


@execution_bp.route("/<execution_id>/http-requests", methods=["GET"])
def list_http_requests(execution_id):
    items = get_snapshot_service().get_recorded_http_requests(
        execution_id, node_id=request.args.get("node_id"))
    return jsonify({"items": items, "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Checkpoints, fork, resume
# ═════════════════════════════════════════════════════════════════════════


@execution_bp.route("/<execution_id>/checkpoints", methods=["POST"])
def create_checkpoint(execution_id):
    """Body: {workflow_id?, checkpoint_name, node_id, state?, variables?, node_outputs?}"""
    data = _body()
    name = (data.get("checkpoint_name") or "").strip()
    node_id = (data.get("node_id") or "").strip()
    if not name or not node_id:
        return api_error(E.VALIDATION_REQUIRED, "checkpoint_name and node_id are required")
    bad = _object_fields(data, "state", "variables", "node_outputs")
    if bad:
        return api_error(E.VALIDATION_INVALID, f"{bad} must be an object")

    checkpoint = get_snapshot_service().create_checkpoint(
        execution_id, data.get("workflow_id") or "", name, node_id,
        state=data.get("state"),
        variables=data.get("variables"),
        node_outputs=data.get("node_outputs"),
    )
    return jsonify(checkpoint), 201


@execution_bp.route("/<execution_id>/fork", methods=["POST"])
def fork_execution(execution_id):
    """Body: {from_snapshot? | from_checkpoint?, modify_state?, modify_variables?}

    Modifications are merged over the copied state/variables.
    """
    data = _body()
    from_snapshot = data.get("from_snapshot")
    from_checkpoint = data.get("from_checkpoint")
    if from_snapshot is None and from_checkpoint is None:
        return api_error(E.VALIDATION_REQUIRED, "from_snapshot or from_checkpoint is required")
    for name, value in (("from_snapshot", from_snapshot), ("from_checkpoint", from_checkpoint)):
        if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
            return api_error(E.VALIDATION_INVALID, f"{name} must be an integer id")
    bad = _object_fields(data, "modify_state", "modify_variables")
    if bad:
        return api_error(E.VALIDATION_INVALID, f"{bad} must be an object")

    forked_id = get_snapshot_service().fork_execution(
        execution_id,
        from_snapshot=from_snapshot,
        from_checkpoint=from_checkpoint,
        modify_state=data.get("modify_state"),
        modify_variables=data.get("modify_variables"),
    )
    return jsonify({"execution_id": forked_id, "forked_from": execution_id}), 201


@execution_bp.route("/checkpoints/<int:checkpoint_id>/resume", methods=["POST"])
def resume_from_checkpoint(checkpoint_id):
    resumed = get_snapshot_service().resume_from_checkpoint(checkpoint_id)
    if resumed is None:
        return api_error(E.NOT_FOUND, f"Checkpoint {checkpoint_id} not found or not resumable")
    return jsonify(resumed), 201


# ═════════════════════════════════════════════════════════════════════════
# Compare & settings
# ═════════════════════════════════════════════════════════════════════════


@execution_bp.route("/compare", methods=["GET"])
def compare_executions():
    """Query params: a, b (execution ids)."""
    first, second = request.args.get("a"), request.args.get("b")
    if not first or not second:
        return api_error(E.VALIDATION_REQUIRED, "Query params a and b are required")
    return jsonify(get_snapshot_service().compare_executions(first, second)), 200


@execution_bp.route("/settings/http-recording", methods=["PUT"])
def set_http_recording():
    """Body: {enabled: bool}"""
    data = _body()
    if not isinstance(data.get("enabled"), bool):
        return api_error(E.VALIDATION_INVALID, "enabled must be a boolean")
    service = get_snapshot_service()
    service.set_http_recording(data["enabled"])
    return jsonify({"http_recording_enabled": service.http_recording_enabled}), 200
