"""Process map test engine blueprint.

Endpoint groups:
  Process maps     GET/POST        /api/v1/process-maps
                   GET/PUT/DELETE  /api/v1/process-maps/<id>
                   POST            /api/v1/process-maps/parse
  Mocks            GET/POST        /api/v1/process-maps/<id>/mocks
                   POST            /api/v1/process-maps/<id>/mocks/meetingbaas
                   PUT/DELETE      /api/v1/mocks/<id>
  Test runs        GET/POST        /api/v1/process-maps/<id>/runs
                   GET             /api/v1/test-runs/<id or run_key>
  Scenarios        POST            /api/v1/process-maps/<id>/scenarios/generate
                   GET             /api/v1/process-maps/<id>/scenarios
                   POST            /api/v1/process-maps/<id>/scenarios/run-all
                   POST            /api/v1/scenarios/<id>/run
                   GET             /api/v1/scenarios/<id>/runs
  Coverage         GET             /api/v1/process-maps/<id>/coverage[/history]
  History          GET             /api/v1/process-maps/<id>/{history,trends,failures,
                                                          summary,scenario-stats}

org_id is carried in the JSON body on create and stored on every row.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from processmap.blueprints import int_arg
from processmap.core.exceptions import ConflictError, NotFoundError, ValidationError
from processmap.models.scenario import SCENARIO_TYPES
from processmap.models.test_run import RUN_MODES
from processmap.services import process_map_service, test_scenario_service
from processmap.services.execution_snapshot_service import get_snapshot_service
from processmap.services.scenario_test_engine import ScenarioTestEngine
from processmap.utils.errors import E, api_error, http_error
from processmap.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

process_map_bp = Blueprint("process_map", __name__, url_prefix="/api/v1")


def _json_body():
    """Return (data, error_response). Non-object bodies are rejected."""
    data = request.get_json(silent=True)
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def _run_mode(data):
    run_mode = data.get("run_mode") or "mock"
    if run_mode not in RUN_MODES:
        return None, api_error(
            E.VALIDATION_INVALID,
            f"run_mode must be one of: {', '.join(sorted(RUN_MODES))}",
        )
    return run_mode, None


# ── Error handlers ────────────────────────────────────────────────────────────


@process_map_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@process_map_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@process_map_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error))


@process_map_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return http_error(error)
    logger.exception("Unexpected error in process_map_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Process maps
# ═════════════════════════════════════════════════════════════════════════


@process_map_bp.route("/process-maps", methods=["GET"])
def list_process_maps():
    """List process maps. Query params: org_id (optional filter)."""
    items = process_map_service.list_process_maps(request.args.get("org_id"))
    return jsonify({"items": items, "total": len(items)}), 200


@process_map_bp.route("/process-maps", methods=["POST"])
def create_process_map():
    """Create a process map.

    Body: {org_id, name, description?, process_type?, steps?, edges?}
    Returns: created process map (201).
    """
    data, err = _json_body()
    if err:
        return err
    if not (data.get("org_id") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "org_id is required")
    if not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    if len(data["name"]) > 200:
        return api_error(E.VALIDATION_INVALID, "name must be ≤ 200 characters")

    return jsonify(process_map_service.create_process_map(data)), 201


@process_map_bp.route("/process-maps/parse", methods=["POST"])
def parse_process_map():
    """Parse a numbered text description into steps and create/update the map.

    Body: {org_id, name, description, process_type?}
    """
    data, err = _json_body()
    if err:
        return err
    if not (data.get("description") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "description is required")
    if not (data.get("org_id") or "").strip() or not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "org_id and name are required")

    return jsonify(process_map_service.parse_and_save(data)), 200


@process_map_bp.route("/process-maps/<int:pm_id>", methods=["GET"])
def get_process_map(pm_id):
    return jsonify(process_map_service.get_process_map(pm_id).to_dict()), 200


@process_map_bp.route("/process-maps/<int:pm_id>", methods=["PUT"])
def update_process_map(pm_id):
    data, err = _json_body()
    if err:
        return err
    return jsonify(process_map_service.update_process_map(pm_id, data)), 200


@process_map_bp.route("/process-maps/<int:pm_id>", methods=["DELETE"])
def delete_process_map(pm_id):
    process_map_service.delete_process_map(pm_id)
    return jsonify({"message": "Process map deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════
# Mocks
# ═════════════════════════════════════════════════════════════════════════


@process_map_bp.route("/process-maps/<int:pm_id>/mocks", methods=["GET"])
def list_mocks(pm_id):
    active_only = request.args.get("active") in ("1", "true", "yes")
    items = process_map_service.list_mocks(pm_id, active_only=active_only)
    return jsonify({"items": items, "total": len(items)}), 200


@process_map_bp.route("/process-maps/<int:pm_id>/mocks", methods=["POST"])
def create_mock(pm_id):
    """Body: {integration, mock_type?, endpoint?, response_data?, error_response?,
    delay_ms?, match_conditions?, priority?, is_active?}
    """
    data, err = _json_body()
    if err:
        return err
    if not (data.get("integration") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "integration is required")
    return jsonify(process_map_service.create_mock(pm_id, data)), 201


@process_map_bp.route("/process-maps/<int:pm_id>/mocks/meetingbaas", methods=["POST"])
def install_meetingbaas_mocks(pm_id):
    """Replace the map's MeetingBaaS mocks with the pre-configured set."""
    items = process_map_service.install_meetingbaas_mocks(pm_id)
    return jsonify({"items": items, "total": len(items)}), 201


@process_map_bp.route("/mocks/<int:mock_id>", methods=["PUT"])
def update_mock(mock_id):
    data, err = _json_body()
    if err:
        return err
    return jsonify(process_map_service.update_mock(mock_id, data)), 200


@process_map_bp.route("/mocks/<int:mock_id>", methods=["DELETE"])
def delete_mock(mock_id):
    process_map_service.delete_mock(mock_id)
    return jsonify({"message": "Mock deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════
# Test runs
# ═════════════════════════════════════════════════════════════════════════


@process_map_bp.route("/process-maps/<int:pm_id>/runs", methods=["POST"])
def run_test(pm_id):
    """Execute the process map synchronously and return the stored run.

    Body: {
        run_mode?, test_data?, continue_on_failure?, selected_steps?,
        timeout_ms?, run_by?, fixture?, capture_snapshots?
    }
    """
    data, err = _json_body()
    if err:
        return err
    run_mode, err = _run_mode(data)
    if err:
        return err
    test_data = data.get("test_data") or {}
    if not isinstance(test_data, dict):
        return api_error(E.VALIDATION_INVALID, "test_data must be an object")
    selected = data.get("selected_steps")
    if selected is not None and (not isinstance(selected, list)
                                 or not all(isinstance(s, str) for s in selected)):
        return api_error(E.VALIDATION_INVALID, "selected_steps must be a list of step ids")
    timeout_ms = data.get("timeout_ms")
    if timeout_ms is not None and (not isinstance(timeout_ms, int) or isinstance(timeout_ms, bool)
                                   or timeout_ms <= 0):
        return api_error(E.VALIDATION_INVALID, "timeout_ms must be a positive integer")

    run = process_map_service.run_test(
        pm_id,
        run_mode=run_mode,
        test_data=test_data,
        continue_on_failure=bool(data.get("continue_on_failure")),
        selected_steps=selected,
        timeout_ms=timeout_ms,
        run_by=data.get("run_by"),
        fixture=data.get("fixture"),
        snapshot_service=get_snapshot_service() if data.get("capture_snapshots") else None,
    )
    return jsonify(run), 201


@process_map_bp.route("/process-maps/<int:pm_id>/runs", methods=["GET"])
def list_test_runs(pm_id):
    items = process_map_service.list_test_runs(pm_id, limit=int_arg("limit", 20, 1, 200))
    return jsonify({"items": items, "total": len(items)}), 200


@process_map_bp.route("/test-runs/<run_ref>", methods=["GET"])
def get_test_run(run_ref):
    """Fetch a run with its step results by numeric id or run key."""
    return jsonify(process_map_service.get_test_run(run_ref)), 200


# ═════════════════════════════════════════════════════════════════════════
# Scenarios
# ═════════════════════════════════════════════════════════════════════════


@process_map_bp.route("/process-maps/<int:pm_id>/scenarios/generate", methods=["POST"])
def generate_scenarios(pm_id):
    return jsonify(process_map_service.generate_scenarios(pm_id)), 201


@process_map_bp.route("/process-maps/<int:pm_id>/scenarios", methods=["GET"])
def list_scenarios(pm_id):
    """Query params: type (happy_path | branch_path | failure_mode)."""
    pm = process_map_service.get_process_map(pm_id)
    scenario_type = request.args.get("type")
    if scenario_type:
        if scenario_type not in SCENARIO_TYPES:
            return api_error(E.VALIDATION_INVALID,
                             f"type must be one of: {', '.join(SCENARIO_TYPES)}")
        scenarios = test_scenario_service.fetch_scenarios_by_type(pm.id, scenario_type)
    else:
        scenarios = test_scenario_service.fetch_scenarios(pm.id)

    structure_hash = test_scenario_service.generate_process_structure_hash(pm.structure())
    items = [s.to_dict() for s in scenarios]
    return jsonify({
        "items": items,
        "total": len(items),
        "needs_regeneration": test_scenario_service.check_scenarios_need_regeneration(
            pm.id, structure_hash),
    }), 200


@process_map_bp.route("/process-maps/<int:pm_id>/scenarios/run-all", methods=["POST"])
def run_all_scenarios(pm_id):
    """Body: {scenario_type?, run_mode?, capture_snapshots?}"""
    data, err = _json_body()
    if err:
        return err
    run_mode, err = _run_mode(data)
    if err:
        return err
    scenario_type = data.get("scenario_type")
    if scenario_type and scenario_type not in SCENARIO_TYPES:
        return api_error(E.VALIDATION_INVALID,
                         f"scenario_type must be one of: {', '.join(SCENARIO_TYPES)}")

    summary = ScenarioTestEngine().run_all(
        pm_id, scenario_type=scenario_type, run_mode=run_mode,
        capture_snapshots=bool(data.get("capture_snapshots")),
    )
    return jsonify(summary), 200


@process_map_bp.route("/scenarios/<int:scenario_id>/run", methods=["POST"])
def run_scenario(scenario_id):
    """Body: {run_mode?, test_data?, capture_snapshots?}"""
    data, err = _json_body()
    if err:
        return err
    run_mode, err = _run_mode(data)
    if err:
        return err
    result = ScenarioTestEngine().run_scenario(
        scenario_id, run_mode=run_mode,
        capture_snapshots=bool(data.get("capture_snapshots")),
        test_data=data.get("test_data") or None,
    )
    return jsonify(result), 200


@process_map_bp.route("/scenarios/<int:scenario_id>/runs", methods=["GET"])
def scenario_run_history(scenario_id):
    items = test_scenario_service.fetch_scenario_run_history(
        scenario_id, limit=int_arg("limit", 10, 1, 100))
    return jsonify({"items": items, "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Coverage
# ═════════════════════════════════════════════════════════════════════════


@process_map_bp.route("/process-maps/<int:pm_id>/coverage", methods=["GET"])
def get_coverage(pm_id):
    """Latest stored coverage snapshot, or a live analysis of the stored scenarios.

    Query params: executed (1 → only scenarios that have run count)
    """
    pm = process_map_service.get_process_map(pm_id)
    executed_only = request.args.get("executed") in ("1", "true", "yes")
    if not executed_only:
        latest = test_scenario_service.fetch_latest_coverage(pm.id)
        if latest is not None:
            return jsonify(latest), 200
    scenarios = test_scenario_service.fetch_scenarios(pm.id)
    return jsonify(process_map_service.analyze_coverage(pm, scenarios, executed_only)), 200


@process_map_bp.route("/process-maps/<int:pm_id>/coverage/history", methods=["GET"])
def get_coverage_history(pm_id):
    process_map_service.get_process_map(pm_id)
    items = test_scenario_service.fetch_coverage_history(pm_id, limit=int_arg("limit", 10, 1, 100))
    return jsonify({"items": items, "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# History & trends
# ═════════════════════════════════════════════════════════════════════════


@process_map_bp.route("/process-maps/<int:pm_id>/history", methods=["GET"])
def run_history(pm_id):
    """Query params: limit, offset, start_date, end_date, result (comma-separated)."""
    process_map_service.get_process_map(pm_id)

    start_raw, end_raw = request.args.get("start_date"), request.args.get("end_date")
    start_date, end_date = parse_datetime(start_raw), parse_datetime(end_raw)
    if (start_raw and start_date is None) or (end_raw and end_date is None):
        return api_error(E.VALIDATION_INVALID, "start_date/end_date must be ISO dates")

    results = [r.strip() for r in (request.args.get("result") or "").split(",") if r.strip()]
    history = test_scenario_service.fetch_process_map_run_history(
        pm_id,
        limit=int_arg("limit", 50, 1, 500),
        offset=int_arg("offset", 0, 0),
        start_date=start_date,
        end_date=end_date,
        result_filter=results or None,
    )
    return jsonify(history), 200


@process_map_bp.route("/process-maps/<int:pm_id>/trends", methods=["GET"])
def run_trends(pm_id):
    """Query params: days (default 30), group_by (day | week | hour)."""
    process_map_service.get_process_map(pm_id)
    trends = test_scenario_service.fetch_run_trends(
        pm_id,
        days=int_arg("days", 30, 1, 365),
        group_by=request.args.get("group_by", "day"),
    )
    return jsonify({"items": trends, "total": len(trends)}), 200


@process_map_bp.route("/process-maps/<int:pm_id>/failures", methods=["GET"])
def recent_failures(pm_id):
    process_map_service.get_process_map(pm_id)
    items = test_scenario_service.fetch_recent_failures(pm_id, limit=int_arg("limit", 10, 1, 100))
    return jsonify({"items": items, "total": len(items)}), 200


@process_map_bp.route("/process-maps/<int:pm_id>/summary", methods=["GET"])
def scenario_summary(pm_id):
    process_map_service.get_process_map(pm_id)
    return jsonify(test_scenario_service.fetch_scenario_summary_with_trends(pm_id)), 200


@process_map_bp.route("/process-maps/<int:pm_id>/scenario-stats", methods=["GET"])
def scenario_stats(pm_id):
    process_map_service.get_process_map(pm_id)
    return jsonify(test_scenario_service.get_scenario_stats(pm_id)), 200
