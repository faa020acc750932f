"""Process map service layer — maps, mocks, test runs and scenario generation.

Rules:
  - org_id is carried on every row; it is never read from request globals.
  - db.session.commit() for process maps, mocks and test runs happens only
    in this file.
  - The test engine itself is database-free; this module turns its output
    into ProcessMapTestRun / ProcessMapStepResult rows.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import delete, select

from processmap.core.exceptions import ConflictError, NotFoundError, ValidationError
from processmap.integrations.meetingbaas_mock import (
    INTEGRATION as MEETINGBAAS,
    MeetingBaaSMock,
    create_meetingbaas_mock_configs,
)
from processmap.models import db
from processmap.models.process_map import (
    MOCK_TYPES,
    PROCESS_TYPES,
    STEP_TYPES,
    ProcessMap,
    ProcessMapMock,
)
from processmap.models.test_run import RUN_MODES, ProcessMapStepResult, ProcessMapTestRun
from processmap.services import test_scenario_service
from processmap.services.coverage_analyzer import CoverageAnalyzer
from processmap.services.process_map_test_engine import ProcessMapTestEngine, TestRunConfig
from processmap.services.scenario_generator import ScenarioGenerator, count_by_type
from processmap.services.workflow_parser import parse_description

logger = logging.getLogger(__name__)

_MAP_FIELDS = ("name", "description", "process_type", "steps", "edges")
_MOCK_FIELDS = (
    "integration", "endpoint", "mock_type", "response_data", "error_response",
    "delay_ms", "match_conditions", "priority", "is_active",
)


# ═════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════


def validate_structure(steps, edges) -> None:
    """Raise ValidationError unless steps/edges form a well-formed workflow."""
    if not isinstance(steps, list):
        raise ValidationError("steps must be a list")
    if edges is not None and not isinstance(edges, list):
        raise ValidationError("edges must be a list")

    errors: dict[str, str] = {}
    seen: set[str] = set()
    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            errors[f"steps[{index}]"] = "must be an object"
            continue
        step_id = step.get("id")
        if not step_id:
            errors[f"steps[{index}].id"] = "is required"
        elif not isinstance(step_id, str):
            errors[f"steps[{index}].id"] = "must be a string"
        elif step_id in seen:
            errors[f"steps[{index}].id"] = f"duplicate step id {step_id!r}"
        else:
            seen.add(step_id)
        if not step.get("name"):
            errors[f"steps[{index}].name"] = "is required"
        step_type = step.get("type", "action")
        if not isinstance(step_type, str) or step_type not in STEP_TYPES:
            errors[f"steps[{index}].type"] = f"must be one of: {', '.join(sorted(STEP_TYPES))}"

    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            continue
        deps = step.get("dependencies") or []
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            errors[f"steps[{index}].dependencies"] = "must be a list of step ids"
            continue
        for dep in deps:
            if dep not in seen:
                errors[f"steps[{index}].dependencies"] = f"unknown step {dep!r}"

    for index, edge in enumerate(edges or []):
        ends = (edge.get("source"), edge.get("target")) if isinstance(edge, dict) else (None, None)
        if not all(isinstance(end, str) and end in seen for end in ends):
            errors[f"edges[{index}]"] = "source and target must reference existing steps"

    if errors:
        raise ValidationError("Process map structure is invalid", details=errors)


def validate_run_mode(run_mode: str) -> None:
    if run_mode not in RUN_MODES:
        raise ValidationError(
            f"run_mode must be one of: {', '.join(sorted(RUN_MODES))}",
            details={"run_mode": run_mode},
        )


# ═════════════════════════════════════════════════════════════════════════
# Process maps
# ═════════════════════════════════════════════════════════════════════════


def get_process_map(process_map_id: int) -> ProcessMap:
    pm = db.session.get(ProcessMap, process_map_id)
    if pm is None:
        raise NotFoundError(resource="ProcessMap", resource_id=process_map_id)
    return pm


def _find_by_key(org_id: str, name: str, process_type: str) -> ProcessMap | None:
    return db.session.execute(
        select(ProcessMap).where(
            ProcessMap.org_id == org_id,
            ProcessMap.name == name,
            ProcessMap.process_type == process_type,
        )
    ).scalar_one_or_none()


def list_process_maps(org_id: str | None = None) -> list[dict]:
    stmt = select(ProcessMap).order_by(ProcessMap.id)
    if org_id:
        stmt = stmt.where(ProcessMap.org_id == org_id)
    return [pm.to_dict() for pm in db.session.execute(stmt).scalars()]


def create_process_map(data: dict) -> dict:
    """Create a process map.

    Raises:
        ValidationError: org_id/name missing, unknown process_type, or a
            malformed step graph.
    """
    org_id = (data.get("org_id") or "").strip()
    name = (data.get("name") or "").strip()
    if not org_id or not name:
        raise ValidationError("org_id and name are required")

    process_type = data.get("process_type") or "workflow"
    if process_type not in PROCESS_TYPES:
        raise ValidationError(f"process_type must be one of: {', '.join(sorted(PROCESS_TYPES))}")

    if _find_by_key(org_id, name, process_type) is not None:
        raise ConflictError(resource="ProcessMap", field="name", value=name)

    steps = data.get("steps") or []
    edges = data.get("edges") or []
    validate_structure(steps, edges)

    pm = ProcessMap(
        org_id=org_id,
        name=name,
        description=data.get("description", ""),
        process_type=process_type,
        steps=steps,
        edges=edges,
    )
    db.session.add(pm)
    db.session.commit()
    logger.info("Process map created id=%s org_id=%s steps=%d", pm.id, org_id, len(steps),
                extra={"org_id": org_id, "process_map_id": pm.id})
    return pm.to_dict()


def update_process_map(process_map_id: int, data: dict) -> dict:
    pm = get_process_map(process_map_id)

    steps = data.get("steps", pm.steps or [])
    edges = data.get("edges", pm.edges or [])
    if "steps" in data or "edges" in data:
        validate_structure(steps, edges)
    if "process_type" in data and data["process_type"] not in PROCESS_TYPES:
        raise ValidationError(f"process_type must be one of: {', '.join(sorted(PROCESS_TYPES))}")
    if "name" in data and not (data["name"] or "").strip():
        raise ValidationError("name cannot be empty")

    new_name = (data.get("name") or pm.name).strip()
    new_type = data.get("process_type") or pm.process_type
    existing = _find_by_key(pm.org_id, new_name, new_type)
    if existing is not None and existing.id != pm.id:
        raise ConflictError(resource="ProcessMap", field="name", value=new_name)

    for field in _MAP_FIELDS:
        if field in data:
            setattr(pm, field, data[field])

    db.session.commit()
    logger.info("Process map updated id=%s", pm.id, extra={"process_map_id": pm.id})
    return pm.to_dict()


def delete_process_map(process_map_id: int) -> None:
    pm = get_process_map(process_map_id)
    db.session.delete(pm)
    db.session.commit()
    logger.info("Process map deleted id=%s", process_map_id,
                extra={"process_map_id": process_map_id})


def parse_and_save(data: dict) -> dict:
    """Parse a numbered text description into steps and upsert the map.

    The map is matched on (org_id, name, process_type); an existing map
    gets its steps and description replaced.
    """
    description = data.get("description") or ""
    steps = parse_description(description)
    if not steps:
        raise ValidationError("No steps could be parsed from description")

    org_id = (data.get("org_id") or "").strip()
    name = (data.get("name") or "").strip()
    if not org_id or not name:
        raise ValidationError("org_id and name are required")
    process_type = data.get("process_type") or "workflow"

    pm = _find_by_key(org_id, name, process_type)
    if pm is None:
        return create_process_map({
            "org_id": org_id, "name": name, "process_type": process_type,
            "description": description, "steps": steps, "edges": [],
        })
    return update_process_map(pm.id, {"description": description, "steps": steps})


# ═════════════════════════════════════════════════════════════════════════
# Mocks
# ═════════════════════════════════════════════════════════════════════════


def _validate_mock_payload(data: dict, partial: bool = False) -> None:
    if not partial and not (data.get("integration") or "").strip():
        raise ValidationError("integration is required")
    if "mock_type" in data and data["mock_type"] not in MOCK_TYPES:
        raise ValidationError(f"mock_type must be one of: {', '.join(sorted(MOCK_TYPES))}")
    for field in ("delay_ms", "priority"):
        if field in data and data[field] is not None:
            try:
                value = int(data[field])
            except (TypeError, ValueError):
                raise ValidationError(f"{field} must be an integer") from None
            if field == "delay_ms" and value < 0:
                raise ValidationError("delay_ms must be >= 0")


def list_mocks(process_map_id: int, active_only: bool = False) -> list[dict]:
    get_process_map(process_map_id)
    stmt = (
        select(ProcessMapMock)
        .where(ProcessMapMock.process_map_id == process_map_id)
        .order_by(ProcessMapMock.priority.desc(), ProcessMapMock.id)
    )
    if active_only:
        stmt = stmt.where(ProcessMapMock.is_active.is_(True))
    return [m.to_dict() for m in db.session.execute(stmt).scalars()]


def create_mock(process_map_id: int, data: dict) -> dict:
    pm = get_process_map(process_map_id)
    _validate_mock_payload(data)
    mock = ProcessMapMock(process_map_id=pm.id, org_id=pm.org_id)
    for field in _MOCK_FIELDS:
        if field in data:
            setattr(mock, field, data[field])
    db.session.add(mock)
    db.session.commit()
    logger.info("Mock created id=%s process_map_id=%s integration=%s type=%s",
                mock.id, pm.id, mock.integration, mock.mock_type,
                extra={"process_map_id": pm.id})
    return mock.to_dict()


def _get_mock(mock_id: int) -> ProcessMapMock:
    mock = db.session.get(ProcessMapMock, mock_id)
    if mock is None:
        raise NotFoundError(resource="ProcessMapMock", resource_id=mock_id)
    return mock


def update_mock(mock_id: int, data: dict) -> dict:
    mock = _get_mock(mock_id)
    _validate_mock_payload(data, partial=True)
    for field in _MOCK_FIELDS:
        if field in data:
            setattr(mock, field, data[field])
    db.session.commit()
    return mock.to_dict()


def delete_mock(mock_id: int) -> None:
    mock = _get_mock(mock_id)
    db.session.delete(mock)
    db.session.commit()


def install_meetingbaas_mocks(process_map_id: int) -> list[dict]:
    """Replace the map's MeetingBaaS mocks with the pre-configured set."""
    pm = get_process_map(process_map_id)
    db.session.execute(
        delete(ProcessMapMock).where(
            ProcessMapMock.process_map_id == pm.id,
            ProcessMapMock.integration == MEETINGBAAS,
        )
    )
    mocks = [ProcessMapMock(**config) for config in create_meetingbaas_mock_configs(pm.id, pm.org_id)]
    db.session.add_all(mocks)
    db.session.commit()
    logger.info("Installed %d MeetingBaaS mocks on process_map_id=%s", len(mocks), pm.id,
                extra={"process_map_id": pm.id})
    return [m.to_dict() for m in mocks]


def build_meetingbaas_test_data(org_id: str, seed: int = 0, user_id: str = "test-user") -> dict:
    """Flat test_data for a run, taken from a generated end-to-end MeetingBaaS flow."""
    flow = MeetingBaaSMock(seed=seed).generate_complete_test_flow(user_id, org_id)
    return {
        "calendar_id": flow["calendar"]["id"],
        "bot_id": flow["deployment"]["bot_id"],
        "meeting_id": flow["deployment"]["meeting_id"],
        "meeting_url": flow["deployment"]["meeting_url"],
        "recording_id": flow["recording"]["id"],
        "transcript_id": flow["transcript"]["id"],
        "webhook_events": [e["event_type"] for e in flow["webhook_events"]],
    }


# ═════════════════════════════════════════════════════════════════════════
# Test runs
# ═════════════════════════════════════════════════════════════════════════


FIXTURES = {"meetingbaas": build_meetingbaas_test_data}


def workflow_for(pm: ProcessMap) -> dict:
    return {"id": pm.id, "org_id": pm.org_id, "steps": pm.steps or []}


def build_run_config(continue_on_failure: bool = False, selected_steps=None,
                     timeout_ms: int | None = None) -> TestRunConfig:
    cfg = current_app.config
    config = TestRunConfig(
        continue_on_failure=bool(continue_on_failure),
        selected_steps=list(selected_steps) if selected_steps else None,
        step_delay_ms=cfg.get("STEP_DELAY_MS", 200),
        default_step_timeout_ms=cfg.get("DEFAULT_STEP_TIMEOUT_MS", 30_000),
    )
    if timeout_ms:
        config.timeout_ms = int(timeout_ms)
    return config


def persist_test_run(engine_result: dict, run_by: str | None = None) -> ProcessMapTestRun:
    """Store a ProcessMapTestEngine.run() result."""
    run_data = dict(engine_result["test_run"])
    run_data.pop("logs", None)
    run = ProcessMapTestRun(run_by=run_by, **run_data)
    db.session.add(run)
    db.session.flush()

    for step in engine_result["step_results"]:
        step_data = dict(step)
        step_data.pop("test_run_id", None)
        db.session.add(ProcessMapStepResult(test_run_id=run.id, **step_data))

    db.session.commit()
    return run


def run_test(process_map_id: int, run_mode: str = "mock", test_data: dict | None = None,
             continue_on_failure: bool = False, selected_steps=None,
             timeout_ms: int | None = None, run_by: str | None = None,
             fixture: str | None = None, snapshot_service=None) -> dict:
    """Execute the process map and persist the run with its step results."""
    validate_run_mode(run_mode)
    pm = get_process_map(process_map_id)

    data = {}
    if fixture:
        if fixture not in FIXTURES:
            raise ValidationError(f"Unknown fixture {fixture!r}",
                                  details={"fixture": sorted(FIXTURES)})
        data.update(FIXTURES[fixture](pm.org_id))
    data.update(test_data or {})

    engine = ProcessMapTestEngine(
        workflow_for(pm),
        run_mode=run_mode,
        test_data=data,
        config=build_run_config(continue_on_failure, selected_steps, timeout_ms),
        mocks=list_mocks(pm.id, active_only=True),
        snapshot_service=snapshot_service,
    )
    result = engine.run()
    run = persist_test_run(result, run_by=run_by)
    logger.info("Test run %s stored for process_map_id=%s: %s", run.run_key, pm.id,
                run.overall_result, extra={"process_map_id": pm.id, "run_id": run.run_key})
    return run.to_dict(include_steps=True)


def get_test_run(run_ref) -> dict:
    """Fetch a run by numeric id or run key."""
    run = None
    if isinstance(run_ref, int) or str(run_ref).isdigit():
        run = db.session.get(ProcessMapTestRun, int(run_ref))
    if run is None:
        run = db.session.execute(
            select(ProcessMapTestRun).where(ProcessMapTestRun.run_key == str(run_ref))
        ).scalar_one_or_none()
    if run is None:
        raise NotFoundError(resource="ProcessMapTestRun", resource_id=run_ref)
    return run.to_dict(include_steps=True)


def list_test_runs(process_map_id: int, limit: int = 20) -> list[dict]:
    get_process_map(process_map_id)
    runs = db.session.execute(
        select(ProcessMapTestRun)
        .where(ProcessMapTestRun.process_map_id == process_map_id)
        .order_by(ProcessMapTestRun.created_at.desc(), ProcessMapTestRun.id.desc())
        .limit(limit)
    ).scalars()
    return [r.to_dict() for r in runs]


# ═════════════════════════════════════════════════════════════════════════
# Scenarios & coverage
# ═════════════════════════════════════════════════════════════════════════


def _generator() -> ScenarioGenerator:
    return ScenarioGenerator(max_paths=current_app.config.get("PATH_DISCOVERY_MAX_PATHS", 50))


def analyze_coverage(pm: ProcessMap, scenarios, executed_only: bool = False) -> dict:
    discovery = _generator().discovery_for(pm)
    result = discovery.discover_paths()
    return CoverageAnalyzer().analyze(
        result.paths, discovery.branches(), pm.integrations(), scenarios,
        executed_only=executed_only, truncated=result.truncated,
    )


def generate_scenarios(process_map_id: int) -> dict:
    """Generate, store and score the scenario set for a process map.

    Replaces any previous scenarios and records a planned-coverage
    snapshot tagged with the structure hash.
    """
    pm = get_process_map(process_map_id)
    generator = _generator()
    structure_hash = test_scenario_service.generate_process_structure_hash(pm.structure())

    generated = generator.generate(pm)
    saved = test_scenario_service.save_scenarios(pm.id, pm.org_id, generated, structure_hash)

    coverage = analyze_coverage(pm, generated)
    snapshot_id = test_scenario_service.save_coverage_snapshot(
        pm.id, pm.org_id, coverage, count_by_type(generated), structure_hash)

    return {
        "process_map_id": pm.id,
        "process_structure_hash": structure_hash,
        "scenarios": saved,
        "counts": count_by_type(generated),
        "coverage": coverage,
        "coverage_snapshot_id": snapshot_id,
        "truncated": any(u["path_hash"] is None for u in coverage["uncovered_paths"]),
    }


def regenerate_stale_scenarios() -> int:
    """Regenerate scenarios for every map whose structure hash changed."""
    count = 0
    for pm in db.session.execute(select(ProcessMap).order_by(ProcessMap.id)).scalars().all():
        if not pm.steps:
            continue
        structure_hash = test_scenario_service.generate_process_structure_hash(pm.structure())
        if test_scenario_service.check_scenarios_need_regeneration(pm.id, structure_hash):
            generate_scenarios(pm.id)
            count += 1
    return count
