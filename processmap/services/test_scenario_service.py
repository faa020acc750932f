"""Test scenario persistence — scenarios, coverage snapshots, scenario runs,
plus the history and trend queries built on top of them.

Rules:
  - process_map_id is always an explicit parameter.
  - db.session.commit() happens only in this file for these tables.
  - Run history timestamps are UTC; naive values read back from SQLite
    are treated as UTC.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from collections import OrderedDict
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select

from processmap.core.exceptions import NotFoundError, ValidationError
from processmap.models import db
from processmap.models.scenario import CoverageSnapshot, ScenarioRun, TestScenario
from processmap.services.scenario_generator import count_by_type
from processmap.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)

FAILED_RESULTS = ("fail", "error", "partial")
TREND_GROUPS = ("day", "week", "hour")


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _scenario_ids(process_map_id: int) -> list[int]:
    return list(db.session.execute(
        select(TestScenario.id).where(TestScenario.process_map_id == process_map_id)
    ).scalars())


def _get_scenario(scenario_id: int) -> TestScenario:
    scenario = db.session.get(TestScenario, scenario_id)
    if scenario is None:
        raise NotFoundError(resource="TestScenario", resource_id=scenario_id)
    return scenario


# ═════════════════════════════════════════════════════════════════════════
# Scenarios
# ═════════════════════════════════════════════════════════════════════════


def save_scenarios(process_map_id: int, org_id: str, scenarios: list[dict],
                   process_structure_hash: str | None = None) -> list[dict]:
    """Replace every scenario of the process map with ``scenarios``."""
    db.session.execute(delete(TestScenario).where(TestScenario.process_map_id == process_map_id))

    rows = []
    for s in scenarios:
        row = TestScenario(
            process_map_id=process_map_id,
            org_id=org_id,
            name=s["name"],
            description=s.get("description", ""),
            scenario_type=s["scenario_type"],
            path=s["path"],
            mock_overrides=s.get("mock_overrides") or [],
            expected_result=s.get("expected_result", "pass"),
            expected_failure_step=s.get("expected_failure_step"),
            expected_failure_type=s.get("expected_failure_type"),
            priority=s.get("priority", 0),
            tags=s.get("tags") or [],
            process_structure_hash=process_structure_hash,
            generated_at=s.get("generated_at") or utcnow(),
        )
        db.session.add(row)
        rows.append(row)

    db.session.commit()
    logger.info("Saved %d scenarios for process_map_id=%s", len(rows), process_map_id,
                extra={"process_map_id": process_map_id})
    return [r.to_dict() for r in rows]


def _scenario_query(process_map_id: int):
    return (
        select(TestScenario)
        .where(TestScenario.process_map_id == process_map_id)
        .order_by(TestScenario.priority.desc(), TestScenario.scenario_type.asc(), TestScenario.id.asc())
    )


def fetch_scenarios(process_map_id: int) -> list[TestScenario]:
    """Scenarios by priority (highest first), then type."""
    return list(db.session.execute(_scenario_query(process_map_id)).scalars())


def fetch_scenarios_by_type(process_map_id: int, scenario_type: str) -> list[TestScenario]:
    stmt = _scenario_query(process_map_id).where(TestScenario.scenario_type == scenario_type)
    return list(db.session.execute(stmt).scalars())


def update_scenario_last_run(scenario_id: int, result: str, run_at: datetime | None = None,
                             duration_ms: int = 0, test_run_id: str | None = None) -> dict:
    scenario = _get_scenario(scenario_id)
    scenario.last_run_result = {
        "result": result,
        "run_at": (run_at or utcnow()).isoformat(),
        "duration_ms": duration_ms or 0,
        "test_run_id": test_run_id,
    }
    db.session.commit()
    logger.debug("Updated last run for scenario %s: %s", scenario_id, result)
    return scenario.last_run_result


def delete_scenarios(process_map_id: int) -> int:
    deleted = db.session.execute(
        delete(TestScenario).where(TestScenario.process_map_id == process_map_id)
    ).rowcount
    db.session.commit()
    logger.info("Deleted %s scenarios for process_map_id=%s", deleted, process_map_id)
    return deleted


def check_scenarios_need_regeneration(process_map_id: int, current_hash: str) -> bool:
    """True when no scenarios exist or they were generated from another structure."""
    stored = db.session.execute(
        select(TestScenario.process_structure_hash)
        .where(TestScenario.process_map_id == process_map_id)
        .limit(1)
    ).first()
    if stored is None:
        return True
    return stored[0] != current_hash


# ═════════════════════════════════════════════════════════════════════════
# Coverage snapshots
# ═════════════════════════════════════════════════════════════════════════


def save_coverage_snapshot(process_map_id: int, org_id: str, coverage: dict,
                           scenario_counts: dict | None = None,
                           process_structure_hash: str | None = None) -> int:
    counts = scenario_counts or {}
    snapshot = CoverageSnapshot(
        process_map_id=process_map_id,
        org_id=org_id,
        total_paths=coverage["total_paths"],
        covered_paths=coverage["covered_paths"],
        path_coverage_percent=coverage["path_coverage_percent"],
        total_branches=coverage["total_branches"],
        covered_branches=coverage["covered_branches"],
        branch_coverage_percent=coverage["branch_coverage_percent"],
        failure_mode_coverage=coverage["failure_mode_coverage"],
        integrations_with_full_coverage=coverage["integrations_with_full_coverage"],
        integrations_with_partial_coverage=coverage["integrations_with_partial_coverage"],
        uncovered_paths=coverage["uncovered_paths"],
        overall_score=coverage["overall_score"],
        total_scenarios=counts.get("total", 0),
        happy_path_scenarios=counts.get("happy_path", 0),
        branch_path_scenarios=counts.get("branch_path", 0),
        failure_mode_scenarios=counts.get("failure_mode", 0),
        process_structure_hash=process_structure_hash,
        calculated_at=parse_datetime(coverage.get("calculated_at")) or utcnow(),
    )
    db.session.add(snapshot)
    db.session.commit()
    logger.info("Saved coverage snapshot %s for process_map_id=%s (score=%s)",
                snapshot.id, process_map_id, snapshot.overall_score,
                extra={"process_map_id": process_map_id})
    return snapshot.id


def _coverage_query(process_map_id: int):
    return (
        select(CoverageSnapshot)
        .where(CoverageSnapshot.process_map_id == process_map_id)
        .order_by(CoverageSnapshot.calculated_at.desc(), CoverageSnapshot.id.desc())
    )


def fetch_latest_coverage(process_map_id: int) -> dict | None:
    snapshot = db.session.execute(_coverage_query(process_map_id).limit(1)).scalars().first()
    return snapshot.to_coverage() if snapshot else None


def fetch_coverage_history(process_map_id: int, limit: int = 10) -> list[dict]:
    snapshots = db.session.execute(_coverage_query(process_map_id).limit(limit)).scalars()
    return [s.to_dict() for s in snapshots]


# ═════════════════════════════════════════════════════════════════════════
# Scenario runs
# ═════════════════════════════════════════════════════════════════════════


def save_scenario_run(scenario_id: int, test_run_id: str, result: str,
                      matched_expectation: bool, *, mismatch_details: str | None = None,
                      duration_ms: int | None = None, steps_executed: int = 0,
                      steps_passed: int = 0, steps_failed: int = 0,
                      error_message: str | None = None, failure_step_id: str | None = None,
                      failure_type: str | None = None,
                      executed_at: datetime | None = None) -> int:
    """Store one scenario run and refresh the scenario's last run result."""
    scenario = _get_scenario(scenario_id)
    executed_at = executed_at or utcnow()

    run = ScenarioRun(
        scenario_id=scenario.id,
        test_run_id=test_run_id,
        result=result,
        matched_expectation=matched_expectation,
        mismatch_details=mismatch_details,
        duration_ms=duration_ms,
        steps_executed=steps_executed,
        steps_passed=steps_passed,
        steps_failed=steps_failed,
        error_message=error_message,
        failure_step_id=failure_step_id,
        failure_type=failure_type,
        executed_at=executed_at,
    )
    db.session.add(run)
    db.session.commit()

    update_scenario_last_run(scenario.id, result, run_at=executed_at,
                             duration_ms=duration_ms or 0, test_run_id=test_run_id)
    logger.info("Saved scenario run %s for scenario %s: %s (matched=%s)",
                run.id, scenario_id, result, matched_expectation,
                extra={"run_id": test_run_id})
    return run.id


def fetch_scenario_run_history(scenario_id: int, limit: int = 10) -> list[dict]:
    runs = db.session.execute(
        select(ScenarioRun)
        .where(ScenarioRun.scenario_id == scenario_id)
        .order_by(ScenarioRun.executed_at.desc(), ScenarioRun.id.desc())
        .limit(limit)
    ).scalars()
    return [r.to_dict() for r in runs]


# ═════════════════════════════════════════════════════════════════════════
# History & trends
# ═════════════════════════════════════════════════════════════════════════


def fetch_process_map_run_history(process_map_id: int, limit: int = 50, offset: int = 0,
                                  start_date: datetime | None = None,
                                  end_date: datetime | None = None,
                                  result_filter: list[str] | None = None) -> dict:
    """Scenario runs of a process map, newest first, with scenario details.

    Returns {"runs": [...], "total": n} where ``total`` counts every run
    matching the filters, ignoring limit/offset.
    """
    scenarios = db.session.execute(
        select(TestScenario).where(TestScenario.process_map_id == process_map_id)
    ).scalars().all()
    if not scenarios:
        return {"runs": [], "total": 0}
    by_id = {s.id: s for s in scenarios}

    filters = [ScenarioRun.scenario_id.in_(list(by_id))]
    if start_date:
        filters.append(ScenarioRun.executed_at >= start_date)
    if end_date:
        filters.append(ScenarioRun.executed_at <= end_date)
    if result_filter:
        filters.append(ScenarioRun.result.in_(list(result_filter)))

    total = db.session.execute(select(func.count(ScenarioRun.id)).where(*filters)).scalar() or 0
    runs = db.session.execute(
        select(ScenarioRun)
        .where(*filters)
        .order_by(ScenarioRun.executed_at.desc(), ScenarioRun.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars()

    items = []
    for run in runs:
        d = run.to_dict()
        scenario = by_id.get(run.scenario_id)
        d["scenario"] = {
            "name": scenario.name,
            "scenario_type": scenario.scenario_type,
            "expected_result": scenario.expected_result,
        } if scenario else None
        items.append(d)
    return {"runs": items, "total": total}


def _half_up(value: float) -> int:
    """Round halves away from zero for non-negative values (62.5 -> 63)."""
    return int(math.floor(value + 0.5))


def _percent(part: int, total: int) -> int:
    return _half_up(part * 100 / total) if total else 0


def _bucket_key(executed_at: datetime, group_by: str) -> str:
    if group_by == "hour":
        return executed_at.strftime("%Y-%m-%dT%H:00:00Z")
    if group_by == "week":
        # Weeks start on Sunday
        week_start = executed_at - timedelta(days=(executed_at.weekday() + 1) % 7)
        return week_start.strftime("%Y-%m-%d")
    return executed_at.strftime("%Y-%m-%d")


def fetch_run_trends(process_map_id: int, days: int = 30, group_by: str = "day",
                     now: datetime | None = None) -> list[dict]:
    """Pass/fail counts, pass rate and average duration per time bucket.

    ``partial`` counts as failed. Buckets are sorted by date ascending.
    """
    if group_by not in TREND_GROUPS:
        raise ValidationError(f"group_by must be one of: {', '.join(TREND_GROUPS)}",
                              details={"group_by": group_by})

    scenario_ids = _scenario_ids(process_map_id)
    if not scenario_ids:
        return []

    start = (now or utcnow()) - timedelta(days=days)
    runs = db.session.execute(
        select(ScenarioRun.result, ScenarioRun.executed_at, ScenarioRun.duration_ms)
        .where(ScenarioRun.scenario_id.in_(scenario_ids), ScenarioRun.executed_at >= start)
        .order_by(ScenarioRun.executed_at.asc())
    ).all()

    buckets: OrderedDict[str, dict] = OrderedDict()
    for result, executed_at, duration_ms in runs:
        key = _bucket_key(_aware(executed_at), group_by)
        b = buckets.setdefault(key, {"passed": 0, "failed": 0, "errors": 0,
                                     "total_duration": 0, "count": 0})
        b["count"] += 1
        b["total_duration"] += duration_ms or 0
        if result == "pass":
            b["passed"] += 1
        elif result in ("fail", "partial"):
            b["failed"] += 1
        elif result == "error":
            b["errors"] += 1

    trends = []
    for date_key, b in buckets.items():
        total = b["passed"] + b["failed"] + b["errors"]
        trends.append({
            "date": date_key,
            "passed": b["passed"],
            "failed": b["failed"],
            "errors": b["errors"],
            "total": total,
            "pass_rate": _percent(b["passed"], total),
            "avg_duration_ms": _half_up(b["total_duration"] / b["count"]) if b["count"] else 0,
        })
    return sorted(trends, key=lambda t: t["date"])


def fetch_recent_failures(process_map_id: int, limit: int = 10) -> list[dict]:
    """Scenarios whose last run failed, most recent first."""
    scenarios = [
        s for s in fetch_scenarios(process_map_id)
        if s.last_run_result and s.last_run_result.get("result") in FAILED_RESULTS
    ]
    if not scenarios:
        return []

    runs = db.session.execute(
        select(ScenarioRun)
        .where(ScenarioRun.scenario_id.in_([s.id for s in scenarios]),
               ScenarioRun.result.in_(FAILED_RESULTS))
        .order_by(ScenarioRun.executed_at.desc(), ScenarioRun.id.desc())
    ).scalars()

    failure_counts: dict[int, int] = {}
    last_errors: dict[int, ScenarioRun] = {}
    for run in runs:
        failure_counts[run.scenario_id] = failure_counts.get(run.scenario_id, 0) + 1
        last_errors.setdefault(run.scenario_id, run)

    failures = []
    for s in scenarios:
        last = last_errors.get(s.id)
        failures.append({
            "scenario_id": s.id,
            "scenario_name": s.name,
            "scenario_type": s.scenario_type,
            "last_run_result": s.last_run_result["result"],
            "last_run_at": s.last_run_result.get("run_at"),
            "error_message": last.error_message if last else None,
            "failure_step_id": last.failure_step_id if last else None,
            "failure_count": failure_counts.get(s.id, 1),
        })

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    failures.sort(key=lambda f: parse_datetime(f["last_run_at"]) or epoch, reverse=True)
    return failures[:limit]


def _last_run_counts(scenarios) -> dict:
    counts = {"passed": 0, "failed": 0, "not_run": 0}
    for s in scenarios:
        if not s.last_run_result:
            counts["not_run"] += 1
        elif s.last_run_result.get("result") == "pass":
            counts["passed"] += 1
        else:
            counts["failed"] += 1
    return counts


def fetch_scenario_summary_with_trends(process_map_id: int, now: datetime | None = None) -> dict:
    """Current pass rate against the earlier half of the last 14 days."""
    now = now or utcnow()
    scenarios = fetch_scenarios(process_map_id)
    counts = _last_run_counts(scenarios)
    ran = len(scenarios) - counts["not_run"]
    current = {
        "total": len(scenarios),
        "passed": counts["passed"],
        "failed": counts["failed"],
        "not_run": counts["not_run"],
        "pass_rate": _percent(counts["passed"], ran),
    }

    trends = fetch_run_trends(process_map_id, days=14, now=now)

    previous_pass_rate = 0
    if len(trends) >= 7:
        earlier = trends[: len(trends) // 2]
        prev_total = sum(t["total"] for t in earlier)
        prev_passed = sum(t["passed"] for t in earlier)
        previous_pass_rate = _percent(prev_passed, prev_total)

    change = current["pass_rate"] - previous_pass_rate
    if change > 2:
        trend = "up"
    elif change < -2:
        trend = "down"
    else:
        trend = "stable"

    today = now.strftime("%Y-%m-%d")
    week_ago = (now - timedelta(days=7)).strftime("%Y-%m-%d")
    return {
        "current": current,
        "previous": {
            "pass_rate": previous_pass_rate,
            "trend": trend,
            "change_percent": abs(change),
        },
        "recent_activity": {
            "runs_today": sum(t["total"] for t in trends if t["date"] == today),
            "runs_this_week": sum(t["total"] for t in trends if t["date"] >= week_ago),
            "avg_duration_ms": (_half_up(sum(t["avg_duration_ms"] for t in trends) / len(trends))
                                if trends else 0),
        },
    }


def get_scenario_stats(process_map_id: int) -> dict:
    scenarios = fetch_scenarios(process_map_id)
    by_type = count_by_type(scenarios)
    by_type.pop("total")
    stats = {"total": len(scenarios), "by_type": by_type}
    stats.update(_last_run_counts(scenarios))
    return stats


# ═════════════════════════════════════════════════════════════════════════
# Utilities
# ═════════════════════════════════════════════════════════════════════════


def generate_process_structure_hash(structure) -> str:
    """SHA-256 of the canonical JSON encoding (sorted keys, compact)."""
    canonical = json.dumps(structure, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
