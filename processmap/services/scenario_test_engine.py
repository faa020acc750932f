"""Runs stored test scenarios through ProcessMapTestEngine.

A scenario run:
  1. restricts the engine to the scenario path (selected_steps)
  2. layers the scenario's mock overrides above every stored mock
  3. persists the ProcessMapTestRun like any other test run
  4. compares the outcome with the scenario expectation and stores a
     ScenarioRun (which also refreshes the scenario's last run result)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from processmap.core.exceptions import NotFoundError
from processmap.models import db
from processmap.models.scenario import TestScenario
from processmap.services import process_map_service, test_scenario_service
from processmap.services.execution_snapshot_service import get_snapshot_service
from processmap.services.process_map_test_engine import ProcessMapTestEngine
from processmap.services.scenario_generator import count_by_type

logger = logging.getLogger(__name__)


def build_override_mocks(scenario: TestScenario, stored_mocks: list[dict]) -> list[dict]:
    """Scenario overrides as mock dicts, ranked above every stored mock."""
    top = max((m.get("priority") or 0 for m in stored_mocks), default=0)
    overrides = []
    for index, override in enumerate(scenario.mock_overrides or []):
        overrides.append({
            "id": f"scenario-{scenario.id}-{index}",
            "integration": override.get("integration"),
            "endpoint": override.get("endpoint"),
            "step_id": override.get("step_id"),
            "mock_type": override.get("mock_type") or "success",
            "response_data": override.get("response_data"),
            "error_response": override.get("error_response"),
            "delay_ms": override.get("delay_ms") or 0,
            "match_conditions": override.get("match_conditions"),
            "priority": top + 1 + index,
            "is_active": True,
        })
    return overrides


def _failure_type(step_result: dict) -> str:
    details = step_result.get("error_details") or {}
    if details.get("mock_type"):
        return details["mock_type"]
    if details.get("name") == "StepTimeoutError":
        return "timeout"
    return "error"


def compare_with_expectation(scenario: TestScenario, result: str,
                             failure_step_id: str | None) -> tuple[bool, str | None]:
    """(matched, mismatch_details) for a finished scenario run.

    Any result other than ``pass`` counts as a failure.
    """
    expected = scenario.expected_result or "pass"
    actual = "pass" if result == "pass" else "fail"

    if expected != actual:
        if expected == "pass":
            where = f" at step {failure_step_id}" if failure_step_id else ""
            return False, f"Expected pass but run ended with {result}{where}"
        return False, f"Expected failure at step {scenario.expected_failure_step} but run passed"

    if expected == "fail" and scenario.expected_failure_step \
            and failure_step_id != scenario.expected_failure_step:
        return False, (
            f"Expected failure at step {scenario.expected_failure_step} "
            f"but failed at step {failure_step_id}"
        )
    return True, None


class ScenarioTestEngine:
    """Executes scenarios and records ScenarioRun rows."""

    def __init__(self, snapshot_service=None, sleep: Callable[[float], None] = time.sleep) -> None:
        self._snapshot_service = snapshot_service
        self._sleep = sleep

    def _snapshots(self, capture: bool):
        if not capture:
            return None
        return self._snapshot_service or get_snapshot_service()

    def run_scenario(self, scenario_id: int, run_mode: str = "mock",
                     capture_snapshots: bool = False, test_data: dict | None = None) -> dict:
        scenario = db.session.get(TestScenario, scenario_id)
        if scenario is None:
            raise NotFoundError(resource="TestScenario", resource_id=scenario_id)
        process_map_service.validate_run_mode(run_mode)
        pm = process_map_service.get_process_map(scenario.process_map_id)

        step_ids = list((scenario.path or {}).get("step_ids") or [])
        stored = process_map_service.list_mocks(pm.id, active_only=True)
        mocks = stored + build_override_mocks(scenario, stored)
        run_id = f"run_{uuid.uuid4().hex[:16]}"

        engine = ProcessMapTestEngine(
            process_map_service.workflow_for(pm),
            run_mode=run_mode,
            test_data=test_data,
            config=process_map_service.build_run_config(selected_steps=step_ids),
            mocks=mocks,
            snapshot_service=self._snapshots(capture_snapshots),
            sleep=self._sleep,
        )

        try:
            outcome = engine.run(run_id=run_id)
            run = process_map_service.persist_test_run(outcome, run_by=f"scenario:{scenario.id}")
        except Exception as exc:
            db.session.rollback()
            logger.exception("Scenario %s crashed during run %s", scenario.id, run_id,
                             extra={"run_id": run_id, "process_map_id": pm.id})
            scenario_run_id = test_scenario_service.save_scenario_run(
                scenario.id, run_id, "error", False,
                mismatch_details=f"Run crashed: {exc}",
                error_message=str(exc),
                failure_type="error",
            )
            return self._summary(scenario, run_id, scenario_run_id, "error", False,
                                 f"Run crashed: {exc}", error_message=str(exc),
                                 failure_type="error")

        failed_steps = [s for s in outcome["step_results"] if s["status"] == "failed"]
        first_failure = failed_steps[0] if failed_steps else None
        failure_step_id = first_failure["step_id"] if first_failure else None
        failure_type = _failure_type(first_failure) if first_failure else None

        result = run.overall_result
        matched, mismatch = compare_with_expectation(scenario, result, failure_step_id)
        executed = run.steps_passed + run.steps_failed

        scenario_run_id = test_scenario_service.save_scenario_run(
            scenario.id, run.run_key, result, matched,
            mismatch_details=mismatch,
            duration_ms=run.duration_ms,
            steps_executed=executed,
            steps_passed=run.steps_passed,
            steps_failed=run.steps_failed,
            error_message=run.error_message,
            failure_step_id=failure_step_id,
            failure_type=failure_type,
        )
        if not matched:
            logger.warning("Scenario %s did not match expectation: %s", scenario.id, mismatch,
                           extra={"run_id": run.run_key, "process_map_id": pm.id})

        return self._summary(
            scenario, run.run_key, scenario_run_id, result, matched, mismatch,
            duration_ms=run.duration_ms, steps_executed=executed,
            steps_passed=run.steps_passed, steps_failed=run.steps_failed,
            error_message=run.error_message, failure_step_id=failure_step_id,
            failure_type=failure_type,
        )

    def run_all(self, process_map_id: int, scenario_type: str | None = None,
                run_mode: str = "mock", capture_snapshots: bool = False) -> dict:
        """Run every scenario of the map, highest priority first."""
        pm = process_map_service.get_process_map(process_map_id)
        if scenario_type:
            scenarios = test_scenario_service.fetch_scenarios_by_type(pm.id, scenario_type)
        else:
            scenarios = test_scenario_service.fetch_scenarios(pm.id)
        scenario_ids = [s.id for s in scenarios]

        results = [
            self.run_scenario(sid, run_mode=run_mode, capture_snapshots=capture_snapshots)
            for sid in scenario_ids
        ]

        all_scenarios = test_scenario_service.fetch_scenarios(pm.id)
        coverage = process_map_service.analyze_coverage(pm, all_scenarios, executed_only=True)
        structure_hash = test_scenario_service.generate_process_structure_hash(pm.structure())
        test_scenario_service.save_coverage_snapshot(
            pm.id, pm.org_id, coverage, count_by_type(all_scenarios), structure_hash)

        matched = sum(1 for r in results if r["matched_expectation"])
        passed = sum(1 for r in results if r["result"] == "pass")
        logger.info("Ran %d scenarios for process_map_id=%s: matched=%d", len(results), pm.id,
                    matched, extra={"process_map_id": pm.id})
        return {
            "process_map_id": pm.id,
            "total": len(results),
            "passed": passed,
            "failed": len(results) - passed,
            "matched": matched,
            "mismatched": len(results) - matched,
            "coverage": coverage,
            "results": results,
        }

    @staticmethod
    def _summary(scenario, test_run_id, scenario_run_id, result, matched, mismatch, *,
                 duration_ms=None, steps_executed=0, steps_passed=0, steps_failed=0,
                 error_message=None, failure_step_id=None, failure_type=None) -> dict:
        return {
            "scenario_id": scenario.id,
            "scenario_name": scenario.name,
            "scenario_type": scenario.scenario_type,
            "scenario_run_id": scenario_run_id,
            "test_run_id": test_run_id,
            "result": result,
            "expected_result": scenario.expected_result,
            "matched_expectation": matched,
            "mismatch_details": mismatch,
            "duration_ms": duration_ms,
            "steps_executed": steps_executed,
            "steps_passed": steps_passed,
            "steps_failed": steps_failed,
            "error_message": error_message,
            "failure_step_id": failure_step_id,
            "failure_type": failure_type,
        }
