"""Deterministic test-scenario generation for a process map.

For a map with discovered paths P1..Pn and integrations I1..Im:
  - P1            → one happy_path scenario
  - P2..Pn        → one branch_path scenario each
  - Ii × mode     → one failure_mode scenario per failure mode, injected at
                    the first step using Ii on the first path containing it

Scenarios are plain dicts in the TestScenario column shape; persistence is
handled by test_scenario_service.save_scenarios().
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from processmap.models.process_map import FAILURE_MOCK_TYPES
from processmap.services.path_discovery import DEFAULT_MAX_PATHS, PathDiscovery, ScenarioPath

logger = logging.getLogger(__name__)

PRIORITY_HAPPY_PATH = 10
PRIORITY_FAILURE_MODE = 7
PRIORITY_BRANCH_PATH = 5

# Canned error bodies injected by failure-mode scenarios
FAILURE_RESPONSES = {
    "error": {"error": "internal_error", "error_description": "Upstream service error", "status": 500},
    "timeout": {"error": "timeout", "error_description": "Request timed out", "status": 504},
    "rate_limit": {
        "error": "rate_limited",
        "error_description": "Too many requests. Please try again later.",
        "retry_after": 60,
        "status": 429,
    },
    "auth_failure": {"error": "unauthorized", "error_description": "Invalid or expired token", "status": 401},
}

_MODE_LABELS = {
    "error": "Error",
    "timeout": "Timeout",
    "rate_limit": "Rate Limit",
    "auth_failure": "Auth Failure",
}


class ScenarioGenerator:
    """Builds happy-path, branch-path and failure-mode scenarios."""

    def __init__(self, max_paths: int = DEFAULT_MAX_PATHS,
                 failure_modes: tuple[str, ...] = FAILURE_MOCK_TYPES) -> None:
        self.max_paths = max_paths
        self.failure_modes = failure_modes

    def discovery_for(self, process_map) -> PathDiscovery:
        return PathDiscovery(process_map.steps or [], process_map.edges or [],
                             max_paths=self.max_paths)

    def generate(self, process_map, generated_at: datetime | None = None) -> list[dict]:
        generated_at = generated_at or datetime.now(timezone.utc)
        steps_by_id = {s["id"]: s for s in (process_map.steps or []) if s.get("id")}
        discovery = self.discovery_for(process_map)
        result = discovery.discover_paths()

        scenarios: list[dict] = []
        for index, path in enumerate(result.paths):
            if index == 0:
                scenarios.append(self._path_scenario(
                    process_map, path, steps_by_id, "happy_path", generated_at))
            else:
                scenarios.append(self._path_scenario(
                    process_map, path, steps_by_id, "branch_path", generated_at,
                    ordinal=index))

        for integration in process_map.integrations():
            located = self._locate_integration(integration, result.paths, steps_by_id)
            if located is None:
                # Integration only appears on paths cut off by max_paths
                logger.warning(
                    "process_map_id=%s integration %s not on any discovered path — "
                    "no failure-mode scenarios", process_map.id, integration,
                )
                continue
            path, step_id = located
            for mode in self.failure_modes:
                scenarios.append(self._failure_scenario(
                    process_map, path, step_id, steps_by_id, integration, mode, generated_at))

        logger.info(
            "Generated %d scenarios for process_map_id=%s (paths=%d, truncated=%s)",
            len(scenarios), process_map.id, len(result.paths), result.truncated,
        )
        return scenarios

    # ── Builders ──────────────────────────────────────────────────────

    @staticmethod
    def _step_names(path: ScenarioPath, steps_by_id: dict) -> list[str]:
        return [steps_by_id.get(sid, {}).get("name", sid) for sid in path.step_ids]

    def _path_scenario(self, process_map, path, steps_by_id, scenario_type,
                       generated_at, ordinal=0) -> dict:
        names = self._step_names(path, steps_by_id)
        if scenario_type == "happy_path":
            name = f"Happy path: {names[0]} → {names[-1]}"
            priority = PRIORITY_HAPPY_PATH
        else:
            labels = [c["label"] for c in path.branch_choices if c.get("label")]
            suffix = f" ({', '.join(labels)})" if labels else ""
            name = f"Branch path {ordinal}: {names[0]} → {names[-1]}{suffix}"
            priority = PRIORITY_BRANCH_PATH

        return {
            "process_map_id": process_map.id,
            "org_id": process_map.org_id,
            "name": name,
            "description": "Executes steps: " + " → ".join(names),
            "scenario_type": scenario_type,
            "path": path.to_dict(),
            "mock_overrides": [],
            "expected_result": "pass",
            "expected_failure_step": None,
            "expected_failure_type": None,
            "priority": priority,
            "tags": [scenario_type],
            "generated_at": generated_at,
        }

    def _failure_scenario(self, process_map, path, step_id, steps_by_id,
                          integration, mode, generated_at) -> dict:
        step_name = steps_by_id.get(step_id, {}).get("name", step_id)
        return {
            "process_map_id": process_map.id,
            "org_id": process_map.org_id,
            "name": f"{integration} {_MODE_LABELS.get(mode, mode)} at {step_name}",
            "description": (
                f"Injects a {mode} response from {integration} at step "
                f"'{step_name}' and expects the run to fail there."
            ),
            "scenario_type": "failure_mode",
            "path": path.to_dict(),
            "mock_overrides": [{
                "integration": integration,
                "mock_type": mode,
                "step_id": step_id,
                "error_response": dict(FAILURE_RESPONSES.get(mode, {})),
            }],
            "expected_result": "fail",
            "expected_failure_step": step_id,
            "expected_failure_type": mode,
            "priority": PRIORITY_FAILURE_MODE,
            "tags": ["failure_mode", integration, mode],
            "generated_at": generated_at,
        }

    @staticmethod
    def _locate_integration(integration, paths, steps_by_id):
        """First (path, step_id) where a step on the path uses ``integration``."""
        for path in paths:
            for sid in path.step_ids:
                if steps_by_id.get(sid, {}).get("integration") == integration:
                    return path, sid
        return None


def count_by_type(scenarios) -> dict:
    """Scenario counts keyed the way CoverageSnapshot stores them."""
    counts = {"total": 0, "happy_path": 0, "branch_path": 0, "failure_mode": 0}
    for s in scenarios:
        scenario_type = s["scenario_type"] if isinstance(s, dict) else s.scenario_type
        counts["total"] += 1
        if scenario_type in counts:
            counts[scenario_type] += 1
    return counts
