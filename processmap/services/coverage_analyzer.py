"""Coverage scoring for process map test scenarios.

Three dimensions, each a percentage in [0, 100]:
  path          discovered paths carried by a happy/branch scenario
  branch        branch edges traversed by any scenario path
  failure mode  (integration × failure mode) pairs with a scenario

overall_score = 0.4 * path + 0.3 * branch + 0.3 * failure mode.
A dimension with nothing to cover scores 100.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from processmap.models.process_map import FAILURE_MOCK_TYPES
from processmap.services.path_discovery import ScenarioPath

logger = logging.getLogger(__name__)

PATH_WEIGHT = 0.4
BRANCH_WEIGHT = 0.3
FAILURE_MODE_WEIGHT = 0.3


def _percent(covered: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return round(covered / total * 100, 1)


def _field(scenario, name):
    if isinstance(scenario, dict):
        return scenario.get(name)
    return getattr(scenario, name)


class CoverageAnalyzer:
    """Scores how much of a workflow a scenario set exercises."""

    def __init__(self, failure_modes: tuple[str, ...] = FAILURE_MOCK_TYPES) -> None:
        self.failure_modes = failure_modes

    def analyze(self, paths: list[ScenarioPath], branches: list[dict],
                integrations: list[str], scenarios, *, executed_only: bool = False,
                truncated: bool = False) -> dict:
        """Build the coverage report.

        ``scenarios`` may be TestScenario rows or generator dicts. With
        ``executed_only`` only scenarios that have a last run result count.
        """
        counted = [
            s for s in scenarios
            if not executed_only or _field(s, "last_run_result")
        ]

        # ── Paths ─────────────────────────────────────────────────────
        covered_hashes = set()
        traversed_edges = set()
        failure_pairs: dict[str, set] = {i: set() for i in integrations}

        for s in counted:
            path = _field(s, "path") or {}
            step_ids = path.get("step_ids") or []
            traversed_edges.update(zip(step_ids, step_ids[1:]))

            if _field(s, "scenario_type") == "failure_mode":
                for override in _field(s, "mock_overrides") or []:
                    integration = override.get("integration")
                    mode = override.get("mock_type")
                    if integration in failure_pairs and mode in self.failure_modes:
                        failure_pairs[integration].add(mode)
            else:
                covered_hashes.add(path.get("path_hash"))

        uncovered = []
        covered_paths = 0
        for p in paths:
            if p.path_hash in covered_hashes:
                covered_paths += 1
            else:
                uncovered.append({
                    "path_hash": p.path_hash,
                    "step_ids": list(p.step_ids),
                    "reason": ("No executed scenario covers this path" if executed_only
                               else "No scenario covers this path"),
                })
        if truncated:
            uncovered.append({
                "path_hash": None,
                "step_ids": [],
                "reason": "Path enumeration stopped at max_paths; further paths not analysed",
            })

        # ── Branches ──────────────────────────────────────────────────
        covered_branches = sum(
            1 for b in branches if (b["from"], b["to"]) in traversed_edges
        )

        # ── Failure modes ─────────────────────────────────────────────
        total_modes = len(self.failure_modes)
        failure_mode_coverage = {}
        full, partial = [], []
        covered_pairs = 0
        for integration in integrations:
            modes = failure_pairs[integration]
            covered_pairs += len(modes)
            failure_mode_coverage[integration] = {
                "covered_modes": [m for m in self.failure_modes if m in modes],
                "missing_modes": [m for m in self.failure_modes if m not in modes],
                "total_modes": total_modes,
                "coverage_percent": _percent(len(modes), total_modes),
            }
            if len(modes) == total_modes:
                full.append(integration)
            elif modes:
                partial.append(integration)

        path_pct = _percent(covered_paths, len(paths))
        branch_pct = _percent(covered_branches, len(branches))
        failure_pct = _percent(covered_pairs, len(integrations) * total_modes)
        overall = round(
            path_pct * PATH_WEIGHT + branch_pct * BRANCH_WEIGHT + failure_pct * FAILURE_MODE_WEIGHT,
            1,
        )

        report = {
            "total_paths": len(paths),
            "covered_paths": covered_paths,
            "path_coverage_percent": path_pct,
            "total_branches": len(branches),
            "covered_branches": covered_branches,
            "branch_coverage_percent": branch_pct,
            "failure_mode_coverage": failure_mode_coverage,
            "failure_mode_coverage_percent": failure_pct,
            "integrations_with_full_coverage": full,
            "integrations_with_partial_coverage": partial,
            "uncovered_paths": uncovered,
            "overall_score": overall,
            "calculated_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.debug(
            "Coverage: paths=%s%% branches=%s%% failure_modes=%s%% overall=%s",
            path_pct, branch_pct, failure_pct, overall,
        )
        return report
