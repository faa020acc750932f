"""Tests for test_scenario_service — persistence, coverage history, run trends."""

from datetime import datetime, timezone

import pytest

from processmap.core.exceptions import NotFoundError, ValidationError
from processmap.services import process_map_service
from processmap.services import test_scenario_service as svc

NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)


def _at(day, hour):
    return datetime(2026, 3, day, hour, 0, tzinfo=timezone.utc)


@pytest.fixture()
def scenarios(process_map):
    process_map_service.generate_scenarios(process_map["id"])
    return svc.fetch_scenarios(process_map["id"])


@pytest.fixture()
def happy_runs(scenarios):
    """Three runs of the happy path scenario: pass, fail, then error."""
    happy = scenarios[0]
    svc.save_scenario_run(happy.id, "run_a", "pass", True, duration_ms=100,
                          executed_at=_at(10, 9))
    svc.save_scenario_run(happy.id, "run_b", "fail", False, duration_ms=300,
                          failure_step_id="s3", error_message="Mock error: slack",
                          executed_at=_at(10, 15))
    svc.save_scenario_run(happy.id, "run_c", "error", False, duration_ms=50,
                          error_message="Run crashed: boom", executed_at=_at(11, 8))
    return happy


def _daily_runs(scenario, results):
    """One run per day ending on NOW's date, oldest first."""
    first_day = 12 - len(results)
    for offset, result in enumerate(results):
        day = first_day + offset
        svc.save_scenario_run(scenario.id, f"run_day_{day}", result, result == "pass",
                              duration_ms=100, executed_at=_at(day, 9))


class TestScenarios:
    def test_fetch_orders_by_priority(self, scenarios):
        assert len(scenarios) == 9
        assert scenarios[0].scenario_type == "happy_path"
        assert {s.scenario_type for s in scenarios[1:]} == {"failure_mode"}

    def test_fetch_by_type(self, process_map, scenarios):
        failures = svc.fetch_scenarios_by_type(process_map["id"], "failure_mode")
        assert len(failures) == 8
        assert svc.fetch_scenarios_by_type(process_map["id"], "branch_path") == []

    def test_save_replaces_previous_set(self, process_map, scenarios):
        process_map_service.generate_scenarios(process_map["id"])
        assert len(svc.fetch_scenarios(process_map["id"])) == 9

    def test_delete(self, process_map, scenarios):
        assert svc.delete_scenarios(process_map["id"]) == 9
        assert svc.fetch_scenarios(process_map["id"]) == []

    def test_update_last_run(self, scenarios):
        last = svc.update_scenario_last_run(scenarios[0].id, "pass", run_at=NOW,
                                            duration_ms=42, test_run_id="run_x")
        assert last == {"result": "pass", "run_at": NOW.isoformat(),
                        "duration_ms": 42, "test_run_id": "run_x"}

    def test_update_last_run_unknown_scenario(self):
        with pytest.raises(NotFoundError):
            svc.update_scenario_last_run(999, "pass")

    def test_regeneration_check(self, process_map, branching_map, scenarios):
        stored_hash = scenarios[0].process_structure_hash
        assert svc.check_scenarios_need_regeneration(process_map["id"], stored_hash) is False
        assert svc.check_scenarios_need_regeneration(process_map["id"], "other") is True
        assert svc.check_scenarios_need_regeneration(branching_map["id"], stored_hash) is True


class TestCoverageSnapshots:
    def test_latest_after_generation(self, process_map, scenarios):
        latest = svc.fetch_latest_coverage(process_map["id"])
        assert latest["overall_score"] == 100.0
        assert latest["total_paths"] == 1
        assert set(latest["integrations_with_full_coverage"]) == {"hubspot", "slack"}

    def test_history_newest_first(self, process_map, scenarios):
        pm = process_map_service.get_process_map(process_map["id"])
        coverage = process_map_service.analyze_coverage(pm, scenarios, executed_only=True)
        snapshot_id = svc.save_coverage_snapshot(pm.id, pm.org_id, coverage,
                                                 {"total": 9, "failure_mode": 8})
        history = svc.fetch_coverage_history(pm.id)
        assert len(history) == 2
        assert history[0]["snapshot_id"] == snapshot_id
        assert history[0]["overall_score"] == 30.0
        assert history[0]["failure_mode_scenarios"] == 8

    def test_no_snapshot(self, process_map):
        assert svc.fetch_latest_coverage(process_map["id"]) is None
        assert svc.fetch_coverage_history(process_map["id"]) == []


class TestScenarioRuns:
    def test_save_updates_last_run(self, happy_runs):
        assert happy_runs.last_run_result["result"] == "error"
        assert happy_runs.last_run_result["test_run_id"] == "run_c"

    def test_run_history_newest_first(self, happy_runs):
        history = svc.fetch_scenario_run_history(happy_runs.id)
        assert [r["test_run_id"] for r in history] == ["run_c", "run_b", "run_a"]
        assert history[1]["failure_step_id"] == "s3"

    def test_save_for_unknown_scenario(self):
        with pytest.raises(NotFoundError):
            svc.save_scenario_run(999, "run_x", "pass", True)


class TestHistory:
    def test_includes_scenario_details(self, process_map, happy_runs):
        history = svc.fetch_process_map_run_history(process_map["id"])
        assert history["total"] == 3
        assert history["runs"][0]["scenario"]["scenario_type"] == "happy_path"

    def test_pagination_keeps_total(self, process_map, happy_runs):
        page = svc.fetch_process_map_run_history(process_map["id"], limit=1, offset=1)
        assert page["total"] == 3
        assert [r["test_run_id"] for r in page["runs"]] == ["run_b"]

    def test_filters(self, process_map, happy_runs):
        passed = svc.fetch_process_map_run_history(process_map["id"], result_filter=["pass"])
        assert [r["test_run_id"] for r in passed["runs"]] == ["run_a"]

        recent = svc.fetch_process_map_run_history(process_map["id"], start_date=_at(11, 0))
        assert recent["total"] == 1

        early = svc.fetch_process_map_run_history(process_map["id"], end_date=_at(10, 12))
        assert [r["test_run_id"] for r in early["runs"]] == ["run_a"]

    def test_map_without_scenarios(self, process_map):
        assert svc.fetch_process_map_run_history(process_map["id"]) == {"runs": [], "total": 0}


class TestTrends:
    def test_daily(self, process_map, happy_runs):
        trends = svc.fetch_run_trends(process_map["id"], now=NOW)
        assert trends == [
            {"date": "2026-03-10", "passed": 1, "failed": 1, "errors": 0, "total": 2,
             "pass_rate": 50, "avg_duration_ms": 200},
            {"date": "2026-03-11", "passed": 0, "failed": 0, "errors": 1, "total": 1,
             "pass_rate": 0, "avg_duration_ms": 50},
        ]

    def test_weekly_buckets_start_on_sunday(self, process_map, happy_runs):
        trends = svc.fetch_run_trends(process_map["id"], group_by="week", now=NOW)
        assert [(t["date"], t["total"]) for t in trends] == [("2026-03-08", 3)]

    def test_hourly(self, process_map, happy_runs):
        trends = svc.fetch_run_trends(process_map["id"], group_by="hour", now=NOW)
        assert [t["date"] for t in trends] == [
            "2026-03-10T09:00:00Z", "2026-03-10T15:00:00Z", "2026-03-11T08:00:00Z",
        ]

    def test_window_excludes_old_runs(self, process_map, happy_runs):
        svc.save_scenario_run(happy_runs.id, "run_old", "pass", True,
                              executed_at=datetime(2026, 1, 5, tzinfo=timezone.utc))
        trends = svc.fetch_run_trends(process_map["id"], days=30, now=NOW)
        assert sum(t["total"] for t in trends) == 3

    def test_bad_group_by(self, process_map):
        with pytest.raises(ValidationError):
            svc.fetch_run_trends(process_map["id"], group_by="month")

    def test_no_scenarios(self, process_map):
        assert svc.fetch_run_trends(process_map["id"], now=NOW) == []

    def test_rates_round_half_up(self, process_map, scenarios):
        happy = scenarios[0]
        for i, result in enumerate(["pass"] * 5 + ["fail"] * 3):
            svc.save_scenario_run(happy.id, f"run_{i}", result, result == "pass",
                                  duration_ms=14 if i == 0 else 10, executed_at=_at(9, i))
        (bucket,) = svc.fetch_run_trends(process_map["id"], now=NOW)
        assert bucket["pass_rate"] == 63
        assert bucket["avg_duration_ms"] == 11


class TestFailuresAndSummary:
    def test_recent_failures(self, process_map, happy_runs):
        failures = svc.fetch_recent_failures(process_map["id"])
        assert len(failures) == 1
        failure = failures[0]
        assert failure["scenario_id"] == happy_runs.id
        assert failure["last_run_result"] == "error"
        assert failure["error_message"] == "Run crashed: boom"
        assert failure["failure_count"] == 2

    def test_passing_scenarios_are_not_failures(self, process_map, scenarios):
        svc.save_scenario_run(scenarios[0].id, "run_ok", "pass", True)
        assert svc.fetch_recent_failures(process_map["id"]) == []

    def test_summary(self, process_map, happy_runs):
        summary = svc.fetch_scenario_summary_with_trends(process_map["id"], now=NOW)
        assert summary["current"] == {"total": 9, "passed": 0, "failed": 1,
                                      "not_run": 8, "pass_rate": 0}
        assert summary["previous"] == {"pass_rate": 0, "trend": "stable", "change_percent": 0}
        assert summary["recent_activity"] == {"runs_today": 1, "runs_this_week": 3,
                                              "avg_duration_ms": 125}

    def test_summary_trend_up(self, process_map, scenarios):
        _daily_runs(scenarios[0], ["fail"] * 4 + ["pass"] * 4)
        summary = svc.fetch_scenario_summary_with_trends(process_map["id"], now=NOW)
        assert summary["current"]["pass_rate"] == 100
        assert summary["previous"] == {"pass_rate": 0, "trend": "up", "change_percent": 100}

    def test_summary_trend_down(self, process_map, scenarios):
        _daily_runs(scenarios[0], ["pass"] * 3 + ["fail"] + ["pass"] * 3 + ["fail"])
        summary = svc.fetch_scenario_summary_with_trends(process_map["id"], now=NOW)
        assert summary["current"]["pass_rate"] == 0
        assert summary["previous"] == {"pass_rate": 75, "trend": "down", "change_percent": 75}

    def test_summary_needs_a_week_of_buckets(self, process_map, scenarios):
        _daily_runs(scenarios[0], ["pass"] * 3 + ["fail"] * 2 + ["pass"])
        summary = svc.fetch_scenario_summary_with_trends(process_map["id"], now=NOW)
        assert summary["previous"]["pass_rate"] == 0
        assert summary["previous"]["trend"] == "up"

    def test_stats(self, process_map, happy_runs):
        stats = svc.get_scenario_stats(process_map["id"])
        assert stats == {
            "total": 9,
            "by_type": {"happy_path": 1, "branch_path": 0, "failure_mode": 8},
            "passed": 0,
            "failed": 1,
            "not_run": 8,
        }


class TestStructureHash:
    def test_key_order_does_not_matter(self):
        a = {"steps": [{"id": "s1", "name": "A"}], "edges": []}
        b = {"edges": [], "steps": [{"name": "A", "id": "s1"}]}
        assert svc.generate_process_structure_hash(a) == svc.generate_process_structure_hash(b)

    def test_changes_with_structure(self):
        a = {"steps": [{"id": "s1"}], "edges": []}
        b = {"steps": [{"id": "s2"}], "edges": []}
        digest = svc.generate_process_structure_hash(a)
        assert len(digest) == 64
        assert digest != svc.generate_process_structure_hash(b)
