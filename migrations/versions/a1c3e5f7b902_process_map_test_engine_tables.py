"""process_map_test_engine_tables

Create the process map test engine schema:
  process_maps, process_map_mocks
  process_map_test_runs, process_map_step_results
  process_map_test_scenarios, process_map_coverage_snapshots, process_map_scenario_runs
  execution_snapshots, execution_checkpoints, http_request_recordings

Revision ID: a1c3e5f7b902
Revises:
Create Date: 2026-03-02 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c3e5f7b902"
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # ── Process maps & mocks ─────────────────────────────────────────────
    if "process_maps" not in existing_tables:
        op.create_table(
            "process_maps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("process_type", sa.String(length=20), nullable=True,
                      comment="workflow | integration"),
            sa.Column("steps", sa.JSON(), nullable=True),
            sa.Column("edges", sa.JSON(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_maps_org_id", "process_maps", ["org_id"])

    if "process_map_mocks" not in existing_tables:
        op.create_table(
            "process_map_mocks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("process_map_id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.String(length=64), nullable=False),
            sa.Column("integration", sa.String(length=50), nullable=False),
            sa.Column("endpoint", sa.String(length=200), nullable=True),
            sa.Column("mock_type", sa.String(length=20), nullable=True,
                      comment="success | error | timeout | rate_limit | auth_failure"),
            sa.Column("response_data", sa.JSON(), nullable=True),
            sa.Column("error_response", sa.JSON(), nullable=True),
            sa.Column("delay_ms", sa.Integer(), nullable=True),
            sa.Column("match_conditions", sa.JSON(), nullable=True),
            sa.Column("priority", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["process_map_id"], ["process_maps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_map_mocks_process_map_id", "process_map_mocks",
                        ["process_map_id"])

    # ── Test runs ────────────────────────────────────────────────────────
    if "process_map_test_runs" not in existing_tables:
        op.create_table(
            "process_map_test_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("run_key", sa.String(length=64), nullable=False),
            sa.Column("process_map_id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.String(length=64), nullable=False),
            sa.Column("run_mode", sa.String(length=30), nullable=True,
                      comment="schema_validation | mock | production_readonly"),
            sa.Column("test_data", sa.JSON(), nullable=True),
            sa.Column("run_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True,
                      comment="pending | running | completed | failed | cancelled"),
            sa.Column("overall_result", sa.String(length=20), nullable=True,
                      comment="pass | fail | partial | error"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("steps_total", sa.Integer(), nullable=True),
            sa.Column("steps_passed", sa.Integer(), nullable=True),
            sa.Column("steps_failed", sa.Integer(), nullable=True),
            sa.Column("steps_skipped", sa.Integer(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("error_details", sa.JSON(), nullable=True),
            sa.Column("run_by", sa.String(length=100), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["process_map_id"], ["process_maps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_map_test_runs_run_key", "process_map_test_runs",
                        ["run_key"], unique=True)
        op.create_index("ix_process_map_test_runs_process_map_id", "process_map_test_runs",
                        ["process_map_id"])

    if "process_map_step_results" not in existing_tables:
        op.create_table(
            "process_map_step_results",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("test_run_id", sa.Integer(), nullable=False),
            sa.Column("step_id", sa.String(length=100), nullable=False),
            sa.Column("step_name", sa.String(length=200), nullable=True),
            sa.Column("sequence_number", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True,
                      comment="pending | running | passed | failed | skipped"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("input_data", sa.JSON(), nullable=True),
            sa.Column("output_data", sa.JSON(), nullable=True),
            sa.Column("expected_output", sa.JSON(), nullable=True),
            sa.Column("validation_results", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("error_details", sa.JSON(), nullable=True),
            sa.Column("error_stack", sa.Text(), nullable=True),
            sa.Column("was_mocked", sa.Boolean(), nullable=True),
            sa.Column("mock_source", sa.String(length=50), nullable=True),
            sa.Column("logs", sa.JSON(), nullable=True),
            sa.ForeignKeyConstraint(["test_run_id"], ["process_map_test_runs.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_map_step_results_test_run_id", "process_map_step_results",
                        ["test_run_id"])

    # ── Scenarios, coverage, scenario runs ───────────────────────────────
    if "process_map_test_scenarios" not in existing_tables:
        op.create_table(
            "process_map_test_scenarios",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("process_map_id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("scenario_type", sa.String(length=20), nullable=False,
                      comment="happy_path | branch_path | failure_mode"),
            sa.Column("path", sa.JSON(), nullable=False),
            sa.Column("mock_overrides", sa.JSON(), nullable=True),
            sa.Column("expected_result", sa.String(length=10), nullable=True,
                      comment="pass | fail"),
            sa.Column("expected_failure_step", sa.String(length=100), nullable=True),
            sa.Column("expected_failure_type", sa.String(length=20), nullable=True),
            sa.Column("priority", sa.Integer(), nullable=True),
            sa.Column("tags", sa.JSON(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True,
                      comment="{result, run_at, duration_ms, test_run_id}"),
            sa.Column("version", sa.Integer(), nullable=True),
            sa.Column("process_structure_hash", sa.String(length=64), nullable=True),
            sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["process_map_id"], ["process_maps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_map_test_scenarios_process_map_id",
                        "process_map_test_scenarios", ["process_map_id"])

    if "process_map_coverage_snapshots" not in existing_tables:
        op.create_table(
            "process_map_coverage_snapshots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("process_map_id", sa.Integer(), nullable=False),
            sa.Column("org_id", sa.String(length=64), nullable=False),
            sa.Column("total_paths", sa.Integer(), nullable=True),
            sa.Column("covered_paths", sa.Integer(), nullable=True),
            sa.Column("path_coverage_percent", sa.Float(), nullable=True),
            sa.Column("total_branches", sa.Integer(), nullable=True),
            sa.Column("covered_branches", sa.Integer(), nullable=True),
            sa.Column("branch_coverage_percent", sa.Float(), nullable=True),
            sa.Column("failure_mode_coverage", sa.JSON(), nullable=True),
            sa.Column("integrations_with_full_coverage", sa.JSON(), nullable=True),
            sa.Column("integrations_with_partial_coverage", sa.JSON(), nullable=True),
            sa.Column("uncovered_paths", sa.JSON(), nullable=True),
            sa.Column("overall_score", sa.Float(), nullable=True),
            sa.Column("total_scenarios", sa.Integer(), nullable=True),
            sa.Column("happy_path_scenarios", sa.Integer(), nullable=True),
            sa.Column("branch_path_scenarios", sa.Integer(), nullable=True),
            sa.Column("failure_mode_scenarios", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=True),
            sa.Column("process_structure_hash", sa.String(length=64), nullable=True),
            sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["process_map_id"], ["process_maps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_map_coverage_snapshots_process_map_id",
                        "process_map_coverage_snapshots", ["process_map_id"])

    if "process_map_scenario_runs" not in existing_tables:
        op.create_table(
            "process_map_scenario_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("scenario_id", sa.Integer(), nullable=False),
            sa.Column("test_run_id", sa.String(length=64), nullable=False),
            sa.Column("result", sa.String(length=10), nullable=False,
                      comment="pass | fail | partial | error"),
            sa.Column("matched_expectation", sa.Boolean(), nullable=True),
            sa.Column("mismatch_details", sa.Text(), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("steps_executed", sa.Integer(), nullable=True),
            sa.Column("steps_passed", sa.Integer(), nullable=True),
            sa.Column("steps_failed", sa.Integer(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("failure_step_id", sa.String(length=100), nullable=True),
            sa.Column("failure_type", sa.String(length=20), nullable=True),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["scenario_id"], ["process_map_test_scenarios.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_process_map_scenario_runs_scenario_id", "process_map_scenario_runs",
                        ["scenario_id"])
        op.create_index("ix_process_map_scenario_runs_executed_at", "process_map_scenario_runs",
                        ["executed_at"])

    # ── Execution snapshots ──────────────────────────────────────────────
    if "execution_snapshots" not in existing_tables:
        op.create_table(
            "execution_snapshots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("execution_id", sa.String(length=64), nullable=False),
            sa.Column("workflow_id", sa.String(length=64), nullable=False),
            sa.Column("node_id", sa.String(length=100), nullable=False),
            sa.Column("sequence_number", sa.Integer(), nullable=False),
            sa.Column("snapshot_type", sa.String(length=10), nullable=False,
                      comment="before | after | error"),
            sa.Column("state", sa.JSON(), nullable=True),
            sa.Column("variables", sa.JSON(), nullable=True),
            sa.Column("node_outputs", sa.JSON(), nullable=True),
            sa.Column("http_requests", sa.JSON(), nullable=True),
            sa.Column("error_details", sa.JSON(), nullable=True),
            sa.Column("memory_usage", sa.Integer(), nullable=True),
            sa.Column("cpu_time", sa.Float(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_execution_snapshots_execution_id", "execution_snapshots",
                        ["execution_id"])
        op.create_index("ix_execution_snapshots_exec_node_seq", "execution_snapshots",
                        ["execution_id", "node_id", "sequence_number"])

    if "execution_checkpoints" not in existing_tables:
        op.create_table(
            "execution_checkpoints",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("execution_id", sa.String(length=64), nullable=False),
            sa.Column("workflow_id", sa.String(length=64), nullable=False),
            sa.Column("checkpoint_name", sa.String(length=200), nullable=False),
            sa.Column("node_id", sa.String(length=100), nullable=False),
            sa.Column("state", sa.JSON(), nullable=True),
            sa.Column("variables", sa.JSON(), nullable=True),
            sa.Column("node_outputs", sa.JSON(), nullable=True),
            sa.Column("can_resume", sa.Boolean(), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_execution_checkpoints_execution_id", "execution_checkpoints",
                        ["execution_id"])

    if "http_request_recordings" not in existing_tables:
        op.create_table(
            "http_request_recordings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("execution_id", sa.String(length=64), nullable=False),
            sa.Column("workflow_id", sa.String(length=64), nullable=False),
            sa.Column("node_id", sa.String(length=100), nullable=False),
            sa.Column("request_sequence", sa.Integer(), nullable=False),
            sa.Column("method", sa.String(length=10), nullable=False),
            sa.Column("url", sa.String(length=2000), nullable=False),
            sa.Column("headers", sa.JSON(), nullable=True),
            sa.Column("body", sa.JSON(), nullable=True),
            sa.Column("response_status", sa.Integer(), nullable=True),
            sa.Column("response_headers", sa.JSON(), nullable=True),
            sa.Column("response_body", sa.JSON(), nullable=True),
            sa.Column("response_time_ms", sa.Integer(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_http_request_recordings_execution_id", "http_request_recordings",
                        ["execution_id"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # Children first
    for table in (
        "http_request_recordings",
        "execution_checkpoints",
        "execution_snapshots",
        "process_map_scenario_runs",
        "process_map_coverage_snapshots",
        "process_map_test_scenarios",
        "process_map_step_results",
        "process_map_test_runs",
        "process_map_mocks",
        "process_maps",
    ):
        if table in existing_tables:
            op.drop_table(table)
