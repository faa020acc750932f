"""
Process map test engine — executes a workflow step by step.

Run modes:
    mock                 every step runs; integration steps use the
                         highest-priority matching mock
    schema_validation    every step runs; input schema errors fail the step
    production_readonly  only steps whose operations are all "read" run;
                         mocks are never used

The engine holds no database state. ``run()`` returns plain dicts shaped
like ProcessMapTestRun / ProcessMapStepResult rows; process_map_service
persists them.
"""

from __future__ import annotations

import logging
import time
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from processmap.core.exceptions import StepTimeoutError
from processmap.integrations.http_gateway import ReadOnlyHttpGateway
from processmap.models.process_map import FAILURE_MOCK_TYPES

logger = logging.getLogger(__name__)

DEFAULT_RUN_TIMEOUT_MS = 300_000
DEFAULT_STEP_TIMEOUT_MS = 30_000
DEFAULT_STEP_DELAY_MS = 200


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log_entry(level: str, message: str, data: dict | None = None) -> dict:
    entry = {"timestamp": _now_iso(), "level": level, "message": message}
    if data is not None:
        entry["data"] = data
    return entry


# ═════════════════════════════════════════════════════════════════════════
# Execution context
# ═════════════════════════════════════════════════════════════════════════


class ExecutionContext:
    """State shared across the steps of one run."""

    def __init__(self, run_id: str, run_mode: str, initial_data: dict | None = None) -> None:
        self.run_id = run_id
        self.run_mode = run_mode
        self.initial_data = dict(initial_data or {})
        self._step_outputs: dict[str, dict] = {}
        self._logs: list[dict] = []

    @property
    def step_outputs(self) -> dict[str, dict]:
        return dict(self._step_outputs)

    def get_step_output(self, step_id: str) -> dict | None:
        return self._step_outputs.get(step_id)

    def set_step_output(self, step_id: str, output: dict) -> None:
        self._step_outputs[step_id] = output

    def resolve_inputs(self, dependencies: list[str] | None) -> dict:
        """Initial data overlaid with dependency outputs, in dependency order."""
        inputs = dict(self.initial_data)
        for dep_id in dependencies or []:
            output = self._step_outputs.get(dep_id)
            if output:
                inputs.update(output)
        return inputs

    def add_log(self, level: str, message: str, data: dict | None = None) -> None:
        self._logs.append(_log_entry(level, message, data))

    def get_logs(self) -> list[dict]:
        return list(self._logs)


# ═════════════════════════════════════════════════════════════════════════
# Step executor
# ═════════════════════════════════════════════════════════════════════════


@dataclass
class StepExecutionResult:
    success: bool
    output_data: dict
    was_mocked: bool = False
    mock_source: str | None = None
    validation_results: list[dict] = field(default_factory=list)
    error: Exception | None = None
    logs: list[dict] = field(default_factory=list)
    http_requests: list[dict] = field(default_factory=list)


class MockFailure(Exception):
    """A matched mock told the step to fail."""

    def __init__(self, mock_type: str, integration: str) -> None:
        self.mock_type = mock_type
        self.integration = integration
        super().__init__(f"Mock {mock_type}: {integration}")


class DefaultStepExecutor:
    """Runs a single step against mocks or synthetic output."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep,
                 http_gateway: ReadOnlyHttpGateway | None = None) -> None:
        self._sleep = sleep
        self._http_gateway = http_gateway

    def can_execute(self, step: dict, run_mode: str) -> bool:
        effective_mode = run_mode or "mock"

        if effective_mode in ("mock", "schema_validation"):
            return True

        if effective_mode == "production_readonly":
            ops = (step.get("test_config") or {}).get("operations") or ["read"]
            return all(op == "read" for op in ops)

        logger.warning("Unknown run_mode %r, defaulting to allow execution", effective_mode)
        return True

    def execute(self, step: dict, context: ExecutionContext, mocks: list[dict]) -> StepExecutionResult:
        logs: list[dict] = [
            _log_entry("info", f"Starting step: {step.get('name')}",
                       {"step_id": step.get("id"), "type": step.get("type")}),
        ]
        validation_results: list[dict] = []

        input_data = context.resolve_inputs(step.get("dependencies"))

        input_validation = validate_against_schema(input_data, step.get("input_schema"))
        validation_results.extend(input_validation)

        has_input_errors = any(
            not v["passed"] and v["severity"] == "error" for v in input_validation
        )
        if has_input_errors and context.run_mode == "schema_validation":
            return StepExecutionResult(
                success=False,
                output_data={},
                validation_results=validation_results,
                error=ValueError("Input validation failed"),
                logs=logs,
            )

        mock = self.find_mock(step, mocks, input_data)
        if mock and context.run_mode != "production_readonly":
            integration = mock.get("integration")
            logs.append(_log_entry("debug", f"Using mock for {integration}",
                                   {"mock_id": mock.get("id"), "mock_type": mock.get("mock_type")}))

            delay_ms = mock.get("delay_ms") or 0
            if delay_ms > 0:
                self._sleep(delay_ms / 1000)

            mock_type = mock.get("mock_type") or "success"
            if mock_type in FAILURE_MOCK_TYPES:
                return StepExecutionResult(
                    success=False,
                    output_data=dict(mock.get("error_response") or {}),
                    was_mocked=True,
                    mock_source=integration,
                    validation_results=validation_results,
                    error=MockFailure(mock_type, integration),
                    logs=logs,
                )

            output_data = mock.get("response_data") or self.generate_mock_output(step)
            logs.append(_log_entry("info", "Step completed with mock",
                                   {"output_keys": sorted(output_data.keys())}))
            return StepExecutionResult(
                success=True,
                output_data=dict(output_data),
                was_mocked=True,
                mock_source=integration,
                validation_results=validation_results,
                logs=logs,
            )

        request_spec = (step.get("test_config") or {}).get("request")
        if request_spec and context.run_mode == "production_readonly":
            return self._execute_live_read(step, request_spec, validation_results, logs)

        output_data = self.generate_synthetic_output(step, input_data)
        validation_results.extend(validate_against_schema(output_data, step.get("output_schema")))
        logs.append(_log_entry("info", "Step completed", {"success": True}))

        return StepExecutionResult(
            success=True,
            output_data=output_data,
            validation_results=validation_results,
            logs=logs,
        )

    def _execute_live_read(self, step: dict, request_spec: dict,
                           validation_results: list[dict], logs: list[dict]) -> StepExecutionResult:
        if self._http_gateway is None:
            self._http_gateway = ReadOnlyHttpGateway(sleep=self._sleep)
        result = self._http_gateway.request(request_spec)
        logs.append(_log_entry("info" if result.ok else "error",
                               f"Live {result.exchange['method']} {result.exchange['url']}",
                               {"status_code": result.status_code,
                                "duration_ms": result.duration_ms}))
        if not result.ok:
            return StepExecutionResult(
                success=False,
                output_data={"status_code": result.status_code, "error": result.error},
                validation_results=validation_results,
                error=RuntimeError(f"Live request failed: {result.error}"),
                logs=logs,
                http_requests=[result.exchange],
            )

        output_data = {"status_code": result.status_code, "response": result.data, "success": True}
        validation_results.extend(validate_against_schema(output_data, step.get("output_schema")))
        return StepExecutionResult(
            success=True,
            output_data=output_data,
            validation_results=validation_results,
            logs=logs,
            http_requests=[result.exchange],
        )

    @staticmethod
    def find_mock(step: dict, mocks: list[dict], input_data: dict | None = None) -> dict | None:
        """Highest-priority active mock for the step's integration.

        A mock with ``step_id`` only applies to that step; a mock with an
        ``endpoint`` only applies to steps whose ``endpoint`` contains it
        (steps without one accept any); a mock with
        ``match_conditions.body_contains`` only applies when every listed
        key/value is present in the step input.
        """
        integration = step.get("integration")
        if not integration:
            return None

        applicable = []
        for m in mocks:
            if not m.get("is_active", True) or m.get("integration") != integration:
                continue
            if m.get("step_id") and m["step_id"] != step.get("id"):
                continue
            if m.get("endpoint") and step.get("endpoint") \
                    and m["endpoint"].lower() not in step["endpoint"].lower():
                continue
            if not _conditions_match(m.get("match_conditions"), input_data or {}):
                continue
            applicable.append(m)

        applicable.sort(key=lambda m: m.get("priority") or 0, reverse=True)
        return applicable[0] if applicable else None

    @staticmethod
    def generate_mock_output(step: dict) -> dict:
        return {
            "success": True,
            "mocked": True,
            "step_id": step.get("id"),
            "timestamp": _now_iso(),
        }

    @staticmethod
    def generate_synthetic_output(step: dict, input_data: dict) -> dict:
        step_type = step.get("type")
        suffix = uuid.uuid4().hex[:12]

        if step_type == "trigger":
            return {
                "event_id": f"evt_{suffix}",
                "event_type": "_".join((step.get("name") or "").lower().split()),
                "payload": dict(input_data),
            }
        if step_type == "storage":
            return {"record_id": f"rec_{suffix}", "created": True, "updated": False}
        if step_type == "transform":
            return {"transformed_data": dict(input_data), "extracted_items": []}
        if step_type == "external_call":
            return {"status_code": 200, "response": {"success": True}, "success": True}
        if step_type == "notification":
            return {"sent": True, "notification_id": f"notif_{suffix}"}
        return {"success": True, "data": dict(input_data)}


def _conditions_match(conditions: dict | None, input_data: dict) -> bool:
    if not conditions:
        return True
    body_contains = conditions.get("body_contains") or {}
    return all(input_data.get(k) == v for k, v in body_contains.items())


_JSON_TYPES = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def validate_against_schema(data: dict, schema: dict | None) -> list[dict]:
    """Check required fields (error severity) and property types (warning severity)."""
    results: list[dict] = []
    if not schema:
        return results

    for field_name in schema.get("required") or []:
        present = data.get(field_name) is not None
        results.append({
            "rule": f"required:{field_name}",
            "passed": present,
            "message": (f'Required field "{field_name}" is present' if present
                        else f'Required field "{field_name}" is missing'),
            "severity": "info" if present else "error",
        })

    for key, prop_schema in (schema.get("properties") or {}).items():
        if key not in data:
            continue
        expected = (prop_schema or {}).get("type")
        if not expected:
            continue
        value = data[key]
        python_types = _JSON_TYPES.get(expected)
        matches = python_types is not None and isinstance(value, python_types)
        if isinstance(value, bool) and expected in ("number", "integer"):
            matches = False
        results.append({
            "rule": f"type:{key}",
            "passed": matches,
            "message": (f'Field "{key}" has correct type' if matches
                        else f'Field "{key}" expected {expected}, got {_type_name(value)}'),
            "severity": "info" if matches else "warning",
        })
    return results


# ═════════════════════════════════════════════════════════════════════════
# Test engine
# ═════════════════════════════════════════════════════════════════════════


@dataclass
class TestRunConfig:
    __test__ = False

    timeout_ms: int = DEFAULT_RUN_TIMEOUT_MS
    continue_on_failure: bool = False
    selected_steps: list[str] | None = None
    step_delay_ms: int = DEFAULT_STEP_DELAY_MS
    default_step_timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS

    def to_dict(self) -> dict:
        return {
            "timeout_ms": self.timeout_ms,
            "continue_on_failure": self.continue_on_failure,
            "selected_steps": self.selected_steps,
            "step_delay_ms": self.step_delay_ms,
            "default_step_timeout_ms": self.default_step_timeout_ms,
        }


@dataclass
class TestEngineEvents:
    __test__ = False

    on_step_start: Callable[[str, str], None] | None = None
    on_step_complete: Callable[[dict], None] | None = None
    on_log: Callable[[dict], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class ProcessMapTestEngine:
    """Orchestrates the execution of a workflow's steps in dependency order.

    ``workflow`` is ``{"id", "org_id", "steps"}``. When ``snapshot_service``
    is given, before/after/error snapshots are captured per step under the
    run id.
    """

    def __init__(self, workflow: dict, run_mode: str = "mock", test_data: dict | None = None,
                 config: TestRunConfig | None = None, mocks: list[dict] | None = None,
                 events: TestEngineEvents | None = None,
                 executor: DefaultStepExecutor | None = None,
                 snapshot_service=None, sleep: Callable[[float], None] = time.sleep) -> None:
        self.workflow = workflow
        self.run_mode = run_mode or "mock"
        self.test_data = dict(test_data or {})
        self.config = config or TestRunConfig()
        self.mocks = list(mocks or [])
        self.events = events or TestEngineEvents()
        self.executor = executor or DefaultStepExecutor(sleep=sleep)
        self.snapshot_service = snapshot_service
        self._sleep = sleep
        self._steps_by_id = {s["id"]: s for s in workflow.get("steps") or [] if s.get("id")}

    # ── Public API ────────────────────────────────────────────────────

    def run(self, run_id: str | None = None) -> dict:
        """Execute the workflow. Returns {"test_run": {...}, "step_results": [...]}."""
        run_id = run_id or f"run_{uuid.uuid4().hex[:16]}"
        started_at = datetime.now(timezone.utc)
        run_started = time.perf_counter()
        step_results: list[dict] = []
        context = ExecutionContext(run_id, self.run_mode, self.test_data)

        order = self.get_execution_order()
        if self.config.selected_steps:
            selected = set(self.config.selected_steps)
            order = [sid for sid in order if sid in selected]

        overall_status = "running"
        error_message = None
        error_details = None

        for index, step_id in enumerate(order):
            step = self._steps_by_id.get(step_id)
            if step is None:
                context.add_log("error", f"Step not found: {step_id}")
                continue

            elapsed_ms = (time.perf_counter() - run_started) * 1000
            if elapsed_ms > self.config.timeout_ms:
                overall_status = "failed"
                error_message = f"Run timed out after {self.config.timeout_ms}ms"
                context.add_log("error", error_message)
                break

            self._emit("on_step_start", step_id, step.get("name"))

            if self.config.step_delay_ms and self.config.step_delay_ms > 0:
                self._sleep(self.config.step_delay_ms / 1000)

            step_started = datetime.now(timezone.utc)

            if not self.executor.can_execute(step, self.run_mode):
                skipped = self._step_result(
                    run_id, step, index, step_started, status="skipped",
                    error_message=f"Step cannot be executed in {self.run_mode} mode",
                )
                step_results.append(skipped)
                self._emit("on_step_complete", skipped)
                continue

            inputs = context.resolve_inputs(step.get("dependencies"))
            self._capture(run_id, step_id, "before", context, inputs)

            try:
                result = self._execute_with_timeout(step, context)
            except Exception as exc:  # noqa: BLE001
                self._emit("on_error", exc)
                logger.warning("run_id=%s step %s raised: %s", run_id, step_id, exc)
                failed = self._step_result(
                    run_id, step, index, step_started, status="failed",
                    input_data=inputs,
                    error_message=str(exc),
                    error_details={"name": type(exc).__name__},
                    error_stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                    duration_ms=0,
                )
                step_results.append(failed)
                self._emit("on_step_complete", failed)
                self._capture(run_id, step_id, "error", context, inputs,
                              error={"message": str(exc), "code": type(exc).__name__})

                if not self.config.continue_on_failure:
                    overall_status = "failed"
                    error_message = str(exc)
                    error_details = {"name": type(exc).__name__, "step_id": step_id}
                    break
                continue

            error = result.error
            step_result = self._step_result(
                run_id, step, index, step_started,
                status="passed" if result.success else "failed",
                input_data=inputs,
                output_data=result.output_data,
                validation_results=result.validation_results,
                error_message=str(error) if error else None,
                error_details=_error_details(error),
                was_mocked=result.was_mocked,
                mock_source=result.mock_source,
                logs=result.logs,
            )
            step_results.append(step_result)
            self._emit("on_step_complete", step_result)
            self._record_http(run_id, step_id, result.http_requests)

            if result.success:
                context.set_step_output(step_id, result.output_data)
                self._capture(run_id, step_id, "after", context, inputs)
            else:
                self._capture(run_id, step_id, "error", context, inputs,
                              error={"message": str(error) if error else "Step failed",
                                     "code": _error_details(error)["name"] if error else None})

            for entry in result.logs:
                self._emit("on_log", entry)

            if not result.success and not self.config.continue_on_failure:
                overall_status = "failed"
                error_message = str(error) if error else "Step execution failed"
                error_details = dict(_error_details(error) or {}, step_id=step_id)
                break

        completed_at = datetime.now(timezone.utc)
        passed = sum(1 for r in step_results if r["status"] == "passed")
        failed = sum(1 for r in step_results if r["status"] == "failed")
        skipped = sum(1 for r in step_results if r["status"] == "skipped")

        if overall_status != "failed":
            if failed == 0:
                overall_status, overall_result = "completed", "pass"
            elif passed > 0:
                overall_status, overall_result = "completed", "partial"
            else:
                overall_status, overall_result = "failed", "fail"
        else:
            overall_result = "fail"

        test_run = {
            "run_key": run_id,
            "process_map_id": self.workflow.get("id"),
            "org_id": self.workflow.get("org_id"),
            "run_mode": self.run_mode,
            "test_data": self.test_data,
            "run_config": self.config.to_dict(),
            "status": overall_status,
            "overall_result": overall_result,
            "started_at": started_at,
            "completed_at": completed_at,
            "duration_ms": int((completed_at - started_at).total_seconds() * 1000),
            "steps_total": len(order),
            "steps_passed": passed,
            "steps_failed": failed,
            "steps_skipped": skipped,
            "error_message": error_message,
            "error_details": error_details,
            "logs": context.get_logs(),
        }
        logger.info(
            "Test run %s finished: %s/%s (passed=%d failed=%d skipped=%d)",
            run_id, overall_status, overall_result, passed, failed, skipped,
            extra={"run_id": run_id, "process_map_id": self.workflow.get("id")},
        )
        return {"test_run": test_run, "step_results": step_results}

    def get_execution_order(self) -> list[str]:
        """Dependencies first, otherwise declaration order. Cycles are cut."""
        visited: set[str] = set()
        order: list[str] = []

        def visit(step_id: str) -> None:
            if step_id in visited:
                return
            visited.add(step_id)
            step = self._steps_by_id.get(step_id)
            if step is None:
                return
            for dep_id in step.get("dependencies") or []:
                visit(dep_id)
            order.append(step_id)

        for step in self.workflow.get("steps") or []:
            if step.get("id"):
                visit(step["id"])
        return order

    # ── Internals ─────────────────────────────────────────────────────

    def _execute_with_timeout(self, step: dict, context: ExecutionContext) -> StepExecutionResult:
        timeout_ms = (step.get("test_config") or {}).get("timeout_ms") \
            or self.config.default_step_timeout_ms
        # Fresh worker per step; a timed-out step's thread is left running
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"pm-step-{step.get('id')}")
        future = pool.submit(self.executor.execute, step, context, self.mocks)
        try:
            return future.result(timeout=timeout_ms / 1000)
        except FutureTimeout:
            raise StepTimeoutError(step.get("name") or step.get("id"), timeout_ms) from None
        finally:
            pool.shutdown(wait=False)

    def _emit(self, name: str, *args) -> None:
        callback = getattr(self.events, name, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Test engine event handler %s failed", name)

    def _capture(self, run_id, step_id, snapshot_type, context, inputs, error=None) -> None:
        if self.snapshot_service is None:
            return
        self.snapshot_service.capture_snapshot(
            run_id,
            str(self.workflow.get("id") or ""),
            step_id,
            snapshot_type,
            state={"inputs": inputs, "run_mode": self.run_mode},
            variables=dict(self.test_data),
            node_outputs=context.step_outputs,
            error_details=error,
        )

    def _record_http(self, run_id, step_id, exchanges) -> None:
        if self.snapshot_service is None:
            return
        for exchange in exchanges:
            self.snapshot_service.record_http_request(
                run_id, str(self.workflow.get("id") or ""), step_id, exchange)

    @staticmethod
    def _step_result(run_id, step, index, started_at, *, status, input_data=None,
                     output_data=None, validation_results=None, error_message=None,
                     error_details=None, error_stack=None, was_mocked=False,
                     mock_source=None, logs=None, duration_ms=None) -> dict:
        completed_at = datetime.now(timezone.utc)
        if duration_ms is None:
            duration_ms = int((completed_at - started_at).total_seconds() * 1000)
        return {
            "test_run_id": run_id,
            "step_id": step.get("id"),
            "step_name": step.get("name") or "",
            "sequence_number": index + 1,
            "started_at": started_at,
            "completed_at": completed_at,
            "duration_ms": duration_ms,
            "status": status,
            "input_data": input_data,
            "output_data": output_data,
            "expected_output": None,
            "validation_results": validation_results or [],
            "error_message": error_message,
            "error_details": error_details,
            "error_stack": error_stack,
            "was_mocked": was_mocked,
            "mock_source": mock_source,
            "logs": logs or [],
        }


def _error_details(error: Exception | None) -> dict | None:
    if error is None:
        return None
    details = {"name": type(error).__name__}
    if isinstance(error, MockFailure):
        details["mock_type"] = error.mock_type
        details["integration"] = error.integration
    return details
