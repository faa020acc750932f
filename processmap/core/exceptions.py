"""
Service-layer exceptions.

Blueprints map them to responses: NotFoundError -> 404,
ValidationError -> 422, ConflictError -> 409. StepTimeoutError never
leaves the test engine; it becomes a failed step result.
"""


class NotFoundError(Exception):
    """No row for ``resource`` with the given id or key."""

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        where = f" id={resource_id}" if resource_id is not None else ""
        super().__init__(f"{resource}{where} not found")


class ValidationError(Exception):
    """Well-formed input that breaks a rule: unknown dependency, cycle, bad run mode.

    ``details`` maps a field path (``steps[2].dependencies``) to its problem.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """``resource.field`` already holds ``value`` within the organisation."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} {field} {value!r} is already in use")


class StepTimeoutError(Exception):
    def __init__(self, step_name: str, timeout_ms: int) -> None:
        self.step_name = step_name
        self.timeout_ms = timeout_ms
        super().__init__(f'Step "{step_name}" timed out after {timeout_ms}ms')
