"""JSON error bodies for the API.

Every error response has the shape::

    {"error": "<message>", "code": "ERR_...", "details": {...}?}

Views return ``api_error(E.NOT_FOUND, "Process map not found")``;
werkzeug HTTP exceptions (abort(), routing misses) go through
``http_error`` so they share the same shape.
"""

from __future__ import annotations

from flask import jsonify, request
from werkzeug.exceptions import HTTPException


class E:
    """Error codes, grouped by their default HTTP status."""

    # 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    # 404 / 405
    NOT_FOUND = "ERR_NOT_FOUND"
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    # 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    # 413 / 415
    PAYLOAD_TOO_LARGE = "ERR_PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA_TYPE = "ERR_UNSUPPORTED_MEDIA_TYPE"
    # 422: well-formed request that breaks a process map rule
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    # 500
    INTERNAL = "ERR_INTERNAL"


STATUS_FOR_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.CONFLICT_STATE: 409,
    E.PAYLOAD_TOO_LARGE: 413,
    E.UNSUPPORTED_MEDIA_TYPE: 415,
    E.VALIDATION_CONSTRAINT: 422,
    E.INTERNAL: 500,
}

_CODE_FOR_STATUS = {
    400: E.VALIDATION_INVALID,
    404: E.NOT_FOUND,
    405: E.METHOD_NOT_ALLOWED,
    409: E.CONFLICT_STATE,
    413: E.PAYLOAD_TOO_LARGE,
    415: E.UNSUPPORTED_MEDIA_TYPE,
}


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None, **fields):
    """Build ``(response, status)`` for a view to return.

    ``status`` overrides the code's default; unknown codes fall back to
    400. Extra keyword ``fields`` are added to the top level of the body.
    """
    body: dict = {"error": message, "code": code, **fields}
    if details:
        body["details"] = details
    return jsonify(body), status or STATUS_FOR_CODE.get(code, 400)


def http_error(exc: HTTPException):
    """JSON rendering of a werkzeug HTTP exception."""
    status = exc.code or 500
    code = _CODE_FOR_STATUS.get(status, E.INTERNAL if status >= 500 else E.VALIDATION_INVALID)
    message = exc.description or exc.name
    if status == 404:
        return api_error(code, "Not found", status=status, path=request.path)
    return api_error(code, message, status=status)
