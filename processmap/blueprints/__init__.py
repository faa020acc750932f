"""Helpers shared by the API blueprints."""

from flask import request


def int_arg(name, default, minimum=None, maximum=None):
    """Read an integer query parameter, falling back to ``default`` when malformed."""
    try:
        value = int(request.args.get(name, default))
    except (ValueError, TypeError):
        value = default
    if minimum is not None:
        value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value
