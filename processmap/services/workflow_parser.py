"""Plain-text workflow description → step definitions.

Accepted format:

    1. Connect HubSpot: OAuth handshake
       - stores tokens per org
    2. Sync contacts
    3. Notify owner in Slack

Numbered lines start a step; ``-`` or ``•`` lines are appended to the
current step description; anything else is ignored.
"""

from __future__ import annotations

import re

STEP_LINE = re.compile(r"^(\d+)\.\s*([^:]+):?\s*(.*)?$")

KNOWN_INTEGRATIONS = (
    "hubspot", "google", "fathom", "slack", "justcall", "savvycal", "meetingbaas",
)

_TYPE_KEYWORDS = (
    ("trigger", ("oauth", "webhook", "trigger")),
    ("condition", ("check", "validate", "decision", "if ")),
    ("transform", ("transform", "parse", "format", "extract")),
    ("external_call", ("api", "sync", "fetch", "call")),
)


def detect_step_type(name: str, description: str = "") -> str:
    text = f"{name} {description}".lower()
    for step_type, keywords in _TYPE_KEYWORDS:
        if any(k in text for k in keywords):
            return step_type
    return "action"


def detect_integration(name: str, description: str = "") -> str | None:
    text = f"{name} {description}".lower()
    for integration in KNOWN_INTEGRATIONS:
        if integration in text:
            return integration
    return None


def generate_schema(step_name: str, direction: str) -> dict:
    """Input/output JSON schema guessed from the step name."""
    name = step_name.lower()

    if "oauth" in name or "auth" in name:
        if direction == "input":
            return {"type": "object",
                    "properties": {"code": {"type": "string"}, "state": {"type": "string"}}}
        return {"type": "object",
                "properties": {"access_token": {"type": "string"},
                               "refresh_token": {"type": "string"}}}

    if "contact" in name or "sync" in name:
        if direction == "input":
            return {"type": "object",
                    "properties": {"limit": {"type": "number"}, "cursor": {"type": "string"}}}
        return {"type": "object",
                "properties": {"items": {"type": "array"}, "next_cursor": {"type": "string"}}}

    return {"type": "object", "properties": {}}


def parse_description(text: str) -> list[dict]:
    """Parse a numbered description into chained step definitions."""
    steps: list[dict] = []
    current: dict | None = None

    for line in (text or "").splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue

        match = STEP_LINE.match(trimmed)
        if match:
            if current is not None:
                steps.append(current)
            order = len(steps) + 1
            name = match.group(2).strip()
            description = (match.group(3) or "").strip()
            current = {
                "id": f"step_{order}",
                "name": name,
                "description": description,
                "order": order,
                "type": detect_step_type(name, description),
                "integration": detect_integration(name, description),
                "input_schema": generate_schema(name, "input"),
                "output_schema": generate_schema(name, "output"),
                "dependencies": [f"step_{order - 1}"] if order > 1 else [],
            }
        elif current is not None and trimmed.startswith(("-", "•")):
            current["description"] = f"{current['description']}\n{trimmed}"

    if current is not None:
        steps.append(current)
    return steps
