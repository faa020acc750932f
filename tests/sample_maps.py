"""Step graphs shared by the service and API tests."""

ORG_ID = "org-test"

LINEAR_STEPS = [
    {"id": "s1", "name": "Receive webhook", "type": "trigger"},
    {"id": "s2", "name": "Fetch contact", "type": "external_call",
     "integration": "hubspot", "dependencies": ["s1"]},
    {"id": "s3", "name": "Notify owner", "type": "notification",
     "integration": "slack", "dependencies": ["s2"]},
]

BRANCHING_STEPS = [
    {"id": "start", "name": "Start", "type": "trigger"},
    {"id": "check", "name": "Check deal size", "type": "condition", "dependencies": ["start"]},
    {"id": "big", "name": "Create enterprise deal", "type": "external_call",
     "integration": "hubspot"},
    {"id": "small", "name": "Store lead", "type": "storage"},
    {"id": "done", "name": "Notify team", "type": "notification", "integration": "slack"},
]

BRANCHING_EDGES = [
    {"source": "check", "target": "big", "label": "large"},
    {"source": "check", "target": "small", "label": "small"},
    {"source": "big", "target": "done"},
    {"source": "small", "target": "done"},
]
