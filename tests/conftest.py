"""
Fixtures shared by the test suite.

The app is built once per session against in-memory SQLite; each test
runs inside an app context and gets a fresh schema afterwards.
"""

import pytest

from processmap import create_app
from processmap.models import db as _db
from processmap.services import execution_snapshot_service
from processmap.services import process_map_service

from tests.sample_maps import BRANCHING_EDGES, BRANCHING_STEPS, LINEAR_STEPS, ORG_ID


@pytest.fixture(scope="session")
def app():
    return create_app("testing")


@pytest.fixture(scope="session")
def _schema(app):
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _schema):
    """App context per test; rows and snapshot sequence counters are reset after."""
    with app.app_context():
        execution_snapshot_service._service = None
        yield
        execution_snapshot_service._service = None
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def process_map():
    """webhook -> hubspot -> slack."""
    return process_map_service.create_process_map({
        "org_id": ORG_ID,
        "name": "Lead follow-up",
        "steps": [dict(s) for s in LINEAR_STEPS],
    })


@pytest.fixture()
def branching_map():
    """Two-way branch that re-joins before the final step."""
    return process_map_service.create_process_map({
        "org_id": ORG_ID,
        "name": "Deal routing",
        "steps": [dict(s) for s in BRANCHING_STEPS],
        "edges": [dict(e) for e in BRANCHING_EDGES],
    })
