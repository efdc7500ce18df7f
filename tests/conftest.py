"""
Shared pytest fixtures for the Depot M&R test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB reset + fresh depot runtime (autouse)
    - client: Flask test client (function-scoped)
    - runtime / workflow / chat: services of the per-test runtime
    - container: Pre-registered container (MSKU1234567, STACKING)
"""

import pytest

from depot import create_app
from depot.models import db as _db
from depot.services.runtime import get_runtime, init_runtime


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: app context, clean tables and a runtime loaded from them."""
    with app.app_context():
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        init_runtime(app)
        yield
        _db.session.rollback()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def runtime():
    return get_runtime()


@pytest.fixture()
def workflow(runtime):
    return runtime.workflow


@pytest.fixture()
def chat(runtime):
    return runtime.chat


@pytest.fixture()
def container(workflow):
    """A freshly gated-in container in STACKING."""
    return workflow.register_container(
        {"container_number": "MSKU1234567", "liner": "MSK", "size": "40", "type": "HC"},
        actor="gate.clerk",
    )
