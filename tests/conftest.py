"""
Shared pytest fixtures for the Production Workflow & Billing test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - workflows: default workflows seeded
    - print_template / offset_process: a billable run template and its process
    - make_order: order factory
"""

import pytest

from app import create_app
from app.models import db as _db
from app.services import catalog_service, order_service
from app.services.workflow_definitions import seed_default_workflows


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
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def workflows():
    """Seed the default workflows; returns code → WorkflowType."""
    return seed_default_workflows()


@pytest.fixture()
def print_template(workflows):
    """Run template billed as quantity * rate."""
    return catalog_service.create_run_template(
        "Print",
        [
            {"key": "Quantity", "type": "number", "required": True, "min": 0},
            {"key": "New Rate", "type": "number", "required": True},
            {"key": "Paper", "type": "string"},
        ],
        billing_formula="quantity * new_rate",
    )


@pytest.fixture()
def offset_process(print_template):
    return catalog_service.create_process(
        "Offset", [{"run_template_id": print_template.id, "display_name": "Print run"}],
    )


@pytest.fixture()
def make_order(offset_process):
    """Factory: place an order for ``count`` batches of the offset process."""
    def _make(count=1, **kwargs):
        return order_service.create_order(
            [{"process_id": offset_process.id, "count": count}], **kwargs,
        )
    return _make
