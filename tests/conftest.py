"""
Shared pytest fixtures for the Capacity Planner test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, baseline re-seeded (autouse)
    - client: Flask test client (function-scoped)
    - baseline: The baseline Scenario
    - ref: Pre-created reference data (people, roles, projects, phases) as ids
"""

from datetime import date
from types import SimpleNamespace

import pytest

from planner import create_app
from planner.models import db as _db
from planner.models.resource import Person, Project, ProjectPhase, Role
from planner.services.merge_lock import merge_locks
from planner.services.scenario_store import ensure_baseline, get_baseline


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
    """Per-test: open app context, seed the baseline, rollback + recreate tables after."""
    with app.app_context():
        ensure_baseline(app.config["BASELINE_SCENARIO_NAME"])
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        merge_locks.reset()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def baseline():
    """Return the baseline scenario seeded for every test."""
    return get_baseline()


@pytest.fixture()
def ref():
    """Reference data shared by scenario tests.

    Apollo  (aspiration 2026-01-01 .. 2026-12-31)
        Design  2026-01-01 .. 2026-03-31
        Build   2026-04-01 .. 2026-09-30
    Gemini  (aspiration 2026-03-01 .. 2026-09-30)
        Launch  2026-06-01 .. 2026-09-30
    """
    alice = Person(name="Alice", email="alice@example.com")
    bob = Person(name="Bob", email="bob@example.com")
    carol = Person(name="Carol", email="carol@example.com")
    dev = Role(name="Developer")
    pm = Role(name="Project Manager")
    apollo = Project(
        name="Apollo", priority=2,
        aspiration_start=date(2026, 1, 1), aspiration_finish=date(2026, 12, 31),
    )
    gemini = Project(
        name="Gemini", priority=3,
        aspiration_start=date(2026, 3, 1), aspiration_finish=date(2026, 9, 30),
    )
    _db.session.add_all([alice, bob, carol, dev, pm, apollo, gemini])
    _db.session.flush()

    design = ProjectPhase(
        project_id=apollo.id, name="Design",
        start_date=date(2026, 1, 1), end_date=date(2026, 3, 31), order_index=0,
    )
    build = ProjectPhase(
        project_id=apollo.id, name="Build",
        start_date=date(2026, 4, 1), end_date=date(2026, 9, 30), order_index=1,
    )
    launch = ProjectPhase(
        project_id=gemini.id, name="Launch",
        start_date=date(2026, 6, 1), end_date=date(2026, 9, 30), order_index=0,
    )
    _db.session.add_all([design, build, launch])
    _db.session.commit()

    return SimpleNamespace(
        alice=alice.id, bob=bob.id, carol=carol.id,
        dev=dev.id, pm=pm.id,
        apollo=apollo.id, gemini=gemini.id,
        design=design.id, build=build.id, launch=launch.id,
    )
