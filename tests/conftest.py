"""
Shared pytest fixtures for the Crisis Trainer test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - supervisor / counselor / other_counselor: pre-created users
    - scenario: a reusable phone scenario
    - make_user / make_scenario / make_assignment / make_session / add_turns:
      factory helpers (rows are committed)
"""

import pytest

from crisis_trainer import create_app
from crisis_trainer.middleware.rate_limiter import session_limits
from crisis_trainer.models import db as _db
from crisis_trainer.models.account import ROLE_COUNSELOR, ROLE_SUPERVISOR, User
from crisis_trainer.models.scenario import Assignment, Scenario
from crisis_trainer.models.session import Session, TranscriptTurn


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
        session_limits.reset()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_user(display_name, role=ROLE_COUNSELOR, **kw):
    user = User(display_name=display_name, role=role, **kw)
    _db.session.add(user)
    _db.session.commit()
    return user


def _make_scenario(title="Caller in crisis", **kw):
    kw.setdefault("prompt", "You are a caller who just lost their job and feels hopeless.")
    kw.setdefault("mode", "phone")
    kw.setdefault("skills", ["active_listening"])
    scenario = Scenario(title=title, **kw)
    _db.session.add(scenario)
    _db.session.commit()
    return scenario


def _make_assignment(scenario, counselor, **kw):
    assignment = Assignment(scenario_id=scenario.id, counselor_id=counselor.id, **kw)
    _db.session.add(assignment)
    _db.session.commit()
    return assignment


def _make_session(user, assignment=None, scenario=None, **kw):
    sess = Session(
        user_id=user.id,
        assignment_id=assignment.id if assignment else None,
        scenario_id=(assignment.scenario_id if assignment else scenario.id if scenario else None),
        **kw,
    )
    _db.session.add(sess)
    _db.session.commit()
    return sess


def _add_turns(sess, count, attempt=1):
    for i in range(count):
        _db.session.add(TranscriptTurn(
            session_id=sess.id,
            role="user" if i % 2 == 0 else "assistant",
            content=f"turn {i}",
            turn_index=i,
            attempt_number=attempt,
        ))
    _db.session.commit()



# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def supervisor():
    return _make_user("Sam Supervisor", role=ROLE_SUPERVISOR)


@pytest.fixture()
def counselor():
    return _make_user("Casey Counselor")


@pytest.fixture()
def other_counselor():
    return _make_user("Riley Counselor")


@pytest.fixture()
def scenario():
    return _make_scenario()


@pytest.fixture()
def make_assignment():
    return _make_assignment


@pytest.fixture()
def make_session():
    return _make_session


@pytest.fixture()
def add_turns():
    return _add_turns


@pytest.fixture()
def make_user():
    return _make_user


@pytest.fixture()
def make_scenario():
    return _make_scenario
