"""
Shared pytest fixtures for the Capital Planner test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - audit / registry / scoring / environmental / ranking / budget:
      services bound to the test session
    - admin / editor / viewer: caller identities
    - seed_criteria: ORM helper inserting criteria with exact weights
"""

from decimal import Decimal

import pytest

from capital_planner import create_app
from capital_planner.core.identity import Actor
from capital_planner.models import db as _db
from capital_planner.models.prioritization import Criterion
from capital_planner.services.audit_trail import AuditTrail
from capital_planner.services.budget_engine import BudgetAllocationEngine
from capital_planner.services.criteria_registry import CriteriaRegistry
from capital_planner.services.environmental_scorer import EnvironmentalImpactScorer
from capital_planner.services.ranking_service import RankingService
from capital_planner.services.scoring_engine import ScoringEngine


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
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Services ─────────────────────────────────────────────────────────────


@pytest.fixture()
def audit(session):
    return AuditTrail(session)


@pytest.fixture()
def registry(session, audit):
    return CriteriaRegistry(session, audit=audit)


@pytest.fixture()
def scoring(session, registry, audit):
    return ScoringEngine(session, registry=registry, audit=audit)


@pytest.fixture()
def environmental(session, scoring, registry):
    return EnvironmentalImpactScorer(session, scoring=scoring, registry=registry)


@pytest.fixture()
def ranking(session, scoring, registry):
    return RankingService(session, scoring=scoring, registry=registry)


@pytest.fixture()
def budget(session, ranking):
    return BudgetAllocationEngine(session, ranking=ranking)


# ── Callers ──────────────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Actor(user_id=1, role="admin")


@pytest.fixture()
def editor():
    return Actor(user_id=2, role="editor")


@pytest.fixture()
def viewer():
    return Actor(user_id=3, role="viewer")


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def seed_criteria(session):
    """Insert active criteria with the given weights, bypassing normalization.

    Usage:
        a, b = seed_criteria(("A", 60), ("B", 40))
    """
    def _seed(*specs, category="risk"):
        rows = []
        for order, (name, weight) in enumerate(specs, start=1):
            row = Criterion(
                name=name,
                category=category,
                weight=Decimal(str(weight)),
                status="active",
                display_order=order,
            )
            session.add(row)
            rows.append(row)
        session.commit()
        return rows
    return _seed
