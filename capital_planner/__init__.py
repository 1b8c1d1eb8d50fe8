"""
Capital Planner
Flask Application Factory.

Usage:
    from capital_planner import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from capital_planner.auth import init_auth
from capital_planner.config import config
from capital_planner.middleware.logging_config import configure_logging
from capital_planner.middleware.rate_limiter import init_rate_limits
from capital_planner.middleware.timing import init_request_timing
from capital_planner.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)

DEFAULT_CRITERIA = (
    {
        "name": "Urgency",
        "category": "risk",
        "weight": 25,
        "description": "How soon the condition must be addressed to avoid failure or disruption.",
        "scoring_guideline": "0-2: Can wait 5+ years\n3-5: Within 3-5 years\n6-8: Within 1-2 years\n9-10: Immediate",
    },
    {
        "name": "Mission Criticality",
        "category": "strategic",
        "weight": 25,
        "description": "Importance of the asset to the organization's core operations.",
        "scoring_guideline": "0-2: Non-essential\n3-5: Supporting\n6-8: Important\n9-10: Mission critical",
    },
    {
        "name": "Safety",
        "category": "risk",
        "weight": 20,
        "description": "Risk to occupant health and life safety.",
        "scoring_guideline": "0-2: No risk\n3-5: Minor risk\n6-8: Significant risk\n9-10: Imminent hazard",
    },
    {
        "name": "Code Compliance",
        "category": "compliance",
        "weight": 15,
        "description": "Regulatory or code deficiencies addressed by the project.",
        "scoring_guideline": "0-2: Compliant\n3-5: Minor issues\n6-8: Cited deficiency\n9-10: Order to remedy",
    },
    {
        "name": "Energy Savings",
        "category": "financial",
        "weight": 15,
        "description": "Operating cost reduction from energy efficiency.",
        "scoring_guideline": "0-2: None\n3-5: < 10%\n6-8: 10-25%\n9-10: > 25%",
    },
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Authentication & request timing ──────────────────────────────────
    init_auth(app)
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from capital_planner.models import audit as _audit_models  # noqa: F401
    from capital_planner.models import budget as _budget_models  # noqa: F401
    from capital_planner.models import green_upgrade as _green_upgrade_models  # noqa: F401
    from capital_planner.models import prioritization as _prioritization_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
        if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
            os.makedirs(app.instance_path, exist_ok=True)
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from capital_planner.blueprints.audit_bp import audit_bp
    from capital_planner.blueprints.budget_bp import budget_bp
    from capital_planner.blueprints.health_bp import health_bp
    from capital_planner.blueprints.prioritization_bp import prioritization_bp

    app.register_blueprint(prioritization_bp)
    app.register_blueprint(budget_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-criteria")
    def seed_criteria_cmd():
        """Seed the default prioritization criteria when none exist."""
        count = seed_default_criteria()
        logger.info("Seeded %s default criteria.", count)

    # ── Health check (short form; detailed version at /health/live) ──────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Capital Planner"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app


def seed_default_criteria() -> int:
    """Create the default criteria set through the registry; 0 if any criteria exist."""
    from capital_planner.core.identity import Actor
    from capital_planner.services.criteria_registry import CriteriaRegistry

    registry = CriteriaRegistry(db.session)
    if registry.list_criteria(include_inactive=True):
        return 0
    actor = Actor.system()
    for order, data in enumerate(DEFAULT_CRITERIA, start=1):
        registry.create_criteria({**data, "display_order": order}, actor)
    return len(DEFAULT_CRITERIA)
