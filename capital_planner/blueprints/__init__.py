"""
Shared helpers for the request tier.

Blueprints stay thin: parse input, resolve the caller, call a service,
serialize. Services are built per request on ``db.session`` and cached on
``flask.g``.
"""

import logging
from types import SimpleNamespace

from flask import current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from capital_planner.core.exceptions import (
    ConsistencyError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from capital_planner.models import db

logger = logging.getLogger(__name__)


def get_services() -> SimpleNamespace:
    services = getattr(g, "_services", None)
    if services is None:
        from capital_planner.services.audit_trail import AuditTrail
        from capital_planner.services.budget_engine import BudgetAllocationEngine
        from capital_planner.services.criteria_registry import CriteriaRegistry
        from capital_planner.services.environmental_scorer import EnvironmentalImpactScorer
        from capital_planner.services.ranking_service import RankingService
        from capital_planner.services.scoring_engine import ScoringEngine

        session = db.session
        audit = AuditTrail(session)
        registry = CriteriaRegistry(
            session, audit=audit,
            environmental_weight=current_app.config.get("ENVIRONMENTAL_CRITERION_WEIGHT", "15"),
        )
        scoring = ScoringEngine(session, registry=registry, audit=audit)
        ranking = RankingService(session, scoring=scoring, registry=registry)
        services = SimpleNamespace(
            audit=audit,
            registry=registry,
            scoring=scoring,
            environmental=EnvironmentalImpactScorer(session, scoring=scoring, registry=registry),
            ranking=ranking,
            budget=BudgetAllocationEngine(session, ranking=ranking),
        )
        g._services = services
    return services


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "not an object"})
    return data


def arg_bool(name: str, default: bool = False) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def register_error_handlers(bp) -> None:
    """Map the service exception hierarchy to HTTP status codes."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return jsonify({"error": str(error)}), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return jsonify({"error": str(error), "details": error.details}), 422

    @bp.errorhandler(PermissionDeniedError)
    def _handle_permission(error: PermissionDeniedError):
        logger.warning("Permission denied: action=%s role=%s path=%s", error.action, error.role, request.path)
        return jsonify({"error": "Insufficient permissions", "detail": str(error)}), 403

    @bp.errorhandler(ConsistencyError)
    def _handle_consistency(error: ConsistencyError):
        return jsonify({"error": str(error), "details": error.details}), 409

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500
