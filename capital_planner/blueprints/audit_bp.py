"""Audit blueprint — read-only criteria and scoring history.

Endpoints (all under /api/v1/prioritization/audit)
    GET /projects/<pid>              Scoring changes for a project
    GET /criteria/<cid>/scores       Scoring changes against one criterion
    GET /recent                      Latest scoring changes (?limit)
    GET /criteria                    Criterion definition changes (?criteria_id, ?limit)
    GET /stats                       Criterion change counts per action and in the last 30 days

There are no write endpoints; rows are appended by the services.
"""

import logging

from flask import Blueprint, jsonify, request

from capital_planner.blueprints import get_services, register_error_handlers

logger = logging.getLogger(__name__)

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1/prioritization/audit")
register_error_handlers(audit_bp)


@audit_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project_audit_history(project_id):
    items = get_services().audit.get_project_audit_history(project_id)
    return jsonify({"items": items, "total": len(items)})


@audit_bp.route("/criteria/<int:criteria_id>/scores", methods=["GET"])
def get_criterion_audit_history(criteria_id):
    items = get_services().audit.get_criterion_audit_history(criteria_id)
    return jsonify({"items": items, "total": len(items)})


@audit_bp.route("/recent", methods=["GET"])
def get_recent_audit_activity():
    limit = request.args.get("limit", 50, type=int)
    items = get_services().audit.get_recent_audit_activity(limit=limit)
    return jsonify({"items": items, "total": len(items)})


@audit_bp.route("/criteria", methods=["GET"])
def get_criteria_audit_history():
    items = get_services().audit.get_criteria_audit_history(
        criteria_id=request.args.get("criteria_id", type=int),
        limit=request.args.get("limit", 100, type=int),
    )
    return jsonify({"items": items, "total": len(items)})


@audit_bp.route("/stats", methods=["GET"])
def get_criteria_audit_stats():
    return jsonify(get_services().audit.get_criteria_audit_stats())
