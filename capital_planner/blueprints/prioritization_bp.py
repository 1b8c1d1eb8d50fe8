"""Prioritization blueprint — criteria, scores, rankings and environmental scoring.

Endpoint groups (all under /api/v1/prioritization)
───────────────
  Criteria        GET    /criteria                               List (?include_inactive)
                  POST   /criteria                               Create
                  GET    /criteria/<cid>                         Get
                  PUT    /criteria/<cid>                         Update
                  DELETE /criteria/<cid>                         Deactivate (soft)
                  POST   /criteria/<cid>/reactivate              Reactivate
                  DELETE /criteria/<cid>/permanent               Permanent delete (admin)
                  POST   /criteria/normalize                     Renormalize weights
                  POST   /criteria/environmental                 Ensure Environmental Impact
  Versions        GET    /model-versions                         List
                  POST   /model-versions                         Create (re-tags criteria)
                  GET    /model-versions/active                  Active version
                  GET    /model-versions/<vid>/criteria          Criteria tagged with version
  Presets         GET    /presets                                List
                  POST   /presets                                Save
                  POST   /presets/<pid>/apply                    Apply + normalize
  Scores          GET    /projects/<pid>/scores                  List
                  POST   /projects/<pid>/scores                  Upsert batch
                  DELETE /projects/<pid>/scores/<cid>            Delete (not locked)
                  PUT    /projects/<pid>/scores/<cid>/status     Advance status
                  POST   /projects/<pid>/scores/submit           Submit all drafts
                  GET    /projects/<pid>/progress                Scoring progress
                  GET    /projects/<pid>/composite               Composite + breakdown
  Rankings        GET    /rankings                               Cached ranking
                  POST   /rankings/calculate                     Rebuild cache
                  GET    /rankings/status                        Staleness
                  POST   /projects/<pid>/scenarios               What-if weights
  Environmental   GET    /environmental-impact                   Portfolio view
                  GET    /projects/<pid>/environmental-impact    Aggregates
                  POST   /projects/<pid>/environmental-score     Auto-score
"""

import logging

from flask import Blueprint, jsonify, request

from capital_planner.auth import current_actor, require_auth, require_role
from capital_planner.blueprints import arg_bool, get_services, json_body, register_error_handlers
from capital_planner.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

prioritization_bp = Blueprint("prioritization", __name__, url_prefix="/api/v1/prioritization")
register_error_handlers(prioritization_bp)


# ══════════════════════════════════════════════════════════════════
# 1.  Criteria
# ══════════════════════════════════════════════════════════════════

@prioritization_bp.route("/criteria", methods=["GET"])
def list_criteria():
    criteria = get_services().registry.list_criteria(include_inactive=arg_bool("include_inactive"))
    return jsonify({"items": [c.to_dict() for c in criteria], "total": len(criteria)})


@prioritization_bp.route("/criteria", methods=["POST"])
@require_auth
@require_role("editor")
def create_criteria():
    criterion = get_services().registry.create_criteria(json_body(), current_actor())
    return jsonify(criterion.to_dict()), 201


@prioritization_bp.route("/criteria/<int:criteria_id>", methods=["GET"])
def get_criteria(criteria_id):
    return jsonify(get_services().registry.get_criteria(criteria_id).to_dict())


@prioritization_bp.route("/criteria/<int:criteria_id>", methods=["PUT"])
@require_auth
@require_role("editor")
def update_criteria(criteria_id):
    data = json_body()
    reason = data.pop("reason", None)
    criterion = get_services().registry.update_criteria(criteria_id, data, current_actor(), reason=reason)
    return jsonify(criterion.to_dict())


@prioritization_bp.route("/criteria/<int:criteria_id>", methods=["DELETE"])
@require_auth
@require_role("editor")
def delete_criteria(criteria_id):
    reason = json_body().get("reason")
    criterion, impacted = get_services().registry.delete_criteria(criteria_id, current_actor(), reason=reason)
    return jsonify({**criterion.to_dict(), "impacted_projects": impacted})


@prioritization_bp.route("/criteria/<int:criteria_id>/reactivate", methods=["POST"])
@require_auth
@require_role("editor")
def reactivate_criteria(criteria_id):
    reason = json_body().get("reason")
    criterion = get_services().registry.reactivate_criteria(criteria_id, current_actor(), reason=reason)
    return jsonify(criterion.to_dict())


@prioritization_bp.route("/criteria/<int:criteria_id>/permanent", methods=["DELETE"])
@require_auth
@require_role("editor")
def permanently_delete_criteria(criteria_id):
    data = json_body()
    result = get_services().registry.permanently_delete_criteria(
        criteria_id, current_actor(), confirmation=data.get("confirmation"), reason=data.get("reason"),
    )
    return jsonify(result)


@prioritization_bp.route("/criteria/normalize", methods=["POST"])
@require_auth
@require_role("editor")
def normalize_weights():
    criteria = get_services().registry.normalize_weights(current_actor())
    return jsonify({"items": [c.to_dict() for c in criteria], "total": len(criteria)})


@prioritization_bp.route("/criteria/environmental", methods=["POST"])
@require_auth
@require_role("editor")
def ensure_environmental_criteria():
    criterion = get_services().registry.ensure_environmental_criteria(current_actor())
    return jsonify({"criteria_id": criterion.id, "criterion": criterion.to_dict()})


# ══════════════════════════════════════════════════════════════════
# 2.  Model versions & presets
# ══════════════════════════════════════════════════════════════════

@prioritization_bp.route("/model-versions", methods=["GET"])
def list_model_versions():
    versions = get_services().registry.list_model_versions()
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)})


@prioritization_bp.route("/model-versions", methods=["POST"])
@require_auth
@require_role("editor")
def create_model_version():
    data = json_body()
    version = get_services().registry.create_model_version(
        data.get("name"), current_actor(), description=data.get("description", ""),
    )
    return jsonify(version.to_dict()), 201


@prioritization_bp.route("/model-versions/active", methods=["GET"])
def get_active_model_version():
    version = get_services().registry.get_active_model_version()
    return jsonify({"version": version.to_dict() if version else None})


@prioritization_bp.route("/model-versions/<int:version_id>/criteria", methods=["GET"])
def get_criteria_by_model_version(version_id):
    criteria = get_services().registry.get_criteria_by_model_version(version_id)
    return jsonify({"items": [c.to_dict() for c in criteria], "total": len(criteria)})


@prioritization_bp.route("/presets", methods=["GET"])
def list_presets():
    presets = get_services().registry.list_presets()
    return jsonify({"items": [p.to_dict() for p in presets], "total": len(presets)})


@prioritization_bp.route("/presets", methods=["POST"])
@require_auth
@require_role("editor")
def save_preset():
    data = json_body()
    preset = get_services().registry.save_preset(
        data.get("name"), data.get("weights"), current_actor(),
        description=data.get("description", ""), is_default=bool(data.get("is_default", False)),
    )
    return jsonify(preset.to_dict()), 201


@prioritization_bp.route("/presets/<int:preset_id>/apply", methods=["POST"])
@require_auth
@require_role("editor")
def apply_preset(preset_id):
    criteria = get_services().registry.apply_preset(preset_id, current_actor())
    return jsonify({"items": [c.to_dict() for c in criteria], "total": len(criteria)})


# ══════════════════════════════════════════════════════════════════
# 3.  Project scores
# ══════════════════════════════════════════════════════════════════

@prioritization_bp.route("/projects/<int:project_id>/scores", methods=["GET"])
def get_project_scores(project_id):
    scores = get_services().scoring.get_project_scores(project_id)
    return jsonify({"items": [s.to_dict() for s in scores], "total": len(scores)})


@prioritization_bp.route("/projects/<int:project_id>/scores", methods=["POST"])
@require_auth
@require_role("editor")
def score_project(project_id):
    rows = get_services().scoring.score_project(project_id, json_body().get("scores"), current_actor())
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)})


@prioritization_bp.route("/projects/<int:project_id>/scores/<int:criteria_id>", methods=["DELETE"])
@require_auth
@require_role("editor")
def delete_project_score(project_id, criteria_id):
    get_services().scoring.delete_project_score(
        project_id, criteria_id, current_actor(), reason=json_body().get("reason"),
    )
    return jsonify({"deleted": True})


@prioritization_bp.route("/projects/<int:project_id>/scores/<int:criteria_id>/status", methods=["PUT"])
@require_auth
@require_role("editor")
def update_score_status(project_id, criteria_id):
    data = json_body()
    row = get_services().scoring.update_score_status(
        project_id, criteria_id, data.get("status"), current_actor(), reason=data.get("reason"),
    )
    return jsonify(row.to_dict())


@prioritization_bp.route("/projects/<int:project_id>/scores/submit", methods=["POST"])
@require_auth
@require_role("editor")
def submit_all_project_scores(project_id):
    count = get_services().scoring.submit_all_project_scores(project_id, current_actor())
    return jsonify({"submitted": count})


@prioritization_bp.route("/projects/<int:project_id>/progress", methods=["GET"])
def get_scoring_progress(project_id):
    return jsonify(get_services().scoring.get_scoring_progress(project_id))


@prioritization_bp.route("/projects/<int:project_id>/composite", methods=["GET"])
def calculate_composite_score(project_id):
    return jsonify(get_services().scoring.calculate_composite_score(project_id).to_dict())


# ══════════════════════════════════════════════════════════════════
# 4.  Rankings
# ══════════════════════════════════════════════════════════════════

@prioritization_bp.route("/rankings", methods=["GET"])
def get_ranked_projects():
    entries = get_services().ranking.get_ranked_projects(
        min_score=request.args.get("min_score"),
        max_score=request.args.get("max_score"),
        limit=request.args.get("limit"),
    )
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)})


@prioritization_bp.route("/rankings/calculate", methods=["POST"])
@require_auth
@require_role("editor")
def calculate_rankings():
    entries = get_services().ranking.calculate_all_project_scores()
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)})


@prioritization_bp.route("/rankings/status", methods=["GET"])
def get_scoring_status():
    return jsonify(get_services().ranking.get_scoring_status())


@prioritization_bp.route("/projects/<int:project_id>/scenarios", methods=["POST"])
def compare_weighting_scenarios(project_id):
    results = get_services().ranking.compare_weighting_scenarios(project_id, json_body().get("scenarios"))
    return jsonify({"project_id": project_id, "scenarios": results})


# ══════════════════════════════════════════════════════════════════
# 5.  Environmental impact
# ══════════════════════════════════════════════════════════════════

@prioritization_bp.route("/environmental-impact", methods=["GET"])
def get_projects_with_environmental_impact():
    impacts = get_services().environmental.get_projects_with_environmental_impact()
    return jsonify({"items": [i.to_dict() for i in impacts], "total": len(impacts)})


@prioritization_bp.route("/projects/<int:project_id>/environmental-impact", methods=["GET"])
def get_project_environmental_impact(project_id):
    impact = get_services().environmental.get_project_environmental_impact(project_id)
    if impact is None:
        raise NotFoundError(resource="Environmental impact for project", resource_id=project_id)
    return jsonify(impact.to_dict())


@prioritization_bp.route("/projects/<int:project_id>/environmental-score", methods=["POST"])
@require_auth
@require_role("editor")
def auto_score_project_environmental(project_id):
    row = get_services().environmental.auto_score_project_environmental(project_id, current_actor())
    return jsonify(row.to_dict())
