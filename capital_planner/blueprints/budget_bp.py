"""Capital budget blueprint — cycles, allocations, summaries and bulk operations.

Endpoint groups (all under /api/v1/prioritization/budget)
───────────────
  Cycles        GET    /cycles                              List (?status, ?include_archived)
                POST   /cycles                              Create
                GET    /cycles/<cid>                        Cycle + allocations + summary
                PUT    /cycles/<cid>                        Update
                DELETE /cycles/<cid>                        Delete (cascades allocations)
  Allocations   GET    /cycles/<cid>/allocations            List (?year)
                POST   /cycles/<cid>/allocations            Allocate (?allow_overrun)
                PUT    /allocations/<aid>                   Update (?allow_overrun)
                DELETE /allocations/<aid>                   Delete
  Summary       GET    /cycles/<cid>/summary                Per-year totals
                GET    /cycles/<cid>/constraints/check      409 on overrun
  Bulk          POST   /cycles/bulk-archive                 {ids, atomic}
                POST   /cycles/bulk-delete                  {ids, atomic}
                POST   /allocations/bulk-delete             {ids, atomic}
"""

import logging

from flask import Blueprint, jsonify, request

from capital_planner.auth import current_actor, require_auth, require_role
from capital_planner.blueprints import arg_bool, get_services, json_body, register_error_handlers
from capital_planner.core.exceptions import ValidationError
from capital_planner.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

budget_bp = Blueprint("budget", __name__, url_prefix="/api/v1/prioritization/budget")
register_error_handlers(budget_bp)


def _bulk_args():
    data = json_body()
    ids = data.get("ids")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("ids must be a non-empty list", details={"ids": "required"})
    return ids, parse_bool(data.get("atomic"), "atomic", default=True)


def _bulk_response(outcomes):
    succeeded = sum(1 for o in outcomes if o.success)
    return jsonify({
        "success": succeeded == len(outcomes),
        "succeeded": succeeded,
        "failed": len(outcomes) - succeeded,
        "results": [o.to_dict() for o in outcomes],
    })


# ══════════════════════════════════════════════════════════════════
# 1.  Cycles
# ══════════════════════════════════════════════════════════════════

@budget_bp.route("/cycles", methods=["GET"])
def list_budget_cycles():
    cycles = get_services().budget.list_budget_cycles(
        status=request.args.get("status"),
        include_archived=arg_bool("include_archived", default=True),
    )
    return jsonify({"items": [c.to_dict() for c in cycles], "total": len(cycles)})


@budget_bp.route("/cycles", methods=["POST"])
@require_auth
@require_role("editor")
def create_budget_cycle():
    cycle = get_services().budget.create_budget_cycle(json_body(), current_actor())
    return jsonify(cycle.to_dict()), 201


@budget_bp.route("/cycles/<int:cycle_id>", methods=["GET"])
def get_budget_cycle(cycle_id):
    budget = get_services().budget
    cycle = budget.get_budget_cycle(cycle_id)
    return jsonify({
        "cycle": cycle.to_dict(),
        "allocations": [a.to_dict() for a in budget.get_allocations_for_cycle(cycle_id)],
        "summary": budget.get_budget_summary_by_year(cycle_id),
    })


@budget_bp.route("/cycles/<int:cycle_id>", methods=["PUT"])
@require_auth
@require_role("editor")
def update_budget_cycle(cycle_id):
    cycle = get_services().budget.update_budget_cycle(cycle_id, json_body(), current_actor())
    return jsonify(cycle.to_dict())


@budget_bp.route("/cycles/<int:cycle_id>", methods=["DELETE"])
@require_auth
@require_role("editor")
def delete_budget_cycle(cycle_id):
    get_services().budget.delete_budget_cycle(cycle_id)
    return jsonify({"deleted": True})


# ══════════════════════════════════════════════════════════════════
# 2.  Allocations
# ══════════════════════════════════════════════════════════════════

@budget_bp.route("/cycles/<int:cycle_id>/allocations", methods=["GET"])
def get_allocations_for_cycle(cycle_id):
    year = request.args.get("year", type=int)
    allocations = get_services().budget.get_allocations_for_cycle(cycle_id, year=year)
    return jsonify({"items": [a.to_dict() for a in allocations], "total": len(allocations)})


@budget_bp.route("/cycles/<int:cycle_id>/allocations", methods=["POST"])
@require_auth
@require_role("editor")
def allocate_project(cycle_id):
    allocation = get_services().budget.allocate_project(
        cycle_id, json_body(), current_actor(), allow_overrun=arg_bool("allow_overrun"),
    )
    return jsonify(allocation.to_dict()), 201


@budget_bp.route("/allocations/<int:allocation_id>", methods=["PUT"])
@require_auth
@require_role("editor")
def update_allocation(allocation_id):
    allocation = get_services().budget.update_allocation(
        allocation_id, json_body(), current_actor(), allow_overrun=arg_bool("allow_overrun"),
    )
    return jsonify(allocation.to_dict())


@budget_bp.route("/allocations/<int:allocation_id>", methods=["DELETE"])
@require_auth
@require_role("editor")
def delete_allocation(allocation_id):
    get_services().budget.delete_allocation(allocation_id)
    return jsonify({"deleted": True})


# ══════════════════════════════════════════════════════════════════
# 3.  Summary
# ══════════════════════════════════════════════════════════════════

@budget_bp.route("/cycles/<int:cycle_id>/summary", methods=["GET"])
def get_budget_summary_by_year(cycle_id):
    return jsonify({"cycle_id": cycle_id, "years": get_services().budget.get_budget_summary_by_year(cycle_id)})


@budget_bp.route("/cycles/<int:cycle_id>/constraints/check", methods=["GET"])
def check_funding_constraints(cycle_id):
    summary = get_services().budget.check_funding_constraints(cycle_id)
    return jsonify({"cycle_id": cycle_id, "within_constraints": True, "years": summary})


# ══════════════════════════════════════════════════════════════════
# 4.  Bulk operations
# ══════════════════════════════════════════════════════════════════

@budget_bp.route("/cycles/bulk-archive", methods=["POST"])
@require_auth
@require_role("editor")
def bulk_archive_cycles():
    ids, atomic = _bulk_args()
    return _bulk_response(get_services().budget.bulk_archive_cycles(ids, current_actor(), atomic=atomic))


@budget_bp.route("/cycles/bulk-delete", methods=["POST"])
@require_auth
@require_role("editor")
def bulk_delete_cycles():
    ids, atomic = _bulk_args()
    return _bulk_response(get_services().budget.bulk_delete_cycles(ids, atomic=atomic))


@budget_bp.route("/allocations/bulk-delete", methods=["POST"])
@require_auth
@require_role("editor")
def bulk_delete_allocations():
    ids, atomic = _bulk_args()
    return _bulk_response(get_services().budget.bulk_delete_allocations(ids, atomic=atomic))
