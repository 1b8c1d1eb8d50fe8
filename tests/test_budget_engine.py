"""
Tests: BudgetAllocationEngine — cycles, allocations, constraints and bulk operations.

Covers:
  - end_year derivation and year-window validation (2025 + 4 years → 2028)
  - duration / rate clamping
  - funding-constraint overruns: rejected, or accepted and surfaced
  - inflation/escalation compounding in the yearly summary
  - allocation status moves forward only; archived cycles are read-only
  - bulk operations: atomic rollback, partial mode, per-id outcomes
"""

from decimal import Decimal

import pytest

from capital_planner.core.exceptions import ConsistencyError, NotFoundError, ValidationError
from capital_planner.models.budget import BudgetAllocation, BudgetCycle
from capital_planner.services.budget_engine import ROLLED_BACK, escalation_factor


def _cycle(budget, actor, **overrides):
    data = {"name": "FY25-28 Capital Plan", "start_year": 2025, "duration": 4}
    data.update(overrides)
    return budget.create_budget_cycle(data, actor)


def _allocate(budget, actor, cycle_id, project_id, year, amount, **extra):
    data = {"project_id": project_id, "year": year, "allocated_amount": amount, **extra}
    return budget.allocate_project(cycle_id, data, actor)


# ── Cycles ────────────────────────────────────────────────────────────────────


def test_cycle_window_and_out_of_window_year(budget, editor):
    cycle = _cycle(budget, editor)
    assert cycle.end_year == 2028

    with pytest.raises(ValidationError) as exc:
        _allocate(budget, editor, cycle.id, 1, 2029, 1000)
    assert "year" in exc.value.details

    with pytest.raises(ValidationError):
        _allocate(budget, editor, cycle.id, 1, 2024, 1000)
    assert _allocate(budget, editor, cycle.id, 1, 2028, 1000).year == 2028


def test_duration_and_rates_are_clamped(budget, editor):
    cycle = _cycle(budget, editor, duration=50, inflation_rate=25, escalation_rate=-3)
    assert cycle.duration == 30
    assert cycle.end_year == 2054
    assert Decimal(str(cycle.inflation_rate)) == Decimal("20")
    assert Decimal(str(cycle.escalation_rate)) == Decimal("0")

    short = _cycle(budget, editor, name="Stub", duration=0)
    assert short.duration == 1
    assert short.end_year == 2025


@pytest.mark.parametrize("overrides, field", [
    ({"name": ""}, "name"),
    ({"start_year": 1800}, "start_year"),
    ({"start_year": None}, "start_year"),
    ({"status": "frozen"}, "status"),
    ({"funding_constraints": {"2031": 100}}, "funding_constraints"),
    ({"funding_constraints": {"2025": -1}}, "funding_constraints.2025"),
])
def test_invalid_cycle_input(budget, editor, overrides, field):
    with pytest.raises(ValidationError) as exc:
        _cycle(budget, editor, **overrides)
    assert field in exc.value.details


def test_update_window_recomputes_end_year(budget, editor):
    cycle = _cycle(budget, editor)
    updated = budget.update_budget_cycle(cycle.id, {"duration": 6}, editor)
    assert updated.end_year == 2030


def test_update_window_cannot_orphan_allocations(budget, editor):
    cycle = _cycle(budget, editor, funding_constraints={"2028": 5000})
    _allocate(budget, editor, cycle.id, 1, 2028, 1000)

    with pytest.raises(ValidationError):
        budget.update_budget_cycle(cycle.id, {"duration": 2}, editor)
    assert budget.get_budget_cycle(cycle.id).end_year == 2028


def test_shrinking_window_drops_constraints_outside_it(budget, editor):
    cycle = _cycle(budget, editor, funding_constraints={"2025": 100, "2028": 200})
    updated = budget.update_budget_cycle(cycle.id, {"duration": 2}, editor)
    assert updated.funding_constraints == {"2025": 100.0}


def test_archive_and_unarchive_stamp_cycle(budget, editor):
    cycle = _cycle(budget, editor)
    archived = budget.update_budget_cycle(cycle.id, {"status": "archived"}, editor)
    assert archived.archived_at is not None
    assert archived.archived_by == editor.user_id

    reopened = budget.update_budget_cycle(cycle.id, {"status": "planning"}, editor)
    assert reopened.archived_at is None
    assert reopened.archived_by is None


def test_list_cycles_filters(budget, editor):
    keep = _cycle(budget, editor, name="Keep")
    old = _cycle(budget, editor, name="Old", start_year=2020)
    budget.update_budget_cycle(old.id, {"status": "archived"}, editor)

    assert {c.id for c in budget.list_budget_cycles()} == {keep.id, old.id}
    assert [c.id for c in budget.list_budget_cycles(include_archived=False)] == [keep.id]
    assert [c.id for c in budget.list_budget_cycles(status="archived")] == [old.id]


def test_delete_cycle_removes_allocations(budget, session, editor):
    cycle = _cycle(budget, editor)
    _allocate(budget, editor, cycle.id, 1, 2025, 100)
    _allocate(budget, editor, cycle.id, 2, 2026, 200)

    budget.delete_budget_cycle(cycle.id)

    assert session.query(BudgetAllocation).count() == 0
    with pytest.raises(NotFoundError):
        budget.get_budget_cycle(cycle.id)


# ── Allocations ───────────────────────────────────────────────────────────────


def test_new_allocation_is_proposed(budget, editor):
    cycle = _cycle(budget, editor)
    allocation = _allocate(budget, editor, cycle.id, 9, 2026, 250000.555, strategic_alignment="Campus plan")
    assert allocation.status == "proposed"
    assert Decimal(str(allocation.allocated_amount)) == Decimal("250000.56")
    assert allocation.strategic_alignment == "Campus plan"


def test_negative_amount_is_rejected(budget, editor):
    cycle = _cycle(budget, editor)
    with pytest.raises(ValidationError):
        _allocate(budget, editor, cycle.id, 9, 2026, -1)


def test_funding_constraint_overrun_is_rejected(budget, editor):
    cycle = _cycle(budget, editor, funding_constraints={"2025": 1000})
    _allocate(budget, editor, cycle.id, 1, 2025, 600)

    with pytest.raises(ConsistencyError) as exc:
        _allocate(budget, editor, cycle.id, 2, 2025, 500)
    assert exc.value.details["year"] == 2025
    assert len(budget.get_allocations_for_cycle(cycle.id)) == 1


def test_accepted_overrun_is_surfaced(budget, editor, caplog):
    cycle = _cycle(budget, editor, funding_constraints={"2025": 1000})
    _allocate(budget, editor, cycle.id, 1, 2025, 600)

    with caplog.at_level("WARNING", logger="capital_planner.services.budget_engine"):
        budget.allocate_project(
            cycle.id, {"project_id": 2, "year": 2025, "allocated_amount": 500}, editor, allow_overrun=True,
        )
    assert "overrun accepted" in caplog.text

    summary = {row["year"]: row for row in budget.get_budget_summary_by_year(cycle.id)}
    assert summary[2025]["over_constraint"] is True
    assert summary[2025]["remaining"] == -100.0
    assert summary[2026]["over_constraint"] is False

    with pytest.raises(ConsistencyError) as exc:
        budget.check_funding_constraints(cycle.id)
    assert "2025" in exc.value.details


def test_update_allocation_checks_constraint_without_double_counting(budget, editor):
    cycle = _cycle(budget, editor, funding_constraints={"2025": 1000})
    allocation = _allocate(budget, editor, cycle.id, 1, 2025, 600)

    updated = budget.update_allocation(allocation.id, {"allocated_amount": 1000}, editor)
    assert Decimal(str(updated.allocated_amount)) == Decimal("1000")
    with pytest.raises(ConsistencyError):
        budget.update_allocation(allocation.id, {"allocated_amount": 1000.01}, editor)
    with pytest.raises(ValidationError):
        budget.update_allocation(allocation.id, {"year": 2030}, editor)


def test_allocation_status_moves_forward_only(budget, editor):
    cycle = _cycle(budget, editor)
    allocation = _allocate(budget, editor, cycle.id, 1, 2025, 100)

    budget.update_allocation(allocation.id, {"status": "funded"}, editor)
    with pytest.raises(ValidationError):
        budget.update_allocation(allocation.id, {"status": "approved"}, editor)
    assert budget.update_allocation(allocation.id, {"status": "completed"}, editor).status == "completed"


def test_archived_cycle_rejects_allocations(budget, editor):
    cycle = _cycle(budget, editor)
    allocation = _allocate(budget, editor, cycle.id, 1, 2025, 100)
    budget.update_budget_cycle(cycle.id, {"status": "archived"}, editor)

    with pytest.raises(ValidationError):
        _allocate(budget, editor, cycle.id, 2, 2025, 100)
    with pytest.raises(ValidationError):
        budget.update_allocation(allocation.id, {"allocated_amount": 5}, editor)


def test_one_allocation_per_project_and_year(budget, editor):
    cycle = _cycle(budget, editor)
    first = _allocate(budget, editor, cycle.id, 1, 2025, 100)
    second = _allocate(budget, editor, cycle.id, 1, 2026, 100)

    with pytest.raises(ValidationError) as exc:
        _allocate(budget, editor, cycle.id, 1, 2025, 50)
    assert exc.value.details == {"project_id": "duplicate"}
    with pytest.raises(ValidationError):
        budget.update_allocation(second.id, {"year": 2025}, editor)

    assert budget.update_allocation(first.id, {"year": 2025, "allocated_amount": 80}, editor).year == 2025
    assert len(budget.get_allocations_for_cycle(cycle.id)) == 2


def test_default_priority_comes_from_ranking(budget, ranking, scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(21, [{"criteria_id": a.id, "score": 9}], editor)
    scoring.score_project(22, [{"criteria_id": a.id, "score": 3}], editor)
    ranking.calculate_all_project_scores()
    cycle = _cycle(budget, editor)

    ranked = _allocate(budget, editor, cycle.id, 22, 2025, 100)
    unranked = _allocate(budget, editor, cycle.id, 99, 2025, 100)
    explicit = _allocate(budget, editor, cycle.id, 21, 2025, 100, priority=7, justification="Board pick")

    assert ranked.priority == 2
    assert ranked.justification == "Composite score 30.00 (rank 2)"
    assert unranked.priority == 3
    assert unranked.justification is None
    assert explicit.priority == 7
    assert explicit.justification == "Board pick"


def test_allocations_for_cycle_by_year(budget, editor):
    cycle = _cycle(budget, editor)
    _allocate(budget, editor, cycle.id, 1, 2025, 100)
    _allocate(budget, editor, cycle.id, 2, 2026, 100)
    _allocate(budget, editor, cycle.id, 3, 2026, 100)

    assert len(budget.get_allocations_for_cycle(cycle.id)) == 3
    assert [a.project_id for a in budget.get_allocations_for_cycle(cycle.id, year=2026)] == [2, 3]
    with pytest.raises(NotFoundError):
        budget.get_allocations_for_cycle(999)


# ── Escalation & summary ──────────────────────────────────────────────────────


def test_escalation_factor_compounds():
    assert escalation_factor(2, 1, 0) == Decimal("1")
    assert escalation_factor(2, 1, 2) == Decimal("1.02") ** 2 * Decimal("1.01") ** 2
    assert escalation_factor(0, 0, 5) == Decimal("1")


def test_summary_covers_every_year_with_escalation(budget, editor):
    cycle = _cycle(budget, editor, inflation_rate=2, escalation_rate=1, funding_constraints={"2027": 5000})
    _allocate(budget, editor, cycle.id, 1, 2027, 1000)
    _allocate(budget, editor, cycle.id, 2, 2027, 500)

    summary = budget.get_budget_summary_by_year(cycle.id)

    assert [row["year"] for row in summary] == [2025, 2026, 2027, 2028]
    assert summary[0]["total_allocated"] == 0.0
    assert summary[0]["project_count"] == 0
    assert summary[0]["escalation_factor"] == 1.0
    row = summary[2]
    assert row["total_allocated"] == 1500.0
    assert row["project_count"] == 2
    assert row["funding_constraint"] == 5000.0
    assert row["remaining"] == 3500.0
    # 1500 × 1.02² × 1.01² = 1591.97
    assert row["escalated_total"] == 1591.97
    assert budget.escalated_amount(budget.get_budget_cycle(cycle.id), 1000, 2027) == Decimal("1061.31")
    assert budget.check_funding_constraints(cycle.id) == summary


# ── Bulk operations ───────────────────────────────────────────────────────────


def test_bulk_archive_is_atomic_by_default(budget, session, editor):
    first = _cycle(budget, editor, name="One")
    second = _cycle(budget, editor, name="Two")

    outcomes = budget.bulk_archive_cycles([first.id, 999, second.id], editor)

    by_id = {o.id: o for o in outcomes}
    assert by_id[999].success is False
    assert "not found" in by_id[999].error
    assert by_id[first.id].rolled_back is True
    assert by_id[first.id].error == ROLLED_BACK
    assert by_id[second.id].rolled_back is True
    assert {c.status for c in session.query(BudgetCycle)} == {"planning"}


def test_bulk_archive_partial_mode_applies_valid_items(budget, editor):
    first = _cycle(budget, editor, name="One")
    second = _cycle(budget, editor, name="Two")
    budget.update_budget_cycle(second.id, {"status": "archived"}, editor)

    outcomes = budget.bulk_archive_cycles([first.id, second.id, first.id], editor, atomic=False)

    assert [(o.id, o.success) for o in outcomes] == [(first.id, True), (second.id, False)]
    assert "already archived" in outcomes[1].error
    cycle = budget.get_budget_cycle(first.id)
    assert cycle.status == "archived"
    assert cycle.archived_by == editor.user_id


def test_bulk_delete_cycles_cascades(budget, session, editor):
    first = _cycle(budget, editor, name="One")
    second = _cycle(budget, editor, name="Two")
    _allocate(budget, editor, first.id, 1, 2025, 100)
    _allocate(budget, editor, second.id, 2, 2025, 100)

    outcomes = budget.bulk_delete_cycles([first.id, second.id])

    assert all(o.success for o in outcomes)
    assert session.query(BudgetCycle).count() == 0
    assert session.query(BudgetAllocation).count() == 0


def test_bulk_delete_allocations_atomic_and_partial(budget, session, editor):
    cycle = _cycle(budget, editor)
    a1 = _allocate(budget, editor, cycle.id, 1, 2025, 100)
    a2 = _allocate(budget, editor, cycle.id, 2, 2025, 100)

    atomic = budget.bulk_delete_allocations([a1.id, 12345])
    assert not any(o.success for o in atomic)
    assert session.query(BudgetAllocation).count() == 2

    partial = budget.bulk_delete_allocations([a1.id, 12345], atomic=False)
    assert [o.success for o in partial] == [True, False]
    assert [a.id for a in session.query(BudgetAllocation)] == [a2.id]


def test_bulk_outcome_serializes(budget, editor):
    outcomes = budget.bulk_delete_cycles([404])
    assert outcomes[0].to_dict() == {
        "id": 404, "success": False, "error": "BudgetCycle id=404 not found", "rolled_back": False,
    }


def test_bulk_non_integer_ids_fail_individually(budget, session, editor):
    cycle = _cycle(budget, editor)

    outcomes = budget.bulk_archive_cycles([cycle.id, "abc", 2.5], editor, atomic=False)

    assert [(o.id, o.success) for o in outcomes] == [(cycle.id, True), ("abc", False), (2.5, False)]
    assert outcomes[1].error == "id must be an integer"
    assert outcomes[1].rolled_back is False
    assert budget.get_budget_cycle(cycle.id).status == "archived"
