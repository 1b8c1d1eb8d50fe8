"""
Budget allocation engine — multi-year capital cycles and project allocations.

Cycle window:     end_year = start_year + duration - 1, duration ∈ [1, 30]
Rates:            inflation / escalation ∈ [0, 20] % per year (clamped)
Escalation:       amount × (1 + i/100)^n × (1 + e/100)^n,  n = year - start_year

Funding constraints are per-year ceilings. An allocation that pushes a
year over its ceiling raises ConsistencyError unless the caller passes
``allow_overrun=True``; accepted overruns are logged and reported by
``get_budget_summary_by_year``.

Bulk operations validate every id first, then apply. With ``atomic=True``
(default) a single failure means nothing is applied; with ``atomic=False``
the valid items are applied. Bulk calls return one outcome per id and never
raise for item failures.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from capital_planner.core.exceptions import ConsistencyError, NotFoundError, ValidationError
from capital_planner.core.identity import Actor
from capital_planner.models.budget import (
    ALLOCATION_STATUSES,
    CYCLE_STATUSES,
    DEFAULT_DURATION,
    DEFAULT_ESCALATION_RATE,
    DEFAULT_INFLATION_RATE,
    DURATION_MAX,
    DURATION_MIN,
    RATE_MAX,
    RATE_MIN,
    BudgetAllocation,
    BudgetCycle,
    cycle_end_year,
)
from capital_planner.services.helpers.transactions import read_fallback, unit_of_work
from capital_planner.utils.helpers import parse_decimal, parse_int, quantize2, require_text

logger = logging.getLogger(__name__)

ARCHIVED = "archived"
ROLLED_BACK = "rolled back: another item in the batch failed"

_CYCLE_TEXT_FIELDS = ("description",)
_ALLOCATION_TEXT_FIELDS = ("justification", "strategic_alignment")


def escalation_factor(inflation_rate, escalation_rate, years: int) -> Decimal:
    if years <= 0:
        return Decimal("1")
    inflation = 1 + Decimal(str(inflation_rate or 0)) / 100
    escalation = 1 + Decimal(str(escalation_rate or 0)) / 100
    return inflation ** years * escalation ** years


@dataclass
class BulkOutcome:
    id: int | str
    success: bool
    error: str | None = None
    rolled_back: bool = False

    def to_dict(self):
        return asdict(self)


class BudgetAllocationEngine:
    """Manages budget cycles and the allocations inside them."""

    def __init__(self, session, ranking=None):
        self.session = session
        self.ranking = ranking

    # ═════════════════════════════════════════════════════════════════════
    #  Cycles
    # ═════════════════════════════════════════════════════════════════════

    def get_budget_cycle(self, cycle_id: int) -> BudgetCycle:
        cycle = self.session.get(BudgetCycle, cycle_id)
        if cycle is None:
            raise NotFoundError(resource="BudgetCycle", resource_id=cycle_id)
        return cycle

    @read_fallback(list)
    def list_budget_cycles(self, status: str | None = None, include_archived: bool = True) -> list[BudgetCycle]:
        stmt = select(BudgetCycle)
        if status:
            stmt = stmt.where(BudgetCycle.status == status)
        elif not include_archived:
            stmt = stmt.where(BudgetCycle.status != ARCHIVED)
        stmt = stmt.order_by(BudgetCycle.start_year.desc(), BudgetCycle.id.desc())
        return list(self.session.execute(stmt).scalars())

    def _parse_constraints(self, raw, start_year: int, end_year: int) -> dict | None:
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ValidationError(
                "funding_constraints must be an object of year → amount",
                details={"funding_constraints": "invalid"},
            )
        clean = {}
        for key, value in raw.items():
            year = parse_int(key, "funding_constraints.year")
            if not start_year <= year <= end_year:
                raise ValidationError(
                    f"Funding constraint year {year} is outside {start_year}-{end_year}",
                    details={"funding_constraints": f"year {year} outside cycle"},
                )
            amount = parse_decimal(value, f"funding_constraints.{year}", minimum=0)
            clean[str(year)] = float(quantize2(amount))
        return clean or None

    def create_budget_cycle(self, data: dict, actor: Actor) -> BudgetCycle:
        name = require_text(data.get("name"), "name", max_length=100)
        start_year = parse_int(data.get("start_year"), "start_year", minimum=1900, maximum=2999)
        duration = parse_int(
            data.get("duration", DEFAULT_DURATION), "duration",
            minimum=DURATION_MIN, maximum=DURATION_MAX, clamp=True,
        )
        inflation = parse_decimal(
            data.get("inflation_rate", DEFAULT_INFLATION_RATE), "inflation_rate",
            minimum=RATE_MIN, maximum=RATE_MAX, clamp=True,
        )
        escalation = parse_decimal(
            data.get("escalation_rate", DEFAULT_ESCALATION_RATE), "escalation_rate",
            minimum=RATE_MIN, maximum=RATE_MAX, clamp=True,
        )
        total_budget = data.get("total_budget")
        if total_budget is not None:
            total_budget = quantize2(parse_decimal(total_budget, "total_budget", minimum=0))
        status = data.get("status", "planning")
        if status not in CYCLE_STATUSES:
            raise ValidationError(f"status must be one of {list(CYCLE_STATUSES)}", details={"status": "invalid"})
        end_year = cycle_end_year(start_year, duration)
        constraints = self._parse_constraints(data.get("funding_constraints"), start_year, end_year)

        with unit_of_work(self.session):
            cycle = BudgetCycle(
                name=name,
                description=data.get("description") or "",
                start_year=start_year,
                duration=duration,
                end_year=end_year,
                total_budget=total_budget,
                inflation_rate=quantize2(inflation),
                escalation_rate=quantize2(escalation),
                funding_constraints=constraints,
                status=status,
                created_by=actor.user_id,
            )
            self.session.add(cycle)
            self.session.flush()

        logger.info("Budget cycle created: id=%s %s-%s", cycle.id, start_year, end_year)
        return cycle

    def update_budget_cycle(self, cycle_id: int, data: dict, actor: Actor) -> BudgetCycle:
        """Edit a cycle; a window change must still cover every existing allocation."""
        with unit_of_work(self.session):
            cycle = self.get_budget_cycle(cycle_id)
            if "name" in data:
                cycle.name = require_text(data["name"], "name", max_length=100)
            for field in _CYCLE_TEXT_FIELDS:
                if field in data:
                    setattr(cycle, field, data[field] or "")
            if "total_budget" in data:
                value = data["total_budget"]
                cycle.total_budget = None if value is None else quantize2(
                    parse_decimal(value, "total_budget", minimum=0)
                )
            if "inflation_rate" in data:
                cycle.inflation_rate = quantize2(parse_decimal(
                    data["inflation_rate"], "inflation_rate", minimum=RATE_MIN, maximum=RATE_MAX, clamp=True,
                ))
            if "escalation_rate" in data:
                cycle.escalation_rate = quantize2(parse_decimal(
                    data["escalation_rate"], "escalation_rate", minimum=RATE_MIN, maximum=RATE_MAX, clamp=True,
                ))

            if "start_year" in data or "duration" in data:
                start_year = parse_int(
                    data.get("start_year", cycle.start_year), "start_year", minimum=1900, maximum=2999,
                )
                duration = parse_int(
                    data.get("duration", cycle.duration), "duration",
                    minimum=DURATION_MIN, maximum=DURATION_MAX, clamp=True,
                )
                end_year = cycle_end_year(start_year, duration)
                outside = self.session.execute(
                    select(func.count(BudgetAllocation.id)).where(
                        BudgetAllocation.cycle_id == cycle.id,
                        (BudgetAllocation.year < start_year) | (BudgetAllocation.year > end_year),
                    )
                ).scalar()
                if outside:
                    raise ValidationError(
                        f"{outside} allocation(s) would fall outside {start_year}-{end_year}",
                        details={"start_year": "allocations outside new window"},
                    )
                cycle.start_year, cycle.duration, cycle.end_year = start_year, duration, end_year

            if "funding_constraints" in data:
                cycle.funding_constraints = self._parse_constraints(
                    data["funding_constraints"], cycle.start_year, cycle.end_year,
                )
            elif cycle.funding_constraints:
                cycle.funding_constraints = {
                    y: v for y, v in cycle.funding_constraints.items() if cycle.contains_year(int(y))
                } or None

            if "status" in data:
                status = data["status"]
                if status not in CYCLE_STATUSES:
                    raise ValidationError(
                        f"status must be one of {list(CYCLE_STATUSES)}", details={"status": "invalid"},
                    )
                self._set_cycle_status(cycle, status, actor)
            self.session.flush()

        logger.info("Budget cycle updated: id=%s", cycle_id)
        return cycle

    def _set_cycle_status(self, cycle: BudgetCycle, status: str, actor: Actor) -> None:
        if status == ARCHIVED and cycle.status != ARCHIVED:
            cycle.archived_at = datetime.now(timezone.utc)
            cycle.archived_by = actor.user_id
        elif status != ARCHIVED:
            cycle.archived_at = None
            cycle.archived_by = None
        cycle.status = status

    def delete_budget_cycle(self, cycle_id: int) -> None:
        """Delete a cycle and, first, all of its allocations."""
        with unit_of_work(self.session):
            count = self._delete_cycle(self.get_budget_cycle(cycle_id))
        logger.info("Budget cycle deleted: id=%s allocations=%d", cycle_id, count)

    def _delete_cycle(self, cycle: BudgetCycle) -> int:
        allocations = list(cycle.allocations)
        for allocation in allocations:
            self.session.delete(allocation)
        self.session.flush()
        self.session.delete(cycle)
        self.session.flush()
        return len(allocations)

    # ═════════════════════════════════════════════════════════════════════
    #  Allocations
    # ═════════════════════════════════════════════════════════════════════

    def get_allocation(self, allocation_id: int) -> BudgetAllocation:
        allocation = self.session.get(BudgetAllocation, allocation_id)
        if allocation is None:
            raise NotFoundError(resource="BudgetAllocation", resource_id=allocation_id)
        return allocation

    @read_fallback(list)
    def get_allocations_for_cycle(self, cycle_id: int, year: int | None = None) -> list[BudgetAllocation]:
        self.get_budget_cycle(cycle_id)
        stmt = select(BudgetAllocation).where(BudgetAllocation.cycle_id == cycle_id)
        if year is not None:
            stmt = stmt.where(BudgetAllocation.year == year)
        stmt = stmt.order_by(BudgetAllocation.year, BudgetAllocation.priority, BudgetAllocation.id)
        return list(self.session.execute(stmt).scalars())

    def _validate_year(self, cycle: BudgetCycle, year) -> int:
        year = parse_int(year, "year")
        if not cycle.contains_year(year):
            raise ValidationError(
                f"Year {year} is outside the cycle window {cycle.start_year}-{cycle.end_year}",
                details={"year": f"must be between {cycle.start_year} and {cycle.end_year}"},
            )
        return year

    def _year_total(self, cycle_id: int, year: int, exclude_id: int | None = None) -> Decimal:
        stmt = select(func.coalesce(func.sum(BudgetAllocation.allocated_amount), 0)).where(
            BudgetAllocation.cycle_id == cycle_id, BudgetAllocation.year == year,
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetAllocation.id != exclude_id)
        return Decimal(str(self.session.execute(stmt).scalar()))

    def _check_constraint(self, cycle, year, amount, exclude_id=None, allow_overrun=False) -> None:
        limit = cycle.constraint_for(year)
        if limit is None:
            return
        total = self._year_total(cycle.id, year, exclude_id) + amount
        if total <= limit:
            return
        if not allow_overrun:
            raise ConsistencyError(
                f"Allocations for {year} would total {total}, above the funding constraint {limit}",
                details={"year": year, "total": str(total), "constraint": str(limit)},
            )
        logger.warning(
            "Funding constraint overrun accepted: cycle=%s year=%s total=%s constraint=%s",
            cycle.id, year, total, limit,
        )

    def _default_priority_and_justification(self, cycle_id, project_id, year):
        entry = self.ranking.get_project_ranking(project_id) if self.ranking else None
        if entry is not None:
            justification = f"Composite score {float(entry.composite_score):.2f} (rank {entry.rank})"
            return entry.rank, justification
        current = self.session.execute(
            select(func.max(BudgetAllocation.priority)).where(
                BudgetAllocation.cycle_id == cycle_id, BudgetAllocation.year == year,
            )
        ).scalar()
        return (current or 0) + 1, None

    def allocate_project(self, cycle_id: int, data: dict, actor: Actor,
                         allow_overrun: bool = False) -> BudgetAllocation:
        """Allocate funding to a project in one year of a cycle; status starts as proposed."""
        with unit_of_work(self.session):
            cycle = self.get_budget_cycle(cycle_id)
            if cycle.status == ARCHIVED:
                raise ValidationError("Archived cycles do not accept allocations", details={"cycle_id": "archived"})
            project_id = parse_int(data.get("project_id"), "project_id", minimum=1)
            year = self._validate_year(cycle, data.get("year"))
            self._check_unique_allocation(cycle.id, project_id, year)
            amount = quantize2(parse_decimal(data.get("allocated_amount"), "allocated_amount", minimum=0))
            self._check_constraint(cycle, year, amount, allow_overrun=allow_overrun)

            default_priority, default_justification = self._default_priority_and_justification(
                cycle.id, project_id, year,
            )
            priority = data.get("priority")
            priority = default_priority if priority is None else parse_int(priority, "priority", minimum=0)
            allocation = BudgetAllocation(
                cycle_id=cycle.id,
                project_id=project_id,
                year=year,
                allocated_amount=amount,
                priority=priority,
                status="proposed",
                justification=data.get("justification") or default_justification,
                strategic_alignment=data.get("strategic_alignment"),
            )
            self.session.add(allocation)
            self.session.flush()

        logger.info(
            "Project allocated: cycle=%s project=%s year=%s amount=%s by=%s",
            cycle_id, project_id, year, amount, actor.user_id,
        )
        return allocation

    def _check_unique_allocation(self, cycle_id, project_id, year, exclude_id=None) -> None:
        stmt = select(BudgetAllocation.id).where(
            BudgetAllocation.cycle_id == cycle_id,
            BudgetAllocation.project_id == project_id,
            BudgetAllocation.year == year,
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetAllocation.id != exclude_id)
        if self.session.execute(stmt).first() is not None:
            raise ValidationError(
                f"Project {project_id} already has an allocation for {year} in this cycle",
                details={"project_id": "duplicate"},
            )

    def update_allocation(self, allocation_id: int, data: dict, actor: Actor,
                          allow_overrun: bool = False) -> BudgetAllocation:
        with unit_of_work(self.session):
            allocation = self.get_allocation(allocation_id)
            cycle = allocation.cycle
            if cycle.status == ARCHIVED:
                raise ValidationError("Archived cycles do not accept allocation changes",
                                      details={"cycle_id": "archived"})
            year = allocation.year
            amount = Decimal(str(allocation.allocated_amount))
            if "year" in data:
                year = self._validate_year(cycle, data["year"])
                self._check_unique_allocation(cycle.id, allocation.project_id, year, exclude_id=allocation.id)
            if "allocated_amount" in data:
                amount = quantize2(parse_decimal(data["allocated_amount"], "allocated_amount", minimum=0))
            if "year" in data or "allocated_amount" in data:
                self._check_constraint(cycle, year, amount, exclude_id=allocation.id, allow_overrun=allow_overrun)
            allocation.year = year
            allocation.allocated_amount = amount

            if "priority" in data:
                allocation.priority = parse_int(data["priority"], "priority", minimum=0)
            for field in _ALLOCATION_TEXT_FIELDS:
                if field in data:
                    setattr(allocation, field, data[field])
            if "status" in data:
                status = data["status"]
                if status not in ALLOCATION_STATUSES:
                    raise ValidationError(
                        f"status must be one of {list(ALLOCATION_STATUSES)}", details={"status": "invalid"},
                    )
                if ALLOCATION_STATUSES.index(status) < ALLOCATION_STATUSES.index(allocation.status):
                    raise ValidationError(
                        f"Cannot move allocation from {allocation.status} back to {status}",
                        details={"status": f"{allocation.status} -> {status}"},
                    )
                allocation.status = status
            self.session.flush()

        logger.info("Allocation updated: id=%s by=%s", allocation_id, actor.user_id)
        return allocation

    def delete_allocation(self, allocation_id: int) -> None:
        with unit_of_work(self.session):
            self.session.delete(self.get_allocation(allocation_id))
            self.session.flush()
        logger.info("Allocation deleted: id=%s", allocation_id)

    # ═════════════════════════════════════════════════════════════════════
    #  Summary & escalation
    # ═════════════════════════════════════════════════════════════════════

    def escalated_amount(self, cycle: BudgetCycle, amount, year: int) -> Decimal:
        """Amount in year-of-expenditure terms for ``year`` of ``cycle``."""
        factor = escalation_factor(cycle.inflation_rate, cycle.escalation_rate, year - cycle.start_year)
        return quantize2(Decimal(str(amount)) * factor)

    @read_fallback(list)
    def get_budget_summary_by_year(self, cycle_id: int) -> list[dict]:
        """One row per year of the cycle window, including years without allocations."""
        return self._summary_by_year(cycle_id)

    def _summary_by_year(self, cycle_id: int) -> list[dict]:
        cycle = self.get_budget_cycle(cycle_id)
        rows = self.session.execute(
            select(
                BudgetAllocation.year,
                func.coalesce(func.sum(BudgetAllocation.allocated_amount), 0),
                func.count(BudgetAllocation.id),
            )
            .where(BudgetAllocation.cycle_id == cycle.id)
            .group_by(BudgetAllocation.year)
        ).all()
        totals = {year: (Decimal(str(total)), count) for year, total, count in rows}

        summary = []
        for year in range(cycle.start_year, cycle.end_year + 1):
            total, count = totals.get(year, (Decimal("0"), 0))
            limit = cycle.constraint_for(year)
            factor = escalation_factor(cycle.inflation_rate, cycle.escalation_rate, year - cycle.start_year)
            summary.append({
                "year": year,
                "total_allocated": float(quantize2(total)),
                "project_count": count,
                "funding_constraint": float(limit) if limit is not None else None,
                "remaining": float(quantize2(limit - total)) if limit is not None else None,
                "over_constraint": limit is not None and total > limit,
                "escalation_factor": round(float(factor), 6),
                "escalated_total": float(quantize2(total * factor)),
            })
        return summary

    def check_funding_constraints(self, cycle_id: int) -> list[dict]:
        """Return the summary, or raise ConsistencyError naming every overrun year."""
        summary = self._summary_by_year(cycle_id)
        overruns = [row for row in summary if row["over_constraint"]]
        if overruns:
            raise ConsistencyError(
                "Funding constraint exceeded in " + ", ".join(str(r["year"]) for r in overruns),
                details={
                    str(r["year"]): {"total": r["total_allocated"], "constraint": r["funding_constraint"]}
                    for r in overruns
                },
            )
        return summary

    # ═════════════════════════════════════════════════════════════════════
    #  Bulk operations
    # ═════════════════════════════════════════════════════════════════════

    def _run_bulk(self, label, ids, check, apply, atomic) -> list[BulkOutcome]:
        """Validate every id, then apply the valid ones in one transaction.

        Ids that are not integers fail on their own; duplicates are reported once.
        """
        outcomes, ready, seen = [], [], set()
        for raw_id in ids or []:
            try:
                item_id = parse_int(raw_id, "id")
            except ValidationError as exc:
                outcomes.append(BulkOutcome(id=raw_id, success=False, error=str(exc)))
                continue
            if item_id in seen:
                continue
            seen.add(item_id)
            try:
                target = check(item_id)
            except (NotFoundError, ValidationError) as exc:
                outcomes.append(BulkOutcome(id=item_id, success=False, error=str(exc)))
                continue
            outcomes.append(BulkOutcome(id=item_id, success=True))
            ready.append(target)

        failed = [o for o in outcomes if not o.success]
        if atomic and failed:
            for outcome in outcomes:
                if outcome.success:
                    outcome.success = False
                    outcome.error = ROLLED_BACK
                    outcome.rolled_back = True
            self.session.rollback()
            logger.warning("Bulk %s rolled back: %d of %d ids failed", label, len(failed), len(outcomes))
            return outcomes

        try:
            with unit_of_work(self.session):
                for target in ready:
                    apply(target)
        except SQLAlchemyError:
            logger.exception("Bulk %s failed while applying; nothing was changed", label)
            for outcome in outcomes:
                if outcome.success:
                    outcome.success = False
                    outcome.error = "store error; rolled back"
                    outcome.rolled_back = True
            return outcomes

        logger.info("Bulk %s: %d applied, %d failed", label, len(ready), len(failed))
        return outcomes

    def bulk_archive_cycles(self, cycle_ids, actor: Actor, atomic: bool = True) -> list[BulkOutcome]:
        def check(cycle_id):
            cycle = self.get_budget_cycle(cycle_id)
            if cycle.status == ARCHIVED:
                raise ValidationError(f"BudgetCycle id={cycle_id} is already archived")
            return cycle

        return self._run_bulk(
            "archive cycles", cycle_ids, check,
            lambda cycle: self._set_cycle_status(cycle, ARCHIVED, actor), atomic,
        )

    def bulk_delete_cycles(self, cycle_ids, atomic: bool = True) -> list[BulkOutcome]:
        return self._run_bulk("delete cycles", cycle_ids, self.get_budget_cycle, self._delete_cycle, atomic)

    def bulk_delete_allocations(self, allocation_ids, atomic: bool = True) -> list[BulkOutcome]:
        def apply(allocation):
            self.session.delete(allocation)
            self.session.flush()

        return self._run_bulk("delete allocations", allocation_ids, self.get_allocation, apply, atomic)
