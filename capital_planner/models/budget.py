"""
Capital Planner
Capital budget domain models.

Models:
    - BudgetCycle: multi-year planning window with inflation/escalation
      assumptions and optional per-year funding ceilings
    - BudgetAllocation: funding for one project in one year of a cycle

Architecture chain: BudgetCycle → BudgetAllocation
"""

from datetime import datetime, timezone
from decimal import Decimal

from capital_planner.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _num(value):
    return float(value) if value is not None else None


# ── Constants ────────────────────────────────────────────────────────────────

CYCLE_STATUSES = ("planning", "approved", "active", "completed", "archived")
ALLOCATION_STATUSES = ("proposed", "approved", "funded", "completed")

DURATION_MIN, DURATION_MAX = 1, 30
RATE_MIN, RATE_MAX = Decimal("0"), Decimal("20")

DEFAULT_DURATION = 4
DEFAULT_INFLATION_RATE = Decimal("2.0")
DEFAULT_ESCALATION_RATE = Decimal("0.0")


def cycle_end_year(start_year: int, duration: int) -> int:
    """Last year covered by a cycle (inclusive)."""
    return start_year + duration - 1


class BudgetCycle(db.Model):
    """
    A capital budget cycle (typically four years).

    ``funding_constraints`` maps a year (as a string key) to the maximum
    total that may be allocated in that year.
    """

    __tablename__ = "budget_cycles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    start_year = db.Column(db.Integer, nullable=False)
    duration = db.Column(db.Integer, nullable=False, default=DEFAULT_DURATION, comment="1-30 years")
    end_year = db.Column(db.Integer, nullable=False)
    total_budget = db.Column(db.Numeric(15, 2), nullable=True)
    inflation_rate = db.Column(db.Numeric(5, 2), nullable=False, default=DEFAULT_INFLATION_RATE, comment="% per year")
    escalation_rate = db.Column(db.Numeric(5, 2), nullable=False, default=DEFAULT_ESCALATION_RATE, comment="% per year")
    funding_constraints = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="planning", index=True)
    created_by = db.Column(db.Integer, nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    allocations = db.relationship(
        "BudgetAllocation", back_populates="cycle", lazy="dynamic",
    )

    def contains_year(self, year: int) -> bool:
        return self.start_year <= year <= self.end_year

    def constraint_for(self, year: int) -> Decimal | None:
        raw = (self.funding_constraints or {}).get(str(year))
        return Decimal(str(raw)) if raw is not None else None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "start_year": self.start_year,
            "duration": self.duration,
            "end_year": self.end_year,
            "total_budget": _num(self.total_budget),
            "inflation_rate": _num(self.inflation_rate),
            "escalation_rate": _num(self.escalation_rate),
            "funding_constraints": {
                int(y): float(v) for y, v in (self.funding_constraints or {}).items()
            },
            "status": self.status,
            "created_by": self.created_by,
            "archived_at": _iso(self.archived_at),
            "archived_by": self.archived_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<BudgetCycle {self.id}: {self.name} {self.start_year}-{self.end_year}>"


class BudgetAllocation(db.Model):
    """Funding allocated to one project in one year of a cycle."""

    __tablename__ = "budget_allocations"
    __table_args__ = (
        db.Index("idx_budget_alloc_cycle_year", "cycle_id", "year"),
        db.UniqueConstraint("cycle_id", "project_id", "year", name="uq_budget_allocation_cycle_project_year"),
    )

    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(
        db.Integer, db.ForeignKey("budget_cycles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    project_id = db.Column(db.Integer, nullable=False, index=True, comment="External project reference")
    year = db.Column(db.Integer, nullable=False)
    allocated_amount = db.Column(db.Numeric(15, 2), nullable=False)
    priority = db.Column(db.Integer, nullable=False, default=0, comment="Priority rank within the year")
    status = db.Column(db.String(20), nullable=False, default="proposed")
    justification = db.Column(db.Text, nullable=True)
    strategic_alignment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    cycle = db.relationship("BudgetCycle", back_populates="allocations")

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "project_id": self.project_id,
            "year": self.year,
            "allocated_amount": _num(self.allocated_amount),
            "priority": self.priority,
            "status": self.status,
            "justification": self.justification,
            "strategic_alignment": self.strategic_alignment,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<BudgetAllocation {self.id}: cycle={self.cycle_id} p={self.project_id} {self.year}>"
