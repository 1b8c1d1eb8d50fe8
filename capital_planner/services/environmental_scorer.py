"""
Environmental impact scorer — turns green-upgrade savings into a criterion score.

GHG reduction (tCO2e / year) → environmental score (0–100):

    0            → 0
    (0, 10)      → 0  … 40   linear
    [10, 50)     → 40 … 70   linear
    [50, 100)    → 70 … 100  linear
    ≥ 100        → 100

The 0–100 value is rounded half-up to an integer, then divided by 10 and
rounded half-up again for the 0–10 criterion scale (75 t → 85 → 9). The
score is written through ``ScoringEngine.score_project`` so it is
validated and audited like a human-entered score.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select

from capital_planner.core.identity import Actor
from capital_planner.models.green_upgrade import COUNTED_UPGRADE_STATUSES, GreenUpgrade
from capital_planner.services.criteria_registry import CriteriaRegistry
from capital_planner.services.helpers.transactions import read_fallback
from capital_planner.services.scoring_engine import ScoringEngine
from capital_planner.utils.helpers import round_half_up

logger = logging.getLogger(__name__)

NO_DATA_JUSTIFICATION = "No environmental impact data available for this project."

# (lower bound t, upper bound t, score at lower, score at upper)
_CURVE = (
    (Decimal("0"), Decimal("10"), Decimal("0"), Decimal("40")),
    (Decimal("10"), Decimal("50"), Decimal("40"), Decimal("70")),
    (Decimal("50"), Decimal("100"), Decimal("70"), Decimal("100")),
)
_CURVE_CAP = Decimal("100")


@dataclass
class EnvironmentalImpact:
    project_id: int
    energy_savings: Decimal
    water_savings: Decimal
    ghg_reduction: Decimal
    environmental_score: int
    total_cost: Decimal = Decimal("0")
    annual_savings: Decimal = Decimal("0")

    @property
    def payback_period(self) -> float | None:
        """Years until cumulative savings cover the cost; None without savings."""
        if self.annual_savings <= 0:
            return None
        return round(float(self.total_cost / self.annual_savings), 2)

    @property
    def has_data(self) -> bool:
        return self.ghg_reduction > 0

    def to_dict(self):
        return {
            "project_id": self.project_id,
            "energy_savings": float(self.energy_savings),
            "water_savings": float(self.water_savings),
            "ghg_reduction": float(self.ghg_reduction),
            "environmental_score": self.environmental_score,
            "total_cost": float(self.total_cost),
            "annual_savings": float(self.annual_savings),
            "payback_period": self.payback_period,
        }


def environmental_score_for(ghg_reduction) -> int:
    """Map tonnes CO2e/year onto the 0–100 environmental curve."""
    ghg = Decimal(str(ghg_reduction or 0))
    if ghg <= 0:
        return 0
    if ghg >= _CURVE_CAP:
        return 100
    for low, high, score_low, score_high in _CURVE:
        if low <= ghg < high:
            value = score_low + (ghg - low) / (high - low) * (score_high - score_low)
            return round_half_up(value)
    return 0


def criterion_score_for(environmental_score: int) -> int:
    """0–100 environmental score → 0–10 criterion score."""
    return round_half_up(Decimal(environmental_score) / 10)


class SqlGreenUpgradeSource:
    """Reads green-upgrade aggregates from the ``green_upgrades`` table."""

    def __init__(self, session):
        self.session = session

    def _columns(self):
        return (
            func.coalesce(func.sum(GreenUpgrade.energy_savings_kwh), 0),
            func.coalesce(func.sum(GreenUpgrade.water_savings_gallons), 0),
            func.coalesce(func.sum(GreenUpgrade.co2_reduction_mt), 0),
            func.coalesce(func.sum(GreenUpgrade.cost), 0),
            func.coalesce(func.sum(GreenUpgrade.estimated_annual_savings), 0),
        )

    def aggregate(self, project_id: int) -> tuple | None:
        row = self.session.execute(
            select(func.count(GreenUpgrade.id), *self._columns()).where(
                GreenUpgrade.project_id == project_id,
                GreenUpgrade.status.in_(COUNTED_UPGRADE_STATUSES),
            )
        ).one()
        if not row[0]:
            return None
        return tuple(row[1:])

    def aggregate_all(self) -> dict[int, tuple]:
        energy, water, ghg, cost, savings = self._columns()
        rows = self.session.execute(
            select(GreenUpgrade.project_id, energy, water, ghg, cost, savings)
            .where(GreenUpgrade.status.in_(COUNTED_UPGRADE_STATUSES))
            .group_by(GreenUpgrade.project_id)
        ).all()
        return {row[0]: tuple(row[1:]) for row in rows}


def _impact(project_id, totals) -> EnvironmentalImpact:
    energy, water, ghg, cost, savings = (Decimal(str(v or 0)) for v in totals)
    return EnvironmentalImpact(
        project_id=project_id,
        energy_savings=energy,
        water_savings=water,
        ghg_reduction=ghg,
        environmental_score=environmental_score_for(ghg),
        total_cost=cost,
        annual_savings=savings,
    )


class EnvironmentalImpactScorer:
    """Scores projects against the auto-provisioned Environmental Impact criterion."""

    def __init__(self, session, scoring: ScoringEngine | None = None,
                 registry: CriteriaRegistry | None = None, source=None):
        self.session = session
        self.registry = registry or CriteriaRegistry(session)
        self.scoring = scoring or ScoringEngine(session, registry=self.registry)
        self.source = source or SqlGreenUpgradeSource(session)

    @staticmethod
    def calculate_environmental_score(ghg_reduction) -> int:
        return environmental_score_for(ghg_reduction)

    def _load_impact(self, project_id: int) -> EnvironmentalImpact | None:
        totals = self.source.aggregate(project_id)
        if totals is None:
            return None
        return _impact(project_id, totals)

    @read_fallback(lambda: None)
    def get_project_environmental_impact(self, project_id: int) -> EnvironmentalImpact | None:
        """Aggregated savings for a project; None when it has no counted upgrades."""
        return self._load_impact(project_id)

    @read_fallback(list)
    def get_projects_with_environmental_impact(self) -> list[EnvironmentalImpact]:
        """Portfolio view: projects with any savings, largest GHG reduction first."""
        impacts = [
            _impact(project_id, totals)
            for project_id, totals in self.source.aggregate_all().items()
        ]
        impacts = [
            i for i in impacts
            if i.ghg_reduction > 0 or i.energy_savings > 0 or i.water_savings > 0
        ]
        impacts.sort(key=lambda i: (-i.ghg_reduction, i.project_id))
        return impacts

    def score_for_project(self, project_id: int) -> tuple[int, str]:
        """Criterion score and justification. Store errors propagate."""
        impact = self._load_impact(project_id)
        if impact is None or not impact.has_data:
            return 0, NO_DATA_JUSTIFICATION
        score = criterion_score_for(impact.environmental_score)
        justification = (
            "Environmental Impact Assessment:\n"
            f"- Energy Savings: {impact.energy_savings:,.0f} kWh/year\n"
            f"- Water Savings: {impact.water_savings:,.0f} gallons/year\n"
            f"- GHG Reduction: {impact.ghg_reduction:.2f} tonnes CO2e/year\n"
            f"- Environmental Score: {impact.environmental_score}/100"
        )
        return score, justification

    def auto_score_project_environmental(self, project_id: int, actor: Actor | None = None):
        """Provision the criterion if needed and write the computed score."""
        actor = actor or Actor.system()
        score, justification = self.score_for_project(project_id)
        criterion = self.registry.ensure_environmental_criteria(actor)
        rows = self.scoring.score_project(
            project_id,
            [{"criteria_id": criterion.id, "score": score, "justification": justification}],
            actor,
        )
        logger.info("Environmental auto-score: project=%s score=%s", project_id, score)
        return rows[0]
