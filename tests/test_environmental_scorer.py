"""
Tests: EnvironmentalImpactScorer — GHG curve, aggregation and auto-scoring.

Covers:
  - piecewise-linear GHG → 0-100 curve, including bounds and negative input
  - 75 t/yr → 85 → criterion score 9
  - only planned / in-progress / completed upgrades are aggregated
  - projects without data are scored 0 with an explanatory justification
  - the Environmental Impact criterion is provisioned on first use
  - an injected green-upgrade source replaces the table reader
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from capital_planner.models.green_upgrade import GreenUpgrade
from capital_planner.models.prioritization import ENVIRONMENTAL_CRITERION_NAME
from capital_planner.services.environmental_scorer import (
    NO_DATA_JUSTIFICATION,
    EnvironmentalImpactScorer,
    criterion_score_for,
    environmental_score_for,
)


def _make_upgrade(session, project_id, co2, status="planned", energy=0, water=0, cost=0, savings=0):
    row = GreenUpgrade(
        project_id=project_id,
        name=f"Upgrade for {project_id}",
        status=status,
        energy_savings_kwh=Decimal(str(energy)),
        water_savings_gallons=Decimal(str(water)),
        co2_reduction_mt=Decimal(str(co2)),
        cost=Decimal(str(cost)),
        estimated_annual_savings=Decimal(str(savings)),
    )
    session.add(row)
    session.commit()
    return row


class _StaticSource:
    """In-memory stand-in for the green-upgrade table."""

    def __init__(self, totals):
        self.totals = totals

    def aggregate(self, project_id):
        return self.totals.get(project_id)

    def aggregate_all(self):
        return dict(self.totals)


# ── Curve ─────────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("ghg, expected", [
    (0, 0),
    (-5, 0),
    (None, 0),
    (0.5, 2),
    (5, 20),
    (10, 40),
    (30, 55),
    (50, 70),
    (75, 85),
    (99, 99),
    (100, 100),
    (250, 100),
])
def test_environmental_curve(ghg, expected):
    assert environmental_score_for(ghg) == expected
    assert EnvironmentalImpactScorer.calculate_environmental_score(ghg) == expected


@pytest.mark.parametrize("env_score, expected", [(0, 0), (5, 1), (84, 8), (85, 9), (100, 10)])
def test_criterion_score_rounds_half_up(env_score, expected):
    assert criterion_score_for(env_score) == expected


# ── Aggregation ───────────────────────────────────────────────────────────────


def test_impact_aggregates_counted_upgrades_only(environmental, session):
    _make_upgrade(session, 1, 20, energy=10000, water=500, cost=50000, savings=5000)
    _make_upgrade(session, 1, 5, status="completed", energy=2000, cost=10000, savings=1000)
    _make_upgrade(session, 1, 500, status="cancelled")

    impact = environmental.get_project_environmental_impact(1)

    assert impact.ghg_reduction == Decimal("25")
    assert impact.energy_savings == Decimal("12000")
    assert impact.water_savings == Decimal("500")
    assert impact.environmental_score == 51
    assert impact.payback_period == 10.0


def test_impact_is_none_without_upgrades(environmental):
    assert environmental.get_project_environmental_impact(77) is None


def test_portfolio_orders_by_ghg_reduction(environmental, session):
    _make_upgrade(session, 3, 10)
    _make_upgrade(session, 1, 60)
    _make_upgrade(session, 2, 60)
    _make_upgrade(session, 4, 0)

    impacts = environmental.get_projects_with_environmental_impact()

    assert [i.project_id for i in impacts] == [1, 2, 3]
    assert impacts[0].to_dict()["environmental_score"] == 76
    assert impacts[0].payback_period is None


# ── Auto-scoring ──────────────────────────────────────────────────────────────


def test_auto_score_75_tonnes_stores_nine(environmental, registry, scoring, session, editor):
    _make_upgrade(session, 12, 75, energy=120000, water=40000)

    row = environmental.auto_score_project_environmental(12, editor)

    assert Decimal(str(row.score)) == Decimal("9")
    assert "GHG Reduction: 75.00 tonnes CO2e/year" in row.justification
    assert "Environmental Score: 85/100" in row.justification
    criterion = registry.get_criteria(row.criteria_id)
    assert criterion.name == ENVIRONMENTAL_CRITERION_NAME
    assert criterion.is_system is True
    assert scoring.get_project_scores(12)[0].scored_by == editor.user_id


def test_auto_score_without_data_scores_zero(environmental):
    row = environmental.auto_score_project_environmental(55)

    assert Decimal(str(row.score)) == Decimal("0")
    assert row.justification == NO_DATA_JUSTIFICATION
    assert row.scored_by is None


def test_auto_score_reuses_existing_criterion(environmental, registry, session, seed_criteria):
    seed_criteria(("Urgency", 60), ("Safety", 40))
    _make_upgrade(session, 1, 10)
    _make_upgrade(session, 2, 100)

    first = environmental.auto_score_project_environmental(1)
    second = environmental.auto_score_project_environmental(2)

    assert first.criteria_id == second.criteria_id
    assert len(registry.get_active_criteria()) == 3
    assert Decimal(str(second.score)) == Decimal("10")


def test_injected_source_replaces_table(session, scoring, registry):
    source = _StaticSource({
        8: (Decimal("1000"), Decimal("0"), Decimal("50"), Decimal("2000"), Decimal("400")),
    })
    scorer = EnvironmentalImpactScorer(session, scoring=scoring, registry=registry, source=source)

    impact = scorer.get_project_environmental_impact(8)
    assert impact.environmental_score == 70
    assert impact.payback_period == 5.0

    row = scorer.auto_score_project_environmental(8)
    assert Decimal(str(row.score)) == Decimal("7")
    assert scorer.get_project_environmental_impact(9) is None


class _FailingSource:
    def aggregate(self, project_id):
        raise OperationalError("SELECT green_upgrades", {}, Exception("connection refused"))

    def aggregate_all(self):
        raise OperationalError("SELECT green_upgrades", {}, Exception("connection refused"))


def test_source_failure_does_not_overwrite_existing_score(environmental, session, scoring, registry):
    _make_upgrade(session, 7, 75)
    assert Decimal(str(environmental.auto_score_project_environmental(7).score)) == Decimal("9")

    scorer = EnvironmentalImpactScorer(session, scoring=scoring, registry=registry, source=_FailingSource())
    with pytest.raises(OperationalError):
        scorer.auto_score_project_environmental(7)

    (row,) = scoring.get_project_scores(7)
    assert Decimal(str(row.score)) == Decimal("9")
    assert scorer.get_project_environmental_impact(7) is None
    assert scorer.get_projects_with_environmental_impact() == []
