"""
Ranking service — cached project rankings and what-if weighting scenarios.

The cache is rebuilt only by ``calculate_all_project_scores``. Score and
criteria writes bump the ranking-state mutation sequence so that
``get_scoring_status`` can report staleness without recomputing.

Rank order: composite score descending, then project_id ascending. Ranks
are 1..N with no gaps and no duplicates.
"""

import logging
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import delete, func, select

from capital_planner.core.exceptions import NotFoundError, ValidationError
from capital_planner.models.prioritization import RankingCacheEntry
from capital_planner.services.criteria_registry import CriteriaRegistry
from capital_planner.services.helpers.ranking_state import get_ranking_state, mark_rankings_rebuilt
from capital_planner.services.helpers.transactions import read_fallback, unit_of_work
from capital_planner.services.scoring_engine import ScoringEngine, compute_composite
from capital_planner.utils.helpers import parse_decimal, parse_int

logger = logging.getLogger(__name__)


def _empty_status():
    return {
        "is_stale": True,
        "last_rebuilt_at": None,
        "last_mutation_at": None,
        "cached_projects": 0,
        "scored_projects": 0,
    }


class RankingService:
    """Builds and serves the ranking cache."""

    def __init__(self, session, scoring: ScoringEngine | None = None,
                 registry: CriteriaRegistry | None = None):
        self.session = session
        self.registry = registry or CriteriaRegistry(session)
        self.scoring = scoring or ScoringEngine(session, registry=self.registry)

    def calculate_all_project_scores(self) -> list[RankingCacheEntry]:
        """Recompute every scored project and replace the cache in one transaction."""
        with unit_of_work(self.session):
            total_weight = self.registry.weight_sum()
            by_project = defaultdict(list)
            for score_row, criterion in self.scoring.active_score_rows():
                by_project[score_row.project_id].append((score_row, criterion))

            composites = [
                self.scoring.build_composite(project_id, rows, total_weight)
                for project_id, rows in by_project.items()
            ]
            composites.sort(key=lambda c: (-c.composite_score, c.project_id))

            self.session.execute(delete(RankingCacheEntry))
            entries = []
            for rank, composite in enumerate(composites, start=1):
                entry = RankingCacheEntry(
                    project_id=composite.project_id,
                    composite_score=composite.composite_score,
                    rank=rank,
                    scored_criteria=composite.scored_criteria,
                )
                self.session.add(entry)
                entries.append(entry)
            self.session.flush()
            mark_rankings_rebuilt(self.session)

        logger.info("Rankings rebuilt: projects=%d", len(entries))
        return entries

    @read_fallback(list)
    def get_ranked_projects(self, min_score=None, max_score=None, limit=None) -> list[RankingCacheEntry]:
        """Cached rankings in rank order; never recomputes."""
        stmt = select(RankingCacheEntry)
        low = high = None
        if min_score is not None:
            low = parse_decimal(min_score, "min_score", minimum=0, maximum=100)
            stmt = stmt.where(RankingCacheEntry.composite_score >= low)
        if max_score is not None:
            high = parse_decimal(max_score, "max_score", minimum=0, maximum=100)
            stmt = stmt.where(RankingCacheEntry.composite_score <= high)
        if low is not None and high is not None and low > high:
            raise ValidationError(
                "min_score must not exceed max_score", details={"min_score": "greater than max_score"},
            )
        stmt = stmt.order_by(RankingCacheEntry.rank)
        if limit is not None:
            stmt = stmt.limit(parse_int(limit, "limit", minimum=1))
        return list(self.session.execute(stmt).scalars())

    def get_project_ranking(self, project_id: int) -> RankingCacheEntry | None:
        return self.session.execute(
            select(RankingCacheEntry).where(RankingCacheEntry.project_id == project_id)
        ).scalar_one_or_none()

    @read_fallback(_empty_status)
    def get_scoring_status(self) -> dict:
        state = get_ranking_state(self.session, create=False)
        cached = self.session.execute(select(func.count(RankingCacheEntry.id))).scalar() or 0
        scored = len({row.project_id for row, _ in self.scoring.active_score_rows()})
        if state is None:
            return {**_empty_status(), "cached_projects": cached, "scored_projects": scored}
        return {
            "is_stale": state.is_stale,
            "last_rebuilt_at": state.last_rebuilt_at.isoformat() if state.last_rebuilt_at else None,
            "last_mutation_at": state.last_mutation_at.isoformat() if state.last_mutation_at else None,
            "cached_projects": cached,
            "scored_projects": scored,
        }

    def compare_weighting_scenarios(self, project_id: int, scenarios) -> list[dict]:
        """
        Composite score of one project under alternative weight maps.

        Each scenario is ``{"name": str, "weights": {criterion name or id: weight}}``.
        Criteria a scenario does not mention keep their current weight.
        Keys that match none of the project's scored criteria are rejected.
        Nothing is persisted.
        """
        if not isinstance(scenarios, (list, tuple)) or not scenarios:
            raise ValidationError("scenarios must be a non-empty list", details={"scenarios": "required"})
        rows = self.scoring.active_score_rows(project_id)
        if not rows:
            raise NotFoundError(resource="Project scores", resource_id=project_id)

        current = self.scoring.calculate_composite_score(project_id)
        results = [{
            "name": "Current",
            "composite_score": float(current.composite_score),
            "weights": {c.criteria_name: float(c.weight) for c in current.criteria_scores},
        }]
        known = set()
        for _, criterion in rows:
            known.update((str(criterion.id), criterion.name.lower()))
        for i, scenario in enumerate(scenarios):
            if not isinstance(scenario, dict):
                raise ValidationError(f"scenarios[{i}] must be an object", details={f"scenarios[{i}]": "invalid"})
            name = scenario.get("name") or f"Scenario {i + 1}"
            overrides = scenario.get("weights") or {}
            if not isinstance(overrides, dict):
                raise ValidationError(
                    f"scenarios[{i}].weights must be an object", details={f"scenarios[{i}].weights": "invalid"},
                )
            lookup = {}
            for key, value in overrides.items():
                field = f"scenarios[{i}].weights.{key}"
                if str(key).lower() not in known:
                    raise ValidationError(
                        f"{field} does not match a scored criterion", details={field: "unknown criterion"},
                    )
                lookup[str(key).lower()] = parse_decimal(value, field, minimum=0)

            pairs, used = [], {}
            for score_row, criterion in rows:
                weight = lookup.get(str(criterion.id), lookup.get(criterion.name.lower()))
                if weight is None:
                    weight = Decimal(str(criterion.weight))
                pairs.append((score_row.score, weight))
                used[criterion.name] = float(weight)
            results.append({
                "name": name,
                "composite_score": float(compute_composite(pairs)),
                "weights": used,
            })
        return results
