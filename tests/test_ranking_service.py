"""
Tests: RankingService — cache rebuild, filters, staleness and what-if scenarios.

Covers:
  - ranked output is non-increasing with dense ranks 1..N
  - equal composite scores are ordered by ascending project id
  - reads never recompute; mutations mark the cache stale
  - updates that change nothing leave the cache fresh
  - score filters and limit validation
  - weighting scenarios are computed without persisting anything
"""

from decimal import Decimal

import pytest

from capital_planner.core.exceptions import NotFoundError, ValidationError


def _score(scoring, actor, project_id, by_criterion):
    scoring.score_project(
        project_id,
        [{"criteria_id": cid, "score": value} for cid, value in by_criterion.items()],
        actor,
    )


@pytest.fixture()
def portfolio(scoring, editor, seed_criteria):
    """Five scored projects on criteria A(60) / B(40); returns the criteria."""
    a, b = seed_criteria(("A", 60), ("B", 40))
    for project_id, (sa, sb) in {
        11: (10, 5),    # 80
        12: (4, 4),     # 40
        13: (9, 9),     # 90
        14: (5, 10),    # 70
        15: (7, 7),     # 70
    }.items():
        scoring.score_project(
            project_id,
            [{"criteria_id": a.id, "score": sa}, {"criteria_id": b.id, "score": sb}],
            editor,
        )
    return a, b


# ── Rebuild ───────────────────────────────────────────────────────────────────


def test_ranked_projects_are_ordered_with_dense_ranks(ranking, portfolio):
    ranking.calculate_all_project_scores()

    entries = ranking.get_ranked_projects()

    scores = [Decimal(str(e.composite_score)) for e in entries]
    assert scores == sorted(scores, reverse=True)
    assert [e.rank for e in entries] == list(range(1, len(entries) + 1))
    assert len({e.rank for e in entries}) == len(entries)
    assert [e.project_id for e in entries] == [13, 11, 14, 15, 12]


def test_equal_scores_tie_break_on_project_id(ranking, portfolio):
    ranking.calculate_all_project_scores()
    by_project = {e.project_id: e for e in ranking.get_ranked_projects()}

    assert Decimal(str(by_project[14].composite_score)) == Decimal(str(by_project[15].composite_score))
    assert by_project[14].rank < by_project[15].rank


def test_reads_come_from_cache_until_rebuild(ranking, scoring, editor, portfolio):
    a, b = portfolio
    assert ranking.get_ranked_projects() == []

    ranking.calculate_all_project_scores()
    _score(scoring, editor, 12, {a.id: 10, b.id: 10})

    cached = {e.project_id: e for e in ranking.get_ranked_projects()}
    assert Decimal(str(cached[12].composite_score)) == Decimal("40")
    assert ranking.get_scoring_status()["is_stale"] is True

    ranking.calculate_all_project_scores()
    assert ranking.get_ranked_projects()[0].project_id == 12


def test_rebuild_replaces_projects_without_active_scores(ranking, registry, scoring, editor, seed_criteria):
    a, b = seed_criteria(("A", 50), ("B", 50))
    _score(scoring, editor, 1, {a.id: 5})
    _score(scoring, editor, 2, {b.id: 5})
    assert len(ranking.calculate_all_project_scores()) == 2

    registry.delete_criteria(a.id, editor)

    entries = ranking.calculate_all_project_scores()
    assert [e.project_id for e in entries] == [2]


def test_rebuild_with_no_scores_empties_cache(ranking):
    assert ranking.calculate_all_project_scores() == []
    assert ranking.get_ranked_projects() == []


# ── Filters ───────────────────────────────────────────────────────────────────


def test_score_bounds_and_limit(ranking, portfolio):
    ranking.calculate_all_project_scores()

    assert [e.project_id for e in ranking.get_ranked_projects(min_score=70)] == [13, 11, 14, 15]
    assert [e.project_id for e in ranking.get_ranked_projects(max_score=70)] == [14, 15, 12]
    assert [e.project_id for e in ranking.get_ranked_projects(min_score=50, max_score=85)] == [11, 14, 15]
    assert [e.project_id for e in ranking.get_ranked_projects(limit=2)] == [13, 11]


@pytest.mark.parametrize("kwargs", [
    {"limit": 0},
    {"limit": -3},
    {"min_score": 80, "max_score": 20},
    {"min_score": 101},
    {"max_score": "abc"},
])
def test_invalid_filters_raise(ranking, kwargs):
    with pytest.raises(ValidationError):
        ranking.get_ranked_projects(**kwargs)


def test_get_project_ranking(ranking, portfolio):
    ranking.calculate_all_project_scores()
    assert ranking.get_project_ranking(13).rank == 1
    assert ranking.get_project_ranking(999) is None


# ── Staleness ─────────────────────────────────────────────────────────────────


def test_scoring_status_tracks_mutations(ranking, registry, editor, portfolio):
    status = ranking.get_scoring_status()
    assert status["is_stale"] is True
    assert status["scored_projects"] == 5
    assert status["cached_projects"] == 0

    ranking.calculate_all_project_scores()
    status = ranking.get_scoring_status()
    assert status["is_stale"] is False
    assert status["cached_projects"] == 5
    assert status["last_rebuilt_at"] is not None

    registry.update_criteria(portfolio[0].id, {"weight": 10}, editor)
    assert ranking.get_scoring_status()["is_stale"] is True


def test_no_op_changes_keep_rankings_fresh(ranking, registry, audit, editor, portfolio):
    a, _ = portfolio
    ranking.calculate_all_project_scores()

    registry.update_criteria(a.id, {"name": "A", "weight": 60}, editor)
    registry.normalize_weights(editor)

    assert ranking.get_scoring_status()["is_stale"] is False
    assert [h["action"] for h in audit.get_criteria_audit_history(criteria_id=a.id)] == []


def test_status_before_any_activity(ranking):
    status = ranking.get_scoring_status()
    assert status["is_stale"] is True
    assert status["cached_projects"] == 0
    assert status["last_rebuilt_at"] is None


# ── Scenarios ─────────────────────────────────────────────────────────────────


def test_weighting_scenarios_do_not_persist(ranking, registry, portfolio):
    a, b = portfolio

    results = ranking.compare_weighting_scenarios(11, [
        {"name": "Equal", "weights": {"A": 50, "B": 50}},
        {"name": "B only", "weights": {str(a.id): 0, "b": 100}},
        {"name": "A heavy", "weights": {"a": 90}},
    ])

    assert [r["name"] for r in results] == ["Current", "Equal", "B only", "A heavy"]
    assert results[0]["composite_score"] == 80.0
    assert results[1]["composite_score"] == 75.0
    assert results[2]["composite_score"] == 50.0
    # 10·90 + 5·40 over 130
    assert results[3]["composite_score"] == 84.62
    assert results[3]["weights"] == {"A": 90.0, "B": 40.0}
    assert Decimal(str(registry.get_criteria(a.id).weight)) == Decimal("60")


def test_scenarios_require_scores(ranking, seed_criteria):
    seed_criteria(("A", 100))
    with pytest.raises(NotFoundError):
        ranking.compare_weighting_scenarios(404, [{"name": "x", "weights": {}}])


@pytest.mark.parametrize("scenarios", [
    [],
    None,
    ["not an object"],
    [{"name": "neg", "weights": {"A": -1}}],
    [{"name": "bad", "weights": ["A"]}],
])
def test_invalid_scenarios_raise(ranking, portfolio, scenarios):
    with pytest.raises(ValidationError):
        ranking.compare_weighting_scenarios(11, scenarios)


def test_unknown_scenario_weight_key_is_named(ranking, portfolio):
    with pytest.raises(ValidationError) as exc_info:
        ranking.compare_weighting_scenarios(11, [
            {"name": "ok", "weights": {"A": 50}},
            {"name": "typo", "weights": {"B": 50, "Urgncy": 50}},
        ])

    assert exc_info.value.details == {"scenarios[1].weights.Urgncy": "unknown criterion"}
