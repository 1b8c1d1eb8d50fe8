"""
Tests: ScoringEngine — score upserts, status workflow and composite score.

Covers:
  - composite of A(60)=10, B(40)=5 is 80
  - unscored criteria are excluded from the denominator (every subset)
  - composite stays within [0, 100]
  - scoreProject → getProjectScores round trip
  - batch validation happens before any write
  - draft → submitted → locked, forward only
  - locked scores reject writes and deletes
  - scoring progress counts
"""

from decimal import Decimal
from itertools import combinations

import pytest

from capital_planner.core.exceptions import NotFoundError, ValidationError
from capital_planner.models.audit import ScoringAuditLog
from capital_planner.services.scoring_engine import compute_composite
from capital_planner.utils.helpers import quantize2


# ── Composite score ───────────────────────────────────────────────────────────


def test_composite_weighted_average_scaled_to_100(scoring, editor, seed_criteria):
    a, b = seed_criteria(("A", 60), ("B", 40))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 10}, {"criteria_id": b.id, "score": 5}], editor)

    composite = scoring.calculate_composite_score(1)

    assert composite.composite_score == Decimal("80.00")
    assert composite.scored_criteria == 2
    assert composite.total_weight == Decimal("100.00")


def test_unscored_criterion_is_excluded_from_denominator(scoring, editor, seed_criteria):
    a, _ = seed_criteria(("A", 60), ("B", 40))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 7}], editor)

    composite = scoring.calculate_composite_score(1)

    # 7 × 60 / 60 × 10, not 7 × 60 / 100 × 10
    assert composite.composite_score == Decimal("70.00")
    assert composite.scored_weight == Decimal("60.00")


def test_unscored_exclusion_holds_for_every_subset(scoring, editor, seed_criteria):
    criteria = seed_criteria(("A", 50), ("B", 30), ("C", 20))
    scores = {criteria[0].id: Decimal("9"), criteria[1].id: Decimal("4"), criteria[2].id: Decimal("6.5")}
    weights = {c.id: Decimal(str(c.weight)) for c in criteria}

    project_id = 100
    for size in (1, 2, 3):
        for subset in combinations(criteria, size):
            project_id += 1
            scoring.score_project(
                project_id, [{"criteria_id": c.id, "score": scores[c.id]} for c in subset], editor,
            )
            numerator = sum(scores[c.id] * weights[c.id] for c in subset)
            denominator = sum(weights[c.id] for c in subset)
            expected = quantize2(numerator / denominator * 10)
            assert scoring.calculate_composite_score(project_id).composite_score == expected


def test_composite_is_zero_when_nothing_scored(scoring, seed_criteria):
    seed_criteria(("A", 100))
    assert scoring.calculate_composite_score(42).composite_score == Decimal("0.00")


@pytest.mark.parametrize("pairs, expected", [
    ([(10, 60), (10, 40)], Decimal("100.00")),
    ([(0, 60), (0, 40)], Decimal("0.00")),
    ([(3.33, 1), (6.67, 2)], Decimal("55.57")),
    ([(5, 0)], Decimal("0.00")),
    ([], Decimal("0.00")),
])
def test_compute_composite_bounds(pairs, expected):
    value = compute_composite(pairs)
    assert value == expected
    assert Decimal("0") <= value <= Decimal("100")


def test_inactive_criterion_does_not_count(scoring, registry, editor, seed_criteria):
    a, b = seed_criteria(("A", 50), ("B", 50))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 2}, {"criteria_id": b.id, "score": 8}], editor)

    registry.delete_criteria(a.id, editor)

    composite = scoring.calculate_composite_score(1)
    assert composite.composite_score == Decimal("80.00")
    assert [c.criteria_id for c in composite.criteria_scores] == [b.id]


# ── Upserts ───────────────────────────────────────────────────────────────────


def test_score_round_trip(scoring, editor, seed_criteria):
    a, b = seed_criteria(("A", 60), ("B", 40))
    scoring.score_project(5, [
        {"criteria_id": a.id, "score": 7.25, "justification": "Roof membrane at end of life"},
        {"criteria_id": b.id, "score": 0, "justification": None},
    ], editor)

    rows = {r.criteria_id: r for r in scoring.get_project_scores(5)}

    assert Decimal(str(rows[a.id].score)) == Decimal("7.25")
    assert rows[a.id].justification == "Roof membrane at end of life"
    assert Decimal(str(rows[b.id].score)) == Decimal("0")
    assert rows[b.id].justification is None
    assert rows[a.id].status == "draft"
    assert rows[a.id].scored_by == editor.user_id


def test_rescoring_updates_in_place_and_audits(scoring, audit, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(5, [{"criteria_id": a.id, "score": 4}], editor)
    scoring.score_project(5, [{"criteria_id": a.id, "score": 6, "justification": "re-inspected"}], editor)

    rows = scoring.get_project_scores(5)
    assert len(rows) == 1
    assert Decimal(str(rows[0].score)) == Decimal("6")

    history = audit.get_project_audit_history(5)
    assert [h["action"] for h in history] == ["updated", "created"]
    assert history[0]["old_score"] == 4.0
    assert history[0]["new_score"] == 6.0
    assert history[0]["criteria_name"] == "A"


@pytest.mark.parametrize("entry, field", [
    ({"score": 11}, "scores[1].score"),
    ({"score": -0.5}, "scores[1].score"),
    ({"score": None}, "scores[1].score"),
    ({"criteria_id": 9999, "score": 5}, "scores[1].criteria_id"),
])
def test_invalid_batch_writes_nothing(scoring, editor, seed_criteria, entry, field):
    a, b = seed_criteria(("A", 50), ("B", 50))
    bad = {"criteria_id": b.id, **entry}

    with pytest.raises(ValidationError) as exc:
        scoring.score_project(1, [{"criteria_id": a.id, "score": 5}, bad], editor)

    assert field in exc.value.details
    assert scoring.get_project_scores(1) == []


def test_scoring_inactive_criterion_is_rejected(scoring, registry, editor, seed_criteria):
    a, _ = seed_criteria(("A", 50), ("B", 50))
    registry.delete_criteria(a.id, editor)
    with pytest.raises(ValidationError) as exc:
        scoring.score_project(1, [{"criteria_id": a.id, "score": 5}], editor)
    assert "scores[0].criteria_id" in exc.value.details


def test_project_id_must_be_positive(scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    with pytest.raises(ValidationError):
        scoring.score_project(0, [{"criteria_id": a.id, "score": 5}], editor)


def test_empty_batch_is_rejected(scoring, editor, seed_criteria):
    seed_criteria(("A", 100))
    with pytest.raises(ValidationError):
        scoring.score_project(1, [], editor)


# ── Status workflow ───────────────────────────────────────────────────────────


def test_status_moves_forward_only(scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 5}], editor)

    assert scoring.update_score_status(1, a.id, "submitted", editor).status == "submitted"
    assert scoring.update_score_status(1, a.id, "submitted", editor).status == "submitted"
    with pytest.raises(ValidationError):
        scoring.update_score_status(1, a.id, "draft", editor)
    assert scoring.update_score_status(1, a.id, "locked", editor, reason="board approved").status == "locked"


def test_draft_can_be_locked_directly(scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 5}], editor)
    assert scoring.update_score_status(1, a.id, "locked", editor).status == "locked"


def test_unknown_status_is_rejected(scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 5}], editor)
    with pytest.raises(ValidationError):
        scoring.update_score_status(1, a.id, "approved", editor)


def test_status_of_missing_score_raises_not_found(scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    with pytest.raises(NotFoundError):
        scoring.update_score_status(1, a.id, "submitted", editor)


def test_rewrite_keeps_submitted_status(scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 5}], editor)
    scoring.update_score_status(1, a.id, "submitted", editor)

    (row,) = scoring.score_project(1, [{"criteria_id": a.id, "score": 6}], editor)
    assert row.status == "submitted"


def test_locked_score_rejects_rewrite_and_delete(scoring, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 5}], editor)
    scoring.update_score_status(1, a.id, "locked", editor)

    with pytest.raises(ValidationError):
        scoring.score_project(1, [{"criteria_id": a.id, "score": 9}], editor)
    with pytest.raises(ValidationError):
        scoring.delete_project_score(1, a.id, editor)
    assert Decimal(str(scoring.get_project_scores(1)[0].score)) == Decimal("5")


def test_submit_all_promotes_only_drafts(scoring, editor, seed_criteria):
    a, b, c = seed_criteria(("A", 40), ("B", 30), ("C", 30))
    scoring.score_project(1, [
        {"criteria_id": a.id, "score": 1},
        {"criteria_id": b.id, "score": 2},
        {"criteria_id": c.id, "score": 3},
    ], editor)
    scoring.update_score_status(1, c.id, "locked", editor)

    assert scoring.submit_all_project_scores(1, editor) == 2
    assert scoring.submit_all_project_scores(1, editor) == 0
    assert {r.status for r in scoring.get_project_scores(1)} == {"submitted", "locked"}


def test_delete_draft_score_is_audited(scoring, session, editor, seed_criteria):
    (a,) = seed_criteria(("A", 100))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 5}], editor)

    scoring.delete_project_score(1, a.id, editor, reason="entered against wrong project")

    assert scoring.get_project_scores(1) == []
    actions = [row.action for row in session.query(ScoringAuditLog).order_by(ScoringAuditLog.id)]
    assert actions == ["created", "deleted"]


# ── Progress ──────────────────────────────────────────────────────────────────


def test_scoring_progress_counts(scoring, editor, seed_criteria):
    a, b, _, _ = seed_criteria(("A", 25), ("B", 25), ("C", 25), ("D", 25))
    scoring.score_project(1, [{"criteria_id": a.id, "score": 5}, {"criteria_id": b.id, "score": 5}], editor)
    scoring.update_score_status(1, b.id, "submitted", editor)

    progress = scoring.get_scoring_progress(1)

    assert progress["total_criteria"] == 4
    assert progress["scored_criteria"] == 2
    assert progress["unscored_criteria"] == 2
    assert progress["draft_count"] == 1
    assert progress["submitted_count"] == 1
    assert progress["locked_count"] == 0
    assert progress["percent_complete"] == 50.0
