"""
Scoring engine — per-project criterion scores, status workflow and composite score.

Composite score:
    composite = Σ(scoreᵢ · weightᵢ) / Σ weightᵢ · 10

over the *scored* active criteria only; unscored criteria are excluded
from the denominator rather than counted as zero. The result is clamped to
[0, 100] and rounded half-up to two decimals. 0 when nothing is scored or
the scored weights sum to 0.

Status workflow (forward only):
    draft → submitted → locked   (draft → locked allowed)
"""

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from sqlalchemy import select

from capital_planner.core.exceptions import NotFoundError, ValidationError
from capital_planner.core.identity import Actor
from capital_planner.models.prioritization import (
    SCORE_MAX,
    SCORE_MIN,
    SCORE_STATUS_ORDER,
    Criterion,
    CriterionStatus,
    ProjectScore,
    ScoreStatus,
)
from capital_planner.services.audit_trail import AuditTrail, score_snapshot
from capital_planner.services.criteria_registry import CriteriaRegistry
from capital_planner.services.helpers.ranking_state import mark_rankings_stale
from capital_planner.services.helpers.transactions import read_fallback, unit_of_work
from capital_planner.utils.helpers import parse_decimal, parse_int, quantize2

logger = logging.getLogger(__name__)

COMPOSITE_MIN = Decimal("0")
COMPOSITE_MAX = Decimal("100")


@dataclass
class CriterionContribution:
    criteria_id: int
    criteria_name: str
    weight: Decimal
    score: Decimal
    weighted_score: Decimal
    status: str


@dataclass
class CompositeScore:
    project_id: int
    composite_score: Decimal
    scored_weight: Decimal = Decimal("0")
    total_weight: Decimal = Decimal("0")
    criteria_scores: list[CriterionContribution] = field(default_factory=list)

    @property
    def scored_criteria(self) -> int:
        return len(self.criteria_scores)

    def to_dict(self):
        d = asdict(self)
        d["composite_score"] = float(self.composite_score)
        d["scored_weight"] = float(self.scored_weight)
        d["total_weight"] = float(self.total_weight)
        d["scored_criteria"] = self.scored_criteria
        for item in d["criteria_scores"]:
            for key in ("weight", "score", "weighted_score"):
                item[key] = float(item[key])
        return d


def compute_composite(pairs) -> Decimal:
    """Composite score for ``(score, weight)`` pairs of scored criteria."""
    numerator = Decimal("0")
    denominator = Decimal("0")
    for score, weight in pairs:
        weight = Decimal(str(weight))
        numerator += Decimal(str(score)) * weight
        denominator += weight
    if denominator <= 0:
        return Decimal("0.00")
    value = numerator / denominator * 10
    value = max(COMPOSITE_MIN, min(COMPOSITE_MAX, value))
    return quantize2(value)


class ScoringEngine:
    """Validates, stores and aggregates project scores."""

    def __init__(self, session, registry: CriteriaRegistry | None = None,
                 audit: AuditTrail | None = None):
        self.session = session
        self.audit = audit or AuditTrail(session)
        self.registry = registry or CriteriaRegistry(session, audit=self.audit)

    # ── Writes ───────────────────────────────────────────────────────────

    def _validate_entries(self, entries) -> list[tuple[int, Decimal, str | None]]:
        if not isinstance(entries, (list, tuple)) or not entries:
            raise ValidationError("scores must be a non-empty list", details={"scores": "required"})
        active_ids = {c.id for c in self.registry.get_active_criteria()}
        parsed = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ValidationError(f"scores[{i}] must be an object", details={f"scores[{i}]": "invalid"})
            criteria_id = parse_int(entry.get("criteria_id"), f"scores[{i}].criteria_id")
            if criteria_id not in active_ids:
                raise ValidationError(
                    f"Criterion {criteria_id} is not an active criterion",
                    details={f"scores[{i}].criteria_id": "inactive or unknown"},
                )
            score = parse_decimal(entry.get("score"), f"scores[{i}].score", minimum=SCORE_MIN, maximum=SCORE_MAX)
            parsed.append((criteria_id, quantize2(score), entry.get("justification")))
        return parsed

    def score_project(self, project_id: int, entries, actor: Actor) -> list[ProjectScore]:
        """
        Upsert scores for a project.

        The whole batch is validated before anything is written. New rows
        start as draft; submitted rows stay submitted; locked rows reject
        the write. One audit row per upsert.
        """
        project_id = parse_int(project_id, "project_id", minimum=1)
        parsed = self._validate_entries(entries)

        with unit_of_work(self.session):
            existing = {
                s.criteria_id: s for s in self.session.execute(
                    select(ProjectScore).where(ProjectScore.project_id == project_id)
                ).scalars()
            }
            for criteria_id, _, _ in parsed:
                row = existing.get(criteria_id)
                if row is not None and row.status == ScoreStatus.LOCKED.value:
                    raise ValidationError(
                        f"Score for criterion {criteria_id} is locked",
                        details={"status": ScoreStatus.LOCKED.value, "criteria_id": criteria_id},
                    )

            version = self.registry.get_active_model_version()
            written = []
            for criteria_id, score, justification in parsed:
                row = existing.get(criteria_id)
                if row is None:
                    row = ProjectScore(
                        project_id=project_id,
                        criteria_id=criteria_id,
                        score=score,
                        justification=justification,
                        status=ScoreStatus.DRAFT.value,
                        scored_by=actor.user_id,
                        model_version_id=version.id if version else None,
                    )
                    self.session.add(row)
                    self.session.flush()
                    existing[criteria_id] = row
                    self.audit.log_scoring_change(
                        project_id=project_id, criteria_id=criteria_id, project_score_id=row.id,
                        action="created", after=score_snapshot(row), changed_by=actor.user_id,
                    )
                else:
                    before = score_snapshot(row)
                    row.score = score
                    row.justification = justification
                    row.scored_by = actor.user_id
                    row.model_version_id = version.id if version else row.model_version_id
                    self.session.flush()
                    self.audit.log_scoring_change(
                        project_id=project_id, criteria_id=criteria_id, project_score_id=row.id,
                        action="updated", before=before, after=score_snapshot(row),
                        changed_by=actor.user_id,
                    )
                written.append(row)
            mark_rankings_stale(self.session)

        logger.info("Project scored: project=%s entries=%d", project_id, len(written))
        return written

    def update_score_status(self, project_id: int, criteria_id: int, new_status: str,
                            actor: Actor, reason: str | None = None) -> ProjectScore:
        valid = SCORE_STATUS_ORDER.keys()
        if new_status not in valid:
            raise ValidationError(
                f"status must be one of {sorted(valid)}", details={"status": "invalid"},
            )
        with unit_of_work(self.session):
            row = self._get_score(project_id, criteria_id)
            if row.status == new_status:
                return row
            if SCORE_STATUS_ORDER[new_status] < SCORE_STATUS_ORDER[row.status]:
                raise ValidationError(
                    f"Cannot move score from {row.status} back to {new_status}",
                    details={"status": f"{row.status} -> {new_status}"},
                )
            before = score_snapshot(row)
            row.status = new_status
            self.session.flush()
            self.audit.log_scoring_change(
                project_id=row.project_id, criteria_id=row.criteria_id, project_score_id=row.id,
                action=new_status, before=before, after=score_snapshot(row),
                changed_by=actor.user_id, reason=reason,
            )
            mark_rankings_stale(self.session)

        logger.info("Score status: project=%s criterion=%s → %s", project_id, criteria_id, new_status)
        return row

    def submit_all_project_scores(self, project_id: int, actor: Actor) -> int:
        """Promote every draft score of a project to submitted; returns the count."""
        with unit_of_work(self.session):
            drafts = list(self.session.execute(
                select(ProjectScore).where(
                    ProjectScore.project_id == project_id,
                    ProjectScore.status == ScoreStatus.DRAFT.value,
                ).order_by(ProjectScore.criteria_id)
            ).scalars())
            for row in drafts:
                before = score_snapshot(row)
                row.status = ScoreStatus.SUBMITTED.value
                self.session.flush()
                self.audit.log_scoring_change(
                    project_id=row.project_id, criteria_id=row.criteria_id, project_score_id=row.id,
                    action="submitted", before=before, after=score_snapshot(row),
                    changed_by=actor.user_id, reason="Bulk submit",
                )
            if drafts:
                mark_rankings_stale(self.session)

        logger.info("Scores submitted: project=%s count=%d", project_id, len(drafts))
        return len(drafts)

    def delete_project_score(self, project_id: int, criteria_id: int, actor: Actor,
                             reason: str | None = None) -> None:
        with unit_of_work(self.session):
            row = self._get_score(project_id, criteria_id)
            if row.status == ScoreStatus.LOCKED.value:
                raise ValidationError("Locked scores cannot be deleted", details={"status": row.status})
            self.audit.log_scoring_change(
                project_id=row.project_id, criteria_id=row.criteria_id, project_score_id=row.id,
                action="deleted", before=score_snapshot(row), changed_by=actor.user_id, reason=reason,
            )
            self.session.delete(row)
            self.session.flush()
            mark_rankings_stale(self.session)

        logger.info("Score deleted: project=%s criterion=%s", project_id, criteria_id)

    def _get_score(self, project_id, criteria_id) -> ProjectScore:
        row = self.session.execute(
            select(ProjectScore).where(
                ProjectScore.project_id == project_id,
                ProjectScore.criteria_id == criteria_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(resource="ProjectScore", resource_id=f"{project_id}/{criteria_id}")
        return row

    # ── Reads ────────────────────────────────────────────────────────────

    @read_fallback(list)
    def get_project_scores(self, project_id: int) -> list[ProjectScore]:
        """Scores of a project against non-deleted criteria, in display order."""
        return list(self.session.execute(
            select(ProjectScore)
            .join(Criterion, Criterion.id == ProjectScore.criteria_id)
            .where(
                ProjectScore.project_id == project_id,
                Criterion.status != CriterionStatus.DELETED.value,
            )
            .order_by(Criterion.display_order, Criterion.id)
        ).scalars())

    def active_score_rows(self, project_id: int | None = None):
        """(ProjectScore, Criterion) pairs restricted to active criteria."""
        stmt = (
            select(ProjectScore, Criterion)
            .join(Criterion, Criterion.id == ProjectScore.criteria_id)
            .where(Criterion.status == CriterionStatus.ACTIVE.value)
            .order_by(ProjectScore.project_id, Criterion.display_order, Criterion.id)
        )
        if project_id is not None:
            stmt = stmt.where(ProjectScore.project_id == project_id)
        return self.session.execute(stmt).all()

    def build_composite(self, project_id: int, rows, total_weight: Decimal) -> CompositeScore:
        contributions = []
        for score_row, criterion in rows:
            weight = Decimal(str(criterion.weight))
            score = Decimal(str(score_row.score))
            contributions.append(CriterionContribution(
                criteria_id=criterion.id,
                criteria_name=criterion.name,
                weight=weight,
                score=score,
                weighted_score=quantize2(score * weight / 10),
                status=score_row.status,
            ))
        composite = compute_composite((c.score, c.weight) for c in contributions)
        return CompositeScore(
            project_id=project_id,
            composite_score=composite,
            scored_weight=quantize2(sum((c.weight for c in contributions), Decimal("0"))),
            total_weight=quantize2(total_weight),
            criteria_scores=contributions,
        )

    def calculate_composite_score(self, project_id: int) -> CompositeScore:
        rows = self.active_score_rows(project_id)
        return self.build_composite(project_id, rows, self.registry.weight_sum())

    def get_scoring_progress(self, project_id: int) -> dict:
        active = self.registry.get_active_criteria()
        active_ids = {c.id for c in active}
        counts = {status.value: 0 for status in ScoreStatus}
        scored = 0
        for row in self.session.execute(
            select(ProjectScore).where(ProjectScore.project_id == project_id)
        ).scalars():
            if row.criteria_id not in active_ids:
                continue
            scored += 1
            counts[row.status] = counts.get(row.status, 0) + 1
        total = len(active)
        return {
            "project_id": project_id,
            "total_criteria": total,
            "scored_criteria": scored,
            "unscored_criteria": total - scored,
            "draft_count": counts[ScoreStatus.DRAFT.value],
            "submitted_count": counts[ScoreStatus.SUBMITTED.value],
            "locked_count": counts[ScoreStatus.LOCKED.value],
            "percent_complete": round(scored * 100 / total, 1) if total else 0.0,
        }
