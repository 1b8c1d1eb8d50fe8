"""
Capital Planner
Prioritization domain models.

Models:
    - ModelVersion: named snapshot tagging which criteria set was live
    - Criterion: weighted scoring criterion with an explicit lifecycle
    - ProjectScore: one score per (project, criterion) with a status workflow
    - RankingCacheEntry: cached composite score + rank per project
    - RankingState: single-row staleness marker for the ranking cache
    - CriteriaPreset: saved weighting scheme (criterion name -> weight)

Architecture chain: ModelVersion → Criterion → ProjectScore → RankingCacheEntry
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from capital_planner.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

CRITERIA_CATEGORIES = {
    "risk", "strategic", "compliance", "financial", "operational", "environmental",
}

SCORE_MIN = Decimal("0")
SCORE_MAX = Decimal("10")
WEIGHT_MIN = Decimal("0")
WEIGHT_MAX = Decimal("100")
WEIGHT_TOTAL = Decimal("100")
WEIGHT_TOLERANCE = Decimal("0.1")

ENVIRONMENTAL_CRITERION_NAME = "Environmental Impact"


class CriterionStatus(str, Enum):
    """Lifecycle of a criterion. DELETED is terminal."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


class ScoreStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    LOCKED = "locked"


SCORE_STATUS_ORDER = {
    ScoreStatus.DRAFT.value: 0,
    ScoreStatus.SUBMITTED.value: 1,
    ScoreStatus.LOCKED.value: 2,
}


def _num(value):
    return float(value) if value is not None else None


# ═══════════════════════════════════════════════════════════════════════════
#  MODEL VERSION
# ═══════════════════════════════════════════════════════════════════════════

class ModelVersion(db.Model):
    """A named criteria-model snapshot. At most one is active."""

    __tablename__ = "model_versions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ModelVersion {self.id}: {self.name}{' (active)' if self.is_active else ''}>"


# ═══════════════════════════════════════════════════════════════════════════
#  CRITERION
# ═══════════════════════════════════════════════════════════════════════════

class Criterion(db.Model):
    """
    A weighted prioritization criterion.

    ``weight`` is in percentage points; the weights of all active criteria
    sum to 100. ``status`` replaces the legacy isActive flag: inactive
    criteria can be reactivated, deleted ones cannot.
    """

    __tablename__ = "criteria"
    __table_args__ = (
        db.Index("idx_criteria_status_order", "status", "display_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=False, comment="risk | strategic | compliance | …")
    weight = db.Column(db.Numeric(7, 2), nullable=False, default=Decimal("10.00"))
    scoring_guideline = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default=CriterionStatus.ACTIVE.value, index=True,
        comment="active | inactive | deleted",
    )
    display_order = db.Column(db.Integer, nullable=False, default=0)
    is_system = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Global template criterion provisioned by the engine",
    )
    model_version_id = db.Column(
        db.Integer, db.ForeignKey("model_versions.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_by = db.Column(db.Integer, nullable=True)

    scores = db.relationship("ProjectScore", back_populates="criterion", lazy="dynamic")

    @property
    def is_active(self) -> bool:
        return self.status == CriterionStatus.ACTIVE.value

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "weight": _num(self.weight),
            "scoring_guideline": self.scoring_guideline,
            "status": self.status,
            "is_active": self.is_active,
            "display_order": self.display_order,
            "is_system": self.is_system,
            "model_version_id": self.model_version_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
        }

    def __repr__(self):
        return f"<Criterion {self.id}: {self.name} w={self.weight} {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECT SCORE
# ═══════════════════════════════════════════════════════════════════════════

class ProjectScore(db.Model):
    """A 0–10 score of one project against one criterion."""

    __tablename__ = "project_scores"
    __table_args__ = (
        db.UniqueConstraint("project_id", "criteria_id", name="uq_project_scores_project_criteria"),
        db.Index("idx_project_scores_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True, comment="External project reference")
    criteria_id = db.Column(
        db.Integer, db.ForeignKey("criteria.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    score = db.Column(db.Numeric(4, 2), nullable=False)
    justification = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=ScoreStatus.DRAFT.value)
    scored_by = db.Column(db.Integer, nullable=True)
    model_version_id = db.Column(
        db.Integer, db.ForeignKey("model_versions.id", ondelete="SET NULL"), nullable=True,
    )
    scored_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    criterion = db.relationship("Criterion", back_populates="scores")

    def to_dict(self, include_criterion=True):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "criteria_id": self.criteria_id,
            "score": _num(self.score),
            "justification": self.justification,
            "status": self.status,
            "scored_by": self.scored_by,
            "model_version_id": self.model_version_id,
            "scored_at": _iso(self.scored_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_criterion and self.criterion is not None:
            d["criteria_name"] = self.criterion.name
            d["category"] = self.criterion.category
            d["weight"] = _num(self.criterion.weight)
        return d

    def __repr__(self):
        return f"<ProjectScore p={self.project_id} c={self.criteria_id} {self.score} {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  RANKING CACHE
# ═══════════════════════════════════════════════════════════════════════════

class RankingCacheEntry(db.Model):
    """Cached composite score and dense rank; rebuilt wholesale."""

    __tablename__ = "ranking_cache"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, unique=True)
    composite_score = db.Column(db.Numeric(6, 2), nullable=False)
    rank = db.Column(db.Integer, nullable=False, index=True)
    scored_criteria = db.Column(db.Integer, nullable=False, default=0)
    calculated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "project_id": self.project_id,
            "composite_score": _num(self.composite_score),
            "rank": self.rank,
            "scored_criteria": self.scored_criteria,
            "calculated_at": _iso(self.calculated_at),
        }


class RankingState(db.Model):
    """
    Single-row staleness marker.

    ``mutation_seq`` is bumped by every criteria or score mutation;
    ``rebuilt_seq`` records the value seen by the last rebuild.
    """

    __tablename__ = "ranking_state"

    id = db.Column(db.Integer, primary_key=True)
    mutation_seq = db.Column(db.Integer, nullable=False, default=0)
    rebuilt_seq = db.Column(db.Integer, nullable=True)
    last_mutation_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_rebuilt_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_stale(self) -> bool:
        return self.rebuilt_seq is None or self.rebuilt_seq != self.mutation_seq


# ═══════════════════════════════════════════════════════════════════════════
#  PRESETS
# ═══════════════════════════════════════════════════════════════════════════

class CriteriaPreset(db.Model):
    """Saved weighting scheme, e.g. "Safety First" or "Cost Optimization"."""

    __tablename__ = "criteria_presets"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    configuration = db.Column(db.Text, nullable=False, default="{}", comment="JSON: {criterion name: weight}")
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def weights(self) -> dict:
        try:
            return json.loads(self.configuration or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "weights": self.weights,
            "is_default": self.is_default,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }
