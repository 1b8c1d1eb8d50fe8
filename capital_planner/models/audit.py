"""
Capital Planner
Audit domain models.

Models:
    - CriteriaAuditLog: immutable trail of every criterion mutation
    - ScoringAuditLog: immutable trail of every project-score mutation

Rows are append-only. ORM update/delete of an inserted row raises.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from capital_planner.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _num(value):
    return float(value) if value is not None else None


# ── Constants ────────────────────────────────────────────────────────────────

CRITERIA_AUDIT_ACTIONS = {
    "created", "updated", "deactivated", "reactivated", "deleted",
    "normalized", "versioned",
}

SCORING_AUDIT_ACTIONS = {"created", "updated", "submitted", "locked", "deleted"}


class CriteriaAuditLog(db.Model):
    """
    One row per criterion mutation.

    ``change_details`` carries fields without a dedicated column
    (display order, guideline, model version) as JSON.
    """

    __tablename__ = "criteria_audit_log"
    __table_args__ = (
        db.Index("idx_criteria_audit_criteria", "criteria_id"),
        db.Index("idx_criteria_audit_ts", "changed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    criteria_id = db.Column(db.Integer, nullable=False, comment="Criterion PK (kept after deletion)")
    action = db.Column(db.String(30), nullable=False)
    old_name = db.Column(db.String(100), nullable=True)
    new_name = db.Column(db.String(100), nullable=True)
    old_description = db.Column(db.Text, nullable=True)
    new_description = db.Column(db.Text, nullable=True)
    old_category = db.Column(db.String(30), nullable=True)
    new_category = db.Column(db.String(30), nullable=True)
    old_weight = db.Column(db.Numeric(7, 2), nullable=True)
    new_weight = db.Column(db.Numeric(7, 2), nullable=True)
    old_is_active = db.Column(db.Boolean, nullable=True)
    new_is_active = db.Column(db.Boolean, nullable=True)
    changed_by = db.Column(db.Integer, nullable=True, comment="NULL = system")
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    reason = db.Column(db.Text, nullable=True)
    change_details = db.Column(db.Text, nullable=True)

    @property
    def details(self) -> dict:
        try:
            return json.loads(self.change_details or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "criteria_id": self.criteria_id,
            "action": self.action,
            "old_name": self.old_name,
            "new_name": self.new_name,
            "old_description": self.old_description,
            "new_description": self.new_description,
            "old_category": self.old_category,
            "new_category": self.new_category,
            "old_weight": _num(self.old_weight),
            "new_weight": _num(self.new_weight),
            "old_is_active": self.old_is_active,
            "new_is_active": self.new_is_active,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
            "reason": self.reason,
            "details": self.details,
        }

    def __repr__(self):
        return f"<CriteriaAuditLog {self.id}: {self.action} on criterion {self.criteria_id}>"


class ScoringAuditLog(db.Model):
    """One row per project-score upsert or status change."""

    __tablename__ = "scoring_audit_log"
    __table_args__ = (
        db.Index("idx_scoring_audit_project", "project_id"),
        db.Index("idx_scoring_audit_criteria", "criteria_id"),
        db.Index("idx_scoring_audit_ts", "changed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_score_id = db.Column(db.Integer, nullable=True)
    project_id = db.Column(db.Integer, nullable=False)
    criteria_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(30), nullable=False)
    old_score = db.Column(db.Numeric(4, 2), nullable=True)
    new_score = db.Column(db.Numeric(4, 2), nullable=True)
    old_justification = db.Column(db.Text, nullable=True)
    new_justification = db.Column(db.Text, nullable=True)
    old_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=True)
    changed_by = db.Column(db.Integer, nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    reason = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_score_id": self.project_score_id,
            "project_id": self.project_id,
            "criteria_id": self.criteria_id,
            "action": self.action,
            "old_score": _num(self.old_score),
            "new_score": _num(self.new_score),
            "old_justification": self.old_justification,
            "new_justification": self.new_justification,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
            "reason": self.reason,
        }

    def __repr__(self):
        return f"<ScoringAuditLog {self.id}: {self.action} p={self.project_id} c={self.criteria_id}>"


# ── Append-only guards ───────────────────────────────────────────────────────

def _reject_mutation(mapper, connection, target) -> None:
    """Raise RuntimeError on any ORM UPDATE or DELETE of an audit row."""
    raise RuntimeError(
        f"{type(target).__name__} rows are append-only (id={target.id})"
    )


for _model in (CriteriaAuditLog, ScoringAuditLog):
    _sa_event.listen(_model, "before_update", _reject_mutation)
    _sa_event.listen(_model, "before_delete", _reject_mutation)
