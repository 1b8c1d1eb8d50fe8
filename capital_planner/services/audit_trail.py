"""Audit trail service — append-only criteria and scoring history.

Transaction policy: writers only ``add`` + ``flush`` so the audit row joins
the caller's unit of work. There is no update or delete API; the models
reject ORM mutation of inserted rows.

Query operations:
- get_project_audit_history:   scoring changes for one project
- get_criterion_audit_history: scoring changes for one criterion, all projects
- get_recent_audit_activity:   latest scoring changes (dashboard feed)
- get_criteria_audit_history:  criterion definition changes
- get_criteria_audit_stats:    per-action counts and changes in the last 30 days
"""
import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from capital_planner.models.audit import (
    CRITERIA_AUDIT_ACTIONS,
    SCORING_AUDIT_ACTIONS,
    CriteriaAuditLog,
    ScoringAuditLog,
)
from capital_planner.models.prioritization import Criterion
from capital_planner.services.helpers.transactions import read_fallback

logger = logging.getLogger(__name__)

MAX_AUDIT_LIMIT = 500
RECENT_WINDOW_DAYS = 30


def criterion_snapshot(criterion) -> dict:
    """Fields captured in old_*/new_* audit columns."""
    if criterion is None:
        return {}
    return {
        "name": criterion.name,
        "description": criterion.description,
        "category": criterion.category,
        "weight": criterion.weight,
        "is_active": criterion.is_active,
    }


def score_snapshot(score_row) -> dict:
    if score_row is None:
        return {}
    return {
        "score": score_row.score,
        "justification": score_row.justification,
        "status": score_row.status,
    }


def _empty_stats() -> dict:
    return {
        "total_changes": 0,
        "by_action": {action: 0 for action in sorted(CRITERIA_AUDIT_ACTIONS)},
        "recent_changes": 0,
        "recent_window_days": RECENT_WINDOW_DAYS,
    }


class AuditTrail:
    """Writes and reads the criteria and scoring audit logs."""

    def __init__(self, session):
        self.session = session

    # ── Writers ──────────────────────────────────────────────────────────

    def log_criteria_change(
        self,
        criteria_id: int,
        action: str,
        *,
        before: dict | None = None,
        after: dict | None = None,
        changed_by: int | None = None,
        reason: str | None = None,
        details: dict | None = None,
    ) -> CriteriaAuditLog:
        if action not in CRITERIA_AUDIT_ACTIONS:
            raise ValueError(f"Unknown criteria audit action: {action}")
        before = before or {}
        after = after or {}
        entry = CriteriaAuditLog(
            criteria_id=criteria_id,
            action=action,
            old_name=before.get("name"),
            new_name=after.get("name"),
            old_description=before.get("description"),
            new_description=after.get("description"),
            old_category=before.get("category"),
            new_category=after.get("category"),
            old_weight=before.get("weight"),
            new_weight=after.get("weight"),
            old_is_active=before.get("is_active"),
            new_is_active=after.get("is_active"),
            changed_by=changed_by,
            reason=reason,
            change_details=json.dumps(details, default=str) if details else None,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def log_scoring_change(
        self,
        *,
        project_id: int,
        criteria_id: int,
        action: str,
        project_score_id: int | None = None,
        before: dict | None = None,
        after: dict | None = None,
        changed_by: int | None = None,
        reason: str | None = None,
    ) -> ScoringAuditLog:
        if action not in SCORING_AUDIT_ACTIONS:
            raise ValueError(f"Unknown scoring audit action: {action}")
        before = before or {}
        after = after or {}
        entry = ScoringAuditLog(
            project_score_id=project_score_id,
            project_id=project_id,
            criteria_id=criteria_id,
            action=action,
            old_score=before.get("score"),
            new_score=after.get("score"),
            old_justification=before.get("justification"),
            new_justification=after.get("justification"),
            old_status=before.get("status"),
            new_status=after.get("status"),
            changed_by=changed_by,
            reason=reason,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    # ── Queries ──────────────────────────────────────────────────────────

    def _scoring_rows(self, stmt, limit=None):
        stmt = (
            stmt.outerjoin(Criterion, Criterion.id == ScoringAuditLog.criteria_id)
            .order_by(ScoringAuditLog.changed_at.desc(), ScoringAuditLog.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        rows = self.session.execute(stmt).all()
        result = []
        for entry, criteria_name in rows:
            d = entry.to_dict()
            d["criteria_name"] = criteria_name
            result.append(d)
        return result

    @read_fallback(list)
    def get_project_audit_history(self, project_id: int) -> list[dict]:
        """Scoring changes for a project, newest first."""
        stmt = select(ScoringAuditLog, Criterion.name).where(ScoringAuditLog.project_id == project_id)
        return self._scoring_rows(stmt)

    @read_fallback(list)
    def get_criterion_audit_history(self, criteria_id: int) -> list[dict]:
        """Scoring changes recorded against one criterion across all projects."""
        stmt = select(ScoringAuditLog, Criterion.name).where(ScoringAuditLog.criteria_id == criteria_id)
        return self._scoring_rows(stmt)

    @read_fallback(list)
    def get_recent_audit_activity(self, limit: int = 50) -> list[dict]:
        limit = max(1, min(int(limit or 50), MAX_AUDIT_LIMIT))
        return self._scoring_rows(select(ScoringAuditLog, Criterion.name), limit=limit)

    @read_fallback(list)
    def get_criteria_audit_history(self, criteria_id: int | None = None, limit: int = 100) -> list[dict]:
        """Criterion definition changes, newest first; all criteria when ``criteria_id`` is None."""
        limit = max(1, min(int(limit or 100), MAX_AUDIT_LIMIT))
        stmt = select(CriteriaAuditLog)
        if criteria_id is not None:
            stmt = stmt.where(CriteriaAuditLog.criteria_id == criteria_id)
        stmt = stmt.order_by(CriteriaAuditLog.changed_at.desc(), CriteriaAuditLog.id.desc()).limit(limit)
        return [entry.to_dict() for entry in self.session.execute(stmt).scalars()]

    @read_fallback(_empty_stats)
    def get_criteria_audit_stats(self) -> dict:
        """Per-action counts of criterion changes, plus how many fall in the recent window."""
        counts = dict(self.session.execute(
            select(CriteriaAuditLog.action, func.count(CriteriaAuditLog.id))
            .group_by(CriteriaAuditLog.action)
        ).all())
        since = datetime.now(timezone.utc) - timedelta(days=RECENT_WINDOW_DAYS)
        recent = self.session.execute(
            select(func.count(CriteriaAuditLog.id)).where(CriteriaAuditLog.changed_at >= since)
        ).scalar() or 0

        stats = _empty_stats()
        stats["total_changes"] = sum(counts.values())
        stats["by_action"].update(counts)
        stats["recent_changes"] = recent
        return stats
