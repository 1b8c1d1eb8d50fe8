"""
Criteria registry — weighted criteria, model versions and weighting presets.

Every public mutating operation is one unit of work:

    lock active criteria → mutate → renormalize → audit → mark rankings stale → commit

The active criteria rows are locked with ``SELECT … FOR UPDATE`` before
reading, so two concurrent writers cannot interleave their normalizations
(no-op on SQLite, which serializes writers anyway).

Normalization:
    S > 0  → wᵢ' = wᵢ·100/S rounded half-up to 2 decimals
    S = 0  → 100/N each
    N = 0  → no-op
    The rounding residual goes to the largest new weight (ties: lowest
    display_order, then lowest id) so the stored sum is exactly 100.00.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select

from capital_planner.core.exceptions import (
    ConsistencyError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from capital_planner.core.identity import Actor
from capital_planner.models.prioritization import (
    CRITERIA_CATEGORIES,
    ENVIRONMENTAL_CRITERION_NAME,
    WEIGHT_MAX,
    WEIGHT_MIN,
    WEIGHT_TOLERANCE,
    WEIGHT_TOTAL,
    Criterion,
    CriteriaPreset,
    CriterionStatus,
    ModelVersion,
    ProjectScore,
)
from capital_planner.services.audit_trail import AuditTrail, criterion_snapshot, score_snapshot
from capital_planner.services.helpers.ranking_state import mark_rankings_stale
from capital_planner.services.helpers.transactions import read_fallback, unit_of_work
from capital_planner.utils.helpers import parse_decimal, parse_int, quantize2, require_text

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENTAL_WEIGHT = Decimal("15")

ENVIRONMENTAL_DESCRIPTION = (
    "Projects that improve energy efficiency, reduce water consumption, or lower "
    "greenhouse gas emissions. Based on LEED sustainability standards."
)
ENVIRONMENTAL_GUIDELINE = (
    "0-2: No environmental benefit\n"
    "3-4: Minor improvements (< 5% reduction)\n"
    "5-6: Moderate improvements (5-15% reduction)\n"
    "7-8: Significant improvements (15-30% reduction)\n"
    "9-10: Major improvements (> 30% reduction or renewable energy)"
)

_UPDATABLE_TEXT = ("description", "scoring_guideline")


def normalize(weights: list[tuple[Decimal, int, int]]) -> list[Decimal]:
    """Rescale ``(weight, display_order, id)`` triples so they sum to exactly 100.

    Pure function; returns the new weights in input order.
    """
    n = len(weights)
    if n == 0:
        return []
    total = sum((Decimal(w) for w, _, _ in weights), Decimal("0"))
    if total > 0:
        new = [quantize2(Decimal(w) * WEIGHT_TOTAL / total) for w, _, _ in weights]
    else:
        new = [quantize2(WEIGHT_TOTAL / n) for _ in weights]

    residual = WEIGHT_TOTAL - sum(new, Decimal("0"))
    if residual:
        target = min(
            range(n),
            key=lambda i: (-new[i], weights[i][1] or 0, weights[i][2] or 0),
        )
        new[target] += residual
    return new


class CriteriaRegistry:
    """Owns the criteria set and keeps its weights normalized."""

    def __init__(self, session, audit: AuditTrail | None = None,
                 environmental_weight=DEFAULT_ENVIRONMENTAL_WEIGHT):
        self.session = session
        self.audit = audit or AuditTrail(session)
        self.environmental_weight = Decimal(str(environmental_weight))

    # ═════════════════════════════════════════════════════════════════════
    #  Reads
    # ═════════════════════════════════════════════════════════════════════

    @read_fallback(list)
    def list_criteria(self, include_inactive: bool = False) -> list[Criterion]:
        """Criteria in display order. Deleted criteria are never listed."""
        stmt = select(Criterion)
        if include_inactive:
            stmt = stmt.where(Criterion.status != CriterionStatus.DELETED.value)
        else:
            stmt = stmt.where(Criterion.status == CriterionStatus.ACTIVE.value)
        stmt = stmt.order_by(Criterion.display_order, Criterion.id)
        return list(self.session.execute(stmt).scalars())

    def get_criteria(self, criteria_id: int) -> Criterion:
        criterion = self.session.get(Criterion, criteria_id)
        if criterion is None:
            raise NotFoundError(resource="Criterion", resource_id=criteria_id)
        return criterion

    def get_active_criteria(self, lock: bool = False) -> list[Criterion]:
        stmt = (
            select(Criterion)
            .where(Criterion.status == CriterionStatus.ACTIVE.value)
            .order_by(Criterion.display_order, Criterion.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.session.execute(stmt).scalars())

    def weight_sum(self) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Criterion.weight), 0))
            .where(Criterion.status == CriterionStatus.ACTIVE.value)
        ).scalar()
        return Decimal(str(total))

    def _find_active_by_name(self, name: str, exclude_id: int | None = None):
        stmt = select(Criterion).where(
            Criterion.status == CriterionStatus.ACTIVE.value,
            func.lower(Criterion.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Criterion.id != exclude_id)
        return self.session.execute(stmt).scalars().first()

    def _check_unique_name(self, name: str, exclude_id: int | None = None) -> None:
        if self._find_active_by_name(name, exclude_id) is not None:
            raise ValidationError(
                f"An active criterion named '{name}' already exists",
                details={"name": "duplicate"},
            )

    # ═════════════════════════════════════════════════════════════════════
    #  Criteria mutations
    # ═════════════════════════════════════════════════════════════════════

    def create_criteria(self, data: dict, actor: Actor) -> Criterion:
        """Insert a criterion and renormalize the active set."""
        name = require_text(data.get("name"), "name", max_length=100)
        category = data.get("category")
        if category not in CRITERIA_CATEGORIES:
            raise ValidationError(
                f"category must be one of {sorted(CRITERIA_CATEGORIES)}",
                details={"category": "invalid"},
            )
        weight = parse_decimal(
            data.get("weight", Decimal("10")), "weight", minimum=WEIGHT_MIN, maximum=WEIGHT_MAX,
        )
        is_system = bool(data.get("is_system", False))
        if is_system and not actor.is_admin:
            raise PermissionDeniedError("create a global template criterion", role=actor.role)

        with unit_of_work(self.session):
            self.get_active_criteria(lock=True)
            self._check_unique_name(name)
            display_order = data.get("display_order")
            if display_order is None:
                current_max = self.session.execute(
                    select(func.max(Criterion.display_order))
                    .where(Criterion.status != CriterionStatus.DELETED.value)
                ).scalar()
                display_order = (current_max or 0) + 1
            else:
                display_order = parse_int(display_order, "display_order", minimum=0)
            version = self._active_version()

            criterion = Criterion(
                name=name,
                description=data.get("description") or "",
                category=category,
                weight=quantize2(weight),
                scoring_guideline=data.get("scoring_guideline") or "",
                status=CriterionStatus.ACTIVE.value,
                display_order=display_order,
                is_system=is_system,
                model_version_id=version.id if version else None,
            )
            self.session.add(criterion)
            self.session.flush()
            self.audit.log_criteria_change(
                criterion.id, "created",
                after=criterion_snapshot(criterion),
                changed_by=actor.user_id,
                details={"display_order": display_order, "is_system": is_system},
            )
            self._normalize(actor, reason=f"Criterion '{name}' created")
            mark_rankings_stale(self.session)

        logger.info("Criterion created: id=%s name=%s weight=%s", criterion.id, name[:100], criterion.weight)
        return criterion

    def update_criteria(self, criteria_id: int, data: dict, actor: Actor,
                        reason: str | None = None) -> Criterion:
        """Edit a criterion; renormalizes only when the weight changed."""
        with unit_of_work(self.session):
            self.get_active_criteria(lock=True)
            criterion = self.get_criteria(criteria_id)
            if criterion.status == CriterionStatus.DELETED.value:
                raise ValidationError("Deleted criteria cannot be edited", details={"status": "deleted"})
            before = criterion_snapshot(criterion)
            extra = {}

            if "name" in data:
                name = require_text(data["name"], "name", max_length=100)
                if name.lower() != criterion.name.lower() and criterion.is_active:
                    self._check_unique_name(name, exclude_id=criterion.id)
                criterion.name = name
            if "category" in data:
                if data["category"] not in CRITERIA_CATEGORIES:
                    raise ValidationError(
                        f"category must be one of {sorted(CRITERIA_CATEGORIES)}",
                        details={"category": "invalid"},
                    )
                criterion.category = data["category"]
            for field in _UPDATABLE_TEXT:
                if field in data:
                    setattr(criterion, field, data[field] or "")
            if "display_order" in data:
                extra["display_order"] = {"old": criterion.display_order}
                criterion.display_order = parse_int(data["display_order"], "display_order", minimum=0)
                extra["display_order"]["new"] = criterion.display_order
                if extra["display_order"]["old"] == extra["display_order"]["new"]:
                    del extra["display_order"]

            weight_changed = False
            if "weight" in data:
                weight = quantize2(parse_decimal(
                    data["weight"], "weight", minimum=WEIGHT_MIN, maximum=WEIGHT_MAX,
                ))
                weight_changed = weight != quantize2(criterion.weight)
                criterion.weight = weight

            if not self.session.is_modified(criterion):
                logger.debug("Criterion update without changes: id=%s", criterion.id)
                return criterion

            self.session.flush()
            self.audit.log_criteria_change(
                criterion.id, "updated",
                before=before, after=criterion_snapshot(criterion),
                changed_by=actor.user_id, reason=reason, details=extra or None,
            )
            if weight_changed and criterion.is_active:
                self._normalize(actor, reason=f"Weight of '{criterion.name}' changed")
            mark_rankings_stale(self.session)

        logger.info("Criterion updated: id=%s weight_changed=%s", criterion.id, weight_changed)
        return criterion

    def delete_criteria(self, criteria_id: int, actor: Actor,
                        reason: str | None = None) -> tuple[Criterion, list[int]]:
        """
        Soft delete: ACTIVE → INACTIVE, then renormalize the remaining set.

        Returns the criterion and the ids of projects scored against it;
        their scores stay but no longer count toward composites.
        """
        with unit_of_work(self.session):
            active = self.get_active_criteria(lock=True)
            criterion = self.get_criteria(criteria_id)
            if not criterion.is_active:
                raise ValidationError(
                    f"Criterion is already {criterion.status}", details={"status": criterion.status},
                )
            if len(active) <= 1:
                raise ConsistencyError(
                    "Cannot deactivate the last active criterion",
                    details={"criteria_id": criteria_id},
                )
            impacted = self._scored_project_ids(criterion.id)
            before = criterion_snapshot(criterion)
            criterion.status = CriterionStatus.INACTIVE.value
            self.session.flush()
            self.audit.log_criteria_change(
                criterion.id, "deactivated",
                before=before, after=criterion_snapshot(criterion),
                changed_by=actor.user_id, reason=reason,
                details={"impacted_projects": impacted},
            )
            self._normalize(actor, reason=f"Criterion '{criterion.name}' deactivated")
            mark_rankings_stale(self.session)

        logger.info("Criterion deactivated: id=%s impacted_projects=%d", criteria_id, len(impacted))
        return criterion, impacted

    def _scored_project_ids(self, criteria_id: int) -> list[int]:
        return list(self.session.execute(
            select(ProjectScore.project_id)
            .where(ProjectScore.criteria_id == criteria_id)
            .distinct()
            .order_by(ProjectScore.project_id)
        ).scalars())

    def reactivate_criteria(self, criteria_id: int, actor: Actor, reason: str | None = None) -> Criterion:
        with unit_of_work(self.session):
            self.get_active_criteria(lock=True)
            criterion = self.get_criteria(criteria_id)
            if criterion.status == CriterionStatus.DELETED.value:
                raise ValidationError(
                    "Permanently deleted criteria cannot be reactivated",
                    details={"status": criterion.status},
                )
            if criterion.is_active:
                raise ValidationError("Criterion is already active", details={"status": criterion.status})
            self._check_unique_name(criterion.name, exclude_id=criterion.id)

            before = criterion_snapshot(criterion)
            criterion.status = CriterionStatus.ACTIVE.value
            self.session.flush()
            self.audit.log_criteria_change(
                criterion.id, "reactivated",
                before=before, after=criterion_snapshot(criterion),
                changed_by=actor.user_id, reason=reason,
            )
            self._normalize(actor, reason=f"Criterion '{criterion.name}' reactivated")
            mark_rankings_stale(self.session)

        logger.info("Criterion reactivated: id=%s", criteria_id)
        return criterion

    def permanently_delete_criteria(self, criteria_id: int, actor: Actor, confirmation: str,
                                    reason: str | None = None) -> dict:
        """
        Destructive, admin-only delete.

        ``confirmation`` must equal the criterion's current name. Dependent
        project scores are removed (each audited); the criterion row is kept
        in the terminal DELETED state so audit rows still resolve.
        """
        if not actor.is_admin:
            raise PermissionDeniedError("permanently delete a criterion", role=actor.role)

        with unit_of_work(self.session):
            active = self.get_active_criteria(lock=True)
            criterion = self.get_criteria(criteria_id)
            if criterion.status == CriterionStatus.DELETED.value:
                raise NotFoundError(resource="Criterion", resource_id=criteria_id)
            if (confirmation or "") != criterion.name:
                raise ValidationError(
                    "Confirmation must match the criterion name exactly",
                    details={"confirmation": "mismatch"},
                )
            was_active = criterion.is_active
            if was_active and len(active) <= 1:
                raise ConsistencyError(
                    "Cannot delete the last active criterion",
                    details={"criteria_id": criteria_id},
                )

            scores = list(self.session.execute(
                select(ProjectScore).where(ProjectScore.criteria_id == criterion.id)
            ).scalars())
            impacted = sorted({s.project_id for s in scores})
            before = criterion_snapshot(criterion)

            for score_row in scores:
                self.audit.log_scoring_change(
                    project_id=score_row.project_id,
                    criteria_id=score_row.criteria_id,
                    project_score_id=score_row.id,
                    action="deleted",
                    before=score_snapshot(score_row),
                    changed_by=actor.user_id,
                    reason=f"Criterion '{criterion.name}' permanently deleted",
                )
                self.session.delete(score_row)

            criterion.status = CriterionStatus.DELETED.value
            criterion.deleted_at = datetime.now(timezone.utc)
            criterion.deleted_by = actor.user_id
            self.session.flush()
            self.audit.log_criteria_change(
                criterion.id, "deleted",
                before=before, after=criterion_snapshot(criterion),
                changed_by=actor.user_id, reason=reason,
                details={"impacted_projects": impacted, "deleted_scores": len(scores)},
            )
            if was_active:
                self._normalize(actor, reason=f"Criterion '{before['name']}' permanently deleted")
            mark_rankings_stale(self.session)

        logger.warning(
            "Criterion permanently deleted: id=%s scores_removed=%d projects=%d",
            criteria_id, len(scores), len(impacted),
        )
        return {
            "criteria_id": criteria_id,
            "deleted_scores": len(scores),
            "impacted_projects": impacted,
        }

    def normalize_weights(self, actor: Actor) -> list[Criterion]:
        """Explicit renormalization; a second call without mutations changes nothing."""
        with unit_of_work(self.session):
            changed = self._normalize(actor, reason="Manual normalization")
            if changed:
                mark_rankings_stale(self.session)
        logger.info("Manual normalization: %d weights changed", changed)
        return self.get_active_criteria()

    def ensure_environmental_criteria(self, actor: Actor | None = None) -> Criterion:
        """Return the active Environmental Impact criterion, provisioning it on first use."""
        actor = actor or Actor.system()
        existing = self._find_active_by_name(ENVIRONMENTAL_CRITERION_NAME)
        if existing is not None:
            return existing

        with unit_of_work(self.session):
            self.get_active_criteria(lock=True)
            existing = self._find_active_by_name(ENVIRONMENTAL_CRITERION_NAME)
            if existing is not None:
                return existing
            inactive = self.session.execute(
                select(Criterion).where(
                    Criterion.status == CriterionStatus.INACTIVE.value,
                    func.lower(Criterion.name) == ENVIRONMENTAL_CRITERION_NAME.lower(),
                )
            ).scalars().first()

            if inactive is not None:
                before = criterion_snapshot(inactive)
                inactive.status = CriterionStatus.ACTIVE.value
                criterion, action = inactive, "reactivated"
            else:
                before = None
                version = self._active_version()
                current_max = self.session.execute(
                    select(func.max(Criterion.display_order))
                    .where(Criterion.status != CriterionStatus.DELETED.value)
                ).scalar()
                criterion = Criterion(
                    name=ENVIRONMENTAL_CRITERION_NAME,
                    description=ENVIRONMENTAL_DESCRIPTION,
                    category="environmental",
                    weight=quantize2(self.environmental_weight),
                    scoring_guideline=ENVIRONMENTAL_GUIDELINE,
                    status=CriterionStatus.ACTIVE.value,
                    display_order=(current_max or 0) + 1,
                    is_system=True,
                    model_version_id=version.id if version else None,
                )
                self.session.add(criterion)
                action = "created"
            self.session.flush()
            self.audit.log_criteria_change(
                criterion.id, action,
                before=before, after=criterion_snapshot(criterion),
                changed_by=actor.user_id, reason="Environmental Impact criterion provisioned",
            )
            self._normalize(actor, reason="Environmental Impact criterion provisioned")
            mark_rankings_stale(self.session)

        logger.info("Environmental Impact criterion %s: id=%s", action, criterion.id)
        return criterion

    def _normalize(self, actor: Actor, reason: str | None = None) -> int:
        """Rescale active weights in place; flush only. Returns the number of weights changed."""
        active = self.get_active_criteria(lock=True)
        if not active:
            return 0
        changed = 0
        new_weights = normalize([(c.weight, c.display_order, c.id) for c in active])
        for criterion, new in zip(active, new_weights):
            old = quantize2(criterion.weight)
            if old == new:
                continue
            before = criterion_snapshot(criterion)
            criterion.weight = new
            self.audit.log_criteria_change(
                criterion.id, "normalized",
                before=before, after=criterion_snapshot(criterion),
                changed_by=actor.user_id, reason=reason,
            )
            changed += 1
        self.session.flush()

        total = sum((quantize2(c.weight) for c in active), Decimal("0"))
        if abs(total - WEIGHT_TOTAL) > WEIGHT_TOLERANCE:
            raise ConsistencyError(
                f"Active criteria weights sum to {total}, expected {WEIGHT_TOTAL}",
                details={"weight_sum": str(total)},
            )
        return changed

    # ═════════════════════════════════════════════════════════════════════
    #  Model versions
    # ═════════════════════════════════════════════════════════════════════

    def _active_version(self) -> ModelVersion | None:
        return self.session.execute(
            select(ModelVersion).where(ModelVersion.is_active.is_(True))
            .order_by(ModelVersion.id.desc())
        ).scalars().first()

    def get_active_model_version(self) -> ModelVersion | None:
        return self._active_version()

    @read_fallback(list)
    def list_model_versions(self) -> list[ModelVersion]:
        return list(self.session.execute(
            select(ModelVersion).order_by(ModelVersion.created_at.desc(), ModelVersion.id.desc())
        ).scalars())

    def create_model_version(self, name: str, actor: Actor, description: str = "") -> ModelVersion:
        """Deactivate the current version and re-tag every active criterion."""
        name = require_text(name, "name", max_length=100)
        with unit_of_work(self.session):
            active = self.get_active_criteria(lock=True)
            for previous in self.session.execute(
                select(ModelVersion).where(ModelVersion.is_active.is_(True))
            ).scalars():
                previous.is_active = False
            version = ModelVersion(
                name=name, description=description or "", is_active=True, created_by=actor.user_id,
            )
            self.session.add(version)
            self.session.flush()
            for criterion in active:
                old_version = criterion.model_version_id
                criterion.model_version_id = version.id
                self.audit.log_criteria_change(
                    criterion.id, "versioned",
                    before=criterion_snapshot(criterion), after=criterion_snapshot(criterion),
                    changed_by=actor.user_id, reason=f"Model version '{name}' created",
                    details={"old_model_version_id": old_version, "new_model_version_id": version.id},
                )
            self.session.flush()

        logger.info("Model version created: id=%s name=%s criteria=%d", version.id, name, len(active))
        return version

    def get_criteria_by_model_version(self, version_id: int) -> list[Criterion]:
        if self.session.get(ModelVersion, version_id) is None:
            raise NotFoundError(resource="ModelVersion", resource_id=version_id)
        return list(self.session.execute(
            select(Criterion)
            .where(Criterion.model_version_id == version_id)
            .order_by(Criterion.display_order, Criterion.id)
        ).scalars())

    # ═════════════════════════════════════════════════════════════════════
    #  Presets
    # ═════════════════════════════════════════════════════════════════════

    def save_preset(self, name: str, weights: dict, actor: Actor,
                    description: str = "", is_default: bool = False) -> CriteriaPreset:
        """Save a ``{criterion name: weight}`` map under a unique preset name."""
        name = require_text(name, "name", max_length=100)
        if not isinstance(weights, dict) or not weights:
            raise ValidationError("weights must be a non-empty object", details={"weights": "required"})
        clean = {}
        for key, value in weights.items():
            w = parse_decimal(value, f"weights.{key}", minimum=WEIGHT_MIN, maximum=WEIGHT_MAX)
            clean[str(key)] = float(quantize2(w))

        with unit_of_work(self.session):
            taken = self.session.execute(
                select(CriteriaPreset).where(func.lower(CriteriaPreset.name) == name.lower())
            ).scalars().first()
            if taken is not None:
                raise ValidationError(f"A preset named '{name}' already exists", details={"name": "duplicate"})
            if is_default:
                for other in self.session.execute(
                    select(CriteriaPreset).where(CriteriaPreset.is_default.is_(True))
                ).scalars():
                    other.is_default = False
            preset = CriteriaPreset(
                name=name,
                description=description or "",
                configuration=json.dumps(clean, sort_keys=True),
                is_default=bool(is_default),
                created_by=actor.user_id,
            )
            self.session.add(preset)
            self.session.flush()

        logger.info("Criteria preset saved: id=%s name=%s", preset.id, name)
        return preset

    @read_fallback(list)
    def list_presets(self) -> list[CriteriaPreset]:
        return list(self.session.execute(
            select(CriteriaPreset).order_by(CriteriaPreset.is_default.desc(), CriteriaPreset.name)
        ).scalars())

    def apply_preset(self, preset_id: int, actor: Actor) -> list[Criterion]:
        """
        Set the weights of the preset's named active criteria, then normalize.

        Criteria not named by the preset keep their weight; preset entries
        without a matching active criterion are ignored.
        """
        preset = self.session.get(CriteriaPreset, preset_id)
        if preset is None:
            raise NotFoundError(resource="CriteriaPreset", resource_id=preset_id)
        weights = {k.lower(): Decimal(str(v)) for k, v in preset.weights.items()}

        with unit_of_work(self.session):
            applied = 0
            for criterion in self.get_active_criteria(lock=True):
                new = weights.get(criterion.name.lower())
                if new is None or quantize2(new) == quantize2(criterion.weight):
                    continue
                before = criterion_snapshot(criterion)
                criterion.weight = quantize2(new)
                self.audit.log_criteria_change(
                    criterion.id, "updated",
                    before=before, after=criterion_snapshot(criterion),
                    changed_by=actor.user_id, reason=f"Preset '{preset.name}' applied",
                )
                applied += 1
            self.session.flush()
            applied += self._normalize(actor, reason=f"Preset '{preset.name}' applied")
            if applied:
                mark_rankings_stale(self.session)

        logger.info("Criteria preset applied: id=%s changed=%d", preset_id, applied)
        return self.get_active_criteria()
