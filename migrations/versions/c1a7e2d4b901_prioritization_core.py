"""prioritization_core

Creates the prioritization and capital budget tables:
  - model_versions        — named criteria-model snapshots (one active)
  - criteria              — weighted criteria with active/inactive/deleted lifecycle
  - project_scores        — one 0-10 score per (project, criterion)
  - ranking_cache         — cached composite score + rank
  - ranking_state         — staleness sequence counters (single row)
  - criteria_presets      — saved weighting schemes
  - criteria_audit_log    — append-only criterion history
  - scoring_audit_log     — append-only score history
  - budget_cycles         — multi-year capital cycles
  - budget_allocations    — per-year project funding
  - green_upgrades        — sustainability data, read by the environmental scorer

Tables created conditionally (IF NOT EXISTS semantics) so the revision can
run against databases that already received them via db.create_all().

Revision ID: c1a7e2d4b901
Revises:
Create Date: 2026-10-19 09:12:44.318202
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'c1a7e2d4b901'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── ModelVersion ──────────────────────────────────────────────────────
    if "model_versions" not in existing:
        op.create_table(
            "model_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_by", sa.Integer(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_model_versions_is_active", "model_versions", ["is_active"])

    # ── Criterion ─────────────────────────────────────────────────────────
    if "criteria" not in existing:
        op.create_table(
            "criteria",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False,
                      comment="risk | strategic | compliance | …"),
            sa.Column("weight", sa.Numeric(7, 2), nullable=False),
            sa.Column("scoring_guideline", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active",
                      comment="active | inactive | deleted"),
            sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false(),
                      comment="Global template criterion provisioned by the engine"),
            sa.Column("model_version_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("deleted_at"),
            sa.Column("deleted_by", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["model_version_id"], ["model_versions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_criteria_status", "criteria", ["status"])
        op.create_index("ix_criteria_model_version_id", "criteria", ["model_version_id"])
        op.create_index("idx_criteria_status_order", "criteria", ["status", "display_order"])

    # ── ProjectScore ──────────────────────────────────────────────────────
    if "project_scores" not in existing:
        op.create_table(
            "project_scores",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False, comment="External project reference"),
            sa.Column("criteria_id", sa.Integer(), nullable=False),
            sa.Column("score", sa.Numeric(4, 2), nullable=False),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("scored_by", sa.Integer(), nullable=True),
            sa.Column("model_version_id", sa.Integer(), nullable=True),
            _ts("scored_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["criteria_id"], ["criteria.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["model_version_id"], ["model_versions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "criteria_id", name="uq_project_scores_project_criteria"),
        )
        op.create_index("ix_project_scores_project_id", "project_scores", ["project_id"])
        op.create_index("ix_project_scores_criteria_id", "project_scores", ["criteria_id"])
        op.create_index("idx_project_scores_project_status", "project_scores", ["project_id", "status"])

    # ── Ranking cache & state ─────────────────────────────────────────────
    if "ranking_cache" not in existing:
        op.create_table(
            "ranking_cache",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("composite_score", sa.Numeric(6, 2), nullable=False),
            sa.Column("rank", sa.Integer(), nullable=False),
            sa.Column("scored_criteria", sa.Integer(), nullable=False, server_default="0"),
            _ts("calculated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id"),
        )
        op.create_index("ix_ranking_cache_rank", "ranking_cache", ["rank"])

    if "ranking_state" not in existing:
        op.create_table(
            "ranking_state",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("mutation_seq", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rebuilt_seq", sa.Integer(), nullable=True),
            _ts("last_mutation_at"),
            _ts("last_rebuilt_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── CriteriaPreset ────────────────────────────────────────────────────
    if "criteria_presets" not in existing:
        op.create_table(
            "criteria_presets",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("configuration", sa.Text(), nullable=False, server_default="{}",
                      comment="JSON: {criterion name: weight}"),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.Integer(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    # ── Audit logs ────────────────────────────────────────────────────────
    if "criteria_audit_log" not in existing:
        op.create_table(
            "criteria_audit_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("criteria_id", sa.Integer(), nullable=False, comment="Criterion PK (kept after deletion)"),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("old_name", sa.String(length=100), nullable=True),
            sa.Column("new_name", sa.String(length=100), nullable=True),
            sa.Column("old_description", sa.Text(), nullable=True),
            sa.Column("new_description", sa.Text(), nullable=True),
            sa.Column("old_category", sa.String(length=30), nullable=True),
            sa.Column("new_category", sa.String(length=30), nullable=True),
            sa.Column("old_weight", sa.Numeric(7, 2), nullable=True),
            sa.Column("new_weight", sa.Numeric(7, 2), nullable=True),
            sa.Column("old_is_active", sa.Boolean(), nullable=True),
            sa.Column("new_is_active", sa.Boolean(), nullable=True),
            sa.Column("changed_by", sa.Integer(), nullable=True, comment="NULL = system"),
            _ts("changed_at", nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("change_details", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_criteria_audit_criteria", "criteria_audit_log", ["criteria_id"])
        op.create_index("idx_criteria_audit_ts", "criteria_audit_log", ["changed_at"])

    if "scoring_audit_log" not in existing:
        op.create_table(
            "scoring_audit_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_score_id", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("criteria_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("old_score", sa.Numeric(4, 2), nullable=True),
            sa.Column("new_score", sa.Numeric(4, 2), nullable=True),
            sa.Column("old_justification", sa.Text(), nullable=True),
            sa.Column("new_justification", sa.Text(), nullable=True),
            sa.Column("old_status", sa.String(length=20), nullable=True),
            sa.Column("new_status", sa.String(length=20), nullable=True),
            sa.Column("changed_by", sa.Integer(), nullable=True),
            _ts("changed_at", nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_scoring_audit_project", "scoring_audit_log", ["project_id"])
        op.create_index("idx_scoring_audit_criteria", "scoring_audit_log", ["criteria_id"])
        op.create_index("idx_scoring_audit_ts", "scoring_audit_log", ["changed_at"])

    # ── Budget ────────────────────────────────────────────────────────────
    if "budget_cycles" not in existing:
        op.create_table(
            "budget_cycles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("start_year", sa.Integer(), nullable=False),
            sa.Column("duration", sa.Integer(), nullable=False, server_default="4", comment="1-30 years"),
            sa.Column("end_year", sa.Integer(), nullable=False),
            sa.Column("total_budget", sa.Numeric(15, 2), nullable=True),
            sa.Column("inflation_rate", sa.Numeric(5, 2), nullable=False, server_default="2.00",
                      comment="% per year"),
            sa.Column("escalation_rate", sa.Numeric(5, 2), nullable=False, server_default="0.00",
                      comment="% per year"),
            sa.Column("funding_constraints", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="planning"),
            sa.Column("created_by", sa.Integer(), nullable=True),
            _ts("archived_at"),
            sa.Column("archived_by", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_budget_cycles_status", "budget_cycles", ["status"])

    if "budget_allocations" not in existing:
        op.create_table(
            "budget_allocations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("cycle_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False, comment="External project reference"),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("allocated_amount", sa.Numeric(15, 2), nullable=False),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0",
                      comment="Priority rank within the year"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="proposed"),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("strategic_alignment", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["cycle_id"], ["budget_cycles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("cycle_id", "project_id", "year", name="uq_budget_allocation_cycle_project_year"),
        )
        op.create_index("ix_budget_allocations_cycle_id", "budget_allocations", ["cycle_id"])
        op.create_index("ix_budget_allocations_project_id", "budget_allocations", ["project_id"])
        op.create_index("idx_budget_alloc_cycle_year", "budget_allocations", ["cycle_id", "year"])

    # ── Green upgrades (sustainability module) ────────────────────────────
    if "green_upgrades" not in existing:
        op.create_table(
            "green_upgrades",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="planned"),
            sa.Column("energy_savings_kwh", sa.Numeric(15, 2), nullable=True),
            sa.Column("water_savings_gallons", sa.Numeric(15, 2), nullable=True),
            sa.Column("co2_reduction_mt", sa.Numeric(15, 4), nullable=True, comment="tonnes CO2e / year"),
            sa.Column("cost", sa.Numeric(15, 2), nullable=True),
            sa.Column("estimated_annual_savings", sa.Numeric(15, 2), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_green_upgrades_project_id", "green_upgrades", ["project_id"])


def downgrade():
    for table in (
        "budget_allocations",
        "budget_cycles",
        "scoring_audit_log",
        "criteria_audit_log",
        "criteria_presets",
        "ranking_state",
        "ranking_cache",
        "project_scores",
        "criteria",
        "model_versions",
    ):
        op.drop_table(table)
    # green_upgrades belongs to the sustainability module and is left in place
