"""
Capital Planner
Green upgrade model (owned by the sustainability module, read-only here).

The environmental scorer only aggregates these rows; nothing in this
package writes them outside test fixtures.
"""

from capital_planner.models import db

COUNTED_UPGRADE_STATUSES = ("planned", "in_progress", "completed")


class GreenUpgrade(db.Model):
    """An energy/water/GHG-reducing capital improvement for a project."""

    __tablename__ = "green_upgrades"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(200), default="")
    status = db.Column(db.String(20), nullable=False, default="planned")
    energy_savings_kwh = db.Column(db.Numeric(15, 2), nullable=True)
    water_savings_gallons = db.Column(db.Numeric(15, 2), nullable=True)
    co2_reduction_mt = db.Column(db.Numeric(15, 4), nullable=True, comment="tonnes CO2e / year")
    cost = db.Column(db.Numeric(15, 2), nullable=True)
    estimated_annual_savings = db.Column(db.Numeric(15, 2), nullable=True)

    def __repr__(self):
        return f"<GreenUpgrade {self.id}: p={self.project_id} {self.status}>"
