"""
Capital Planner
SQLAlchemy database instance shared by all models.

Services never import ``db`` to reach the session; they receive a session
through their constructor.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
