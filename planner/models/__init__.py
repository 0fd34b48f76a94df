"""
Capacity Planner
SQLAlchemy extension instance shared by every model module.

Usage:
    from planner.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
