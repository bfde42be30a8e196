"""
TestMaster AI
SQLAlchemy database instance shared across models.

Usage:
    from testmaster.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
