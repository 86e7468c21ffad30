"""
Expense Back Office
SQLAlchemy database instance shared by all model modules.

Usage:
    from backoffice.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
