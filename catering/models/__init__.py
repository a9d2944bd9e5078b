"""
Catering Quote Workflow
Model package: shared SQLAlchemy handle.

Usage:
    from catering.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
