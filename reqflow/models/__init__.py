"""
Request Lifecycle Platform
Model package — owns the shared Flask-SQLAlchemy handle.

Domain modules import ``db`` from here:
    from reqflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
