"""
SQLAlchemy models package.

``db`` is created unbound here and attached to the application in
``create_app`` via ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
