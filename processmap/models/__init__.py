"""
Process Map Test Engine
Database models package.

The shared ``db`` instance lives here so every model module can do
``from processmap.models import db`` without circular imports.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
