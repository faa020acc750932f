"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db init       # first time only (creates migrations/ env files)
    flask db upgrade
    flask generate-scenarios
"""

from processmap import create_app

app = create_app()
