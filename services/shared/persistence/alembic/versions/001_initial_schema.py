"""
Initial activity schema (users, daily_stats, repositories)

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from pathlib import Path

from alembic import op


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _schema_sql():
    sql_path = Path(__file__).resolve().parents[3] / "schema.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade():
    op.get_bind().exec_driver_sql(_schema_sql())


def downgrade():
    op.execute("DROP TABLE IF EXISTS repositories")
    op.execute("DROP TABLE IF EXISTS daily_stats")
    op.execute("DROP TABLE IF EXISTS users")
