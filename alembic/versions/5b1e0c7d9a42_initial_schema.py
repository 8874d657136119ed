"""initial schema: templates, deployments, pipeline jobs

Revision ID: 5b1e0c7d9a42
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
import sqlmodel


revision = "5b1e0c7d9a42"
down_revision = None
branch_labels = None
depends_on = None

_OPEN_JOB_WHERE = sa.text("status IN ('running')")


def upgrade() -> None:
    op.create_table(
        "template",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("name", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("description", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("variable_schema_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_template_name", "template", ["name"])

    op.create_table(
        "deployment",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("template_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("environment", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("workspace_path", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("log", sa.Text(), nullable=False),
        sa.Column("state_snapshot", sa.Text(), nullable=True),
        sa.Column("last_action", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_deployment_name", "deployment", ["name"], unique=True)
    op.create_index("ix_deployment_template_id", "deployment", ["template_id"])
    op.create_index("ix_deployment_environment", "deployment", ["environment"])
    op.create_index("ix_deployment_status", "deployment", ["status"])

    op.create_table(
        "pipeline_job",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("deployment_id", sa.String(), nullable=False),
        sa.Column("pipeline", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("locked_by", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["deployment_id"], ["deployment.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_job_deployment_id", "pipeline_job", ["deployment_id"])
    op.create_index(
        "uq_open_pipeline_job_per_deployment",
        "pipeline_job",
        ["deployment_id"],
        unique=True,
        sqlite_where=_OPEN_JOB_WHERE,
        postgresql_where=_OPEN_JOB_WHERE,
    )


def downgrade() -> None:
    op.drop_index("uq_open_pipeline_job_per_deployment", table_name="pipeline_job")
    op.drop_index("ix_pipeline_job_deployment_id", table_name="pipeline_job")
    op.drop_table("pipeline_job")
    op.drop_index("ix_deployment_status", table_name="deployment")
    op.drop_index("ix_deployment_environment", table_name="deployment")
    op.drop_index("ix_deployment_template_id", table_name="deployment")
    op.drop_index("ix_deployment_name", table_name="deployment")
    op.drop_table("deployment")
    op.drop_index("ix_template_name", table_name="template")
    op.drop_table("template")
