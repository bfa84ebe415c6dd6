"""add backup, merge and integrity check job tables

Revision ID: 0001_job_tables
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_job_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Backup jobs carry artifact metadata only once they reach completed.
    op.create_table(
        "backup_jobs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("config", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("artifact_path", sa.String(), nullable=True),
        sa.Column("file_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("verification_result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by_actor_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_backup_jobs_tenant_id", "backup_jobs", ["tenant_id"], unique=False)
    op.create_index(
        "ix_backup_jobs_tenant_type_status",
        "backup_jobs",
        ["tenant_id", "type", "status"],
        unique=False,
    )
    op.create_index("ix_backup_jobs_expires_at", "backup_jobs", ["expires_at"], unique=False)

    op.create_table(
        "merge_jobs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("primary_model_type", sa.String(), nullable=False),
        sa.Column("primary_model_id", sa.BigInteger(), nullable=False),
        sa.Column("duplicate_model_type", sa.String(), nullable=False),
        sa.Column("duplicate_model_id", sa.BigInteger(), nullable=False),
        sa.Column("field_selections", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("merge_preview", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("transferred_relationships", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by_actor_id", sa.String(), nullable=True),
        sa.Column("processed_by_actor_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_merge_jobs_tenant_id", "merge_jobs", ["tenant_id"], unique=False)
    op.create_index("ix_merge_jobs_tenant_status", "merge_jobs", ["tenant_id", "status"], unique=False)

    # Scan results are stored whole; issues_found/issues_fixed are denormalized for metrics.
    op.create_table(
        "data_integrity_checks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("target_model", sa.String(), nullable=True),
        sa.Column("parameters", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("results", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("issues_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issues_fixed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by_actor_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_data_integrity_checks_tenant_id", "data_integrity_checks", ["tenant_id"], unique=False)
    op.create_index(
        "ix_data_integrity_checks_tenant_type",
        "data_integrity_checks",
        ["tenant_id", "type"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_data_integrity_checks_tenant_type", table_name="data_integrity_checks")
    op.drop_index("ix_data_integrity_checks_tenant_id", table_name="data_integrity_checks")
    op.drop_table("data_integrity_checks")
    op.drop_index("ix_merge_jobs_tenant_status", table_name="merge_jobs")
    op.drop_index("ix_merge_jobs_tenant_id", table_name="merge_jobs")
    op.drop_table("merge_jobs")
    op.drop_index("ix_backup_jobs_expires_at", table_name="backup_jobs")
    op.drop_index("ix_backup_jobs_tenant_type_status", table_name="backup_jobs")
    op.drop_index("ix_backup_jobs_tenant_id", table_name="backup_jobs")
    op.drop_table("backup_jobs")
