"""add crm entity and pivot tables

Revision ID: 0002_crm_tables
Revises: 0001_job_tables
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_crm_tables"
down_revision = "0001_job_tables"
branch_labels = None
depends_on = None


def _tenant_column() -> sa.Column:
    return sa.Column("tenant_id", sa.String(), nullable=True)


def _timestamps(*, soft_delete: bool = True, updated: bool = False) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    if soft_delete:
        columns.append(sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    # References between CRM rows are logical only; the integrity scans police them.
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        *_timestamps(soft_delete=False),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        *_timestamps(soft_delete=False),
    )
    op.create_table(
        "companies",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("website", sa.String(), nullable=True),
        sa.Column("primary_email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("industry", sa.String(), nullable=True),
        sa.Column("creator_id", sa.BigInteger(), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_table(
        "people",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("company_id", sa.BigInteger(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("job_title", sa.String(), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_index("ix_people_company_id", "people", ["company_id"], unique=False)
    op.create_table(
        "leads",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_table(
        "opportunities",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("company_id", sa.BigInteger(), nullable=True),
        sa.Column("contact_id", sa.BigInteger(), nullable=True),
        sa.Column("assigned_to", sa.BigInteger(), nullable=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("value", sa.Numeric(14, 2), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_opportunities_company_id", "opportunities", ["company_id"], unique=False)
    op.create_index("ix_opportunities_contact_id", "opportunities", ["contact_id"], unique=False)
    op.create_table(
        "tasks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("creator_id", sa.BigInteger(), nullable=True),
        sa.Column("assigned_to", sa.BigInteger(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "notes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "tags",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _tenant_column(),
        sa.Column("name", sa.String(), nullable=False),
    )
    for name in ("users", "companies", "people", "leads", "opportunities", "tasks", "notes", "tags"):
        op.create_index(f"ix_{name}_tenant_id", name, ["tenant_id"], unique=False)

    op.create_table(
        "taskables",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("task_id", sa.BigInteger(), nullable=False),
        sa.Column("taskable_type", sa.String(), nullable=False),
        sa.Column("taskable_id", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("task_id", "taskable_type", "taskable_id", name="uq_taskables_link"),
    )
    op.create_index("ix_taskables_owner", "taskables", ["taskable_type", "taskable_id"], unique=False)
    op.create_table(
        "noteables",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("note_id", sa.BigInteger(), nullable=False),
        sa.Column("noteable_type", sa.String(), nullable=False),
        sa.Column("noteable_id", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("note_id", "noteable_type", "noteable_id", name="uq_noteables_link"),
    )
    op.create_index("ix_noteables_owner", "noteables", ["noteable_type", "noteable_id"], unique=False)
    op.create_table(
        "taggables",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tag_id", sa.BigInteger(), nullable=False),
        sa.Column("taggable_type", sa.String(), nullable=False),
        sa.Column("taggable_id", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_taggables_tag_id", "taggables", ["tag_id"], unique=False)
    op.create_index("ix_taggables_owner", "taggables", ["taggable_type", "taggable_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_taggables_owner", table_name="taggables")
    op.drop_index("ix_taggables_tag_id", table_name="taggables")
    op.drop_table("taggables")
    op.drop_index("ix_noteables_owner", table_name="noteables")
    op.drop_table("noteables")
    op.drop_index("ix_taskables_owner", table_name="taskables")
    op.drop_table("taskables")
    for name in ("tags", "notes", "tasks", "opportunities", "leads", "people", "companies", "users"):
        op.drop_index(f"ix_{name}_tenant_id", table_name=name)
    op.drop_index("ix_opportunities_contact_id", table_name="opportunities")
    op.drop_index("ix_opportunities_company_id", table_name="opportunities")
    op.drop_index("ix_people_company_id", table_name="people")
    for name in ("tags", "notes", "tasks", "opportunities", "leads", "people", "companies", "users", "tenants"):
        op.drop_table(name)
