from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, Enum, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from crmguard.domain.types import (
    BackupStatus,
    BackupType,
    IntegrityCheckStatus,
    IntegrityCheckType,
    JSONType,
    MergeJobStatus,
    MergeJobType,
    UTCDateTime,
    utc_now,
)


class Base(DeclarativeBase):
    pass


def _enum_column(enum_cls: type) -> Enum:
    # Persist enum values (not member names) as portable varchar columns.
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class BackupJob(Base):
    __tablename__ = "backup_jobs"
    __table_args__ = (
        Index("ix_backup_jobs_tenant_type_status", "tenant_id", "type", "status"),
        Index("ix_backup_jobs_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[BackupType] = mapped_column(_enum_column(BackupType))
    status: Mapped[BackupStatus] = mapped_column(_enum_column(BackupStatus))
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Caller-supplied configuration (file list, retention, dry-run flags, scheduling marker).
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # Artifact columns are populated only on COMPLETED.
    artifact_path: Mapped[str | None] = mapped_column(String, nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    verification_result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class MergeJob(Base):
    __tablename__ = "merge_jobs"
    __table_args__ = (Index("ix_merge_jobs_tenant_status", "tenant_id", "status"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[MergeJobType] = mapped_column(_enum_column(MergeJobType))
    status: Mapped[MergeJobStatus] = mapped_column(_enum_column(MergeJobStatus))
    primary_model_type: Mapped[str] = mapped_column(String)
    primary_model_id: Mapped[int] = mapped_column(BigInteger)
    duplicate_model_type: Mapped[str] = mapped_column(String)
    duplicate_model_id: Mapped[int] = mapped_column(BigInteger)
    # field name -> "primary" | "duplicate"
    field_selections: Mapped[dict[str, str] | None] = mapped_column(JSONType, nullable=True)
    merge_preview: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    transferred_relationships: Mapped[dict[str, int] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    processed_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class DataIntegrityCheck(Base):
    __tablename__ = "data_integrity_checks"
    __table_args__ = (Index("ix_data_integrity_checks_tenant_type", "tenant_id", "type"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[IntegrityCheckType] = mapped_column(_enum_column(IntegrityCheckType))
    status: Mapped[IntegrityCheckStatus] = mapped_column(_enum_column(IntegrityCheckStatus))
    target_model: Mapped[str | None] = mapped_column(String, nullable=True)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    results: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    issues_found: Mapped[int] = mapped_column(Integer, default=0)
    issues_fixed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
