from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


# Use JSONB on Postgres and plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on readback; values are stored naive-UTC there and
    re-tagged on load so comparisons against ``datetime.now(timezone.utc)``
    never mix naive and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class BackupType(str, Enum):
    FULL = "full"
    DATABASE_ONLY = "database_only"
    FILES_ONLY = "files_only"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"


class BackupStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class MergeJobType(str, Enum):
    COMPANY = "company"
    CONTACT = "contact"
    LEAD = "lead"


class MergeJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IntegrityCheckType(str, Enum):
    ORPHANED_RECORDS = "orphaned_records"
    MISSING_RELATIONSHIPS = "missing_relationships"
    DUPLICATE_DETECTION = "duplicate_detection"
    DATA_VALIDATION = "data_validation"
    FOREIGN_KEY_CONSTRAINTS = "foreign_key_constraints"
    REQUIRED_FIELDS = "required_fields"
    DATA_CONSISTENCY = "data_consistency"


class IntegrityCheckStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Status transitions allowed for backup jobs; no job ever re-enters PENDING.
BACKUP_TRANSITIONS: dict[BackupStatus, frozenset[BackupStatus]] = {
    BackupStatus.PENDING: frozenset({BackupStatus.RUNNING, BackupStatus.FAILED}),
    BackupStatus.RUNNING: frozenset({BackupStatus.COMPLETED, BackupStatus.FAILED}),
    BackupStatus.COMPLETED: frozenset({BackupStatus.EXPIRED}),
    # A failed job may be re-run; retries are explicit, never automatic.
    BackupStatus.FAILED: frozenset({BackupStatus.RUNNING}),
    BackupStatus.EXPIRED: frozenset(),
}


def utc_now() -> datetime:
    # Single UTC clock for job timestamps.
    return datetime.now(timezone.utc)
