from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmguard.domain.models import BackupJob, DataIntegrityCheck, MergeJob
from crmguard.domain.types import BackupStatus, MergeJobStatus, utc_now


RECENT_BACKUP_WINDOW = timedelta(days=7)


async def quality_metrics(session: AsyncSession, tenant_id: str) -> dict[str, Any]:
    # Summarize a tenant's data-quality activity for dashboards.
    merge_counts = dict(
        (
            await session.execute(
                select(MergeJob.status, func.count())
                .where(MergeJob.tenant_id == tenant_id)
                .group_by(MergeJob.status)
            )
        ).all()
    )
    integrity_row = (
        await session.execute(
            select(
                func.count(DataIntegrityCheck.id),
                func.coalesce(func.sum(DataIntegrityCheck.issues_found), 0),
                func.coalesce(func.sum(DataIntegrityCheck.issues_fixed), 0),
            ).where(DataIntegrityCheck.tenant_id == tenant_id)
        )
    ).one()
    backup_counts = dict(
        (
            await session.execute(
                select(BackupJob.status, func.count())
                .where(BackupJob.tenant_id == tenant_id)
                .group_by(BackupJob.status)
            )
        ).all()
    )
    recent_backups = (
        await session.execute(
            select(func.count(BackupJob.id)).where(
                BackupJob.tenant_id == tenant_id,
                BackupJob.created_at >= utc_now() - RECENT_BACKUP_WINDOW,
            )
        )
    ).scalar_one()

    return {
        "merge_jobs": {
            "total": sum(merge_counts.values()),
            **{status.value: int(merge_counts.get(status, 0)) for status in MergeJobStatus},
        },
        "integrity_checks": {
            "total": int(integrity_row[0]),
            "issues_found": int(integrity_row[1]),
            "issues_fixed": int(integrity_row[2]),
        },
        "backups": {
            "total": sum(backup_counts.values()),
            "recent": int(recent_backups),
            **{status.value: int(backup_counts.get(status, 0)) for status in BackupStatus},
        },
    }
