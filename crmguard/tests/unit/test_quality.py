from __future__ import annotations

from datetime import timedelta

import pytest

from crmguard.domain.models import BackupJob, DataIntegrityCheck, MergeJob
from crmguard.domain.types import (
    BackupStatus,
    BackupType,
    IntegrityCheckStatus,
    IntegrityCheckType,
    MergeJobStatus,
    MergeJobType,
    utc_now,
)
from crmguard.services.quality import quality_metrics


def _merge(tenant_id: str, status: MergeJobStatus) -> MergeJob:
    return MergeJob(
        tenant_id=tenant_id,
        type=MergeJobType.COMPANY,
        status=status,
        primary_model_type="companies",
        primary_model_id=1,
        duplicate_model_type="companies",
        duplicate_model_id=2,
    )


def _backup(tenant_id: str, created_days_ago: int) -> BackupJob:
    return BackupJob(
        tenant_id=tenant_id,
        type=BackupType.FULL,
        status=BackupStatus.COMPLETED if created_days_ago else BackupStatus.FAILED,
        name="b",
        config={},
        created_at=utc_now() - timedelta(days=created_days_ago),
    )


@pytest.mark.asyncio
async def test_quality_metrics_summarize_one_tenant(session) -> None:
    session.add_all(
        [
            _merge("t1", MergeJobStatus.PENDING),
            _merge("t1", MergeJobStatus.COMPLETED),
            _merge("t1", MergeJobStatus.COMPLETED),
            _merge("t1", MergeJobStatus.FAILED),
            _merge("t2", MergeJobStatus.PENDING),
            DataIntegrityCheck(
                tenant_id="t1",
                type=IntegrityCheckType.ORPHANED_RECORDS,
                status=IntegrityCheckStatus.COMPLETED,
                parameters={},
                issues_found=4,
                issues_fixed=3,
            ),
            DataIntegrityCheck(
                tenant_id="t1",
                type=IntegrityCheckType.DUPLICATE_DETECTION,
                status=IntegrityCheckStatus.COMPLETED,
                parameters={},
                issues_found=2,
                issues_fixed=0,
            ),
            _backup("t1", 0),
            _backup("t1", 3),
            _backup("t1", 30),
            _backup("t2", 1),
        ]
    )
    await session.commit()

    metrics = await quality_metrics(session, "t1")

    assert metrics["merge_jobs"] == {"total": 4, "pending": 1, "processing": 0, "completed": 2, "failed": 1}
    assert metrics["integrity_checks"] == {"total": 2, "issues_found": 6, "issues_fixed": 3}
    assert metrics["backups"]["total"] == 3
    assert metrics["backups"]["recent"] == 2
    assert metrics["backups"]["completed"] == 2
    assert metrics["backups"]["failed"] == 1


@pytest.mark.asyncio
async def test_quality_metrics_for_empty_tenant(session) -> None:
    metrics = await quality_metrics(session, "nobody")
    assert metrics["merge_jobs"]["total"] == 0
    assert metrics["integrity_checks"] == {"total": 0, "issues_found": 0, "issues_fixed": 0}
    assert metrics["backups"]["recent"] == 0
