from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmguard.apps.api.deps import Caller, get_caller, get_db
from crmguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmguard.apps.api.response import SuccessEnvelope, success_response
from crmguard.domain.models import BackupJob
from crmguard.domain.types import BackupStatus
from crmguard.persistence.db import SessionLocal
from crmguard.services.backup import BackupOrchestrator
from crmguard.services.backup.orchestrator import parse_backup_config


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backups", tags=["backups"], responses=DEFAULT_ERROR_RESPONSES)


class BackupJobResponse(BaseModel):
    id: int
    tenant_id: str
    type: str
    status: str
    name: str
    description: str | None
    artifact_path: str | None
    file_size_bytes: int | None
    checksum: str | None
    verification_result: dict[str, Any] | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    expires_at: datetime | None


class RecoveryPointResponse(BaseModel):
    timestamp: datetime
    label: str
    available: bool


class BackupDetailResponse(BaseModel):
    job: BackupJobResponse
    recovery_points: list[RecoveryPointResponse]


class BackupListResponse(BaseModel):
    items: list[BackupJobResponse]


class RestoreRequest(BaseModel):
    point_in_time: datetime | None = None


class RestoreResponse(BaseModel):
    job_id: int
    restored: bool


class VerifyResponse(BaseModel):
    job_id: int
    exists: bool
    size_bytes: int | None
    checksum: str | None
    checksum_valid: bool
    content_valid: bool
    errors: list[str]


class ExpirySweepResponse(BaseModel):
    expired: int


def get_backup_orchestrator(db: AsyncSession = Depends(get_db)) -> BackupOrchestrator:
    return BackupOrchestrator(db)


def _job_response(job: BackupJob) -> BackupJobResponse:
    return BackupJobResponse(
        id=job.id,
        tenant_id=job.tenant_id,
        type=job.type.value,
        status=job.status.value,
        name=job.name,
        description=job.description,
        artifact_path=job.artifact_path,
        file_size_bytes=job.file_size_bytes,
        checksum=job.checksum,
        verification_result=job.verification_result,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        expires_at=job.expires_at,
    )


async def _load_job(db: AsyncSession, job_id: int, tenant_id: str) -> BackupJob:
    job = (
        await db.execute(select(BackupJob).where(BackupJob.id == job_id, BackupJob.tenant_id == tenant_id))
    ).scalar_one_or_none()
    if job is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Backup not found"})
    return job


async def _execute_backup_in_background(job_id: int) -> None:
    # Run scheduled jobs outside the request so large dumps do not hold the connection open.
    async with SessionLocal() as session:
        job = await session.get(BackupJob, job_id)
        if job is None:
            return
        await BackupOrchestrator(session).execute(job)


@router.post("", response_model=SuccessEnvelope[BackupJobResponse])
async def create_backup(
    request: Request,
    config: dict[str, Any] = Body(default_factory=dict),
    caller: Caller = Depends(get_caller),
    orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator),
) -> dict:
    if parse_backup_config(config).run_async:
        job = await orchestrator.schedule(config, caller.tenant_id, actor_id=caller.actor_id)
        asyncio.create_task(_execute_backup_in_background(job.id))
    else:
        job = await orchestrator.create(config, caller.tenant_id, actor_id=caller.actor_id)
    return success_response(request=request, data=_job_response(job))


@router.get("", response_model=SuccessEnvelope[BackupListResponse])
async def list_backups(
    request: Request,
    status: BackupStatus | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    query = select(BackupJob).where(BackupJob.tenant_id == caller.tenant_id)
    if status is not None:
        query = query.where(BackupJob.status == status)
    jobs = (await db.execute(query.order_by(BackupJob.created_at.desc(), BackupJob.id.desc()).limit(limit))).scalars()
    return success_response(request=request, data=BackupListResponse(items=[_job_response(job) for job in jobs]))


@router.post("/cleanup", response_model=SuccessEnvelope[ExpirySweepResponse])
async def expire_backups(
    request: Request,
    caller: Caller = Depends(get_caller),
    orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator),
) -> dict:
    expired = await orchestrator.cleanup_expired(tenant_id=caller.tenant_id)
    return success_response(request=request, data=ExpirySweepResponse(expired=expired))


@router.get("/{job_id}", response_model=SuccessEnvelope[BackupDetailResponse])
async def get_backup(
    request: Request,
    job_id: int,
    caller: Caller = Depends(get_caller),
    orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator),
) -> dict:
    job = await _load_job(orchestrator.session, job_id, caller.tenant_id)
    points = [
        RecoveryPointResponse(timestamp=point.timestamp, label=point.label, available=point.available)
        for point in orchestrator.recovery_points(job)
    ]
    return success_response(
        request=request,
        data=BackupDetailResponse(job=_job_response(job), recovery_points=points),
    )


@router.post("/{job_id}/restore", response_model=SuccessEnvelope[RestoreResponse])
async def restore_backup(
    request: Request,
    job_id: int,
    payload: RestoreRequest = Body(default_factory=RestoreRequest),
    caller: Caller = Depends(get_caller),
    orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator),
) -> dict:
    job = await _load_job(orchestrator.session, job_id, caller.tenant_id)
    logger.info("api_backup_restore_requested job_id=%s actor_id=%s", job_id, caller.actor_id)
    restored = await orchestrator.restore(job, payload.point_in_time)
    return success_response(request=request, data=RestoreResponse(job_id=job_id, restored=restored))


@router.post("/{job_id}/verify", response_model=SuccessEnvelope[VerifyResponse])
async def verify_backup(
    request: Request,
    job_id: int,
    caller: Caller = Depends(get_caller),
    orchestrator: BackupOrchestrator = Depends(get_backup_orchestrator),
) -> dict:
    job = await _load_job(orchestrator.session, job_id, caller.tenant_id)
    result = await orchestrator.verify_job(job)
    return success_response(request=request, data=VerifyResponse(job_id=job_id, **result.to_dict()))
