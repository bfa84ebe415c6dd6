from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmguard.apps.api.deps import Caller, get_caller, get_db
from crmguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmguard.apps.api.response import SuccessEnvelope, success_response
from crmguard.domain.models import DataIntegrityCheck, MergeJob
from crmguard.domain.types import IntegrityCheckType, MergeJobType
from crmguard.services.cleanup import CleanupService
from crmguard.services.integrity import run_integrity_check
from crmguard.services.merge import MergeEngine
from crmguard.services.quality import quality_metrics


router = APIRouter(tags=["data-quality"], responses=DEFAULT_ERROR_RESPONSES)


class IntegrityCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: IntegrityCheckType
    target_model: str | None = Field(default=None, alias="targetModel")
    parameters: dict[str, Any] = Field(default_factory=dict)


class IntegrityCheckResponse(BaseModel):
    id: int
    type: str
    status: str
    target_model: str | None
    parameters: dict[str, Any]
    results: dict[str, Any] | None
    issues_found: int
    issues_fixed: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None


class MergeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: MergeJobType
    primary_id: int = Field(alias="primaryId")
    duplicate_id: int = Field(alias="duplicateId")
    field_selections: dict[str, str] = Field(default_factory=dict, alias="fieldSelections")


class MergeJobResponse(BaseModel):
    id: int
    type: str
    status: str
    primary_model_type: str
    primary_model_id: int
    duplicate_model_id: int
    field_selections: dict[str, str] | None
    merge_preview: dict[str, Any] | None
    transferred_relationships: dict[str, int] | None
    error_message: str | None
    created_at: datetime
    processed_at: datetime | None


class CleanupRequest(BaseModel):
    rules: list[dict[str, Any]] = Field(min_length=1)


class CleanupResponse(BaseModel):
    total_cleaned: int
    operations: list[dict[str, Any]]
    errors: list[dict[str, Any]]


def _check_response(record: DataIntegrityCheck) -> IntegrityCheckResponse:
    return IntegrityCheckResponse(
        id=record.id,
        type=record.type.value,
        status=record.status.value,
        target_model=record.target_model,
        parameters=record.parameters or {},
        results=record.results,
        issues_found=record.issues_found,
        issues_fixed=record.issues_fixed,
        error_message=record.error_message,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _merge_response(job: MergeJob) -> MergeJobResponse:
    return MergeJobResponse(
        id=job.id,
        type=job.type.value,
        status=job.status.value,
        primary_model_type=job.primary_model_type,
        primary_model_id=job.primary_model_id,
        duplicate_model_id=job.duplicate_model_id,
        field_selections=job.field_selections,
        merge_preview=job.merge_preview,
        transferred_relationships=job.transferred_relationships,
        error_message=job.error_message,
        created_at=job.created_at,
        processed_at=job.processed_at,
    )


async def _load_merge_job(db: AsyncSession, job_id: int, tenant_id: str) -> MergeJob:
    job = (
        await db.execute(select(MergeJob).where(MergeJob.id == job_id, MergeJob.tenant_id == tenant_id))
    ).scalar_one_or_none()
    if job is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Merge job not found"})
    return job


@router.post("/integrity-checks", response_model=SuccessEnvelope[IntegrityCheckResponse])
async def create_integrity_check(
    request: Request,
    payload: IntegrityCheckRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    record = await run_integrity_check(
        db,
        check_type=payload.type,
        tenant_id=caller.tenant_id,
        actor_id=caller.actor_id,
        target_model=payload.target_model,
        parameters=payload.parameters,
    )
    return success_response(request=request, data=_check_response(record))


@router.get("/integrity-checks/{check_id}", response_model=SuccessEnvelope[IntegrityCheckResponse])
async def get_integrity_check(
    request: Request,
    check_id: int,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    record = (
        await db.execute(
            select(DataIntegrityCheck).where(
                DataIntegrityCheck.id == check_id,
                DataIntegrityCheck.tenant_id == caller.tenant_id,
            )
        )
    ).scalar_one_or_none()
    if record is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Integrity check not found"})
    return success_response(request=request, data=_check_response(record))


@router.post("/merges", response_model=SuccessEnvelope[MergeJobResponse])
async def create_merge(
    request: Request,
    payload: MergeRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    job = await MergeEngine(db).create(
        payload.type,
        payload.primary_id,
        payload.duplicate_id,
        tenant_id=caller.tenant_id,
        actor_id=caller.actor_id,
        field_selections=payload.field_selections,
    )
    return success_response(request=request, data=_merge_response(job))


@router.get("/merges/{job_id}", response_model=SuccessEnvelope[MergeJobResponse])
async def get_merge(
    request: Request,
    job_id: int,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    job = await _load_merge_job(db, job_id, caller.tenant_id)
    return success_response(request=request, data=_merge_response(job))


@router.post("/merges/{job_id}/process", response_model=SuccessEnvelope[MergeJobResponse])
async def process_merge(
    request: Request,
    job_id: int,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    job = await _load_merge_job(db, job_id, caller.tenant_id)
    await MergeEngine(db).process(job, actor_id=caller.actor_id)
    return success_response(request=request, data=_merge_response(job))


@router.post("/cleanup", response_model=SuccessEnvelope[CleanupResponse])
async def run_cleanup(
    request: Request,
    payload: CleanupRequest,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    report = await CleanupService(db).cleanup(payload.rules, tenant_id=caller.tenant_id)
    return success_response(request=request, data=CleanupResponse(**report.to_dict()))


@router.get("/quality/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def get_quality_metrics(
    request: Request,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(get_caller),
) -> dict:
    return success_response(request=request, data=await quality_metrics(db, caller.tenant_id))
