from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from crmguard.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Caller(BaseModel):
    # Tenant scope and acting user for every ops request.
    tenant_id: str
    actor_id: str | None = None


async def get_caller(
    tenant_id: str | None = Header(default=None, alias="X-Tenant-Id", max_length=128),
    actor_id: str | None = Header(default=None, alias="X-Actor-Id", max_length=128),
) -> Caller:
    # Authentication lives in front of this service; the gateway forwards the resolved tenant.
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return Caller(tenant_id=tenant_id, actor_id=actor_id)
