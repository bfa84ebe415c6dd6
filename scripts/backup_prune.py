from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import select

from crmguard.core.logging import configure_logging
from crmguard.domain.models import BackupJob
from crmguard.domain.types import BackupStatus, utc_now
from crmguard.persistence.db import SessionLocal
from crmguard.services.backup import BackupOrchestrator


async def _run_prune(tenant_id: str | None, dry_run: bool) -> None:
    async with SessionLocal() as session:
        if dry_run:
            query = select(BackupJob.id, BackupJob.artifact_path).where(
                BackupJob.status == BackupStatus.COMPLETED,
                BackupJob.expires_at < utc_now(),
            )
            if tenant_id is not None:
                query = query.where(BackupJob.tenant_id == tenant_id)
            for job_id, artifact_path in (await session.execute(query)).all():
                print(f"would_expire job_id={job_id} artifact_path={artifact_path}")
            return
        expired = await BackupOrchestrator(session).cleanup_expired(tenant_id=tenant_id)
        print(f"expired_backups={expired}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire completed backups past their retention")
    parser.add_argument("--tenant", default=None, help="limit the sweep to one tenant")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    configure_logging()
    asyncio.run(_run_prune(args.tenant, args.dry_run))


if __name__ == "__main__":
    main()
