from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import sys

from crmguard.core.errors import CrmGuardError
from crmguard.core.logging import configure_logging
from crmguard.domain.models import BackupJob
from crmguard.persistence.db import SessionLocal
from crmguard.services.backup import BackupOrchestrator


async def _run_restore(job_id: int, tenant_id: str, point_in_time: datetime | None) -> bool:
    async with SessionLocal() as session:
        job = await session.get(BackupJob, job_id)
        if job is None or job.tenant_id != tenant_id:
            print(f"backup_job_id={job_id} not found for tenant {tenant_id}", file=sys.stderr)
            return False
        return await BackupOrchestrator(session).restore(job, point_in_time)


def main() -> None:
    # Restores overwrite the live database and files; each replaced path keeps a timestamped snapshot.
    parser = argparse.ArgumentParser(description="Restore a completed CRM backup")
    parser.add_argument("--job-id", type=int, required=True)
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--point-in-time", type=datetime.fromisoformat, default=None)
    parser.add_argument("--yes", action="store_true", help="confirm the destructive restore")
    args = parser.parse_args()

    if not args.yes:
        print("refusing to restore without --yes", file=sys.stderr)
        sys.exit(2)
    configure_logging()
    try:
        restored = asyncio.run(_run_restore(args.job_id, args.tenant, args.point_in_time))
    except CrmGuardError as exc:
        print(f"restore_refused error={exc}", file=sys.stderr)
        sys.exit(1)
    print(f"restored={str(restored).lower()}")
    if not restored:
        sys.exit(1)


if __name__ == "__main__":
    main()
