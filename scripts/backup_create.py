from __future__ import annotations

import argparse
import asyncio

from crmguard.core.logging import configure_logging
from crmguard.domain.types import BackupStatus, BackupType
from crmguard.persistence.db import SessionLocal
from crmguard.services.backup import BackupOrchestrator


async def _run_backup(tenant_id: str, config: dict, schedule_only: bool) -> int:
    async with SessionLocal() as session:
        orchestrator = BackupOrchestrator(session)
        if schedule_only:
            job = await orchestrator.schedule(config, tenant_id)
        else:
            job = await orchestrator.create(config, tenant_id)
        print(f"backup_job_id={job.id}")
        print(f"status={job.status.value}")
        if job.artifact_path:
            print(f"artifact_path={job.artifact_path}")
        if job.error_message:
            print(f"error={job.error_message}")
        return 0 if schedule_only or job.status is BackupStatus.COMPLETED else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a CRM backup")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--type", default=BackupType.FULL.value, choices=[item.value for item in BackupType])
    parser.add_argument("--name", default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--file", dest="files", action="append", default=None, help="repeatable; relative to app_root")
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--schedule", action="store_true", help="persist as pending without executing")
    args = parser.parse_args()

    configure_logging()
    config: dict = {"type": args.type}
    for key, value in (
        ("name", args.name),
        ("description", args.description),
        ("files", args.files),
        ("retentionDays", args.retention_days),
    ):
        if value is not None:
            config[key] = value
    raise SystemExit(asyncio.run(_run_backup(args.tenant, config, args.schedule)))


if __name__ == "__main__":
    main()
