from __future__ import annotations

import argparse
import asyncio
import json
import sys

from crmguard.core.logging import configure_logging
from crmguard.domain.types import IntegrityCheckStatus, IntegrityCheckType
from crmguard.persistence.db import SessionLocal
from crmguard.services.integrity import FIX_METHODS, run_integrity_check


async def _run_check(
    tenant_id: str,
    check_type: IntegrityCheckType,
    target_model: str | None,
    parameters: dict,
) -> bool:
    async with SessionLocal() as session:
        record = await run_integrity_check(
            session,
            check_type=check_type,
            tenant_id=tenant_id,
            target_model=target_model,
            parameters=parameters,
        )
        print(
            json.dumps(
                {
                    "check_id": record.id,
                    "status": record.status.value,
                    "issues_found": record.issues_found,
                    "issues_fixed": record.issues_fixed,
                    "results": record.results,
                    "error": record.error_message,
                },
                indent=2,
                default=str,
            )
        )
        return record.status is IntegrityCheckStatus.COMPLETED


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a CRM data integrity check")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--type", required=True, choices=[item.value for item in IntegrityCheckType])
    parser.add_argument("--target-model", default=None, help="orphan scans only: people, opportunities or tasks")
    parser.add_argument("--auto-fix", action="store_true", help="orphan scans only")
    parser.add_argument("--fix-method", default="nullify", choices=list(FIX_METHODS))
    args = parser.parse_args()

    configure_logging()
    parameters: dict = {}
    if args.auto_fix:
        parameters = {"autoFix": True, "fixMethod": args.fix_method}
    completed = asyncio.run(
        _run_check(args.tenant, IntegrityCheckType(args.type), args.target_model, parameters)
    )
    if not completed:
        sys.exit(1)


if __name__ == "__main__":
    main()
