from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import os
from pathlib import Path
import shutil
from typing import Any, Iterator, Mapping, assert_never
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crmguard.core.config import Settings, get_settings
from crmguard.core.errors import (
    ArtifactMissingError,
    BackupStateError,
    BackupVerificationError,
    ChecksumMismatchError,
    InvalidBackupConfigError,
    InvalidPointInTimeError,
    NoBaseBackupError,
)
from crmguard.domain.models import BackupJob
from crmguard.domain.types import BACKUP_TRANSITIONS, BackupStatus, BackupType, utc_now
from crmguard.services.backup.archive import DATABASE_MEMBER, FILES_MEMBER, ArchiveBuilder
from crmguard.services.backup.dump import ConnectionInfo, DumpEngine
from crmguard.services.backup.files import FileSetCollector
from crmguard.services.backup.leases import ArtifactLeases, artifact_leases
from crmguard.services.backup.runner import CommandRunner, get_command_runner
from crmguard.services.backup.verification import VerificationEngine, VerificationResult, sha256_file


logger = logging.getLogger(__name__)

RECOVERY_POINT_HOURS = 24
_ARTIFACT_STAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


class BackupConfig(BaseModel):
    # Caller-supplied backup configuration; camelCase keys are accepted alongside snake_case.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: BackupType = BackupType.FULL
    name: str | None = None
    description: str | None = None
    files: list[str] | None = None
    retention_days: int | None = Field(default=None, alias="retentionDays", ge=1)
    run_async: bool = Field(default=False, alias="async")


def parse_backup_config(config: Mapping[str, Any]) -> BackupConfig:
    try:
        return BackupConfig.model_validate(dict(config))
    except ValidationError as exc:
        raise InvalidBackupConfigError(f"Invalid backup configuration: {exc.errors()[0]['msg']}") from exc


@dataclass(frozen=True)
class RecoveryPoint:
    timestamp: datetime
    label: str
    available: bool = True


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes from callers are treated as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BackupOrchestrator:
    """Drive backup jobs through their lifecycle and restore completed artifacts.

    ``execute`` and ``restore`` capture execution failures: they log, persist
    the outcome and return ``False`` instead of raising. Restore preconditions
    (job state, artifact presence, recovery point, checksum) raise so callers
    can tell a refused restore from a failed one.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings | None = None,
        runner: CommandRunner | None = None,
        leases: ArtifactLeases | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        runner = runner or get_command_runner()
        self.dumper = DumpEngine(runner, self.settings)
        self.archive = ArchiveBuilder(runner, self.settings)
        self.collector = FileSetCollector(
            self.settings.resolved_app_root(),
            excluded=(self.settings.resolved_backup_dir(), self.settings.resolved_temp_dir()),
        )
        self.verifier = VerificationEngine(self.archive, self.settings.resolved_temp_dir())
        self.leases = leases or artifact_leases

    async def create(
        self,
        config: Mapping[str, Any],
        tenant_id: str,
        *,
        actor_id: str | None = None,
    ) -> BackupJob:
        job = await self._persist_pending(config, tenant_id, actor_id=actor_id, scheduled=False)
        await self.execute(job)
        return job

    async def schedule(
        self,
        config: Mapping[str, Any],
        tenant_id: str,
        *,
        actor_id: str | None = None,
    ) -> BackupJob:
        # Persist only; the external scheduler calls execute() later.
        return await self._persist_pending(config, tenant_id, actor_id=actor_id, scheduled=True)

    async def _persist_pending(
        self,
        config: Mapping[str, Any],
        tenant_id: str,
        *,
        actor_id: str | None,
        scheduled: bool,
    ) -> BackupJob:
        if not self.settings.backup_enabled:
            raise InvalidBackupConfigError("Backups are disabled for this deployment")
        parsed = parse_backup_config(config)
        now = utc_now()
        retention_days = parsed.retention_days or self.settings.backup_retention_days
        stored_config = dict(config)
        stored_config["type"] = parsed.type.value
        if scheduled:
            stored_config["scheduled"] = True
        default_name = "Scheduled Backup" if scheduled else "Backup"
        job = BackupJob(
            tenant_id=tenant_id,
            type=parsed.type,
            status=BackupStatus.PENDING,
            name=parsed.name or f"{default_name} {now.strftime('%Y-%m-%d %H:%M:%S')}",
            description=parsed.description,
            config=stored_config,
            created_by_actor_id=actor_id,
            created_at=now,
            expires_at=now + timedelta(days=retention_days),
        )
        self.session.add(job)
        await self.session.commit()
        await self.session.refresh(job)
        logger.info(
            "backup_job_created job_id=%s tenant_id=%s type=%s scheduled=%s",
            job.id,
            tenant_id,
            job.type.value,
            scheduled,
        )
        return job

    async def execute(self, job: BackupJob) -> bool:
        job_id = job.id
        if BackupStatus.RUNNING not in BACKUP_TRANSITIONS[job.status]:
            logger.warning("backup_job_not_runnable job_id=%s status=%s", job_id, job.status.value)
            return False

        job.status = BackupStatus.RUNNING
        job.started_at = utc_now()
        job.error_message = None
        await self.session.commit()
        try:
            since: datetime | None = None
            if job.type in (BackupType.INCREMENTAL, BackupType.DIFFERENTIAL):
                since = await self._latest_full_completed_at(job.tenant_id)
            file_list = self._file_list(job)
            artifact, verification = await asyncio.to_thread(
                self._build_artifact, job_id, job.type, file_list, since
            )
            job.artifact_path = str(artifact)
            job.file_size_bytes = verification.size_bytes
            job.checksum = verification.checksum
            job.verification_result = verification.to_dict()
            job.completed_at = utc_now()
            # Status flips last so a crash never leaves COMPLETED without an artifact.
            job.status = BackupStatus.COMPLETED
            await self.session.commit()
        except Exception as exc:  # noqa: BLE001 - backup failures are surfaced via status/errors
            logger.exception("backup_job_failed job_id=%s", job_id)
            await self.session.rollback()
            job.status = BackupStatus.FAILED
            job.error_message = str(exc) or exc.__class__.__name__
            job.artifact_path = None
            job.file_size_bytes = None
            job.checksum = None
            job.completed_at = utc_now()
            await self.session.commit()
            await self.session.refresh(job)
            return False
        logger.info(
            "backup_job_completed job_id=%s artifact=%s size_bytes=%s",
            job_id,
            job.artifact_path,
            job.file_size_bytes,
        )
        return True

    async def _latest_full_completed_at(self, tenant_id: str) -> datetime:
        base = (
            await self.session.execute(
                select(BackupJob)
                .where(
                    BackupJob.tenant_id == tenant_id,
                    BackupJob.type == BackupType.FULL,
                    BackupJob.status == BackupStatus.COMPLETED,
                )
                .order_by(BackupJob.completed_at.desc(), BackupJob.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if base is None or base.completed_at is None:
            raise NoBaseBackupError(f"No completed full backup found for tenant {tenant_id}")
        return base.completed_at

    def _file_list(self, job: BackupJob) -> list[str]:
        files = (job.config or {}).get("files")
        if files:
            return [str(entry) for entry in files]
        return list(self.settings.backup_default_files)

    def _connection(self) -> ConnectionInfo:
        return ConnectionInfo.from_url(self.settings.dump_database_url())

    @contextmanager
    def _scratch_dir(self, prefix: str) -> Iterator[Path]:
        # Fresh directory per invocation, removed on success and failure alike.
        scratch = self.settings.resolved_temp_dir() / f"{prefix}_{uuid4().hex}"
        scratch.mkdir(parents=True, exist_ok=False)
        try:
            yield scratch
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _build_artifact(
        self,
        job_id: int,
        backup_type: BackupType,
        file_list: list[str],
        since: datetime | None,
    ) -> tuple[Path, VerificationResult]:
        store = self.settings.resolved_backup_dir()
        store.mkdir(parents=True, exist_ok=True)
        suffix = ".sql" if backup_type is BackupType.DATABASE_ONLY else ".tar.gz"
        stamp = utc_now().strftime(_ARTIFACT_STAMP_FORMAT)
        final_path = store / f"backup_{job_id}_{backup_type.value}_{stamp}{suffix}"
        # Written under a temporary name and renamed into place only once verified.
        partial_path = final_path.with_name(final_path.name + ".partial")
        try:
            match backup_type:
                case BackupType.DATABASE_ONLY:
                    self.dumper.dump(self._connection(), partial_path)
                case BackupType.FULL:
                    with self._scratch_dir("temp") as work:
                        self.dumper.dump(self._connection(), work / DATABASE_MEMBER)
                        self.collector.collect_all(file_list, work / FILES_MEMBER)
                        self.archive.pack(work, partial_path)
                case BackupType.FILES_ONLY:
                    with self._scratch_dir("temp") as work:
                        self.collector.collect_all(file_list, work / FILES_MEMBER)
                        self.archive.pack(work, partial_path)
                case BackupType.INCREMENTAL | BackupType.DIFFERENTIAL:
                    if since is None:
                        raise NoBaseBackupError("Incremental backup requires a completed full backup")
                    with self._scratch_dir("temp") as work:
                        self.collector.collect_changed_since(file_list, since, work / FILES_MEMBER)
                        self.archive.pack(work, partial_path)
                case _:
                    assert_never(backup_type)

            verification = self.verifier.verify(partial_path, backup_type)
            if not verification.exists or not verification.checksum_valid:
                raise BackupVerificationError("; ".join(verification.errors) or "artifact verification failed")
            if self.settings.backup_verify_strict and not verification.content_valid:
                raise BackupVerificationError(
                    "; ".join(verification.errors) or "artifact content verification failed"
                )
            os.replace(partial_path, final_path)
            return final_path, verification
        finally:
            partial_path.unlink(missing_ok=True)

    async def restore(self, job: BackupJob, point_in_time: datetime | None = None) -> bool:
        job_id = job.id
        if job.status is not BackupStatus.COMPLETED or not job.artifact_path:
            raise BackupStateError(f"Backup {job_id} is not completed or has no artifact")
        artifact = Path(job.artifact_path)
        if not artifact.exists():
            raise ArtifactMissingError(f"Backup artifact does not exist: {artifact}")
        if point_in_time is not None:
            point_in_time = _as_utc(point_in_time)
            if job.completed_at is None or point_in_time > job.completed_at:
                raise InvalidPointInTimeError(
                    "Cannot restore to a point in time after the backup was completed"
                )
        if self.settings.restore_verify_checksum and job.checksum:
            actual = await asyncio.to_thread(sha256_file, artifact)
            if actual != job.checksum:
                raise ChecksumMismatchError(f"Checksum mismatch for backup {job_id}")

        file_list = self._file_list(job)
        backup_type = job.type
        # Held for the whole restore so the expiry sweep cannot delete the artifact mid-read.
        with self.leases.hold(job_id):
            logger.info(
                "backup_restore_started job_id=%s type=%s point_in_time=%s",
                job_id,
                backup_type.value,
                point_in_time.isoformat() if point_in_time else None,
            )
            try:
                restored = await asyncio.to_thread(self._restore_artifact, artifact, backup_type, file_list)
            except Exception:  # noqa: BLE001 - restore failures are reported as False
                logger.exception("backup_restore_failed job_id=%s", job_id)
                return False
        if restored:
            logger.info("backup_restore_completed job_id=%s", job_id)
        else:
            logger.error("backup_restore_incomplete job_id=%s", job_id)
        return restored

    def _restore_artifact(self, artifact: Path, backup_type: BackupType, file_list: list[str]) -> bool:
        match backup_type:
            case BackupType.DATABASE_ONLY:
                self.dumper.restore(self._connection(), artifact)
                return True
            case BackupType.FULL:
                with self._scratch_dir("temp_restore") as work:
                    self.archive.unpack(artifact, work)
                    database_restored = self._restore_database(work / DATABASE_MEMBER)
                    # Live files are left untouched when the database step did not succeed.
                    return database_restored and self._restore_files(work / FILES_MEMBER, file_list)
            case BackupType.FILES_ONLY | BackupType.INCREMENTAL | BackupType.DIFFERENTIAL:
                with self._scratch_dir("temp_restore") as work:
                    self.archive.unpack(artifact, work)
                    return self._restore_files(work / FILES_MEMBER, file_list)
            case _:
                assert_never(backup_type)

    def _restore_database(self, dump_path: Path) -> bool:
        if not dump_path.exists():
            logger.error("backup_restore_dump_missing path=%s", dump_path)
            return False
        self.dumper.restore(self._connection(), dump_path)
        return True

    def _restore_files(self, files_dir: Path, file_list: list[str]) -> bool:
        if not files_dir.is_dir():
            logger.error("backup_restore_files_missing path=%s", files_dir)
            return False
        self.collector.restore_tree(files_dir, file_list)
        return True

    async def verify_job(self, job: BackupJob) -> VerificationResult:
        # Re-check a stored artifact against the checksum recorded at completion.
        if not job.artifact_path:
            result = VerificationResult(errors=["backup has no artifact"])
        else:
            result = await asyncio.to_thread(
                self.verifier.verify,
                Path(job.artifact_path),
                job.type,
                expected_checksum=job.checksum,
            )
        job.verification_result = result.to_dict()
        await self.session.commit()
        logger.info(
            "backup_job_verified job_id=%s checksum_valid=%s content_valid=%s",
            job.id,
            result.checksum_valid,
            result.content_valid,
        )
        return result

    def recovery_points(self, job: BackupJob) -> list[RecoveryPoint]:
        if job.status is not BackupStatus.COMPLETED or job.completed_at is None:
            return []
        points: list[RecoveryPoint] = []
        for hours in range(1, RECOVERY_POINT_HOURS + 1):
            candidate = job.completed_at - timedelta(hours=hours)
            if candidate > job.created_at:
                points.append(RecoveryPoint(timestamp=candidate, label=candidate.strftime("%Y-%m-%d %H:%M:%S")))
        return points

    async def cleanup_expired(self, *, tenant_id: str | None = None) -> int:
        now = utc_now()
        query = select(BackupJob.id).where(
            BackupJob.status == BackupStatus.COMPLETED,
            BackupJob.expires_at.is_not(None),
            BackupJob.expires_at < now,
        )
        if tenant_id is not None:
            query = query.where(BackupJob.tenant_id == tenant_id)
        job_ids = (await self.session.execute(query.order_by(BackupJob.id))).scalars().all()

        expired = 0
        for job_id in job_ids:
            if self.leases.is_leased(job_id):
                logger.info("backup_expiry_skipped_leased job_id=%s", job_id)
                continue
            try:
                job = await self.session.get(BackupJob, job_id)
                if job is None or job.status is not BackupStatus.COMPLETED:
                    continue
                if job.artifact_path:
                    Path(job.artifact_path).unlink(missing_ok=True)
                job.artifact_path = None
                job.checksum = None
                job.status = BackupStatus.EXPIRED
                await self.session.commit()
                expired += 1
            except Exception:  # noqa: BLE001 - one bad job must not abort the sweep
                logger.exception("backup_expiry_failed job_id=%s", job_id)
                await self.session.rollback()
        logger.info("backup_expiry_sweep_completed expired=%s", expired)
        return expired
