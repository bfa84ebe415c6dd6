from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import logging
from pathlib import Path
import shutil
from typing import Any, assert_never
from uuid import uuid4

from crmguard.domain.types import BackupType
from crmguard.services.backup.archive import DATABASE_MEMBER, FILES_MEMBER, ArchiveBuilder


logger = logging.getLogger(__name__)

# Leading markers written by the supported dump clients (and the SQLite file header).
DUMP_SIGNATURES: tuple[str, ...] = (
    "CREATE TABLE",
    "INSERT INTO",
    "SQLite format",
    "PostgreSQL database dump",
    "MySQL dump",
)
_SIGNATURE_SCAN_BYTES = 1024 * 1024


def sha256_file(path: Path) -> str:
    # Compute streaming checksums for large backup artifacts.
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class VerificationResult:
    exists: bool = False
    size_bytes: int = 0
    checksum: str | None = None
    checksum_valid: bool = False
    content_valid: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exists": self.exists,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "checksum_valid": self.checksum_valid,
            "content_valid": self.content_valid,
            "errors": list(self.errors),
        }


class VerificationEngine:
    """Best-effort artifact checks; every failed sub-check lands in ``errors``."""

    def __init__(self, archive: ArchiveBuilder, scratch_root: Path) -> None:
        self.archive = archive
        self.scratch_root = scratch_root

    def verify(
        self,
        artifact_path: Path,
        backup_type: BackupType,
        *,
        expected_checksum: str | None = None,
    ) -> VerificationResult:
        result = VerificationResult()
        if not artifact_path.exists():
            result.errors.append(f"artifact not found: {artifact_path}")
            return result
        result.exists = True
        result.size_bytes = artifact_path.stat().st_size

        try:
            result.checksum = sha256_file(artifact_path)
        except OSError as exc:
            result.errors.append(f"checksum failed: {exc}")
        if expected_checksum is None:
            # Without a recorded value the check degrades to "a checksum was produced".
            result.checksum_valid = bool(result.checksum)
        else:
            result.checksum_valid = result.checksum == expected_checksum
            if result.checksum and not result.checksum_valid:
                result.errors.append("checksum mismatch")

        try:
            result.content_valid = self._content_valid(artifact_path, backup_type, result.errors)
        except Exception as exc:  # noqa: BLE001 - verification failures are reported, not raised
            logger.warning("backup_verification_error artifact=%s", artifact_path, exc_info=exc)
            result.errors.append(f"content validation failed: {exc}")
            result.content_valid = False
        return result

    def _content_valid(self, artifact_path: Path, backup_type: BackupType, errors: list[str]) -> bool:
        match backup_type:
            case BackupType.DATABASE_ONLY:
                return self._has_dump_signature(artifact_path, errors)
            case BackupType.FULL:
                return self._archive_has_members(artifact_path, (DATABASE_MEMBER, FILES_MEMBER), errors)
            case BackupType.FILES_ONLY | BackupType.INCREMENTAL | BackupType.DIFFERENTIAL:
                return self._archive_has_members(artifact_path, (FILES_MEMBER,), errors)
            case _:
                assert_never(backup_type)

    def _has_dump_signature(self, artifact_path: Path, errors: list[str]) -> bool:
        with artifact_path.open("rb") as handle:
            head = handle.read(_SIGNATURE_SCAN_BYTES).decode("utf-8", errors="ignore")
        if any(signature in head for signature in DUMP_SIGNATURES):
            return True
        errors.append("dump signature not found")
        return False

    def _archive_has_members(self, artifact_path: Path, members: tuple[str, ...], errors: list[str]) -> bool:
        # Unique scratch directory per call so concurrent verifications never collide.
        scratch = self.scratch_root / f"verify_{uuid4().hex}"
        try:
            self.archive.unpack(artifact_path, scratch)
            missing = [member for member in members if not (scratch / member).exists()]
            for member in missing:
                errors.append(f"missing archive member: {member}")
            return not missing
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
