from __future__ import annotations


class CrmGuardError(Exception):
    """Base error for crmguard."""


class InvalidBackupConfigError(CrmGuardError, ValueError):
    """Backup configuration rejected before a job is persisted."""


class UnsupportedDriverError(CrmGuardError):
    """Database engine has no dump/restore strategy."""


class ExternalProcessFailure(CrmGuardError):
    """A dump, restore or archive subprocess exited non-zero."""

    def __init__(self, message: str, *, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ArchiveError(ExternalProcessFailure):
    """The archiving utility failed to pack or unpack."""


class ArtifactMissingError(CrmGuardError):
    """Expected backup artifact is absent on disk."""


class BackupVerificationError(CrmGuardError):
    """Freshly written artifact failed verification and was not promoted."""


class ChecksumMismatchError(CrmGuardError):
    """Artifact checksum no longer matches the value recorded at completion."""


class NoBaseBackupError(CrmGuardError):
    """Incremental backup requested without a completed full backup to diff against."""


class InvalidPointInTimeError(CrmGuardError, ValueError):
    """Requested recovery point lies after the backup's completion."""


class BackupStateError(CrmGuardError):
    """Backup job is not in a state that allows the requested operation."""


class MissingRecordError(CrmGuardError):
    """Merge target record no longer exists."""


class CheckExecutionError(CrmGuardError):
    """A single integrity check query failed."""

    def __init__(self, check: str, message: str) -> None:
        super().__init__(f"{check}: {message}")
        self.check = check


class CleanupRuleError(CrmGuardError):
    """Cleanup rule could not be executed."""
