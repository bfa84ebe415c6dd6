from __future__ import annotations

# Re-export backup services for centralized imports.

from crmguard.services.backup.archive import ArchiveBuilder
from crmguard.services.backup.dump import ConnectionInfo, DumpEngine
from crmguard.services.backup.files import FileSetCollector
from crmguard.services.backup.leases import ArtifactLeases, artifact_leases
from crmguard.services.backup.orchestrator import BackupConfig, BackupOrchestrator, RecoveryPoint
from crmguard.services.backup.runner import CommandResult, CommandRunner, SubprocessRunner, get_command_runner
from crmguard.services.backup.verification import VerificationEngine, VerificationResult, sha256_file

__all__ = [
    "ArchiveBuilder",
    "ConnectionInfo",
    "DumpEngine",
    "FileSetCollector",
    "ArtifactLeases",
    "artifact_leases",
    "BackupConfig",
    "BackupOrchestrator",
    "RecoveryPoint",
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "get_command_runner",
    "VerificationEngine",
    "VerificationResult",
    "sha256_file",
]
