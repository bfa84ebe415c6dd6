from __future__ import annotations

import logging
from pathlib import Path

from crmguard.core.config import Settings, get_settings
from crmguard.core.errors import ArchiveError
from crmguard.services.backup.runner import CommandRunner


logger = logging.getLogger(__name__)

# Archive layout: the database dump sits at the root, collected paths live under files/.
DATABASE_MEMBER = "database.sql"
FILES_MEMBER = "files"


class ArchiveBuilder:
    """Pack and unpack gzip-compressed tar archives through the external tar utility."""

    def __init__(self, runner: CommandRunner, settings: Settings | None = None) -> None:
        self.runner = runner
        self.settings = settings or get_settings()

    def pack(self, source_dir: Path, archive_path: Path) -> Path:
        # Archive the directory contents (not the directory itself) so members are root-relative.
        if not source_dir.is_dir():
            raise ArchiveError(f"Archive source is not a directory: {source_dir}", exit_code=2)
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        result = self.runner.run([self.settings.tar_bin, "-czf", str(archive_path), "-C", str(source_dir), "."])
        if not result.ok:
            raise ArchiveError(
                f"tar failed to pack {source_dir}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        logger.debug("archive_packed source=%s archive=%s", source_dir, archive_path)
        return archive_path

    def unpack(self, archive_path: Path, target_dir: Path) -> Path:
        target_dir.mkdir(parents=True, exist_ok=True)
        result = self.runner.run([self.settings.tar_bin, "-xzf", str(archive_path), "-C", str(target_dir)])
        if not result.ok:
            raise ArchiveError(
                f"tar failed to unpack {archive_path}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        logger.debug("archive_unpacked archive=%s target=%s", archive_path, target_dir)
        return target_dir
