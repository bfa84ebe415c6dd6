from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import shutil
from typing import Iterable

from crmguard.domain.types import utc_now


logger = logging.getLogger(__name__)

SNAPSHOT_STAMP_FORMAT = "%Y_%m_%d_%H_%M_%S"


@dataclass(frozen=True)
class RestoredPath:
    # Live path that was overwritten and where its pre-restore copy was kept.
    target: str
    snapshot: str | None


def timestamped_sibling(path: Path, infix: str) -> Path:
    # Build "<name><infix><stamp>" next to path without clobbering an earlier snapshot.
    stamp = utc_now().strftime(SNAPSHOT_STAMP_FORMAT)
    candidate = path.with_name(f"{path.name}{infix}{stamp}")
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.name}{infix}{stamp}_{counter}")
        counter += 1
    return candidate


def _modified_at(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


class FileSetCollector:
    """Resolve a tenant's important files and copy them into a working directory.

    Entries are paths relative to ``app_root`` (absolute paths are used as-is).
    Each entry lands in the target directory under its base name; missing
    sources are skipped because configurations may list optional paths.

    ``excluded`` paths (the artifact store and scratch root) are never copied,
    snapshotted or replaced, even when they sit inside a collected directory.
    """

    def __init__(self, app_root: Path, excluded: Iterable[Path] = ()) -> None:
        self.app_root = app_root
        self.excluded = tuple(path.resolve() for path in excluded)

    def resolve(self, entry: str) -> Path:
        candidate = Path(entry).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.app_root / candidate

    def is_excluded(self, path: Path) -> bool:
        resolved = path.resolve()
        return any(resolved == root or resolved.is_relative_to(root) for root in self.excluded)

    def _encloses_excluded(self, path: Path) -> bool:
        resolved = path.resolve()
        return any(root.is_relative_to(resolved) for root in self.excluded)

    def _ignore(self, directory: str, names: list[str]) -> set[str]:
        return {name for name in names if self.is_excluded(Path(directory) / name)}

    def _copy_path(self, source: Path, target: Path) -> None:
        if source.is_dir():
            # Extracted scratch trees live inside the store themselves; only live trees need filtering.
            ignore = None if self.is_excluded(source) else self._ignore
            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True, ignore=ignore)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)

    def _clear_tree(self, directory: Path) -> None:
        # Empty a live directory but keep excluded entries and the directories leading to them.
        for child in directory.iterdir():
            if self.is_excluded(child):
                continue
            if child.is_dir() and not child.is_symlink():
                if self._encloses_excluded(child):
                    self._clear_tree(child)
                else:
                    shutil.rmtree(child)
            else:
                child.unlink()

    def collect_all(self, file_list: Iterable[str], target_dir: Path) -> list[str]:
        target_dir.mkdir(parents=True, exist_ok=True)
        copied: list[str] = []
        for entry in file_list:
            source = self.resolve(entry)
            if not source.exists():
                logger.debug("backup_file_skipped_missing path=%s", source)
                continue
            if self.is_excluded(source):
                logger.debug("backup_file_skipped_excluded path=%s", source)
                continue
            self._copy_path(source, target_dir / source.name)
            copied.append(source.name)
        return copied

    def collect_changed_since(self, file_list: Iterable[str], since: datetime, target_dir: Path) -> list[str]:
        # Coarse mtime heuristic: a directory qualifies (and is copied whole) on its own mtime only.
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        target_dir.mkdir(parents=True, exist_ok=True)
        copied: list[str] = []
        for entry in file_list:
            source = self.resolve(entry)
            if not source.exists() or self.is_excluded(source):
                continue
            if _modified_at(source) <= since:
                continue
            self._copy_path(source, target_dir / source.name)
            copied.append(source.name)
        return copied

    def restore_tree(self, files_dir: Path, file_list: Iterable[str]) -> list[RestoredPath]:
        """Copy an extracted ``files/`` tree back over the live paths it was collected from.

        Every live path is snapshotted with a timestamp suffix before being
        replaced so an operator can revert a bad restore by hand.
        """
        restored: list[RestoredPath] = []
        for entry in file_list:
            target = self.resolve(entry)
            source = files_dir / target.name
            if not source.exists() or self.is_excluded(target):
                continue
            snapshot: Path | None = None
            if target.exists():
                if target.is_dir():
                    snapshot = timestamped_sibling(target, "_backup_")
                    shutil.copytree(target, snapshot, symlinks=True, ignore=self._ignore)
                    self._clear_tree(target)
                else:
                    snapshot = timestamped_sibling(target, ".backup.")
                    shutil.copy2(target, snapshot)
            self._copy_path(source, target)
            logger.info("backup_path_restored target=%s snapshot=%s", target, snapshot)
            restored.append(RestoredPath(target=str(target), snapshot=str(snapshot) if snapshot else None))
        return restored
