from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os
from pathlib import Path
import shutil

import pytest

from crmguard.core.errors import ArchiveError
from crmguard.services.backup.archive import ArchiveBuilder
from crmguard.services.backup.files import FileSetCollector


requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar not available")


def test_pack_invokes_tar_on_directory_contents(settings, runner, tmp_path: Path) -> None:
    source = tmp_path / "work"
    source.mkdir()
    archive = tmp_path / "out" / "backup.tar.gz"

    ArchiveBuilder(runner, settings).pack(source, archive)

    assert runner.calls[0].args == ["tar", "-czf", str(archive), "-C", str(source), "."]
    assert archive.parent.is_dir()


def test_pack_rejects_missing_source(settings, runner, tmp_path: Path) -> None:
    with pytest.raises(ArchiveError):
        ArchiveBuilder(runner, settings).pack(tmp_path / "nope", tmp_path / "a.tar.gz")
    assert runner.calls == []


def test_unpack_failure_carries_exit_code(settings, runner, tmp_path: Path) -> None:
    runner.exit_code = 2
    with pytest.raises(ArchiveError) as excinfo:
        ArchiveBuilder(runner, settings).unpack(tmp_path / "a.tar.gz", tmp_path / "out")
    assert excinfo.value.exit_code == 2


@requires_tar
def test_real_tar_round_trip(settings, runner, tmp_path: Path) -> None:
    runner.real_tar = True
    source = tmp_path / "work"
    (source / "files" / "uploads").mkdir(parents=True)
    (source / "database.sql").write_text("CREATE TABLE people (id bigint);")
    (source / "files" / "uploads" / "logo.png").write_bytes(b"\x89PNG")
    builder = ArchiveBuilder(runner, settings)

    archive = builder.pack(source, tmp_path / "backup.tar.gz")
    target = builder.unpack(archive, tmp_path / "restored")

    assert (target / "database.sql").read_text().startswith("CREATE TABLE")
    assert (target / "files" / "uploads" / "logo.png").read_bytes() == b"\x89PNG"


def test_collect_all_copies_by_basename_and_skips_missing(app_root: Path, tmp_path: Path) -> None:
    (app_root / "storage" / "app" / "invoice.pdf").write_bytes(b"%PDF")
    (app_root / ".env").write_text("APP_KEY=base64:abc")
    collector = FileSetCollector(app_root)

    copied = collector.collect_all(["storage/app", ".env", "config/missing.php"], tmp_path / "files")

    assert copied == ["app", ".env"]
    assert (tmp_path / "files" / "app" / "invoice.pdf").read_bytes() == b"%PDF"
    assert (tmp_path / "files" / ".env").exists()


def test_collect_changed_since_uses_top_level_mtime(app_root: Path, tmp_path: Path) -> None:
    old_file = app_root / "old.txt"
    new_file = app_root / "new.txt"
    old_file.write_text("old")
    new_file.write_text("new")
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    os.utime(old_file, (base.timestamp(), base.timestamp()))
    later = (base + timedelta(hours=1)).timestamp()
    os.utime(new_file, (later, later))

    copied = FileSetCollector(app_root).collect_changed_since(
        ["old.txt", "new.txt"], base.replace(tzinfo=None), tmp_path / "files"
    )

    assert copied == ["new.txt"]


def test_restore_tree_snapshots_files_and_directories(app_root: Path, tmp_path: Path) -> None:
    live_dir = app_root / "storage" / "app"
    (live_dir / "current.txt").write_text("current")
    (app_root / ".env").write_text("APP_ENV=live")
    extracted = tmp_path / "files"
    (extracted / "app").mkdir(parents=True)
    (extracted / "app" / "restored.txt").write_text("restored")
    (extracted / ".env").write_text("APP_ENV=backup")

    restored = FileSetCollector(app_root).restore_tree(extracted, ["storage/app", ".env"])

    assert len(restored) == 2
    assert (live_dir / "restored.txt").read_text() == "restored"
    assert not (live_dir / "current.txt").exists()
    assert (app_root / ".env").read_text() == "APP_ENV=backup"
    dir_snapshot = Path(restored[0].snapshot or "")
    file_snapshot = Path(restored[1].snapshot or "")
    assert dir_snapshot.name.startswith("app_backup_")
    assert (dir_snapshot / "current.txt").read_text() == "current"
    assert file_snapshot.name.startswith(".env.backup.")
    assert file_snapshot.read_text() == "APP_ENV=live"


def test_collector_skips_store_nested_in_collected_directory(app_root: Path, tmp_path: Path) -> None:
    live_dir = app_root / "storage" / "app"
    store = live_dir / "backups"
    (store / "temp_work").mkdir(parents=True)
    (store / "backup_1_full.tar.gz").write_bytes(b"archive")
    (live_dir / "avatar.png").write_bytes(b"\x89PNG")
    collector = FileSetCollector(app_root, excluded=[store])

    copied = collector.collect_all(["storage/app", "storage/app/backups"], store / "temp_work" / "files")

    assert copied == ["app"]
    collected = store / "temp_work" / "files" / "app"
    assert (collected / "avatar.png").read_bytes() == b"\x89PNG"
    assert not (collected / "backups").exists()


def test_restore_tree_keeps_nested_store_in_place(app_root: Path, tmp_path: Path) -> None:
    live_dir = app_root / "storage" / "app"
    store = live_dir / "backups"
    extracted = store / "temp_restore" / "files"
    (extracted / "app").mkdir(parents=True)
    (extracted / "app" / "restored.txt").write_text("restored")
    (store / "backup_1_full.tar.gz").write_bytes(b"archive")
    (live_dir / "stale.txt").write_text("stale")

    restored = FileSetCollector(app_root, excluded=[store]).restore_tree(extracted, ["storage/app"])

    assert (live_dir / "restored.txt").read_text() == "restored"
    assert not (live_dir / "stale.txt").exists()
    assert (store / "backup_1_full.tar.gz").read_bytes() == b"archive"
    snapshot = Path(restored[0].snapshot or "")
    assert (snapshot / "stale.txt").exists()
    assert not (snapshot / "backups").exists()
