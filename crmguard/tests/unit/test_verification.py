from __future__ import annotations

from pathlib import Path
import shutil

import pytest

from crmguard.domain.types import BackupType
from crmguard.services.backup.archive import ArchiveBuilder
from crmguard.services.backup.verification import VerificationEngine, sha256_file


def _engine(settings, runner, tmp_path: Path) -> VerificationEngine:
    return VerificationEngine(ArchiveBuilder(runner, settings), tmp_path / "scratch")


def test_checksum_is_stable_and_detects_single_byte_change(tmp_path: Path) -> None:
    artifact = tmp_path / "dump.sql"
    artifact.write_bytes(b"-- MySQL dump 10.13\nINSERT INTO tags VALUES (1,'vip');\n")
    first = sha256_file(artifact)
    assert sha256_file(artifact) == first
    assert len(first) == 64

    data = bytearray(artifact.read_bytes())
    data[-2] ^= 0x01
    artifact.write_bytes(bytes(data))
    assert sha256_file(artifact) != first


def test_database_dump_content_and_expected_checksum(settings, runner, tmp_path: Path) -> None:
    artifact = tmp_path / "dump.sql"
    artifact.write_text("-- PostgreSQL database dump\nCREATE TABLE companies (id bigint);\n")
    engine = _engine(settings, runner, tmp_path)

    result = engine.verify(artifact, BackupType.DATABASE_ONLY)
    assert result.exists and result.checksum_valid and result.content_valid
    assert result.size_bytes == artifact.stat().st_size

    mismatch = engine.verify(artifact, BackupType.DATABASE_ONLY, expected_checksum="0" * 64)
    assert not mismatch.checksum_valid
    assert "checksum mismatch" in mismatch.errors


def test_dump_without_signature_is_reported(settings, runner, tmp_path: Path) -> None:
    artifact = tmp_path / "dump.sql"
    artifact.write_text("hello world")
    result = _engine(settings, runner, tmp_path).verify(artifact, BackupType.DATABASE_ONLY)
    assert result.checksum_valid
    assert not result.content_valid
    assert "dump signature not found" in result.errors


def test_missing_artifact(settings, runner, tmp_path: Path) -> None:
    result = _engine(settings, runner, tmp_path).verify(tmp_path / "gone.tar.gz", BackupType.FULL)
    assert not result.exists
    assert result.checksum is None
    assert result.errors


def test_unreadable_archive_is_reported_not_raised(settings, runner, tmp_path: Path) -> None:
    runner.exit_code = 2
    artifact = tmp_path / "backup.tar.gz"
    artifact.write_bytes(b"not a tarball")
    result = _engine(settings, runner, tmp_path).verify(artifact, BackupType.FULL)
    assert result.exists and result.checksum_valid
    assert not result.content_valid
    assert any("content validation failed" in error for error in result.errors)


@pytest.mark.skipif(shutil.which("tar") is None, reason="tar not available")
def test_full_archive_requires_dump_and_files(settings, runner, tmp_path: Path) -> None:
    runner.real_tar = True
    builder = ArchiveBuilder(runner, settings)
    work = tmp_path / "work"
    (work / "files").mkdir(parents=True)
    archive = builder.pack(work, tmp_path / "files_only.tar.gz")
    engine = _engine(settings, runner, tmp_path)

    assert engine.verify(archive, BackupType.FILES_ONLY).content_valid
    full = engine.verify(archive, BackupType.FULL)
    assert not full.content_valid
    assert list((tmp_path / "scratch").iterdir()) == []
