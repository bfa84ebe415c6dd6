from __future__ import annotations

from pathlib import Path
import shutil

import pytest

from crmguard.services.backup.runner import SubprocessRunner


def test_missing_program_reports_command_not_found() -> None:
    result = SubprocessRunner().run(["crmguard-no-such-binary", "--version"])
    assert result.exit_code == 127
    assert not result.ok
    assert "command not found" in result.stderr


@pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")
def test_stdout_is_streamed_to_file_and_env_is_passed(tmp_path: Path) -> None:
    output = tmp_path / "out.txt"
    result = SubprocessRunner().run(
        ["sh", "-c", 'printf "%s" "$CRMGUARD_MARKER"'],
        stdout_path=output,
        env={"CRMGUARD_MARKER": "dumped"},
    )
    assert result.ok
    assert output.read_text() == "dumped"


@pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")
def test_nonzero_exit_and_stderr_are_captured(tmp_path: Path) -> None:
    source = tmp_path / "in.sql"
    source.write_text("SELECT 1;")
    result = SubprocessRunner().run(["sh", "-c", "cat >/dev/null; echo boom >&2; exit 3"], stdin_path=source)
    assert result.exit_code == 3
    assert result.stderr.strip() == "boom"


def test_stdin_is_closed_when_stdout_cannot_be_opened(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "in.sql"
    source.write_text("SELECT 1;")
    opened = []
    original_open = Path.open

    def tracking_open(self, *args, **kwargs):
        handle = original_open(self, *args, **kwargs)
        opened.append(handle)
        return handle

    monkeypatch.setattr(Path, "open", tracking_open)

    with pytest.raises(FileNotFoundError):
        SubprocessRunner().run(
            ["crmguard-no-such-binary"],
            stdin_path=source,
            stdout_path=tmp_path / "missing-dir" / "out.sql",
        )

    assert len(opened) == 1
    assert opened[0].closed
