from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import subprocess
from typing import Mapping, Protocol, Sequence


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    # Arguments in, exit code + captured streams out; dump/restore/archive steps go through this seam.
    def run(
        self,
        args: Sequence[str],
        *,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        ...


@dataclass
class SubprocessRunner:
    """Run external clients as argument vectors (no shell) and block until they exit."""

    inherit_env: bool = True
    extra_env: dict[str, str] = field(default_factory=dict)

    def run(
        self,
        args: Sequence[str],
        *,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        process_env = dict(os.environ) if self.inherit_env else {}
        process_env.update(self.extra_env)
        if env:
            process_env.update(env)
        logger.debug("command_run program=%s argc=%s", args[0] if args else None, len(args))
        with ExitStack() as streams:
            stdin_handle = streams.enter_context(stdin_path.open("rb")) if stdin_path is not None else None
            stdout_handle = streams.enter_context(stdout_path.open("wb")) if stdout_path is not None else None
            try:
                completed = subprocess.run(
                    list(args),
                    stdin=stdin_handle if stdin_handle is not None else subprocess.DEVNULL,
                    stdout=stdout_handle if stdout_handle is not None else subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=process_env,
                    check=False,
                )
            except FileNotFoundError:
                # Mirror the shell's "command not found" status so callers see one failure shape.
                logger.warning("command_not_found program=%s", args[0] if args else None)
                return CommandResult(exit_code=127, stderr=f"{args[0]}: command not found")
        stdout = completed.stdout.decode("utf-8", errors="ignore") if completed.stdout else ""
        stderr = completed.stderr.decode("utf-8", errors="ignore") if completed.stderr else ""
        return CommandResult(exit_code=completed.returncode, stdout=stdout, stderr=stderr)


def get_command_runner() -> CommandRunner:
    # Allow tests to monkeypatch process execution without touching orchestration code.
    return SubprocessRunner()
