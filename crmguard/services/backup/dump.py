from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import shutil
from typing import Literal

from sqlalchemy.engine import make_url

from crmguard.core.config import Settings, get_settings
from crmguard.core.errors import ArtifactMissingError, ExternalProcessFailure, UnsupportedDriverError
from crmguard.services.backup.files import timestamped_sibling
from crmguard.services.backup.runner import CommandRunner


logger = logging.getLogger(__name__)

Driver = Literal["mysql", "postgres", "sqlite"]

_DRIVER_ALIASES: dict[str, Driver] = {
    "mysql": "mysql",
    "mariadb": "mysql",
    "postgresql": "postgres",
    "postgres": "postgres",
    "sqlite": "sqlite",
}
_DEFAULT_PORTS: dict[Driver, int] = {"mysql": 3306, "postgres": 5432}


@dataclass(frozen=True)
class ConnectionInfo:
    driver: Driver
    database: str
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_url(cls, url: str) -> "ConnectionInfo":
        # Async driver suffixes (+asyncpg, +aiosqlite, +aiomysql) do not matter to vendor clients.
        parsed = make_url(url)
        backend = parsed.get_backend_name()
        driver = _DRIVER_ALIASES.get(backend)
        if driver is None:
            raise UnsupportedDriverError(f"Unsupported database driver: {backend}")
        if driver == "sqlite" and (not parsed.database or parsed.database == ":memory:"):
            raise UnsupportedDriverError("In-memory SQLite databases cannot be dumped")
        return cls(
            driver=driver,
            database=parsed.database or "",
            host=parsed.host,
            port=parsed.port or _DEFAULT_PORTS.get(driver),
            username=parsed.username,
            password=parsed.password,
        )


class DumpEngine:
    """Produce and consume a single engine-native dump file."""

    def __init__(self, runner: CommandRunner, settings: Settings | None = None) -> None:
        self.runner = runner
        self.settings = settings or get_settings()

    def dump(self, connection: ConnectionInfo, output_path: Path) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if connection.driver == "sqlite":
            source = Path(connection.database)
            if not source.exists():
                raise ArtifactMissingError(f"SQLite database file not found: {source}")
            shutil.copy2(source, output_path)
            return output_path
        if connection.driver == "mysql":
            args = [
                self.settings.mysqldump_bin,
                *self._mysql_connection_args(connection),
                "--single-transaction",
                connection.database,
            ]
            env = {"MYSQL_PWD": connection.password or ""}
        elif connection.driver == "postgres":
            args = [
                self.settings.pg_dump_bin,
                *self._pg_connection_args(connection),
                "--no-owner",
                "--no-privileges",
            ]
            env = {"PGPASSWORD": connection.password or ""}
        else:
            raise UnsupportedDriverError(f"Unsupported database driver: {connection.driver}")
        result = self.runner.run(args, stdout_path=output_path, env=env)
        if not result.ok:
            raise ExternalProcessFailure(
                f"{connection.driver} dump failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        logger.info("database_dumped driver=%s output=%s", connection.driver, output_path)
        return output_path

    def restore(self, connection: ConnectionInfo, dump_path: Path) -> Path | None:
        """Load ``dump_path`` into the database; returns the pre-restore snapshot for file engines."""
        if not dump_path.exists():
            raise ArtifactMissingError(f"Database dump not found: {dump_path}")
        if connection.driver == "sqlite":
            live = Path(connection.database)
            snapshot: Path | None = None
            if live.exists():
                snapshot = timestamped_sibling(live, ".backup.")
                shutil.copy2(live, snapshot)
            live.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(dump_path, live)
            logger.info("sqlite_database_restored path=%s snapshot=%s", live, snapshot)
            return snapshot
        if connection.driver == "mysql":
            args = [self.settings.mysql_bin, *self._mysql_connection_args(connection), connection.database]
            env = {"MYSQL_PWD": connection.password or ""}
        elif connection.driver == "postgres":
            args = [
                self.settings.psql_bin,
                *self._pg_connection_args(connection),
                "--set=ON_ERROR_STOP=1",
                "--quiet",
            ]
            env = {"PGPASSWORD": connection.password or ""}
        else:
            raise UnsupportedDriverError(f"Unsupported database driver: {connection.driver}")
        result = self.runner.run(args, stdin_path=dump_path, env=env)
        if not result.ok:
            raise ExternalProcessFailure(
                f"{connection.driver} restore failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        logger.info("database_restored driver=%s source=%s", connection.driver, dump_path)
        return None

    @staticmethod
    def _mysql_connection_args(connection: ConnectionInfo) -> list[str]:
        # Password travels via MYSQL_PWD so it never shows up in the process table.
        args = [f"--host={connection.host or 'localhost'}", f"--port={connection.port}"]
        if connection.username:
            args.append(f"--user={connection.username}")
        return args

    @staticmethod
    def _pg_connection_args(connection: ConnectionInfo) -> list[str]:
        args = [f"--host={connection.host or 'localhost'}", f"--port={connection.port}"]
        if connection.username:
            args.append(f"--username={connection.username}")
        args.append(f"--dbname={connection.database}")
        return args
