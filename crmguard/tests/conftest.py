from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Iterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from crmguard.core.config import Settings, get_settings
from crmguard.domain import crm  # noqa: F401 - registers CRM tables on Base.metadata
from crmguard.domain.models import Base
from crmguard.persistence.db import build_engine
from crmguard.services.backup.leases import ArtifactLeases
from crmguard.tests.utils.runner import RecordingRunner

# SQLite file header; enough for the dump signature check.
SQLITE_HEADER = b"SQLite format 3\x00" + b"\x00" * 84


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    (root / "storage" / "app").mkdir(parents=True)
    return root


@pytest.fixture
def live_database(tmp_path: Path) -> Path:
    # Stand-in for the CRM database file the sqlite dump strategy copies.
    path = tmp_path / "live.sqlite"
    path.write_bytes(SQLITE_HEADER + b"live-v1")
    return path


@pytest.fixture
def settings(monkeypatch, tmp_path: Path, app_root: Path, live_database: Path) -> Iterator[Settings]:
    # Point every path and URL at tmp_path so tests never touch a real deployment.
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'jobs.sqlite'}")
    monkeypatch.setenv("BACKUP_DATABASE_URL", f"sqlite:///{live_database}")
    monkeypatch.setenv("APP_ROOT", str(app_root))
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("BACKUP_DEFAULT_FILES", '["storage/app", ".env"]')
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def leases() -> ArtifactLeases:
    # Fresh registry per test so held leases never leak between tests.
    return ArtifactLeases()
