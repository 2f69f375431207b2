import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text

from jobs_engine.config.settings import Settings, get_settings
from jobs_engine.engine import Engine, build_engine, get_engine
from jobs_engine.infra.database import Database, get_database
from jobs_engine.v1.core.registries import JobRegistry
from jobs_engine.v1.jobs.schemas import JobCreate, JobOptions


class FakeClock:
    """Controllable UTC clock injected into the ledger and scheduler."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 30, 1, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current += timedelta(**delta)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class RecordingHandler:
    """Processor that fails ``failures`` times, then returns ``result``."""

    def __init__(self, failures: int = 0, result: dict | None = None):
        self.failures = failures
        self.result = result if result is not None else {"ok": True}
        self.calls = []

    async def handle(self, ctx):
        self.calls.append(ctx)
        if len(self.calls) <= self.failures:
            raise RuntimeError(f"boom on attempt {ctx.attempt}")
        return self.result


def _database_url(tmp_path) -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url and "postgresql" in database_url:
        return database_url
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for tests: short polls, small backoff, isolated database."""
    return Settings(
        _env_file=None,
        environment="test",
        debug=True,
        database_url=_database_url(tmp_path),
        job_concurrency=2,
        job_poll_interval_ms=50,
        job_timeout_ms=2000,
        job_lease_s=30,
        job_max_retries=3,
        job_retry_delay_ms=1000,
        job_max_backoff_s=300,
        job_shutdown_grace_s=2,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh schema per test; PostgreSQL data is deleted afterwards."""
    db = Database(settings)
    await db.create_all()

    yield db

    if db.dialect_name == "postgresql":
        async with db.session() as session:
            await session.execute(text("DELETE FROM job_failures"))
            await session.execute(text("DELETE FROM job_results"))
            await session.execute(text("DELETE FROM jobs"))
            await session.execute(text("DELETE FROM job_schedules"))
            await session.commit()
    await db.close()


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def engine(settings, database, clock, registry) -> Engine:
    return build_engine(
        settings, database, clock=clock, registry=registry, register_handlers=False
    )


@pytest.fixture
async def session(database):
    async with database.session() as session:
        yield session


@pytest.fixture
def make_job():
    """Build a JobCreate with sensible defaults."""

    def _make(job_type: str = "test-job", queue: str = "default", **options):
        payload = options.pop("payload", {})
        return JobCreate(
            type=job_type,
            queue=queue,
            payload=payload,
            options=JobOptions(**options),
        )

    return _make


@pytest.fixture
def app(settings, database, engine):
    """FastAPI app bound to the test database and engine."""
    from jobs_engine.main import create_app

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_engine] = lambda: engine

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
