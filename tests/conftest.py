import pytest

import sample_jobs
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Database
from jobqueue.jobs.schemas import WorkerOptions
from jobqueue.jobs.service import JobService
from jobqueue.jobs.worker import JobWorker


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file."""
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        worker_name="test-worker",
        sleep_delay_s=0.01,
    )


@pytest.fixture
async def database(settings):
    """Create the schema (jobs and the sample stories table) and dispose afterwards."""
    database = Database(settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
async def session(database):
    async with database.SessionLocal() as session:
        yield session


@pytest.fixture
def service(settings) -> JobService:
    return JobService(settings)


@pytest.fixture
def worker_options(settings) -> WorkerOptions:
    return WorkerOptions.from_settings(settings)


@pytest.fixture
def worker(service, database, worker_options) -> JobWorker:
    return JobWorker(service, database, worker_options)


@pytest.fixture(autouse=True)
def reset_sample_jobs():
    """Zero the run counters on the sample job classes."""
    sample_jobs.reset()
    yield
    sample_jobs.reset()
