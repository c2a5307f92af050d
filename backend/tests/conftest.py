"""
Pytest configuration and fixtures for Gallery Harvester tests.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.database import Base
from api.jobs import JobStore
from api.main import app, get_job_store, get_manager, get_rate_limiter
from api.rate_limiter import RateLimiter
from harvester.base import ScrapeConfig


# Create an in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class RecordingManager:
    """Stands in for ScrapeManager in API tests: creates jobs, never launches a browser."""

    def __init__(self, store):
        self.store = store
        self.started = []
        self.cancelled = []
        self.running = set()

    def start(self, config):
        job = self.store.create(config.url, config)
        self.started.append(job.id)
        self.running.add(job.id)
        return job

    def cancel(self, job_id):
        if job_id not in self.running:
            return False
        self.cancelled.append(job_id)
        return True


@pytest.fixture(scope="function")
def job_store():
    """Fresh job store on an empty database for each test."""
    Base.metadata.create_all(bind=engine)
    try:
        yield JobStore(TestingSessionLocal)
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def rate_limiter():
    return RateLimiter(max_requests=3, window_seconds=60)


@pytest.fixture
def fake_manager(job_store):
    return RecordingManager(job_store)


@pytest.fixture(scope="function")
def client(job_store, fake_manager, rate_limiter):
    """Create a test client with store, manager and limiter overrides."""
    app.dependency_overrides[get_job_store] = lambda: job_store
    app.dependency_overrides[get_manager] = lambda: fake_manager
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    # Use TestClient directly without context manager so the lifespan (and browser) never starts
    test_client = TestClient(app)
    yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def sample_config():
    return ScrapeConfig(url="https://smartframe.com/search?searchQuery=test", maxItems=2)


@pytest.fixture
def sample_records():
    return [
        {
            'item_id': 'img-001',
            'url': 'https://smartframe.com/search/image/cust1/img-001',
            'namespace_hash': 'cust1',
            'copy_link': 'https://smartframe.com/search/image/cust1/img-001',
            'credit_name': 'Jane Doe',
            'dimensions': '4000x3000',
            'file_size': '2.1 MB',
            'country': 'France',
            'city': 'Paris',
            'captured_date': '2021-05-01',
            'event_title': 'Fashion Week',
            'thumbnail_url': 'https://cdn.smartframe.io/img-001.jpg',
        },
        {
            'item_id': 'img-002',
            'url': 'https://smartframe.com/search/image/cust1/img-002',
            'namespace_hash': 'cust1',
            'copy_link': 'https://smartframe.com/search/image/cust1/img-002',
            'credit_name': None,
            'dimensions': None,
            'file_size': None,
            'country': None,
            'city': None,
            'captured_date': None,
            'event_title': None,
            'thumbnail_url': None,
        },
    ]


@pytest.fixture
def completed_job(job_store, sample_config, sample_records):
    """A job that ran to completion with two records."""
    from harvester.base import JobStatus
    from harvester.orchestrator import utc_now

    job = job_store.create(sample_config.url, sample_config)
    job_store.update(job.id, status=JobStatus.SCRAPING)
    return job_store.update(
        job.id,
        status=JobStatus.COMPLETED,
        progress=100,
        total_items=2,
        scraped_items=2,
        records=sample_records,
        completed_at=utc_now(),
    )
