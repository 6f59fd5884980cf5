"""
Pytest configuration and fixtures for protocol scheduling tests
"""
import pytest
import redis
from datetime import date
from unittest.mock import Mock

from scheduling.models import (
    IntervalType,
    Patient,
    ProtocolTemplate,
    RecurrencePolicy,
    TaskKind,
    TemplateTask,
)
from scheduling.recurrence import RecurrenceSettings
from scheduling.scheduler import ProtocolScheduler
from shared.store import InMemoryProtocolStore


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing"""
    client = Mock(spec=redis.Redis)
    client.register_script.side_effect = lambda script: Mock(name="lua-script")
    return client


@pytest.fixture
def anchor_date():
    """Sample surgery date for testing"""
    return date(2024, 1, 1)


@pytest.fixture
def sample_template():
    """Small protocol with pre-op, one-time and repeating tasks"""
    return ProtocolTemplate(
        id="knee-basic",
        title="Knee Recovery Basics",
        surgery_type="TKA",
        tenant_id="clinic-1",
        tasks=[
            TemplateTask(
                id="pre-op-video",
                title="Pre-Op Video",
                kind=TaskKind.VIDEO,
                day_offset=-3,
            ),
            TemplateTask(
                id="pain-check",
                title="Daily Pain Check",
                kind=TaskKind.ASSESSMENT,
                day_offset=1,
                recurrence=RecurrencePolicy.repeating(IntervalType.DAILY),
            ),
            TemplateTask(
                id="walk",
                title="Walking Exercise",
                kind=TaskKind.EXERCISE,
                day_offset=2,
                recurrence=RecurrencePolicy.repeating(IntervalType.WEEKLY),
            ),
        ],
    )


@pytest.fixture
def sample_patient(anchor_date):
    """Patient with a surgery date"""
    return Patient(
        id="patient-456",
        tenant_id="clinic-1",
        anchor_date=anchor_date,
        name="Test Patient",
        surgery_type="TKA",
    )


@pytest.fixture
def short_settings():
    """Recurrence settings with a short horizon to keep instance counts small"""
    return RecurrenceSettings(horizon_days=14, monthly_interval_days=30)


@pytest.fixture
def memory_store(sample_template, sample_patient):
    """In-memory store seeded with the sample template and patient"""
    store = InMemoryProtocolStore()
    store.save_template(sample_template)
    store.save_patient(sample_patient)
    return store


@pytest.fixture
def protocol_scheduler(memory_store, short_settings):
    """ProtocolScheduler backed by the in-memory store"""
    return ProtocolScheduler(memory_store, recurrence_settings=short_settings)


@pytest.fixture
def redis_test_db():
    """
    Real Redis connection for integration tests.
    Uses database 15 to avoid conflicts with development data.
    """
    try:
        client = redis.Redis(host='localhost', port=6379, db=15, decode_responses=True)
        client.ping()  # Test connection
    except redis.ConnectionError:
        pytest.skip("Redis not available for integration tests")

    # Clear the test database before each test
    client.flushdb()

    yield client

    # Clean up after test
    client.flushdb()
    client.close()
