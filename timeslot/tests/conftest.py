"""
Pytest configuration and fixtures for schedule engine tests.

Provides shared fixtures for:
- Test database sessions (in-memory SQLite, foreign keys on)
- A test entity table registered in an EntityRegistry
- Settings, job queue, service and worker instances
- Sample data factories
"""

import os
import pytest
from datetime import datetime, timedelta
from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['TIMESLOT_DB_URL'] = 'sqlite:///:memory:'
os.environ.setdefault('TIMESLOT_ENV', 'development')

from timeslot.src.config.settings import AppSettings
from timeslot.src.models import Base
from timeslot.src.services.entity_registry import EntityRegistry
from timeslot.src.services.entity_store import EntityStore
from timeslot.src.services.expansion_worker import ExpansionWorker
from timeslot.src.services.series_rpc import SeriesRpc
from timeslot.src.services.series_service import SeriesService
from timeslot.src.utils.job_queue import JobQueue
from timeslot.src.utils.time_slot import TimeSlot


# Domain table owned by the "host application" in tests
entity_metadata = MetaData()

bookings_table = Table(
    'test_bookings',
    entity_metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('room_id', Integer, nullable=False),
    Column('purpose', String(255), nullable=False),
    Column('notes', Text, nullable=True),
    Column('time_slot', String(64), nullable=False),
)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Enable foreign key constraints for SQLite
    # This must be set for each connection
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    entity_metadata.create_all(engine)
    yield engine
    entity_metadata.drop_all(engine)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_session_factory(test_db_engine):
    """Session factory bound to the test engine (used by the worker)."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )


@pytest.fixture(scope='function')
def test_db_session(test_session_factory):
    """Create a test database session."""
    session = test_session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def make_settings():
    """Factory for AppSettings with test-friendly defaults."""
    def _create(**overrides):
        values = {
            'TIMESLOT_EXPANSION_HORIZON_DAYS': 60,
            'TIMESLOT_MAX_OCCURRENCES_PER_PASS': 500,
            'TIMESLOT_JOB_MAX_ATTEMPTS': 3,
            'TIMESLOT_JOB_BACKOFF_BASE_SECONDS': 30,
            'TIMESLOT_JOB_BACKOFF_MAX_SECONDS': 3600,
            'TIMESLOT_WORKER_POLL_INTERVAL': 0.01,
            'TIMESLOT_JOB_TIMEOUT_SECONDS': 600,
        }
        values.update(overrides)
        return AppSettings(**values)
    return _create


@pytest.fixture
def test_settings(make_settings):
    """Settings used by services, queue and worker in tests."""
    return make_settings()


@pytest.fixture
def entity_registry():
    """Registry with the test bookings table, scoped by room."""
    registry = EntityRegistry()
    registry.register(bookings_table, conflict_scope=('room_id',))
    return registry


@pytest.fixture
def bookings_store(test_db_session, entity_registry):
    """EntityStore over the test bookings table."""
    return EntityStore(test_db_session, entity_registry.get('test_bookings'))


@pytest.fixture
def test_job_queue(test_db_session, test_settings):
    """Create a JobQueue for testing."""
    return JobQueue(test_db_session, test_settings)


@pytest.fixture
def series_service(test_db_session, entity_registry, test_job_queue, test_settings):
    """SeriesService over the test database."""
    return SeriesService(test_db_session, entity_registry, job_queue=test_job_queue,
                         settings=test_settings)


@pytest.fixture
def series_rpc(test_db_session, entity_registry, test_job_queue, test_settings):
    """SeriesRpc over the test database."""
    return SeriesRpc(test_db_session, entity_registry, job_queue=test_job_queue,
                     settings=test_settings)


@pytest.fixture
def expansion_worker(test_session_factory, entity_registry, test_settings):
    """Expansion worker running jobs in fresh sessions on the test engine."""
    return ExpansionWorker(test_session_factory, entity_registry, test_settings)


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def sample_series_data():
    """Factory for create_recurring_series arguments."""
    def _create(**overrides):
        data = {
            'group_name': 'Team standup',
            'entity_table': 'test_bookings',
            'entity_template': {'room_id': 1, 'purpose': 'Standup'},
            'rrule': 'FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4',
            'dtstart': datetime(2025, 1, 6, 9, 0),
            'duration': timedelta(minutes=30),
            'timezone': 'UTC',
        }
        data.update(overrides)
        return data
    return _create


@pytest.fixture
def sample_series(series_service, sample_series_data):
    """Factory for creating a series; returns (group, series)."""
    def _create(**overrides):
        return series_service.create_recurring_series(**sample_series_data(**overrides))
    return _create


@pytest.fixture
def sample_booking(test_db_session, bookings_store):
    """Factory for creating a booking outside any series; returns its id."""
    def _create(start, end, room_id=1, purpose='Ad hoc'):
        entity_id = bookings_store.insert({
            'room_id': room_id,
            'purpose': purpose,
            'time_slot': TimeSlot(start, end),
        })
        test_db_session.commit()
        return entity_id
    return _create


@pytest.fixture
def booking_rows(test_db_session):
    """Return every row of the test bookings table, ordered by id."""
    def _rows():
        test_db_session.expire_all()
        return [
            dict(row) for row in test_db_session.execute(
                bookings_table.select().order_by(bookings_table.c.id)
            ).mappings()
        ]
    return _rows


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def test_client(test_db_session, entity_registry):
    """Create a test client for FastAPI application."""
    from fastapi.testclient import TestClient
    from timeslot.src.main import app
    from timeslot.src.db.database import get_db

    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = get_test_db
    app.state.entity_registry = entity_registry

    with TestClient(app) as client:
        yield client

    # Clear overrides
    app.dependency_overrides.clear()
    app.state.entity_registry = None
