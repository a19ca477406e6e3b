"""
Pytest fixtures for the health financing test suite.

Provides:
- An in-memory SQLite database created once per session
- Per-test sessions rolled back at teardown
- The default activity catalog, a deterministic clock and the services
- Facility / reporting period builders and an execution data helper

Pure engine tests use none of the database fixtures.
"""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from healthfin_config import get_active_catalog
from healthfin_kernel.db.engine import create_tables, init_engine_from_url, reset_engine
from healthfin_kernel.domain.clock import DeterministicClock
from healthfin_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from healthfin_kernel.models.facility import Facility, FacilityType
from healthfin_kernel.models.reporting_period import PeriodStatus, ReportingPeriod
from healthfin_kernel.services.period_service import PeriodService
from healthfin_services import (
    AdjustmentService,
    ExecutionService,
    QuarterCloseService,
    RecalculationWorker,
    RolloverService,
    StatementConfig,
    StatementService,
)


# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

PROJECT = "HIV"
HOSPITAL_PREFIX = "HIV_EXEC_HOSPITAL_"


def hiv(key: str, prefix: str = HOSPITAL_PREFIX) -> str:
    """Concrete HIV activity code for a catalog key (``A_1`` -> ``HIV_EXEC_HOSPITAL_A_1``)."""
    return f"{prefix}{key}"


def activities(**by_key: dict) -> dict:
    """
    Execution payload keyed by catalog key.

    ``activities(A_2={"amount": "20000"})`` ->
    ``{"activities": {"HIV_EXEC_HOSPITAL_A_2": {"amount": "20000"}}}``
    """
    return {"activities": {hiv(key): values for key, values in by_key.items()}}


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture healthfin logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, execution_service):
            execution_service.update_execution(...)
            logs = captured_logs()
            assert any(r["message"] == "execution_update_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("healthfin")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure (engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """In-memory SQLite shared through a StaticPool."""
    engine = init_engine_from_url("sqlite://")
    create_tables()
    yield engine
    reset_engine()


@pytest.fixture(scope="function")
def session(db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection;
    ``session.commit()`` and ``begin_nested()`` inside the test only
    release savepoints.  The outer transaction is rolled back at
    teardown, undoing every change made by the test.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


# =============================================================================
# Clock, catalog and configuration
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture(scope="session")
def catalog():
    """The default catalog, compiled once."""
    return get_active_catalog()


@pytest.fixture
def statement_config():
    return StatementConfig()


# =============================================================================
# Reference data
# =============================================================================


@pytest.fixture
def create_facility(session, test_actor_id):
    """Factory for facilities; defaults to a hospital."""

    def _create(name: str = "Kibagabaga Hospital", facility_type=FacilityType.HOSPITAL):
        facility = Facility(
            name=name,
            facility_type=facility_type,
            created_by_id=test_actor_id,
        )
        session.add(facility)
        session.flush()
        return facility

    return _create


@pytest.fixture
def create_period(session, test_actor_id):
    """Factory for fiscal years (July to June)."""

    def _create(year: int = 2025, status: PeriodStatus = PeriodStatus.OPEN):
        period = ReportingPeriod(
            year=year,
            start_date=date(year - 1, 7, 1),
            end_date=date(year, 6, 30),
            status=status,
            created_by_id=test_actor_id,
        )
        session.add(period)
        session.flush()
        return period

    return _create


@pytest.fixture
def hospital(create_facility):
    return create_facility()


@pytest.fixture
def period(create_period):
    return create_period(2025)


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def period_service(session, deterministic_clock) -> PeriodService:
    return PeriodService(session, deterministic_clock)


@pytest.fixture
def execution_service(session, catalog, deterministic_clock) -> ExecutionService:
    return ExecutionService(session, catalog, deterministic_clock)


@pytest.fixture
def adjustment_service(session, catalog, deterministic_clock) -> AdjustmentService:
    return AdjustmentService(session, catalog, deterministic_clock)


@pytest.fixture
def quarter_close_service(session, catalog, deterministic_clock) -> QuarterCloseService:
    return QuarterCloseService(session, catalog, deterministic_clock)


@pytest.fixture
def rollover_service(session, catalog, deterministic_clock) -> RolloverService:
    return RolloverService(session, catalog, deterministic_clock)


@pytest.fixture
def statement_service(session, catalog, deterministic_clock, statement_config) -> StatementService:
    return StatementService(session, catalog, deterministic_clock, statement_config)


@pytest.fixture
def recalculation_worker(session, catalog, deterministic_clock) -> RecalculationWorker:
    return RecalculationWorker(session, catalog, deterministic_clock)


@pytest.fixture
def update(execution_service, hospital, period, test_actor_id):
    """
    Submit one quarter of HIV execution data for the default hospital.

    Usage::

        update("Q2", A_2={"amount": "20000"})
    """

    def _update(quarter, expected_version=None, facility=None, reporting_period=None, **by_key):
        return execution_service.update_execution(
            (facility or hospital).id,
            (reporting_period or period).id,
            PROJECT,
            quarter,
            activities(**by_key),
            test_actor_id,
            expected_version=expected_version,
        )

    return _update


@pytest.fixture
def stored_value(quarter_close_service, hospital, period):
    """Stored quarter value of an HIV hospital activity (``None`` when never entered)."""

    def _value(key: str, quarter: str, facility=None, reporting_period=None) -> Decimal | None:
        entries = quarter_close_service.entries_by_code(
            (facility or hospital).id, (reporting_period or period).id, PROJECT
        )
        entry = entries.get(hiv(key))
        if entry is None:
            return None
        value = getattr(entry, quarter.lower())
        return None if value is None else Decimal(value)

    return _value
