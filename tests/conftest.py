"""
Pytest fixtures for the governance test suite.

Provides:
- An in-memory SQLite engine and session per test (tables created fresh)
- Deterministic clock, request contexts, and recording port fakes
- The sample travel-request definition set, installed for TENANT
- Structured-log capture

Environment Variables:
- GOVERNANCE_TEST_DATABASE_URL: run against another database (e.g. a
  PostgreSQL URL).  Defaults to in-memory SQLite.
"""

import json
import logging
import os
from io import StringIO
from typing import Any, Callable, Generator

import pytest
from sqlalchemy.orm import Session

from governance_config.installer import InstalledDefinitions, install_definitions
from governance_config.loader import (
    DEFAULT_SETS_DIR,
    DefinitionSet,
    load_definition_set,
    parse_definition_set,
    validate_definition_set,
)
from governance_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from governance_kernel.domain.clock import DeterministicClock
from governance_kernel.domain.context import RequestContext
from governance_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from governance_kernel.services.timers import InMemoryTimerScheduler
from governance_services.policy_gate import RolePolicyGate
from governance_services.wiring import GovernanceServices
from tests.factories import ROLE_GRANTS, TENANT, TRAVEL_ENTITY, RecordingAuditLogger


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
    Capture governance_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, services):
            services.lifecycle.transition(...)
            logs = captured_logs()
            assert any(r["message"] == "lifecycle_transition_applied" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("governance_kernel")
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
# Database
# =============================================================================


def get_database_url() -> str:
    return os.environ.get("GOVERNANCE_TEST_DATABASE_URL", "sqlite://")


@pytest.fixture
def db_engine():
    """Fresh engine and schema per test."""
    reset_engine()
    engine = init_engine_from_url(get_database_url())
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session(db_engine) -> Generator[Session, None, None]:
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Clock, contexts, and port fakes
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def make_ctx() -> Callable[..., RequestContext]:
    def _make(
        user_id: str,
        roles: tuple[str, ...] = (),
        tenant_id: str = TENANT,
        **metadata: Any,
    ) -> RequestContext:
        return RequestContext(
            user_id=user_id, tenant_id=tenant_id, roles=roles, metadata=metadata,
        )

    return _make


@pytest.fixture
def requester_ctx(make_ctx) -> RequestContext:
    return make_ctx("requester-1", roles=("employee",))


@pytest.fixture
def audit_log() -> RecordingAuditLogger:
    return RecordingAuditLogger()


@pytest.fixture
def timer_scheduler() -> InMemoryTimerScheduler:
    return InMemoryTimerScheduler()


@pytest.fixture
def policy_gate() -> RolePolicyGate:
    return RolePolicyGate(ROLE_GRANTS)


# =============================================================================
# Definitions and services
# =============================================================================


@pytest.fixture
def travel_definitions() -> DefinitionSet:
    return load_definition_set(DEFAULT_SETS_DIR / "travel_request.yaml")


@pytest.fixture
def installed(session, travel_definitions) -> InstalledDefinitions:
    return install_definitions(session, travel_definitions, TENANT)


@pytest.fixture
def install_set(session) -> Callable[..., InstalledDefinitions]:
    """Install a definition set given as a plain dict."""

    def _install(data: dict[str, Any], tenant_id: str = TENANT) -> InstalledDefinitions:
        definitions = parse_definition_set(data)
        assert validate_definition_set(definitions) == []
        return install_definitions(session, definitions, tenant_id)

    return _install


@pytest.fixture
def services(
    session, policy_gate, audit_log, timer_scheduler, deterministic_clock,
) -> GovernanceServices:
    return GovernanceServices(
        session,
        policy_gate=policy_gate,
        audit_logger=audit_log,
        timers=timer_scheduler,
        clock=deterministic_clock,
    )


@pytest.fixture
def submitted_request(services, installed, requester_ctx) -> Callable[[str], str]:
    """Create a travel request in ``submitted`` and return its id."""

    def _submit(entity_id: str = "tr-1") -> str:
        services.lifecycle.create_instance(TRAVEL_ENTITY, entity_id, requester_ctx)
        result = services.lifecycle.transition(
            TRAVEL_ENTITY, entity_id, "SUBMIT", requester_ctx,
        )
        assert result.success, result
        return entity_id

    return _submit
