"""
Pytest fixtures for the portfolio kernel test suite.

Provides:
- A fresh in-memory SQLite database per test (schema created from the models)
- A session, a deterministic clock and every kernel service wired together
- Person and org-tree factories
- Structured-log capture

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  the default in-memory SQLite.  Tables are dropped after each test.
"""

import json
import logging
import os
from dataclasses import dataclass
from io import StringIO
from typing import Generator
from uuid import uuid4

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from portfolio_kernel.config.schema import ApprovalSettings
from portfolio_kernel.db.engine import build_engine, create_tables, drop_tables
from portfolio_kernel.domain.approval import ApprovalRuleType, ApprovalScope, CrossBuStrategy
from portfolio_kernel.domain.clock import DeterministicClock
from portfolio_kernel.domain.org import OrgNode, OrgNodeType, Person
from portfolio_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from portfolio_kernel.services.approval_service import ApprovalService
from portfolio_kernel.services.auditor_service import AuditorService
from portfolio_kernel.services.chain_resolution_service import ChainResolutionService
from portfolio_kernel.services.delegation_service import DelegationService
from portfolio_kernel.services.membership_service import MembershipService
from portfolio_kernel.services.org_tree_service import OrgTreeService
from portfolio_kernel.services.person_directory import SqlPersonDirectory
from portfolio_kernel.services.policy_service import PolicyService

DEFAULT_TEST_URL = "sqlite:///:memory:"

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()


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
    Capture portfolio_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, org_tree_service):
            org_tree_service.create_node(...)
            logs = captured_logs()
            assert any(r["message"] == "org_node_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("portfolio_kernel")
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
# Database fixtures
# =============================================================================


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """A database with the full schema, discarded after the test."""
    eng = build_engine(os.environ.get("DATABASE_URL", DEFAULT_TEST_URL))
    create_tables(eng)
    yield eng
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    ``expire_on_commit=False`` keeps DTOs and loaded rows usable after a
    test commits, the way a request handler would use them.
    """
    sess = Session(engine, expire_on_commit=False)
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


@pytest.fixture
def approval_settings() -> ApprovalSettings:
    return ApprovalSettings()


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def auditor_service(session: Session, deterministic_clock):
    """Provide an AuditorService instance."""
    return AuditorService(session, deterministic_clock)


@pytest.fixture
def person_directory(session: Session) -> SqlPersonDirectory:
    return SqlPersonDirectory(session)


@pytest.fixture
def policy_service(session, auditor_service, deterministic_clock) -> PolicyService:
    return PolicyService(session, auditor_service, deterministic_clock)


@pytest.fixture
def membership_service(session, auditor_service, deterministic_clock) -> MembershipService:
    return MembershipService(session, auditor_service, deterministic_clock)


@pytest.fixture
def org_tree_service(
    session, auditor_service, deterministic_clock, policy_service, membership_service
) -> OrgTreeService:
    return OrgTreeService(
        session,
        auditor_service,
        deterministic_clock,
        policy_service=policy_service,
        membership_service=membership_service,
    )


@pytest.fixture
def delegation_service(session, auditor_service, deterministic_clock) -> DelegationService:
    return DelegationService(session, auditor_service, deterministic_clock)


@pytest.fixture
def chain_service(
    session, deterministic_clock, person_directory, approval_settings
) -> ChainResolutionService:
    return ChainResolutionService(
        session,
        clock=deterministic_clock,
        directory=person_directory,
        settings=approval_settings,
    )


@pytest.fixture
def approval_service(
    session, auditor_service, deterministic_clock, chain_service, approval_settings
) -> ApprovalService:
    return ApprovalService(
        session,
        auditor_service,
        deterministic_clock,
        resolver=chain_service,
        settings=approval_settings,
    )


# =============================================================================
# Data factories
# =============================================================================


@pytest.fixture
def make_person(person_directory):
    """Factory fixture: ``make_person("Ada", role="ADMIN") -> Person``."""

    def _make(name: str, role: str = "MEMBER") -> Person:
        slug = name.lower().replace(" ", ".")
        return person_directory.create_person(
            name=name,
            email=f"{slug}.{uuid4().hex[:8]}@example.com",
            role=role,
        )

    return _make


@pytest.fixture
def admin(make_person) -> Person:
    """A platform administrator, so fallback resolution always has someone."""
    return make_person("Platform Admin", role="ADMIN")


@dataclass
class OrgFixture:
    """ROOT -> DIVISION "D" (managed by mgr_1) -> TEAM "T"."""

    root: OrgNode
    division: OrgNode
    team: OrgNode
    mgr_1: Person
    mgr_2: Person
    requester: Person


@pytest.fixture
def org(org_tree_service, membership_service, make_person, admin) -> OrgFixture:
    """The reference tree used across service tests."""
    mgr_1 = make_person("Morgan One", role="MANAGER")
    mgr_2 = make_person("Morgan Two", role="MANAGER")
    requester = make_person("Riley Requester")

    root = org_tree_service.create_node("Acme", "ROOT", OrgNodeType.ROOT)
    division = org_tree_service.create_node(
        "Division D", "D", OrgNodeType.DIVISION, parent_id=root.id, manager_id=mgr_1.id,
    )
    team = org_tree_service.create_node(
        "Team T", "T", OrgNodeType.TEAM, parent_id=division.id,
    )
    membership_service.assign_person(requester.id, team.id)
    return OrgFixture(
        root=root,
        division=division,
        team=team,
        mgr_1=mgr_1,
        mgr_2=mgr_2,
        requester=requester,
    )


@pytest.fixture
def division_manager_policy(policy_service, org):
    """Level 1 NODE_MANAGER policy on "D" for INITIATIVE."""
    return policy_service.create_policy(
        org.division.id,
        ApprovalScope.INITIATIVE,
        1,
        ApprovalRuleType.NODE_MANAGER,
        cross_bu_strategy=CrossBuStrategy.COMMON_ANCESTOR,
    )
