"""
Concurrency tests for approval decisions.

The request row carries an optimistic version counter and is locked
FOR UPDATE while a decision is recorded.  These tests check that a
writer holding a stale view of the request loses cleanly, whether the
rival commit lands before the locking read or between it and the final
write, and (on PostgreSQL) that parallel approvers never double-approve
a request.

Run the parallel tests with:
    DATABASE_URL=postgresql://... pytest tests/concurrency -m concurrency
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from portfolio_kernel.domain.approval import (
    ApprovalRuleType,
    ApprovalScope,
    ApprovalStatus,
    DecisionType,
    SubjectType,
)
from portfolio_kernel.domain.clock import DeterministicClock
from portfolio_kernel.exceptions import ConcurrentModificationError, RequestNotPendingError
from portfolio_kernel.models.approval import ApprovalDecisionModel, ApprovalRequestModel
from portfolio_kernel.models.audit_event import AuditAction, AuditEvent
from portfolio_kernel.services.approval_service import ApprovalService
from portfolio_kernel.services.auditor_service import AuditorService

pytestmark = pytest.mark.concurrency

SCOPE = ApprovalScope.INITIATIVE


@pytest.fixture
def committee_request(session, policy_service, approval_service, make_person, org):
    members = [make_person(n) for n in ("Cleo", "Dana", "Eli")]
    policy_service.create_policy(
        org.team.id, SCOPE, 1, ApprovalRuleType.COMMITTEE,
        {"person_ids": [str(m.id) for m in members], "quorum": 2},
    )
    request = approval_service.create_request(
        SCOPE, SubjectType.INITIATIVE, uuid4(), org.requester.id, org.team.id
    )
    session.commit()
    return request, members


class TestStaleWriter:
    """A second writer commits while we hold a stale view of the request."""

    @pytest.fixture
    def rival_writer(self, monkeypatch, session, approval_service):
        """Bump the row's version once, after the lock and before the final flush."""
        original = approval_service._count_approvals
        fired = []

        def bump_then_count(request_id, level):
            if not fired:
                fired.append(request_id)
                session.execute(
                    text("UPDATE approval_requests SET version = version + 1 WHERE id = :id"),
                    {"id": str(request_id)},
                )
            return original(request_id, level)

        monkeypatch.setattr(approval_service, "_count_approvals", bump_then_count)
        return fired

    def test_version_moved_underneath(
        self, session, approval_service, committee_request, rival_writer, captured_logs
    ):
        request, members = committee_request

        with pytest.raises(ConcurrentModificationError) as exc_info:
            approval_service.submit_decision(request.id, members[0].id, DecisionType.APPROVED)

        assert exc_info.value.entity_id == str(request.id)
        assert rival_writer == [request.id]
        conflicts = [r for r in captured_logs() if r["message"] == "approval_write_conflict"]
        assert len(conflicts) == 1

    def test_fresh_session_proceeds_after_conflict(
        self, session, approval_service, committee_request, rival_writer
    ):
        request, members = committee_request
        with pytest.raises(ConcurrentModificationError):
            approval_service.submit_decision(request.id, members[0].id, DecisionType.APPROVED)
        session.rollback()
        session.expire_all()

        outcome = approval_service.submit_decision(request.id, members[0].id, DecisionType.APPROVED)

        assert outcome.request.status == ApprovalStatus.PENDING
        assert len(outcome.request.decisions) == 1

    def test_stale_copy_in_session_rejected_at_lock(
        self, session, approval_service, committee_request, captured_logs
    ):
        request, members = committee_request
        held = session.get(ApprovalRequestModel, request.id)
        session.execute(
            text("UPDATE approval_requests SET version = version + 1 WHERE id = :id"),
            {"id": str(request.id)},
        )

        with pytest.raises(ConcurrentModificationError) as exc_info:
            approval_service.submit_decision(request.id, members[0].id, DecisionType.APPROVED)

        assert exc_info.value.entity_id == str(request.id)
        assert held.version == 1
        assert any(r["message"] == "approval_stale_read" for r in captured_logs())

    def test_fresh_read_proceeds_on_version_committed_before_the_call(
        self, session, approval_service, committee_request
    ):
        request, members = committee_request
        session.execute(
            text("UPDATE approval_requests SET version = version + 1 WHERE id = :id"),
            {"id": str(request.id)},
        )
        session.expunge_all()

        outcome = approval_service.submit_decision(request.id, members[0].id, DecisionType.APPROVED)

        assert len(outcome.request.decisions) == 1
        version = session.execute(
            text("SELECT version FROM approval_requests WHERE id = :id"),
            {"id": str(request.id)},
        ).scalar_one()
        assert version == 3

    def test_every_decision_moves_the_version(
        self, session, approval_service, committee_request
    ):
        request, members = committee_request

        approval_service.submit_decision(request.id, members[0].id, DecisionType.APPROVED)

        version = session.execute(
            text("SELECT version FROM approval_requests WHERE id = :id"),
            {"id": str(request.id)},
        ).scalar_one()
        assert version == 2


@pytest.mark.skipif(
    not os.environ.get("DATABASE_URL", "").startswith("postgresql"),
    reason="row locks need PostgreSQL",
)
class TestParallelApprovers:
    def test_quorum_met_exactly_once(self, engine, committee_request):
        request, members = committee_request
        barrier = threading.Barrier(len(members))

        def approve(person_id):
            clock = DeterministicClock()
            with Session(engine, expire_on_commit=False) as session:
                service = ApprovalService(session, AuditorService(session, clock), clock)
                barrier.wait()
                try:
                    outcome = service.submit_decision(request.id, person_id, DecisionType.APPROVED)
                except (RequestNotPendingError, ConcurrentModificationError) as exc:
                    session.rollback()
                    return exc
                session.commit()
                return outcome

        with ThreadPoolExecutor(max_workers=len(members)) as pool:
            results = list(pool.map(approve, [m.id for m in members]))

        refused = [r for r in results if isinstance(r, Exception)]
        assert len(refused) == 1

        with Session(engine) as check:
            decisions = check.execute(
                select(ApprovalDecisionModel).where(ApprovalDecisionModel.request_id == request.id)
            ).scalars().all()
            granted = check.execute(
                select(AuditEvent).where(
                    AuditEvent.entity_id == request.id,
                    AuditEvent.action == AuditAction.APPROVAL_GRANTED.value,
                )
            ).scalars().all()
        assert len(decisions) == 2
        assert len(granted) == 1
