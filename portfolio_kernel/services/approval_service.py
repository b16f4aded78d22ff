"""
portfolio_kernel.services.approval_service -- Approval request lifecycle.

Responsibility:
    Creates approval requests with a frozen approver chain, records
    decisions against the current level, and moves requests through
    PENDING -> {APPROVED, REJECTED, CANCELLED, EXPIRED}.
    Also gates operations on a subject: ``check_approval`` reports whether
    an operation may proceed and opens the request it must wait on.

Architecture position:
    Kernel > Services.  Chain computation is delegated to
    ChainResolutionService exactly once, at creation; afterwards only the
    stored snapshot is consulted.

Invariants enforced:
    - Terminal statuses accept no further transition.
    - The snapshot chain and its SHA-256 are fixed at creation and
      verified on every ``get_request``.
    - A decider may decide once per level, and only if the snapshot lists
      them at the current level.  One rejection ends the request; approvals
      accrue until the level's quorum is met.
    - Decisions are serialized per request: the request row is locked
      FOR UPDATE and carries an optimistic version counter.

Failure modes:
    - ApprovalRequestNotFoundError for an unknown request id.
    - RequestNotPendingError when deciding on or cancelling a terminal
      (or overdue) request.
    - NotAnApproverError / DuplicateDecisionError on a bad decision.
    - ConcurrentModificationError when a concurrent writer won the race.
    - SnapshotTamperedError when the stored chain no longer hashes to
      its recorded digest.
    - NoApproversError (from resolution) blocks request creation.
    - PersonNotFoundError for a requester unknown to the directory.
    - InvalidFieldError when the request context holds a value JSON
      cannot store.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from portfolio_kernel.config.schema import ApprovalSettings
from portfolio_kernel.db.types import as_utc
from portfolio_kernel.domain.approval import (
    ApprovalCheck,
    ApprovalRequest,
    ApprovalScope,
    ApprovalStatus,
    ChainStep,
    DecisionOutcome,
    DecisionType,
    EnforcementMode,
    SubjectType,
    can_transition,
    chain_from_json,
    chain_to_json,
    hash_chain,
)
from portfolio_kernel.domain.clock import Clock
from portfolio_kernel.domain.ports import ApprovalNotifier, AuditSink
from portfolio_kernel.exceptions import (
    ApprovalRequestNotFoundError,
    ConcurrentModificationError,
    DuplicateDecisionError,
    NotAnApproverError,
    PersonNotFoundError,
    RequestNotPendingError,
    SnapshotTamperedError,
)
from portfolio_kernel.logging_config import LogContext, get_logger
from portfolio_kernel.models.approval import ApprovalDecisionModel, ApprovalRequestModel
from portfolio_kernel.models.audit_event import AuditAction
from portfolio_kernel.services.base import BaseService, json_field
from portfolio_kernel.services.chain_resolution_service import ChainResolutionService

logger = get_logger("services.approval")

_TRANSITION_ACTIONS = {
    ApprovalStatus.APPROVED: AuditAction.APPROVAL_GRANTED,
    ApprovalStatus.REJECTED: AuditAction.APPROVAL_REJECTED,
    ApprovalStatus.CANCELLED: AuditAction.APPROVAL_CANCELLED,
    ApprovalStatus.EXPIRED: AuditAction.APPROVAL_EXPIRED,
}


class ApprovalService(BaseService):
    """Manages approval request/decision lifecycle."""

    def __init__(
        self,
        session: Session,
        auditor: AuditSink,
        clock: Clock | None = None,
        resolver: ChainResolutionService | None = None,
        notifier: ApprovalNotifier | None = None,
        settings: ApprovalSettings | None = None,
    ) -> None:
        super().__init__(session, auditor, clock)
        self._settings = settings or ApprovalSettings()
        self._resolver = resolver or ChainResolutionService(
            session, clock=self._clock, settings=self._settings
        )
        self._notifier = notifier

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_request(
        self,
        scope: ApprovalScope | str,
        subject_type: SubjectType | str,
        subject_id: UUID,
        requester_id: UUID,
        org_node_id: UUID | None = None,
        context: Mapping[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> ApprovalRequest:
        """
        Resolve the chain once and store it as the request's snapshot.

        The subject resolves from *org_node_id* when given, otherwise from
        the requester's org membership.  An empty chain yields a request
        that is APPROVED on creation with ``current_level`` 0.  With
        ``supersede_pending_requests`` on, older PENDING requests for the
        same subject are cancelled first.
        """
        scope = ApprovalScope(scope)
        subject_type = SubjectType(subject_type)
        now = self._clock.now()

        if requester_id not in self._resolver.directory.get_people([requester_id]):
            raise PersonNotFoundError(str(requester_id), role="Requester")
        snapshot_context = (
            json_field("ApprovalRequest", "context", dict(context))
            if context is not None
            else None
        )

        if org_node_id is None:
            org_node_id = self._resolver.node_for_person(requester_id)
        chain = self._resolver.resolve_chain(org_node_id, scope, as_of=now)

        if self._settings.supersede_pending_requests:
            self._supersede_pending(scope, subject_type, subject_id, requester_id)

        if expires_at is not None:
            expires_at = as_utc(expires_at)
        elif chain and self._settings.default_request_ttl_hours is not None:
            expires_at = now + timedelta(hours=self._settings.default_request_ttl_hours)

        snapshot = chain_to_json(chain)
        auto_approved = not chain
        model = ApprovalRequestModel(
            scope=scope.value,
            subject_type=subject_type.value,
            subject_id=subject_id,
            requester_id=requester_id,
            org_node_id=org_node_id,
            status=(ApprovalStatus.APPROVED if auto_approved else ApprovalStatus.PENDING).value,
            snapshot_chain=snapshot,
            snapshot_hash=hash_chain(snapshot),
            snapshot_context=snapshot_context,
            current_level=0 if auto_approved else 1,
            expires_at=None if auto_approved else expires_at,
            resolved_at=now if auto_approved else None,
            created_at=now,
            updated_at=now,
        )
        self._session.add(model)
        self._flush(model)

        self._auditor.record(
            actor_id=requester_id,
            entity_type="ApprovalRequest",
            entity_id=model.id,
            action=AuditAction.APPROVAL_REQUESTED,
            payload={
                "scope": scope,
                "subject_type": subject_type,
                "subject_id": subject_id,
                "org_node_id": org_node_id,
                "levels": len(chain),
                "snapshot_hash": model.snapshot_hash,
                "after_status": model.status,
                "after_level": model.current_level,
            },
        )
        if auto_approved:
            self._auditor.record(
                actor_id=requester_id,
                entity_type="ApprovalRequest",
                entity_id=model.id,
                action=AuditAction.APPROVAL_AUTO_APPROVED,
                payload={
                    "reason": "empty_chain",
                    "before_status": None,
                    "after_status": model.status,
                    "before_level": None,
                    "after_level": 0,
                },
            )

        logger.info(
            "approval_request_created",
            extra={
                "request_id": str(model.id),
                "scope": scope.value,
                "subject_type": subject_type.value,
                "subject_id": str(subject_id),
                "levels": len(chain),
                "status": model.status,
            },
        )

        dto = model.to_dto()
        if auto_approved:
            self._notify_resolved(dto)
        else:
            self._notify_requested(dto, chain[0])
        return dto

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def check_approval(
        self,
        scope: ApprovalScope | str,
        subject_type: SubjectType | str,
        subject_id: UUID,
        actor_id: UUID,
        org_node_id: UUID | None = None,
        context: Mapping[str, Any] | None = None,
        enforcement: EnforcementMode | str | None = None,
    ) -> ApprovalCheck:
        """
        Decide whether *actor_id* may go ahead with an operation on a subject.

        Allowed outright when enforcement is off or the subject's chain is
        empty, and whenever the subject already has an APPROVED request.
        Otherwise BLOCKING refuses the operation and returns the subject's
        open PENDING request, opening one for *actor_id* if there is none.
        ADVISORY allows the operation with a warning and opens nothing.
        The mode defaults to the ``enforcement_mode`` setting.
        """
        scope = ApprovalScope(scope)
        subject_type = SubjectType(subject_type)
        if not self._settings.enforcement_enabled:
            return ApprovalCheck(allowed=True, enforcement=EnforcementMode.NONE)

        mode = EnforcementMode(enforcement or self._settings.enforcement_mode)
        if mode == EnforcementMode.NONE:
            return ApprovalCheck(allowed=True, enforcement=EnforcementMode.NONE)

        now = self._clock.now()
        if org_node_id is None:
            org_node_id = self._resolver.node_for_person(actor_id)
        chain = self._resolver.resolve_chain(org_node_id, scope, as_of=now)
        if not chain:
            return ApprovalCheck(allowed=True, enforcement=EnforcementMode.NONE)

        approved = self._latest_for_subject(
            scope, subject_type, subject_id, ApprovalStatus.APPROVED
        )
        pending = self._latest_for_subject(
            scope, subject_type, subject_id, ApprovalStatus.PENDING
        )
        # An overdue request can no longer be decided
        if pending is not None and pending.is_expired_at(now):
            pending = None

        created = False
        if approved is not None:
            outcome = ApprovalCheck(
                allowed=True, enforcement=mode, chain=chain, request=approved
            )
        elif mode == EnforcementMode.ADVISORY:
            outcome = ApprovalCheck(
                allowed=True,
                enforcement=mode,
                chain=chain,
                request=pending,
                warnings=("approval_recommended",),
            )
        else:
            if pending is not None:
                request = pending
            else:
                request = self.create_request(
                    scope, subject_type, subject_id, actor_id, org_node_id, context
                )
                created = True
            outcome = ApprovalCheck(
                allowed=request.status == ApprovalStatus.APPROVED,
                enforcement=mode,
                chain=chain,
                request=request,
                request_created=created,
            )

        logger.info(
            "approval_checked",
            extra={
                "scope": scope.value,
                "subject_type": subject_type.value,
                "subject_id": str(subject_id),
                "enforcement": mode.value,
                "allowed": outcome.allowed,
                "request_id": str(outcome.request.id) if outcome.request else None,
                "request_created": created,
            },
        )
        return outcome

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def submit_decision(
        self,
        request_id: UUID,
        decider_id: UUID,
        decision: DecisionType | str,
        comments: str | None = None,
    ) -> DecisionOutcome:
        """
        Record a decision at the request's current level.

        REJECTED ends the request at once.  APPROVED counts toward the
        level's quorum; meeting it advances the level, or approves the
        request when the level is the last one.
        """
        decision = DecisionType(decision)
        with LogContext.bind(request_id=request_id, actor_id=decider_id):
            model = self._lock_request(request_id)
            status = ApprovalStatus(model.status)
            if status != ApprovalStatus.PENDING:
                raise RequestNotPendingError(str(request_id), status.value, "decide")

            now = self._clock.now()
            if model.expires_at is not None and now >= model.expires_at:
                raise RequestNotPendingError(
                    str(request_id), ApprovalStatus.EXPIRED.value, "decide"
                )

            chain = chain_from_json(model.snapshot_chain)
            level = model.current_level
            step = chain[level - 1]
            if decider_id not in step.approver_ids:
                raise NotAnApproverError(str(request_id), str(decider_id), level)

            already = self._session.execute(
                select(ApprovalDecisionModel.id).where(
                    ApprovalDecisionModel.request_id == model.id,
                    ApprovalDecisionModel.level == level,
                    ApprovalDecisionModel.decider_id == decider_id,
                )
            ).first()
            if already is not None:
                raise DuplicateDecisionError(str(request_id), str(decider_id), level)

            record = ApprovalDecisionModel(
                request_id=model.id,
                level=level,
                decider_id=decider_id,
                decision=decision.value,
                comments=comments,
                decided_at=now,
            )
            model.decisions.append(record)
            self._flush(model)

            before_status, before_level = status, level
            level_advanced = False
            approvals = None
            if decision == DecisionType.REJECTED:
                self._transition(model, ApprovalStatus.REJECTED, now)
            else:
                approvals = self._count_approvals(model.id, level)
                if approvals >= step.required_approvals:
                    if level == len(chain):
                        self._transition(model, ApprovalStatus.APPROVED, now)
                    else:
                        model.current_level = level + 1
                        level_advanced = True
            # Force the UPDATE so the version counter moves with every decision
            model.updated_at = now
            flag_modified(model, "updated_at")
            self._flush(model)

            transition = {
                "before_status": before_status,
                "after_status": model.status,
                "before_level": before_level,
                "after_level": model.current_level,
            }
            self._auditor.record(
                actor_id=decider_id,
                entity_type="ApprovalRequest",
                entity_id=model.id,
                action=AuditAction.APPROVAL_DECISION_RECORDED,
                payload={
                    "decision_id": record.id,
                    "decision": decision,
                    "level": level,
                    "comments": comments,
                    "approvals": approvals,
                    "required_approvals": step.required_approvals,
                    **transition,
                },
            )
            if level_advanced:
                self._auditor.record(
                    actor_id=decider_id,
                    entity_type="ApprovalRequest",
                    entity_id=model.id,
                    action=AuditAction.APPROVAL_LEVEL_ADVANCED,
                    payload=transition,
                )
            elif model.status != before_status.value:
                self._auditor.record(
                    actor_id=decider_id,
                    entity_type="ApprovalRequest",
                    entity_id=model.id,
                    action=_TRANSITION_ACTIONS[ApprovalStatus(model.status)],
                    payload=transition,
                )

            logger.info(
                "approval_decision_recorded",
                extra={
                    "decision": decision.value,
                    "level": level,
                    "approvals": approvals,
                    "new_status": model.status,
                    "new_level": model.current_level,
                },
            )

            dto = model.to_dto()
            if level_advanced:
                self._notify_requested(dto, chain[model.current_level - 1])
            elif dto.is_terminal:
                self._notify_resolved(dto)
            return DecisionOutcome(
                request=dto,
                decision=record.to_dto(),
                level_advanced=level_advanced,
            )

    # ------------------------------------------------------------------
    # Cancellation and expiry
    # ------------------------------------------------------------------

    def cancel_request(
        self,
        request_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> ApprovalRequest:
        """Cancel a PENDING request.  Who may cancel is the caller's call."""
        with LogContext.bind(request_id=request_id, actor_id=actor_id):
            model = self._lock_request(request_id)
            status = ApprovalStatus(model.status)
            if not can_transition(status, ApprovalStatus.CANCELLED):
                raise RequestNotPendingError(str(request_id), status.value, "cancel")

            self._close(model, ApprovalStatus.CANCELLED, actor_id, {"reason": reason})
            logger.info("approval_request_cancelled", extra={"reason": reason})
            dto = model.to_dto()
            self._notify_resolved(dto)
            return dto

    def expire_request(
        self,
        request_id: UUID,
        actor_id: UUID | None = None,
    ) -> ApprovalRequest:
        """
        Expire a PENDING request whose ``expires_at`` has passed.

        A terminal request, or one not yet due, is returned unchanged.
        """
        with LogContext.bind(request_id=request_id, actor_id=actor_id):
            model = self._lock_request(request_id)
            now = self._clock.now()
            if (
                model.status != ApprovalStatus.PENDING.value
                or model.expires_at is None
                or now < model.expires_at
            ):
                return model.to_dto()

            self._close(
                model, ApprovalStatus.EXPIRED, actor_id,
                {"expires_at": model.expires_at},
            )
            logger.info("approval_request_expired")
            dto = model.to_dto()
            self._notify_resolved(dto)
            return dto

    def expire_stale_requests(self, as_of: datetime | None = None) -> list[UUID]:
        """Sweep: expire every PENDING request due at *as_of* (default now)."""
        as_of = as_utc(as_of) if as_of is not None else self._clock.now()
        due = self._session.execute(
            select(ApprovalRequestModel.id)
            .where(
                ApprovalRequestModel.status == ApprovalStatus.PENDING.value,
                ApprovalRequestModel.expires_at.is_not(None),
                ApprovalRequestModel.expires_at <= as_of,
            )
            .order_by(ApprovalRequestModel.expires_at, ApprovalRequestModel.id)
        ).scalars().all()

        expired: list[UUID] = []
        for request_id in due:
            model = self._lock_request(request_id)
            if model.status != ApprovalStatus.PENDING.value:
                continue
            self._close(
                model, ApprovalStatus.EXPIRED, None,
                {"expires_at": model.expires_at, "swept_at": as_of},
                at=as_of,
            )
            expired.append(model.id)
            self._notify_resolved(model.to_dto())

        if expired:
            logger.info("approval_requests_expired", extra={"count": len(expired)})
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: UUID) -> ApprovalRequest:
        """Get an approval request, verifying its snapshot hash."""
        model = self._load_request(request_id)
        computed = hash_chain(model.snapshot_chain)
        if computed != model.snapshot_hash:
            self._auditor.record(
                actor_id=None,
                entity_type="ApprovalRequest",
                entity_id=model.id,
                action=AuditAction.APPROVAL_TAMPER_DETECTED,
                payload={
                    "expected_hash": model.snapshot_hash,
                    "computed_hash": computed,
                },
            )
            logger.error(
                "approval_snapshot_tampered",
                extra={"request_id": str(request_id)},
            )
            raise SnapshotTamperedError(str(request_id))
        return model.to_dto()

    def list_requests(
        self,
        status: ApprovalStatus | str | None = None,
        scope: ApprovalScope | str | None = None,
        subject_type: SubjectType | str | None = None,
        subject_id: UUID | None = None,
        requester_id: UUID | None = None,
    ) -> list[ApprovalRequest]:
        """Requests matching every given filter, oldest first."""
        stmt = select(ApprovalRequestModel)
        if status is not None:
            stmt = stmt.where(ApprovalRequestModel.status == ApprovalStatus(status).value)
        if scope is not None:
            stmt = stmt.where(ApprovalRequestModel.scope == ApprovalScope(scope).value)
        if subject_type is not None:
            stmt = stmt.where(
                ApprovalRequestModel.subject_type == SubjectType(subject_type).value
            )
        if subject_id is not None:
            stmt = stmt.where(ApprovalRequestModel.subject_id == subject_id)
        if requester_id is not None:
            stmt = stmt.where(ApprovalRequestModel.requester_id == requester_id)
        stmt = stmt.order_by(ApprovalRequestModel.created_at, ApprovalRequestModel.id)
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    def get_approver_inbox(self, person_id: UUID) -> list[ApprovalRequest]:
        """PENDING requests whose current level lists *person_id* and that
        they have not yet decided at that level."""
        inbox = []
        for request in self.list_requests(status=ApprovalStatus.PENDING):
            step = request.current_step
            if step is None or person_id not in step.approver_ids:
                continue
            if any(
                d.decider_id == person_id and d.level == request.current_level
                for d in request.decisions
            ):
                continue
            inbox.append(request)
        return inbox

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _supersede_pending(
        self,
        scope: ApprovalScope,
        subject_type: SubjectType,
        subject_id: UUID,
        requester_id: UUID,
    ) -> None:
        pending = self._session.execute(
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.scope == scope.value,
                ApprovalRequestModel.subject_type == subject_type.value,
                ApprovalRequestModel.subject_id == subject_id,
                ApprovalRequestModel.status == ApprovalStatus.PENDING.value,
            )
            .order_by(ApprovalRequestModel.created_at)
            .with_for_update()
        ).scalars().all()
        for model in pending:
            self._close(
                model, ApprovalStatus.CANCELLED, requester_id,
                {"reason": "superseded"},
            )
            logger.info(
                "approval_request_superseded",
                extra={"request_id": str(model.id), "subject_id": str(subject_id)},
            )
            self._notify_resolved(model.to_dto())

    def _latest_for_subject(
        self,
        scope: ApprovalScope,
        subject_type: SubjectType,
        subject_id: UUID,
        status: ApprovalStatus,
    ) -> ApprovalRequest | None:
        model = self._session.execute(
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.scope == scope.value,
                ApprovalRequestModel.subject_type == subject_type.value,
                ApprovalRequestModel.subject_id == subject_id,
                ApprovalRequestModel.status == status.value,
            )
            .order_by(ApprovalRequestModel.created_at.desc(), ApprovalRequestModel.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def _close(
        self,
        model: ApprovalRequestModel,
        target: ApprovalStatus,
        actor_id: UUID | None,
        extra_payload: Mapping[str, Any],
        at: datetime | None = None,
    ) -> None:
        before_status = ApprovalStatus(model.status)
        now = at or self._clock.now()
        self._transition(model, target, now)
        model.updated_at = now
        self._flush(model)
        self._auditor.record(
            actor_id=actor_id,
            entity_type="ApprovalRequest",
            entity_id=model.id,
            action=_TRANSITION_ACTIONS[target],
            payload={
                "before_status": before_status,
                "after_status": target,
                "before_level": model.current_level,
                "after_level": model.current_level,
                **extra_payload,
            },
        )

    def _transition(
        self,
        model: ApprovalRequestModel,
        target: ApprovalStatus,
        now: datetime,
    ) -> None:
        current = ApprovalStatus(model.status)
        if not can_transition(current, target):
            raise RequestNotPendingError(str(model.id), current.value, target.value.lower())
        model.status = target.value
        model.resolved_at = now

    def _count_approvals(self, request_id: UUID, level: int) -> int:
        return self._session.execute(
            select(func.count())
            .select_from(ApprovalDecisionModel)
            .where(
                ApprovalDecisionModel.request_id == request_id,
                ApprovalDecisionModel.level == level,
                ApprovalDecisionModel.decision == DecisionType.APPROVED.value,
            )
        ).scalar_one()

    def _load_request(self, request_id: UUID) -> ApprovalRequestModel:
        model = self._session.get(ApprovalRequestModel, request_id)
        if model is None:
            raise ApprovalRequestNotFoundError(str(request_id))
        return model

    def _lock_request(self, request_id: UUID) -> ApprovalRequestModel:
        # The locking read also checks the version of any copy already in
        # the session against the row
        try:
            model = self._session.get(
                ApprovalRequestModel, request_id, with_for_update=True
            )
        except StaleDataError as exc:
            logger.warning(
                "approval_stale_read",
                extra={"request_id": str(request_id), "error": str(exc)},
            )
            raise ConcurrentModificationError("ApprovalRequest", str(request_id)) from exc
        if model is None:
            raise ApprovalRequestNotFoundError(str(request_id))
        return model

    def _flush(self, model: ApprovalRequestModel) -> None:
        try:
            self._session.flush()
        except (StaleDataError, IntegrityError) as exc:
            logger.warning(
                "approval_write_conflict",
                extra={"request_id": str(model.id), "error": str(exc)},
            )
            raise ConcurrentModificationError("ApprovalRequest", str(model.id)) from exc

    def _notify_requested(self, request: ApprovalRequest, step: ChainStep) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.decision_requested(request, step)
        except Exception:
            logger.exception(
                "notification_failed",
                extra={"request_id": str(request.id), "event": "decision_requested"},
            )

    def _notify_resolved(self, request: ApprovalRequest) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.request_resolved(request)
        except Exception:
            logger.exception(
                "notification_failed",
                extra={"request_id": str(request.id), "event": "request_resolved"},
            )
