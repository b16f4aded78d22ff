"""ORM models for the portfolio kernel."""

from portfolio_kernel.models.approval import (
    ApprovalDecisionModel,
    ApprovalDelegationModel,
    ApprovalPolicyModel,
    ApprovalRequestModel,
)
from portfolio_kernel.models.audit_event import AuditAction, AuditEvent
from portfolio_kernel.models.org_node import OrgMembershipModel, OrgNodeModel
from portfolio_kernel.models.person import PersonModel

__all__ = [
    "PersonModel",
    "OrgNodeModel",
    "OrgMembershipModel",
    "ApprovalPolicyModel",
    "ApprovalDelegationModel",
    "ApprovalRequestModel",
    "ApprovalDecisionModel",
    "AuditAction",
    "AuditEvent",
]
