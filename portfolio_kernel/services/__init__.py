"""Services for the portfolio kernel (write side)."""

from portfolio_kernel.services.approval_service import ApprovalService
from portfolio_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from portfolio_kernel.services.chain_resolution_service import ChainResolutionService
from portfolio_kernel.services.delegation_service import DelegationService
from portfolio_kernel.services.membership_service import MembershipService
from portfolio_kernel.services.org_tree_service import OrgTreeService
from portfolio_kernel.services.person_directory import SqlPersonDirectory
from portfolio_kernel.services.policy_service import PolicyService

__all__ = [
    "ApprovalService",
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "ChainResolutionService",
    "DelegationService",
    "MembershipService",
    "OrgTreeService",
    "PolicyService",
    "SqlPersonDirectory",
]
