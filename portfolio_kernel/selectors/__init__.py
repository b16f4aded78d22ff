"""Read-only selectors."""

from portfolio_kernel.selectors.approval_selector import ApprovalSelector
from portfolio_kernel.selectors.base import BaseSelector
from portfolio_kernel.selectors.org_selector import OrgTreeSelector

__all__ = ["ApprovalSelector", "BaseSelector", "OrgTreeSelector"]
