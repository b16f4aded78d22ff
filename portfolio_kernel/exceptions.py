"""
Typed Exception Hierarchy for the Portfolio Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure the approval engine can surface to a caller is one of four
kinds.  Callers catch by type, read the machine-readable ``code`` class
attribute, and render a specific message from the structured attributes
(entity id, field) instead of parsing message strings.

    try:
        service.submit_decision(request_id, decider_id, DecisionType.APPROVED)
    except NotAnApproverError as e:
        api_response(code=e.code, request=e.request_id, level=e.level)
    except ValidationError as e:
        api_response(code=e.code)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PortfolioKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidNodeTypeError
    |   +-- DuplicateRootError
    |   +-- DuplicateNodeCodeError
    |   +-- ImmutableFieldError
    |   +-- InvalidFieldError
    |   +-- NodeCycleError
    |   +-- RootNodeOperationError
    |   +-- ActiveChildrenError
    |   +-- ActiveMembershipsError
    |   +-- NonDenseLevelError
    |   +-- InvalidRuleConfigError
    |   +-- InvalidDelegationError
    |   +-- RequestNotPendingError
    |   +-- NotAnApproverError
    |   +-- DuplicateDecisionError
    |   +-- ImmutabilityViolationError
    |
    +-- NotFoundError
    |   +-- OrgNodeNotFoundError
    |   +-- InactiveNodeError
    |   +-- PersonNotFoundError
    |   +-- PolicyNotFoundError
    |   +-- DelegationNotFoundError
    |   +-- MembershipNotFoundError
    |   +-- ApprovalRequestNotFoundError
    |
    +-- ConflictError
    |   +-- ConcurrentModificationError
    |   +-- SnapshotTamperedError
    |
    +-- ConfigurationError
        +-- NoApproversError
        +-- ConfigLoadError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                      | When Raised
--------------|---------------------------|-------------------------------------------
Validation    | INVALID_NODE_TYPE         | ROOT with parent / non-ROOT without parent
              | DUPLICATE_ROOT            | A second active ROOT node
              | DUPLICATE_NODE_CODE       | Node code already used in the tree
              | IMMUTABLE_FIELD           | Patch touches type/parent/path/depth
              | INVALID_FIELD             | Opaque map holds a non-JSON value
              | NODE_CYCLE                | Move under own descendant
              | ROOT_NODE_OPERATION       | Move or delete the ROOT
              | ACTIVE_CHILDREN           | Delete with active child nodes
              | ACTIVE_MEMBERSHIPS        | Delete with active memberships
              | NON_DENSE_LEVEL           | Policy level would leave a gap
              | INVALID_RULE_CONFIG       | ruleConfig missing/invalid for ruleType
              | INVALID_DELEGATION        | Self-delegation, empty window
              | REQUEST_NOT_PENDING       | Decide/cancel on a terminal request
              | NOT_AN_APPROVER           | Decider not in the current step
              | DUPLICATE_DECISION        | Same decider twice at the same level
              | IMMUTABILITY_VIOLATION    | Mutating a decision or frozen chain
--------------|---------------------------|-------------------------------------------
Not found     | ORG_NODE_NOT_FOUND        | Node id does not exist
              | INACTIVE_NODE             | Node exists but is soft-deleted
              | PERSON_NOT_FOUND          | Person id unknown or inactive
              | POLICY_NOT_FOUND          | Policy id does not exist
              | DELEGATION_NOT_FOUND      | Delegation id does not exist
              | MEMBERSHIP_NOT_FOUND      | Membership id / active membership missing
              | APPROVAL_REQUEST_NOT_FOUND| Request id does not exist
--------------|---------------------------|-------------------------------------------
Conflict      | CONCURRENT_MODIFICATION   | Row version mismatch / quorum race
              | SNAPSHOT_TAMPERED         | Stored chain no longer matches its hash
--------------|---------------------------|-------------------------------------------
Configuration | NO_APPROVERS              | Step resolves to zero approvers
              | CONFIG_LOAD_ERROR         | Config file unreadable or malformed

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Inherit from Exception, not ValueError/LookupError.  Domain errors must be
   catchable as a group without mixing in programming errors.

2. ``code`` is a class attribute so it is readable without instantiation.

3. All context is stored as attributes so it survives logging (see
   ``logging_config.StructuredFormatter``, which copies public exception
   attributes into the JSON record).

4. Raw storage errors never escape a service; they are translated to one of
   the four categories at the boundary.

===============================================================================
"""


class PortfolioKernelError(Exception):
    """
    Base exception for all portfolio kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "PORTFOLIO_KERNEL_ERROR"


# =============================================================================
# Category bases
# =============================================================================


class ValidationError(PortfolioKernelError):
    """Malformed input or invariant violation."""

    code: str = "VALIDATION_ERROR"


class NotFoundError(PortfolioKernelError):
    """Referenced entity does not exist or is inactive where activity is required."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str, message: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(message or f"{entity_type} not found: {entity_id}")


class ConflictError(PortfolioKernelError):
    """Concurrent mutation detected."""

    code: str = "CONFLICT"


class ConfigurationError(PortfolioKernelError):
    """The configured org/policy data cannot produce a usable result."""

    code: str = "CONFIGURATION_ERROR"


# =============================================================================
# Org tree
# =============================================================================


class InvalidNodeTypeError(ValidationError):
    """Node type and parent are inconsistent."""

    code: str = "INVALID_NODE_TYPE"

    def __init__(self, node_type: str, reason: str):
        self.node_type = node_type
        self.reason = reason
        super().__init__(f"Invalid {node_type} node: {reason}")


class DuplicateRootError(ValidationError):
    """An active ROOT node already exists."""

    code: str = "DUPLICATE_ROOT"

    def __init__(self, existing_root_id: str):
        self.existing_root_id = existing_root_id
        super().__init__(f"An active ROOT node already exists: {existing_root_id}")


class DuplicateNodeCodeError(ValidationError):
    """Node code is already in use."""

    code: str = "DUPLICATE_NODE_CODE"

    def __init__(self, node_code: str):
        self.node_code = node_code
        super().__init__(f"Org node code already in use: {node_code}")


class ImmutableFieldError(ValidationError):
    """Update attempted on a field that only structural operations may change."""

    code: str = "IMMUTABLE_FIELD"

    def __init__(self, entity_type: str, field: str):
        self.entity_type = entity_type
        self.field = field
        super().__init__(f"Field '{field}' of {entity_type} cannot be updated directly")


class InvalidFieldError(ValidationError):
    """A field value cannot be stored, e.g. an opaque map with a non-JSON value."""

    code: str = "INVALID_FIELD"

    def __init__(self, entity_type: str, field: str, reason: str):
        self.entity_type = entity_type
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field} for {entity_type}: {reason}")


class NodeCycleError(ValidationError):
    """Move would place a node under itself or one of its descendants."""

    code: str = "NODE_CYCLE"

    def __init__(self, node_id: str, new_parent_id: str):
        self.node_id = node_id
        self.new_parent_id = new_parent_id
        super().__init__(
            f"Cannot move node {node_id} under {new_parent_id}: "
            "target is the node itself or one of its descendants"
        )


class RootNodeOperationError(ValidationError):
    """The ROOT node cannot be moved or deleted."""

    code: str = "ROOT_NODE_OPERATION"

    def __init__(self, node_id: str, operation: str):
        self.node_id = node_id
        self.operation = operation
        super().__init__(f"Cannot {operation} the ROOT node {node_id}")


class ActiveChildrenError(ValidationError):
    """Node still has active child nodes."""

    code: str = "ACTIVE_CHILDREN"

    def __init__(self, node_id: str, child_count: int):
        self.node_id = node_id
        self.child_count = child_count
        super().__init__(
            f"Cannot delete node {node_id} with {child_count} active child node(s)"
        )


class ActiveMembershipsError(ValidationError):
    """Node still has people assigned to it."""

    code: str = "ACTIVE_MEMBERSHIPS"

    def __init__(self, node_id: str, membership_count: int):
        self.node_id = node_id
        self.membership_count = membership_count
        super().__init__(
            f"Cannot delete node {node_id} with {membership_count} active membership(s)"
        )


class OrgNodeNotFoundError(NotFoundError):
    """Org node id does not exist."""

    code: str = "ORG_NODE_NOT_FOUND"

    def __init__(self, node_id: str):
        super().__init__("OrgNode", node_id)


class InactiveNodeError(NotFoundError):
    """Org node exists but has been soft-deleted."""

    code: str = "INACTIVE_NODE"

    def __init__(self, node_id: str):
        super().__init__("OrgNode", node_id, f"OrgNode is inactive: {node_id}")


class PersonNotFoundError(NotFoundError):
    """Person is unknown to the directory (or inactive)."""

    code: str = "PERSON_NOT_FOUND"

    def __init__(self, person_id: str, role: str = "Person"):
        self.role = role
        super().__init__(role, person_id)


class MembershipNotFoundError(NotFoundError):
    """Membership id does not exist, or a person has no active membership."""

    code: str = "MEMBERSHIP_NOT_FOUND"

    def __init__(self, membership_ref: str):
        super().__init__("OrgMembership", membership_ref)


# =============================================================================
# Policies and delegations
# =============================================================================


class NonDenseLevelError(ValidationError):
    """Policy levels for an (org node, scope) group must be 1..n without gaps."""

    code: str = "NON_DENSE_LEVEL"

    def __init__(self, org_node_id: str, scope: str, level: int, expected: int):
        self.org_node_id = org_node_id
        self.scope = scope
        self.level = level
        self.expected = expected
        super().__init__(
            f"Level {level} for node {org_node_id} scope {scope} is not dense; "
            f"next level must be {expected}"
        )


class InvalidRuleConfigError(ValidationError):
    """ruleConfig does not satisfy the rule type's requirements."""

    code: str = "INVALID_RULE_CONFIG"

    def __init__(self, rule_type: str, field: str, reason: str):
        self.rule_type = rule_type
        self.field = field
        self.reason = reason
        super().__init__(f"{rule_type} ruleConfig.{field}: {reason}")


class InvalidDelegationError(ValidationError):
    """Delegation window or parties are invalid."""

    code: str = "INVALID_DELEGATION"

    def __init__(self, reason: str, field: str | None = None):
        self.reason = reason
        self.field = field
        super().__init__(f"Invalid delegation: {reason}")


class PolicyNotFoundError(NotFoundError):
    """Approval policy id does not exist."""

    code: str = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: str):
        super().__init__("ApprovalPolicy", policy_id)


class DelegationNotFoundError(NotFoundError):
    """Delegation id does not exist."""

    code: str = "DELEGATION_NOT_FOUND"

    def __init__(self, delegation_id: str):
        super().__init__("ApprovalDelegation", delegation_id)


class NoApproversError(ConfigurationError):
    """A chain step resolved to zero approvers, even after admin fallback."""

    code: str = "NO_APPROVERS"

    def __init__(self, org_node_id: str, rule_type: str, level: int):
        self.org_node_id = org_node_id
        self.rule_type = rule_type
        self.level = level
        super().__init__(
            f"Level {level} ({rule_type}) at node {org_node_id} resolved to zero "
            "approvers and no platform administrators exist"
        )


class ConfigLoadError(ConfigurationError):
    """Kernel configuration file could not be loaded."""

    code: str = "CONFIG_LOAD_ERROR"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load configuration {path}: {reason}")


# =============================================================================
# Approval requests
# =============================================================================


class ApprovalRequestNotFoundError(NotFoundError):
    """Approval request id does not exist."""

    code: str = "APPROVAL_REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        super().__init__("ApprovalRequest", request_id)


class RequestNotPendingError(ValidationError):
    """Request is terminal (or past its expiry) and accepts no further changes."""

    code: str = "REQUEST_NOT_PENDING"

    def __init__(self, request_id: str, status: str, attempted: str):
        self.request_id = request_id
        self.status = status
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} approval request {request_id} in status {status}"
        )


class NotAnApproverError(ValidationError):
    """Decider is not a resolved approver at the request's current level."""

    code: str = "NOT_AN_APPROVER"

    def __init__(self, request_id: str, decider_id: str, level: int):
        self.request_id = request_id
        self.decider_id = decider_id
        self.level = level
        super().__init__(
            f"{decider_id} is not an approver at level {level} of request {request_id}"
        )


class DuplicateDecisionError(ValidationError):
    """Decider already decided at this level."""

    code: str = "DUPLICATE_DECISION"

    def __init__(self, request_id: str, decider_id: str, level: int):
        self.request_id = request_id
        self.decider_id = decider_id
        self.level = level
        super().__init__(
            f"{decider_id} already decided level {level} of request {request_id}"
        )


class ImmutabilityViolationError(ValidationError):
    """Attempted to modify an append-only or frozen record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class ConcurrentModificationError(ConflictError):
    """Row was modified by another transaction (optimistic lock / unique race)."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class SnapshotTamperedError(ConflictError):
    """Stored snapshot chain no longer matches the hash taken at creation."""

    code: str = "SNAPSHOT_TAMPERED"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"Snapshot chain of approval request {request_id} failed its integrity check"
        )
