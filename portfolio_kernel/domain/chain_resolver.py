"""
Chain resolution -- pure approver-chain computation.

Responsibility
--------------
Turns an org path, the active policies along it, the person directory
and the delegation table (all pre-loaded into a ``ResolutionInput``)
into the ordered, frozen ``ChainStep`` sequence an approval request
will follow.

Architecture position
---------------------
**Kernel domain layer** -- pure function, ZERO I/O.  The data is loaded
in batches by ``services.chain_resolution_service``; nothing here
touches a session or a clock.

Algorithm
---------
1. Pick contributing nodes along ``path`` (root first, subject last):

   * COMMON_ANCESTOR -- the nearest node (subject first, walking up)
     with at least one active policy for the scope.
   * ALL_BRANCHES -- every node with active policies, nearest first, so
     that a team level gates before its division's.  ALL_BRANCHES is in
     effect when any active policy on the path declares it.

2. Expand each contributing node's levels in ascending order and
   resolve approvers per rule type.  A rule that yields nobody falls
   back to the platform administrators with quorum 1.
3. Substitute delegates (single hop, most specific then most recent).
4. Renumber levels 1..k across the whole chain.

Invariants enforced
-------------------
* Determinism -- the same input yields field-identical steps.  People
  resolved from roles or the admin list are ordered by (name, id);
  committee members keep their configured order.
* A step never has zero approvers; ``NoApproversError`` is raised when
  even the admin fallback is empty.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from portfolio_kernel.domain.approval import (
    ApprovalDelegation,
    ApprovalPolicy,
    ApprovalRuleType,
    ApprovalScope,
    ChainStep,
    CrossBuStrategy,
    ResolvedApprover,
    config_person_ids,
)
from portfolio_kernel.domain.org import OrgNode, Person
from portfolio_kernel.exceptions import NoApproversError


@dataclass(frozen=True)
class ResolutionInput:
    """Everything ``resolve_chain`` needs, loaded up front."""

    path: tuple[OrgNode, ...]
    scope: ApprovalScope
    as_of: datetime
    policies_by_node: Mapping[UUID, tuple[ApprovalPolicy, ...]]
    people: Mapping[UUID, Person] = field(default_factory=dict)
    role_members: Mapping[str, tuple[Person, ...]] = field(default_factory=dict)
    admins: tuple[Person, ...] = ()
    delegations: tuple[ApprovalDelegation, ...] = ()
    role_based_default_quorum: int = 1

    @property
    def subject(self) -> OrgNode:
        return self.path[-1]


@dataclass(frozen=True)
class _RuleResult:
    people: tuple[Person, ...]
    quorum: int | None
    fallback_applied: bool = False


def _person_sort_key(person: Person) -> tuple[str, str]:
    return (person.name, str(person.id))


def _active(people: Iterable[Person | None]) -> list[Person]:
    seen: set[UUID] = set()
    result: list[Person] = []
    for person in people:
        if person is None or not person.is_active or person.id in seen:
            continue
        seen.add(person.id)
        result.append(person)
    return result


# =========================================================================
# Step 1: contributing nodes
# =========================================================================


def effective_strategy(
    path: Sequence[OrgNode],
    policies_by_node: Mapping[UUID, Sequence[ApprovalPolicy]],
) -> CrossBuStrategy:
    for node in path:
        for policy in policies_by_node.get(node.id, ()):
            if policy.cross_bu_strategy == CrossBuStrategy.ALL_BRANCHES:
                return CrossBuStrategy.ALL_BRANCHES
    return CrossBuStrategy.COMMON_ANCESTOR


def contributing_nodes(
    path: Sequence[OrgNode],
    policies_by_node: Mapping[UUID, Sequence[ApprovalPolicy]],
) -> list[tuple[int, OrgNode, tuple[ApprovalPolicy, ...]]]:
    """
    Nodes whose policies make up the chain, in chain order.

    Each entry is ``(index_in_path, node, policies sorted by level)``.
    """
    strategy = effective_strategy(path, policies_by_node)
    result: list[tuple[int, OrgNode, tuple[ApprovalPolicy, ...]]] = []
    for index in range(len(path) - 1, -1, -1):
        node = path[index]
        policies = tuple(
            sorted(policies_by_node.get(node.id, ()), key=lambda p: p.level)
        )
        if not policies:
            continue
        result.append((index, node, policies))
        if strategy == CrossBuStrategy.COMMON_ANCESTOR:
            break
    return result


# =========================================================================
# Step 2: rule resolution
# =========================================================================


def _manager_of(node: OrgNode, people: Mapping[UUID, Person]) -> Person | None:
    if node.manager_id is None:
        return None
    person = people.get(node.manager_id)
    if person is None or not person.is_active:
        return None
    return person


def _resolve_rule(
    policy: ApprovalPolicy,
    path: Sequence[OrgNode],
    index: int,
    data: ResolutionInput,
) -> _RuleResult:
    rule = policy.rule_type
    config = policy.rule_config

    if rule == ApprovalRuleType.NODE_MANAGER:
        return _RuleResult(tuple(_active([_manager_of(path[index], data.people)])), None)

    if rule == ApprovalRuleType.SPECIFIC_PERSON:
        ids = config_person_ids(rule, config)
        return _RuleResult(tuple(_active(data.people.get(i) for i in ids)), None)

    if rule == ApprovalRuleType.ANCESTOR_MANAGER:
        for ancestor in reversed(path[:index]):
            manager = _manager_of(ancestor, data.people)
            if manager is not None:
                return _RuleResult((manager,), None)
        return _RuleResult((), None)

    if rule == ApprovalRuleType.ROLE_BASED:
        members = sorted(
            _active(data.role_members.get(config["role"], ())), key=_person_sort_key
        )
        quorum = config.get("quorum", data.role_based_default_quorum)
        return _RuleResult(tuple(members), quorum)

    if rule == ApprovalRuleType.COMMITTEE:
        ids = config_person_ids(rule, config)
        members = _active(data.people.get(i) for i in ids)
        return _RuleResult(tuple(members), config.get("quorum"))

    # FALLBACK_ADMIN
    return _RuleResult(tuple(sorted(_active(data.admins), key=_person_sort_key)), 1)


# =========================================================================
# Step 3: delegation
# =========================================================================


def select_delegation(
    delegations: Iterable[ApprovalDelegation],
    delegator_id: UUID,
    scope: ApprovalScope,
    org_node_id: UUID,
    as_of: datetime,
) -> ApprovalDelegation | None:
    """
    The delegation that replaces *delegator_id* at (*scope*, *org_node_id*).

    Scope-specific beats all-scope, node-specific beats all-node, then the
    latest ``effective_start`` wins (creation time and id break any
    remaining tie).
    """
    candidates = [
        d
        for d in delegations
        if d.delegator_id == delegator_id
        and d.is_effective_at(as_of)
        and d.applies_to(scope, org_node_id)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda d: d.precedence_key())


def _substitute(
    people: Sequence[Person],
    org_node_id: UUID,
    data: ResolutionInput,
) -> tuple[ResolvedApprover, ...]:
    usable = tuple(
        d
        for d in data.delegations
        if d.delegate_id in data.people and data.people[d.delegate_id].is_active
    )
    approvers: list[ResolvedApprover] = []
    seen: set[UUID] = set()
    for person in people:
        delegation = select_delegation(
            usable, person.id, data.scope, org_node_id, data.as_of
        )
        if delegation is not None:
            delegate = data.people[delegation.delegate_id]
            approver = ResolvedApprover(
                delegate.id, delegate.name, delegate.email, delegated_from=person.id
            )
        else:
            approver = ResolvedApprover(person.id, person.name, person.email)
        if approver.person_id in seen:
            continue
        seen.add(approver.person_id)
        approvers.append(approver)
    return tuple(approvers)


# =========================================================================
# Entry point
# =========================================================================


def resolve_chain(data: ResolutionInput) -> tuple[ChainStep, ...]:
    """
    Compute the approval chain for ``data.subject`` in ``data.scope``.

    Returns an empty tuple when no node on the path has an active policy
    for the scope (no approval required).

    Raises:
        NoApproversError: A step resolved to nobody and there are no
            active administrators to fall back on.
    """
    if not data.path:
        return ()

    steps: list[ChainStep] = []
    for index, node, policies in contributing_nodes(data.path, data.policies_by_node):
        for policy in policies:
            level = len(steps) + 1
            result = _resolve_rule(policy, data.path, index, data)
            if not result.people:
                admins = tuple(sorted(_active(data.admins), key=_person_sort_key))
                if not admins:
                    raise NoApproversError(str(node.id), policy.rule_type.value, level)
                result = _RuleResult(admins, 1, fallback_applied=True)

            approvers = _substitute(result.people, node.id, data)
            quorum = result.quorum
            if quorum is not None:
                quorum = min(quorum, len(approvers))

            steps.append(
                ChainStep(
                    level=level,
                    org_node_id=node.id,
                    org_node_name=node.name,
                    rule_type=policy.rule_type,
                    resolved_approvers=approvers,
                    quorum=quorum,
                    fallback_applied=result.fallback_applied,
                )
            )
    return tuple(steps)


def referenced_person_ids(
    path: Sequence[OrgNode],
    policies_by_node: Mapping[UUID, Sequence[ApprovalPolicy]],
) -> set[UUID]:
    """Person ids named by managers or rule configs along *path*."""
    ids: set[UUID] = {n.manager_id for n in path if n.manager_id is not None}
    for policies in policies_by_node.values():
        for policy in policies:
            ids.update(config_person_ids(policy.rule_type, policy.rule_config))
    return ids


def referenced_roles(
    policies_by_node: Mapping[UUID, Sequence[ApprovalPolicy]],
) -> set[str]:
    return {
        p.rule_config["role"]
        for policies in policies_by_node.values()
        for p in policies
        if p.rule_type == ApprovalRuleType.ROLE_BASED
    }
