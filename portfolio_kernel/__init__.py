"""
Portfolio Kernel - organisational hierarchy and approval chains

A transactional core for portfolio governance with:
- A materialized-path org tree with soft deletes and subtree moves
- Dense, per-node approval policies by scope
- Deterministic approver-chain resolution with time-bounded delegation
- Snapshot-frozen approval requests with quorum-gated levels
- Full auditability of every mutation
"""

__version__ = "0.1.0"
